"""SQLite persistence for cl-hive-plcr polls, commitments, ledgers and credits."""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional


class PLCRStore:
    """SQLite persistence for polls, commitments, DLL nodes, rights and delegations."""

    def __init__(self, db_path: str, logger: Optional[Callable[[str, str], None]] = None):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of writes atomically; nested use joins the outer transaction."""
        conn = self._get_connection()
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plcr_polls (
                poll_id INTEGER PRIMARY KEY AUTOINCREMENT,
                commit_end INTEGER NOT NULL,
                reveal_end INTEGER NOT NULL,
                vote_quorum INTEGER NOT NULL,
                eligible_tokens INTEGER NOT NULL DEFAULT 0,
                votes_for INTEGER NOT NULL DEFAULT 0,
                votes_against INTEGER NOT NULL DEFAULT 0,
                finalized INTEGER NOT NULL DEFAULT 0,
                passed INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plcr_commitments (
                voter TEXT NOT NULL,
                poll_id INTEGER NOT NULL,
                secret_hash TEXT NOT NULL,
                num_tokens INTEGER NOT NULL,
                committed_by TEXT NOT NULL,
                revealed INTEGER NOT NULL DEFAULT 0,
                vote_option INTEGER,
                committed_at INTEGER NOT NULL,
                revealed_at INTEGER,
                PRIMARY KEY(voter, poll_id),
                FOREIGN KEY(poll_id) REFERENCES plcr_polls(poll_id)
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_plcr_commitments_poll
            ON plcr_commitments(poll_id, revealed)
            """
        )

        # poll_id 0 is the per-voter sentinel row of the list
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plcr_dll_nodes (
                voter TEXT NOT NULL,
                poll_id INTEGER NOT NULL,
                num_tokens INTEGER NOT NULL,
                prev_poll_id INTEGER NOT NULL,
                next_poll_id INTEGER NOT NULL,
                PRIMARY KEY(voter, poll_id)
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plcr_voting_rights (
                voter TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plcr_delegations (
                delegator TEXT NOT NULL,
                delegate TEXT NOT NULL,
                credited_tokens INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(delegator, delegate)
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_plcr_delegations_delegate
            ON plcr_delegations(delegate)
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS plcr_token_balances (
                account TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0
            )
            """
        )

        conn.execute("PRAGMA optimize;")

    # Polls

    def create_poll(
        self,
        commit_end: int,
        reveal_end: int,
        vote_quorum: int,
        eligible_tokens: int,
        now_ts: int,
    ) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO plcr_polls (
                commit_end, reveal_end, vote_quorum, eligible_tokens,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (commit_end, reveal_end, vote_quorum, eligible_tokens, now_ts, now_ts),
        )
        return int(cursor.lastrowid)

    def get_poll(self, poll_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM plcr_polls WHERE poll_id = ?",
            (poll_id,),
        ).fetchone()
        return dict(row) if row else None

    def add_to_tally(self, poll_id: int, votes_for: int, votes_against: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE plcr_polls
            SET votes_for = votes_for + ?, votes_against = votes_against + ?, updated_at = ?
            WHERE poll_id = ? AND finalized = 0
            """,
            (votes_for, votes_against, now_ts, poll_id),
        )

    def mark_poll_finalized(self, poll_id: int, passed: bool, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE plcr_polls SET finalized = 1, passed = ?, updated_at = ?
            WHERE poll_id = ? AND finalized = 0
            """,
            (1 if passed else 0, now_ts, poll_id),
        )

    def count_total_polls(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM plcr_polls").fetchone()
        return int(row["cnt"] or 0)

    def count_finalized_polls(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM plcr_polls WHERE finalized = 1"
        ).fetchone()
        return int(row["cnt"] or 0)

    # Commitments

    def add_commitment(
        self,
        voter: str,
        poll_id: int,
        secret_hash: str,
        num_tokens: int,
        committed_by: str,
        now_ts: int,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO plcr_commitments (
                voter, poll_id, secret_hash, num_tokens, committed_by, committed_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (voter, poll_id, secret_hash, num_tokens, committed_by, now_ts),
        )

    def get_commitment(self, voter: str, poll_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM plcr_commitments WHERE voter = ? AND poll_id = ?",
            (voter, poll_id),
        ).fetchone()
        return dict(row) if row else None

    def mark_commitment_revealed(self, voter: str, poll_id: int, vote_option: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE plcr_commitments SET revealed = 1, vote_option = ?, revealed_at = ?
            WHERE voter = ? AND poll_id = ? AND revealed = 0
            """,
            (vote_option, now_ts, voter, poll_id),
        )

    def list_commitments_for_poll(self, poll_id: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM plcr_commitments WHERE poll_id = ? ORDER BY committed_at ASC",
            (poll_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def list_commitments_for_voter(self, voter: str, limit: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM plcr_commitments WHERE voter = ?
            ORDER BY committed_at DESC, poll_id DESC
            LIMIT ?
            """,
            (voter, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def count_total_commitments(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM plcr_commitments").fetchone()
        return int(row["cnt"] or 0)

    # Ledger nodes

    def get_node(self, voter: str, poll_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM plcr_dll_nodes WHERE voter = ? AND poll_id = ?",
            (voter, poll_id),
        ).fetchone()
        return dict(row) if row else None

    def put_node(
        self,
        voter: str,
        poll_id: int,
        num_tokens: int,
        prev_poll_id: int,
        next_poll_id: int,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO plcr_dll_nodes (voter, poll_id, num_tokens, prev_poll_id, next_poll_id)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(voter, poll_id) DO UPDATE SET
                num_tokens = excluded.num_tokens,
                prev_poll_id = excluded.prev_poll_id,
                next_poll_id = excluded.next_poll_id
            """,
            (voter, poll_id, num_tokens, prev_poll_id, next_poll_id),
        )

    def set_node_links(
        self,
        voter: str,
        poll_id: int,
        prev_poll_id: Optional[int] = None,
        next_poll_id: Optional[int] = None,
    ) -> None:
        conn = self._get_connection()
        if prev_poll_id is not None:
            conn.execute(
                "UPDATE plcr_dll_nodes SET prev_poll_id = ? WHERE voter = ? AND poll_id = ?",
                (prev_poll_id, voter, poll_id),
            )
        if next_poll_id is not None:
            conn.execute(
                "UPDATE plcr_dll_nodes SET next_poll_id = ? WHERE voter = ? AND poll_id = ?",
                (next_poll_id, voter, poll_id),
            )

    def delete_node(self, voter: str, poll_id: int) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM plcr_dll_nodes WHERE voter = ? AND poll_id = ?",
            (voter, poll_id),
        )
        return cursor.rowcount

    def sum_node_tokens(self, voter: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(num_tokens), 0) AS total FROM plcr_dll_nodes WHERE voter = ? AND poll_id != 0",
            (voter,),
        ).fetchone()
        return int(row["total"] or 0)

    def list_voters_with_node(self, poll_id: int) -> List[str]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT voter FROM plcr_dll_nodes WHERE poll_id = ? ORDER BY voter ASC",
            (poll_id,),
        ).fetchall()
        return [str(row["voter"]) for row in rows]

    # Voting rights

    def get_voting_rights(self, voter: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT balance FROM plcr_voting_rights WHERE voter = ?",
            (voter,),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def adjust_voting_rights(self, voter: str, delta: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO plcr_voting_rights (voter, balance, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(voter) DO UPDATE SET
                balance = balance + excluded.balance,
                updated_at = excluded.updated_at
            """,
            (voter, delta, now_ts),
        )

    def total_voting_rights(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(balance), 0) AS total FROM plcr_voting_rights"
        ).fetchone()
        return int(row["total"] or 0)

    def count_voters(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM plcr_voting_rights WHERE balance > 0"
        ).fetchone()
        return int(row["cnt"] or 0)

    # Delegations

    def get_credit(self, delegator: str, delegate: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT credited_tokens FROM plcr_delegations WHERE delegator = ? AND delegate = ?",
            (delegator, delegate),
        ).fetchone()
        return int(row["credited_tokens"]) if row else 0

    def adjust_credit(self, delegator: str, delegate: str, delta: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO plcr_delegations (delegator, delegate, credited_tokens, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(delegator, delegate) DO UPDATE SET
                credited_tokens = credited_tokens + excluded.credited_tokens,
                updated_at = excluded.updated_at
            """,
            (delegator, delegate, delta, now_ts, now_ts),
        )

    def sum_credit_granted(self, delegator: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(credited_tokens), 0) AS total FROM plcr_delegations WHERE delegator = ?",
            (delegator,),
        ).fetchone()
        return int(row["total"] or 0)

    def sum_credit_received(self, delegate: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(credited_tokens), 0) AS total FROM plcr_delegations WHERE delegate = ?",
            (delegate,),
        ).fetchone()
        return int(row["total"] or 0)

    def list_delegations(self, voter: str) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM plcr_delegations
            WHERE (delegator = ? OR delegate = ?) AND credited_tokens > 0
            ORDER BY updated_at DESC
            """,
            (voter, voter),
        ).fetchall()
        return [dict(row) for row in rows]

    def count_active_delegations(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM plcr_delegations WHERE credited_tokens > 0"
        ).fetchone()
        return int(row["cnt"] or 0)

    # Local token balances

    def get_token_balance(self, account: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT balance FROM plcr_token_balances WHERE account = ?",
            (account,),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def adjust_token_balance(self, account: str, delta: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO plcr_token_balances (account, balance) VALUES (?, ?)
            ON CONFLICT(account) DO UPDATE SET balance = balance + excluded.balance
            """,
            (account, delta),
        )
