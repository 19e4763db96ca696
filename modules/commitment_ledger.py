"""Per-voter sorted commitment ledger (doubly linked list keyed by poll id).

Each voter owns a list of the commitments that still lock tokens, ordered
ascending by weight. Poll id 0 is the sentinel: it sits before the head and
after the tail, weighs 0 as a predecessor and is unbounded as a successor.

Insertion takes a caller-supplied predecessor hint so the splice is O(1). The
hint is validated, never repaired; callers that lose a race re-query
``get_insertion_point`` and resubmit.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from modules.plcr_store import PLCRStore

SENTINEL = 0


class LedgerError(Exception):
    """Rejected ledger mutation; ``code`` is the result code surfaced over RPC."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class CommitmentLedger:
    """Sorted per-voter index of locked, unrevealed commitments."""

    def __init__(self, store: PLCRStore, logger: Optional[Callable[[str, str], None]] = None):
        self.store = store
        self._logger = logger

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _next(self, voter: str, poll_id: int) -> int:
        node = self.store.get_node(voter, poll_id)
        return int(node["next_poll_id"]) if node else SENTINEL

    def contains(self, voter: str, poll_id: int) -> bool:
        if poll_id == SENTINEL:
            return False
        return self.store.get_node(voter, poll_id) is not None

    def get_num_tokens(self, voter: str, poll_id: int) -> int:
        if poll_id == SENTINEL:
            return 0
        node = self.store.get_node(voter, poll_id)
        return int(node["num_tokens"]) if node else 0

    def nodes(self, voter: str) -> List[Dict[str, Any]]:
        """Walk the list head to tail."""
        result: List[Dict[str, Any]] = []
        poll_id = self._next(voter, SENTINEL)
        while poll_id != SENTINEL:
            node = self.store.get_node(voter, poll_id)
            if node is None:
                break
            result.append(
                {
                    "poll_id": int(node["poll_id"]),
                    "num_tokens": int(node["num_tokens"]),
                    "prev_poll_id": int(node["prev_poll_id"]),
                    "next_poll_id": int(node["next_poll_id"]),
                }
            )
            poll_id = int(node["next_poll_id"])
        return result

    def total_committed(self, voter: str) -> int:
        return self.store.sum_node_tokens(voter)

    def available_tokens(self, voter: str, locked_balance: int) -> int:
        return int(locked_balance) - self.total_committed(voter)

    def get_insertion_point(self, voter: str, num_tokens: int, poll_id: int = SENTINEL) -> int:
        """Return the poll id of the last node weighing ``num_tokens`` or less.

        ``poll_id`` is skipped during the walk so a caller can ask where a
        poll would land while ignoring any node already stored under it.
        Returns the sentinel when every node is heavier.
        """
        insert_point = SENTINEL
        node_id = self._next(voter, SENTINEL)
        while node_id != SENTINEL:
            node = self.store.get_node(voter, node_id)
            if node is None:
                break
            if int(node["num_tokens"]) > num_tokens:
                break
            if node_id != poll_id:
                insert_point = node_id
            node_id = int(node["next_poll_id"])
        return insert_point

    def valid_position(self, voter: str, prev_poll_id: int, num_tokens: int) -> bool:
        if prev_poll_id != SENTINEL and not self.contains(voter, prev_poll_id):
            return False
        prev_tokens = self.get_num_tokens(voter, prev_poll_id)
        next_poll_id = self._next(voter, prev_poll_id)
        if prev_tokens > num_tokens:
            return False
        if next_poll_id == SENTINEL:
            return True
        return num_tokens <= self.get_num_tokens(voter, next_poll_id)

    def insert(self, voter: str, poll_id: int, num_tokens: int, prev_poll_id: int) -> None:
        if not isinstance(poll_id, int) or poll_id <= SENTINEL:
            raise LedgerError("invalid_poll_id", "poll id must be a positive integer")
        if not isinstance(num_tokens, int) or num_tokens < 0:
            raise LedgerError("invalid_argument", "num_tokens must be a non-negative integer")
        if self.contains(voter, poll_id):
            raise LedgerError("duplicate_commitment", f"ledger already holds poll {poll_id}")
        if not self.valid_position(voter, prev_poll_id, num_tokens):
            self._log(
                f"plcr: rejected insertion hint {prev_poll_id} for {num_tokens} tokens "
                f"(voter={voter}, poll={poll_id})",
                "warn",
            )
            raise LedgerError(
                "invalid_insertion_hint",
                f"prev_poll_id {prev_poll_id} is not a valid position for {num_tokens} tokens",
            )

        with self.store.transaction():
            if self.store.get_node(voter, SENTINEL) is None:
                self.store.put_node(voter, SENTINEL, 0, SENTINEL, SENTINEL)
            next_poll_id = self._next(voter, prev_poll_id)
            self.store.put_node(voter, poll_id, num_tokens, prev_poll_id, next_poll_id)
            self.store.set_node_links(voter, prev_poll_id, next_poll_id=poll_id)
            self.store.set_node_links(voter, next_poll_id, prev_poll_id=poll_id)

    def remove(self, voter: str, poll_id: int) -> int:
        """Unlink ``poll_id`` from the voter's list and return the tokens it freed."""
        node = self.store.get_node(voter, poll_id) if poll_id != SENTINEL else None
        if node is None:
            raise LedgerError("no_such_commitment", f"ledger holds no node for poll {poll_id}")

        prev_poll_id = int(node["prev_poll_id"])
        next_poll_id = int(node["next_poll_id"])
        with self.store.transaction():
            self.store.set_node_links(voter, prev_poll_id, next_poll_id=next_poll_id)
            self.store.set_node_links(voter, next_poll_id, prev_poll_id=prev_poll_id)
            self.store.delete_node(voter, poll_id)
            if self._next(voter, SENTINEL) == SENTINEL:
                self.store.delete_node(voter, SENTINEL)
        return int(node["num_tokens"])
