"""Core commit-reveal voting service for cl-hive-plcr."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from modules.commitment_ledger import SENTINEL, CommitmentLedger, LedgerError
from modules.plcr_store import PLCRStore
from modules.token_ledger import LocalTokenLedger

PHASE_COMMIT = "commit"
PHASE_REVEAL = "reveal"
PHASE_CLOSED = "closed"

VOTE_AGAINST = 0
VOTE_FOR = 1

MAX_UINT256 = (1 << 256) - 1

ERROR_CATEGORIES = {
    "poll_not_found": "not_found",
    "no_such_commitment": "not_found",
    "no_such_delegation": "not_found",
    "poll_not_active": "window_violation",
    "reveal_window_closed": "window_violation",
    "poll_not_ended": "window_violation",
    "poll_not_finalized": "window_violation",
    "hash_mismatch": "integrity_violation",
    "insufficient_balance": "insufficient_funds",
    "insufficient_locked_tokens": "insufficient_funds",
    "delegation_credit_exceeded": "authorization_violation",
    "invalid_insertion_hint": "invariant_violation",
    "duplicate_commitment": "invariant_violation",
    "invalid_poll_id": "invariant_violation",
    "already_revealed": "invariant_violation",
    "transitive_delegation_not_allowed": "authorization_violation",
    "unauthorized": "authorization_violation",
    "token_ledger_unavailable": "external_failure",
    "capacity_reached": "invalid_argument",
    "invalid_argument": "invalid_argument",
    "invalid_secret_hash": "invalid_argument",
    "invalid_vote_option": "invalid_argument",
}


class _TokenLedgerFailure(Exception):
    """Token ledger call failed inside a rights transaction."""


def _error(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "error": message,
        "code": code,
        "category": ERROR_CATEGORIES.get(code, "invalid_argument"),
    }
    result.update(extra)
    return result


def _is_hex(value: str, expected_len: int) -> bool:
    if not isinstance(value, str) or len(value) != expected_len:
        return False
    try:
        int(value, 16)
        return True
    except ValueError:
        return False


def _is_valid_cln_pubkey(value: str) -> bool:
    if not isinstance(value, str):
        return False
    if len(value) != 66 or value[:2] not in ("02", "03"):
        return False
    return _is_hex(value, 66)


def _is_uint(value: Any, upper: int = MAX_UINT256) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= upper


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def compute_secret_hash(vote_option: int, salt: int) -> str:
    """SHA-256 over the 32-byte big-endian vote option followed by the 32-byte big-endian salt."""
    if not _is_uint(vote_option) or not _is_uint(salt):
        raise ValueError("vote_option and salt must be unsigned 256-bit integers")
    material = vote_option.to_bytes(32, "big") + salt.to_bytes(32, "big")
    return hashlib.sha256(material).hexdigest()


def phase_of(poll: Dict[str, Any], now: int) -> str:
    """Derive a poll's phase from the clock; no phase is ever stored."""
    if now < int(poll["commit_end"]):
        return PHASE_COMMIT
    if now < int(poll["reveal_end"]):
        return PHASE_REVEAL
    return PHASE_CLOSED


class Parameterizer:
    """Read-only poll configuration.

    Challenge polls read ``commitStageLen``/``revealStageLen``/``voteQuorum``;
    parameter proposal polls read the ``p``-prefixed variants.
    """

    POLL_TYPES = {"challenge", "proposal"}

    DEFAULTS = {
        "commitStageLen": 600,
        "revealStageLen": 600,
        "voteQuorum": 50,
        "dispensationPct": 50,
        "pCommitStageLen": 600,
        "pRevealStageLen": 600,
        "pVoteQuorum": 50,
        "pDispensationPct": 50,
    }

    def __init__(self, values: Optional[Dict[str, int]] = None):
        merged = dict(self.DEFAULTS)
        for key, value in (values or {}).items():
            if key not in self.DEFAULTS:
                raise KeyError(f"unknown parameter: {key}")
            if not _is_uint(value):
                raise ValueError(f"parameter {key} must be a non-negative integer")
            merged[key] = value
        for key in ("voteQuorum", "pVoteQuorum", "dispensationPct", "pDispensationPct"):
            if merged[key] > 100:
                raise ValueError(f"parameter {key} must be a percentage (0-100)")
        self._values = merged

    def get(self, poll_type: str, key: str) -> int:
        if poll_type not in self.POLL_TYPES:
            raise KeyError(f"unknown poll type: {poll_type}")
        if poll_type == "proposal":
            key = "p" + key[:1].upper() + key[1:]
        return self._values[key]

    def as_dict(self) -> Dict[str, int]:
        return dict(self._values)


class PLCRService:
    """Commit-reveal voting API used by cl-hive-plcr RPC methods and the registry."""

    ENGINE_ACCOUNT = "plcr-engine"

    MAX_VOTER_ID_LEN = 128
    MAX_STAGE_LEN = 365 * 86400
    MAX_TOTAL_POLLS = 100_000
    MAX_LIST_LIMIT = 500
    MAX_MINT_AMOUNT = 10**12

    def __init__(
        self,
        store: PLCRStore,
        token_ledger: Any = None,
        parameterizer: Optional[Parameterizer] = None,
        rpc: Any = None,
        logger: Optional[Callable[[str, str], None]] = None,
        engine_account: str = ENGINE_ACCOUNT,
        time_fn: Callable[[], float] = time.time,
        allow_mint: bool = False,
    ):
        self.store = store
        self.rpc = rpc
        self._logger = logger
        self._time_fn = time_fn
        self.engine_account = engine_account
        self.allow_mint = bool(allow_mint)
        self.parameterizer = parameterizer or Parameterizer()
        self.store.initialize()
        self.ledger = CommitmentLedger(store, logger=logger)
        self.token_ledger = token_ledger or LocalTokenLedger(store, logger=logger)

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _is_valid_voter(self, voter: Any) -> bool:
        if not isinstance(voter, str) or voter != voter.strip():
            return False
        if not voter or len(voter) > self.MAX_VOTER_ID_LEN:
            return False
        if voter == self.engine_account:
            return False
        return all(ch.isalnum() or ch in "-_.:" for ch in voter)

    # Identity

    def local_voter_id(self) -> str:
        if not self.rpc:
            return "local-node"
        try:
            info = self.rpc.getinfo()
            if isinstance(info, dict):
                pubkey = str(info.get("id", ""))
                if _is_valid_cln_pubkey(pubkey):
                    return pubkey
        except Exception as exc:
            self._log(f"plcr: getinfo failed: {exc}", "warn")
        return "local-node"

    @staticmethod
    def canonical_request(action: str, voter: str, params: Dict[str, Any]) -> str:
        payload = dict(params)
        payload["action"] = action
        payload["voter"] = voter
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    def authenticate(
        self,
        voter: str,
        action: str,
        params: Dict[str, Any],
        signature: str = "",
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Resolve the acting voter for an RPC call.

        The local node acts without a signature. Any other voter must be a
        node pubkey and supply a ``signmessage`` zbase signature over
        ``canonical_request(action, voter, params)``.
        """
        local_id = self.local_voter_id()
        voter = voter.strip() if isinstance(voter, str) else ""
        if not voter or voter == local_id:
            return local_id, None

        if not _is_valid_cln_pubkey(voter):
            return "", _error("unauthorized", "remote voters must be identified by node pubkey")
        if not isinstance(signature, str) or not signature.strip():
            return "", _error("unauthorized", "signature required for remote voter")
        if not self.rpc:
            return "", _error("unauthorized", "RPC not available for signature verification")

        message = self.canonical_request(action, voter, params)
        try:
            result = self.rpc.checkmessage(message, signature.strip(), voter)
        except Exception as exc:
            self._log(f"plcr: checkmessage failed: {exc}", "warn")
            return "", _error("unauthorized", "signature verification failed")
        if not isinstance(result, dict) or not result.get("verified"):
            return "", _error("unauthorized", "signature verification failed")
        if str(result.get("pubkey", voter)) != voter:
            return "", _error("unauthorized", "signature does not match voter")
        return voter, None

    # Poll lifecycle

    def _load_poll(self, poll_id: Any) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        if not _is_positive_int(poll_id):
            return None, _error("invalid_poll_id", "poll_id must be a positive integer")
        poll = self.store.get_poll(poll_id)
        if not poll:
            return None, _error("poll_not_found", "poll not found", poll_id=poll_id)
        return poll, None

    def _poll_result(self, poll: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "poll_id": int(poll["poll_id"]),
            "votes_for": int(poll["votes_for"]),
            "votes_against": int(poll["votes_against"]),
            "vote_quorum": int(poll["vote_quorum"]),
            "eligible_tokens": int(poll["eligible_tokens"]),
            "finalized": bool(poll["finalized"]),
            "passed": None if poll["passed"] is None else bool(poll["passed"]),
        }

    def start_poll(
        self,
        vote_quorum: Optional[int] = None,
        commit_duration: Optional[int] = None,
        reveal_duration: Optional[int] = None,
        poll_type: str = "challenge",
    ) -> Dict[str, Any]:
        try:
            if vote_quorum is None:
                vote_quorum = self.parameterizer.get(poll_type, "voteQuorum")
            if commit_duration is None:
                commit_duration = self.parameterizer.get(poll_type, "commitStageLen")
            if reveal_duration is None:
                reveal_duration = self.parameterizer.get(poll_type, "revealStageLen")
        except KeyError:
            return _error("invalid_argument", "invalid poll_type", valid_poll_types=sorted(Parameterizer.POLL_TYPES))

        if not _is_uint(vote_quorum, 100):
            return _error("invalid_argument", "vote_quorum must be an integer percentage (0-100)")
        if not _is_positive_int(commit_duration) or commit_duration > self.MAX_STAGE_LEN:
            return _error("invalid_argument", "commit_duration must be a positive number of seconds")
        if not _is_positive_int(reveal_duration) or reveal_duration > self.MAX_STAGE_LEN:
            return _error("invalid_argument", "reveal_duration must be a positive number of seconds")

        if self.store.count_total_polls() >= self.MAX_TOTAL_POLLS:
            return _error("capacity_reached", "poll capacity reached")

        now_ts = self._now()
        commit_end = now_ts + commit_duration
        reveal_end = commit_end + reveal_duration
        eligible_tokens = self.store.total_voting_rights()
        poll_id = self.store.create_poll(
            commit_end=commit_end,
            reveal_end=reveal_end,
            vote_quorum=vote_quorum,
            eligible_tokens=eligible_tokens,
            now_ts=now_ts,
        )
        self._log(
            f"plcr: poll {poll_id} started (quorum={vote_quorum}%, commit_end={commit_end}, "
            f"reveal_end={reveal_end}, eligible={eligible_tokens})"
        )
        return {
            "ok": True,
            "poll_id": poll_id,
            "poll_type": poll_type,
            "commit_end": commit_end,
            "reveal_end": reveal_end,
            "vote_quorum": vote_quorum,
            "eligible_tokens": eligible_tokens,
        }

    def poll_status(self, poll_id: int) -> Dict[str, Any]:
        poll, err = self._load_poll(poll_id)
        if err:
            return err

        commitments = self.store.list_commitments_for_poll(poll_id)
        revealed = [c for c in commitments if c.get("revealed")]
        status = self._poll_result(poll)
        status.update(
            {
                "phase": phase_of(poll, self._now()),
                "commit_end": int(poll["commit_end"]),
                "reveal_end": int(poll["reveal_end"]),
                "created_at": int(poll["created_at"]),
                "commit_count": len(commitments),
                "reveal_count": len(revealed),
                "committed_tokens": sum(int(c["num_tokens"]) for c in commitments),
            }
        )
        return {"ok": True, "poll": status}

    def get_totals(self, poll_id: int) -> Dict[str, Any]:
        poll, err = self._load_poll(poll_id)
        if err:
            return err
        return {
            "ok": True,
            "poll_id": poll_id,
            "votes_for": int(poll["votes_for"]),
            "votes_against": int(poll["votes_against"]),
        }

    def is_passed(self, poll_id: int) -> Dict[str, Any]:
        poll, err = self._load_poll(poll_id)
        if err:
            return err
        if not poll["finalized"]:
            return _error(
                "poll_not_finalized",
                "poll has not been finalized",
                phase=phase_of(poll, self._now()),
            )
        return {"ok": True, "poll_id": poll_id, "passed": bool(poll["passed"])}

    def finalize(self, poll_id: int) -> Dict[str, Any]:
        poll, err = self._load_poll(poll_id)
        if err:
            return err

        if poll["finalized"]:
            result = self._poll_result(poll)
            result.update({"ok": True, "already_finalized": True, "swept": 0})
            return result

        if phase_of(poll, self._now()) != PHASE_CLOSED:
            return _error(
                "poll_not_ended",
                "reveal period has not ended",
                reveal_end=int(poll["reveal_end"]),
            )

        votes_for = int(poll["votes_for"])
        votes_against = int(poll["votes_against"])
        participation = votes_for + votes_against
        quorum_met = participation * 100 >= int(poll["vote_quorum"]) * int(poll["eligible_tokens"])
        passed = votes_for > votes_against and quorum_met

        stale_voters = self.store.list_voters_with_node(poll_id)
        now_ts = self._now()
        with self.store.transaction():
            for voter in stale_voters:
                self.ledger.remove(voter, poll_id)
            self.store.mark_poll_finalized(poll_id, passed, now_ts)

        if stale_voters:
            self._log(f"plcr: poll {poll_id} swept {len(stale_voters)} unrevealed commitment(s)")
        self._log(
            f"plcr: poll {poll_id} finalized (for={votes_for}, against={votes_against}, "
            f"quorum_met={quorum_met}, passed={passed})"
        )

        result = self._poll_result(self.store.get_poll(poll_id) or poll)
        result.update({"ok": True, "already_finalized": False, "swept": len(stale_voters)})
        return result

    # Voting rights and delegation

    def _free_tokens(self, voter: str) -> int:
        """Voting rights neither committed in the ledger nor reserved as delegation credit."""
        rights = self.store.get_voting_rights(voter)
        return self.ledger.available_tokens(voter, rights) - self.store.sum_credit_granted(voter)

    def mint_tokens(self, account: str, amount: int) -> Dict[str, Any]:
        """Seed local token balances; off unless the operator enables it."""
        if not self.allow_mint:
            return _error("unauthorized", "token minting is disabled")
        if not isinstance(self.token_ledger, LocalTokenLedger):
            return _error("invalid_argument", "minting is only available with local token balances")
        if not self._is_valid_voter(account):
            return _error("invalid_argument", "invalid account")
        if not _is_positive_int(amount) or amount > self.MAX_MINT_AMOUNT:
            return _error("invalid_argument", f"amount must be between 1 and {self.MAX_MINT_AMOUNT}")
        balance = self.token_ledger.mint(account, amount)
        self._log(f"plcr: minted {amount} tokens to {account} (balance={balance})")
        return {"ok": True, "account": account, "amount": amount, "balance": balance}

    def request_voting_rights(self, voter: str, amount: int) -> Dict[str, Any]:
        if not self._is_valid_voter(voter):
            return _error("invalid_argument", "invalid voter")
        if not _is_positive_int(amount):
            return _error("invalid_argument", "amount must be a positive integer")

        try:
            with self.store.transaction():
                try:
                    balance = int(self.token_ledger.balance_of(voter))
                    transferred = balance >= amount and self.token_ledger.transfer_from(
                        voter, self.engine_account, amount
                    )
                except Exception as exc:
                    raise _TokenLedgerFailure(str(exc)) from exc
                if balance < amount:
                    return _error("insufficient_balance", "token balance too low", balance=balance, requested=amount)
                if not transferred:
                    return _error("insufficient_balance", "token transfer rejected", requested=amount)
                self.store.adjust_voting_rights(voter, amount, self._now())
        except _TokenLedgerFailure as exc:
            self._log(f"plcr: token ledger call failed: {exc}", "warn")
            return _error("token_ledger_unavailable", "token ledger unavailable")

        rights = self.store.get_voting_rights(voter)
        self._log(f"plcr: {voter} locked {amount} tokens for voting (rights={rights})")
        return {"ok": True, "voter": voter, "amount": amount, "voting_rights": rights}

    def withdraw_voting_rights(self, voter: str, amount: int) -> Dict[str, Any]:
        if not self._is_valid_voter(voter):
            return _error("invalid_argument", "invalid voter")
        if not _is_positive_int(amount):
            return _error("invalid_argument", "amount must be a positive integer")

        try:
            with self.store.transaction():
                free = self._free_tokens(voter)
                if amount > free:
                    return _error("insufficient_locked_tokens", "tokens are committed or delegated", available=free)
                # rights are debited first so a failed refund rolls the debit back
                self.store.adjust_voting_rights(voter, -amount, self._now())
                try:
                    transferred = self.token_ledger.transfer_from(self.engine_account, voter, amount)
                except Exception as exc:
                    raise _TokenLedgerFailure(str(exc)) from exc
                if not transferred:
                    raise _TokenLedgerFailure("refund rejected")
        except _TokenLedgerFailure as exc:
            self._log(f"plcr: token ledger call failed: {exc}", "warn")
            return _error("token_ledger_unavailable", "token ledger unavailable")

        rights = self.store.get_voting_rights(voter)
        self._log(f"plcr: {voter} withdrew {amount} voting tokens (rights={rights})")
        return {"ok": True, "voter": voter, "amount": amount, "voting_rights": rights}

    def delegate_voting_rights(self, delegator: str, delegate: str, amount: int) -> Dict[str, Any]:
        if not self._is_valid_voter(delegator) or not self._is_valid_voter(delegate):
            return _error("invalid_argument", "invalid delegator or delegate")
        if delegator == delegate:
            return _error("invalid_argument", "cannot delegate to self")
        if not _is_positive_int(amount):
            return _error("invalid_argument", "amount must be a positive integer")

        if self.store.sum_credit_received(delegator) > 0:
            return _error(
                "transitive_delegation_not_allowed",
                "voters holding delegated credit cannot delegate further",
            )
        if self.store.sum_credit_granted(delegate) > 0:
            return _error(
                "transitive_delegation_not_allowed",
                "delegate has granted credit of its own",
            )

        free = self._free_tokens(delegator)
        if amount > free:
            return _error("insufficient_locked_tokens", "not enough undelegated voting rights", available=free)

        self.store.adjust_credit(delegator, delegate, amount, self._now())
        credit = self.store.get_credit(delegator, delegate)
        self._log(f"plcr: {delegator} delegated {amount} voting tokens to {delegate} (credit={credit})")
        return {
            "ok": True,
            "delegator": delegator,
            "delegate": delegate,
            "amount": amount,
            "credited_tokens": credit,
        }

    def revoke_delegation(self, delegator: str, delegate: str) -> Dict[str, Any]:
        if not self._is_valid_voter(delegator) or not self._is_valid_voter(delegate):
            return _error("invalid_argument", "invalid delegator or delegate")

        credit = self.store.get_credit(delegator, delegate)
        if credit <= 0:
            return _error("no_such_delegation", "no outstanding credit for this delegate")

        self.store.adjust_credit(delegator, delegate, -credit, self._now())
        self._log(f"plcr: {delegator} revoked {credit} unspent credit from {delegate}")
        return {"ok": True, "delegator": delegator, "delegate": delegate, "revoked": credit}

    # Commit phase

    def _commit(
        self,
        owner: str,
        committed_by: str,
        poll_id: int,
        secret_hash: str,
        num_tokens: int,
        prev_poll_id: int,
    ) -> Dict[str, Any]:
        on_behalf = committed_by != owner

        if not _is_hex(secret_hash, 64):
            return _error("invalid_secret_hash", "secret_hash must be 64 hex characters")
        secret_hash = secret_hash.lower()
        if not _is_positive_int(num_tokens):
            return _error("invalid_argument", "num_tokens must be a positive integer")
        if not _is_uint(prev_poll_id):
            return _error("invalid_argument", "prev_poll_id must be a non-negative integer")

        poll, err = self._load_poll(poll_id)
        if err:
            return err
        if poll["finalized"] or phase_of(poll, self._now()) != PHASE_COMMIT:
            return _error(
                "poll_not_active",
                "commit period is not active",
                phase=phase_of(poll, self._now()),
            )

        if self.store.get_commitment(owner, poll_id) is not None:
            return _error("duplicate_commitment", "voter already committed to this poll")

        credit = 0
        if on_behalf:
            # delegate_voting_rights never grants to a granter; only rows written around it reach this
            if self.store.sum_credit_granted(committed_by) > 0:
                return _error(
                    "transitive_delegation_not_allowed",
                    "delegates that granted credit cannot commit on behalf of others",
                )
            credit = self.store.get_credit(owner, committed_by)
            if num_tokens > credit:
                return _error("delegation_credit_exceeded", "delegation credit exceeded", credit=credit)
            # credit stays reserved inside the delegator's free balance until spent
            available = self._free_tokens(owner) + credit
        else:
            available = self._free_tokens(owner)
        if num_tokens > available:
            return _error("insufficient_locked_tokens", "not enough unlocked voting rights", available=available)

        now_ts = self._now()
        try:
            with self.store.transaction():
                self.ledger.insert(owner, poll_id, num_tokens, prev_poll_id)
                self.store.add_commitment(
                    voter=owner,
                    poll_id=poll_id,
                    secret_hash=secret_hash,
                    num_tokens=num_tokens,
                    committed_by=committed_by,
                    now_ts=now_ts,
                )
                if on_behalf:
                    self.store.adjust_credit(owner, committed_by, -num_tokens, now_ts)
        except LedgerError as exc:
            return _error(exc.code, exc.message, prev_poll_id=prev_poll_id)

        result = {
            "ok": True,
            "voter": owner,
            "poll_id": poll_id,
            "num_tokens": num_tokens,
            "prev_poll_id": prev_poll_id,
            "committed_by": committed_by,
        }
        if on_behalf:
            result["remaining_credit"] = credit - num_tokens
        return result

    def commit_vote(
        self,
        voter: str,
        poll_id: int,
        secret_hash: str,
        num_tokens: int,
        prev_poll_id: int,
    ) -> Dict[str, Any]:
        if not self._is_valid_voter(voter):
            return _error("invalid_argument", "invalid voter")
        return self._commit(voter, voter, poll_id, secret_hash, num_tokens, prev_poll_id)

    def commit_vote_on_behalf(
        self,
        delegate: str,
        delegator: str,
        poll_id: int,
        secret_hash: str,
        num_tokens: int,
        prev_poll_id: int,
    ) -> Dict[str, Any]:
        if not self._is_valid_voter(delegate) or not self._is_valid_voter(delegator):
            return _error("invalid_argument", "invalid delegator or delegate")
        if delegate == delegator:
            return self.commit_vote(delegator, poll_id, secret_hash, num_tokens, prev_poll_id)
        return self._commit(delegator, delegate, poll_id, secret_hash, num_tokens, prev_poll_id)

    # Reveal phase

    def reveal_vote(self, voter: str, poll_id: int, vote_option: int, salt: int) -> Dict[str, Any]:
        if not self._is_valid_voter(voter):
            return _error("invalid_argument", "invalid voter")
        if not _is_uint(vote_option) or vote_option not in (VOTE_AGAINST, VOTE_FOR):
            return _error("invalid_vote_option", "vote_option must be 0 (against) or 1 (for)")
        if not _is_uint(salt):
            return _error("invalid_argument", "salt must be an unsigned 256-bit integer")

        poll, err = self._load_poll(poll_id)
        if err:
            return err
        if poll["finalized"] or phase_of(poll, self._now()) != PHASE_REVEAL:
            return _error(
                "reveal_window_closed",
                "reveal period is not active",
                phase=phase_of(poll, self._now()),
            )

        commitment = self.store.get_commitment(voter, poll_id)
        if not commitment:
            return _error("no_such_commitment", "no commitment for this voter and poll")
        if commitment["revealed"]:
            return _error("already_revealed", "vote already revealed")

        expected = str(commitment["secret_hash"])
        if not hmac.compare_digest(compute_secret_hash(vote_option, salt), expected):
            return _error("hash_mismatch", "vote option and salt do not match the committed hash")

        num_tokens = int(commitment["num_tokens"])
        now_ts = self._now()
        try:
            with self.store.transaction():
                if vote_option == VOTE_FOR:
                    self.store.add_to_tally(poll_id, num_tokens, 0, now_ts)
                else:
                    self.store.add_to_tally(poll_id, 0, num_tokens, now_ts)
                self.store.mark_commitment_revealed(voter, poll_id, vote_option, now_ts)
                self.ledger.remove(voter, poll_id)
        except LedgerError as exc:
            return _error(exc.code, exc.message)

        totals = self.store.get_poll(poll_id) or poll
        return {
            "ok": True,
            "voter": voter,
            "poll_id": poll_id,
            "vote_option": vote_option,
            "num_tokens": num_tokens,
            "votes_for": int(totals["votes_for"]),
            "votes_against": int(totals["votes_against"]),
        }

    def rescue_tokens(self, voter: str, poll_id: int) -> Dict[str, Any]:
        """Free the ledger node of a commitment that was never revealed."""
        if not self._is_valid_voter(voter):
            return _error("invalid_argument", "invalid voter")

        poll, err = self._load_poll(poll_id)
        if err:
            return err
        if phase_of(poll, self._now()) != PHASE_CLOSED:
            return _error("poll_not_ended", "reveal period has not ended", reveal_end=int(poll["reveal_end"]))

        commitment = self.store.get_commitment(voter, poll_id)
        if not commitment:
            return _error("no_such_commitment", "no commitment for this voter and poll")
        if commitment["revealed"]:
            return _error("already_revealed", "vote already revealed")
        if not self.ledger.contains(voter, poll_id):
            return _error("no_such_commitment", "tokens for this commitment are already free")

        try:
            freed = self.ledger.remove(voter, poll_id)
        except LedgerError as exc:
            return _error(exc.code, exc.message)
        self._log(f"plcr: {voter} rescued {freed} tokens from unrevealed poll {poll_id}")
        return {"ok": True, "voter": voter, "poll_id": poll_id, "freed_tokens": freed}

    # Read-only views

    def get_insertion_point(self, voter: str, num_tokens: int, poll_id: int = SENTINEL) -> Dict[str, Any]:
        if not self._is_valid_voter(voter):
            return _error("invalid_argument", "invalid voter")
        if not _is_uint(num_tokens):
            return _error("invalid_argument", "num_tokens must be a non-negative integer")
        if not _is_uint(poll_id):
            return _error("invalid_argument", "poll_id must be a non-negative integer")
        return {
            "ok": True,
            "voter": voter,
            "num_tokens": num_tokens,
            "prev_poll_id": self.ledger.get_insertion_point(voter, num_tokens, poll_id),
        }

    def voter_status(self, voter: str, limit: int = 50) -> Dict[str, Any]:
        if not self._is_valid_voter(voter):
            return _error("invalid_argument", "invalid voter")
        if not isinstance(limit, int) or limit <= 0:
            return _error("invalid_argument", "limit must be positive")
        limit = min(limit, self.MAX_LIST_LIMIT)

        rights = self.store.get_voting_rights(voter)
        nodes = self.ledger.nodes(voter)
        delegations: List[Dict[str, Any]] = self.store.list_delegations(voter)
        return {
            "ok": True,
            "voter": voter,
            "voting_rights": rights,
            "committed_tokens": sum(node["num_tokens"] for node in nodes),
            "credit_granted": self.store.sum_credit_granted(voter),
            "credit_received": self.store.sum_credit_received(voter),
            "available_tokens": self._free_tokens(voter),
            "ledger": nodes,
            "delegations": delegations,
            "commitments": self.store.list_commitments_for_voter(voter, limit),
        }

    def status(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "voter_id": self.local_voter_id(),
            "total_polls": self.store.count_total_polls(),
            "finalized_polls": self.store.count_finalized_polls(),
            "total_commitments": self.store.count_total_commitments(),
            "voters_with_rights": self.store.count_voters(),
            "total_voting_rights": self.store.total_voting_rights(),
            "active_delegations": self.store.count_active_delegations(),
            "token_ledger": type(self.token_ledger).__name__,
            "parameters": self.parameterizer.as_dict(),
        }
