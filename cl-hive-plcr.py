#!/usr/bin/env python3
"""cl-hive-plcr: commit-reveal token-weighted voting plugin for hive registry challenges."""

from __future__ import annotations

import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from modules.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from modules.plcr_service import Parameterizer, PLCRService, compute_secret_hash
from modules.plcr_store import PLCRStore
from modules.token_ledger import LocalTokenLedger, TokenGatewayClient, is_valid_gateway_url

plugin = Plugin()
service: PLCRService | None = None


plugin.add_option(
    name="hive-plcr-db-path",
    default="~/.lightning/cl_hive_plcr.db",
    description="SQLite path for cl-hive-plcr state",
)

plugin.add_option(
    name="hive-plcr-commit-stage-len",
    default="600",
    description="Default commit period length in seconds",
)

plugin.add_option(
    name="hive-plcr-reveal-stage-len",
    default="600",
    description="Default reveal period length in seconds",
)

plugin.add_option(
    name="hive-plcr-vote-quorum",
    default="50",
    description="Default share of eligible voting tokens (percent) that must be revealed",
)

plugin.add_option(
    name="hive-plcr-dispensation-pct",
    default="50",
    description="Share of a losing stake paid to winning voters (percent, read by the registry)",
)

plugin.add_option(
    name="hive-plcr-token-gateway",
    default="",
    description="Remote token ledger base URL (empty keeps balances in the local database)",
)

plugin.add_option(
    name="hive-plcr-network-enabled",
    default="false",
    description="Enable token gateway HTTP calls (default false)",
)

plugin.add_option(
    name="hive-plcr-allow-mint",
    default="false",
    description="Allow hive-plcr-token-mint to seed local token balances (default false)",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return _parse_int(value, -1)


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _require_service() -> PLCRService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    db_path_opt = str(options.get("hive-plcr-db-path") or "~/.lightning/cl_hive_plcr.db")
    db_path = os.path.expanduser(db_path_opt)
    if not os.path.isabs(db_path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        db_path = os.path.join(lightning_dir, db_path)

    commit_len = max(1, _parse_int(options.get("hive-plcr-commit-stage-len"), 600))
    reveal_len = max(1, _parse_int(options.get("hive-plcr-reveal-stage-len"), 600))
    quorum = min(100, max(0, _parse_int(options.get("hive-plcr-vote-quorum"), 50)))
    dispensation = min(100, max(0, _parse_int(options.get("hive-plcr-dispensation-pct"), 50)))
    parameterizer = Parameterizer(
        {
            "commitStageLen": commit_len,
            "revealStageLen": reveal_len,
            "voteQuorum": quorum,
            "dispensationPct": dispensation,
            "pCommitStageLen": commit_len,
            "pRevealStageLen": reveal_len,
            "pVoteQuorum": quorum,
            "pDispensationPct": dispensation,
        }
    )

    store = PLCRStore(db_path=db_path, logger=_logger)

    gateway_url = str(options.get("hive-plcr-token-gateway") or "").strip()
    network_enabled = _parse_bool(options.get("hive-plcr-network-enabled"))
    token_ledger: Any = LocalTokenLedger(store, logger=_logger)
    if network_enabled:
        if is_valid_gateway_url(gateway_url):
            token_ledger = TokenGatewayClient(gateway_url)
        else:
            plugin.log("plcr: invalid token gateway URL; using local token balances", level="warn")
            gateway_url = ""

    global service
    service = PLCRService(
        store=store,
        token_ledger=token_ledger,
        parameterizer=parameterizer,
        rpc=plugin.rpc,
        logger=_logger,
        allow_mint=_parse_bool(options.get("hive-plcr-allow-mint")),
    )

    plugin.log(
        "cl-hive-plcr initialized "
        f"(db_path={db_path}, commit={commit_len}s, reveal={reveal_len}s, quorum={quorum}%, "
        f"token_gateway={gateway_url or 'local'}, allow_mint={service.allow_mint})"
    )


@plugin.method("hive-plcr-status")
def hive_plcr_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


@plugin.method("hive-plcr-poll-start")
def hive_plcr_poll_start(
    plugin: Plugin,
    vote_quorum: Any = None,
    commit_duration: Any = None,
    reveal_duration: Any = None,
    poll_type: str = "challenge",
) -> Dict[str, Any]:
    del plugin
    return _require_service().start_poll(
        vote_quorum=_parse_optional_int(vote_quorum),
        commit_duration=_parse_optional_int(commit_duration),
        reveal_duration=_parse_optional_int(reveal_duration),
        poll_type=poll_type,
    )


@plugin.method("hive-plcr-poll-status")
def hive_plcr_poll_status(plugin: Plugin, poll_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().poll_status(poll_id=_parse_int(poll_id, 0))


@plugin.method("hive-plcr-poll-finalize")
def hive_plcr_poll_finalize(plugin: Plugin, poll_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().finalize(poll_id=_parse_int(poll_id, 0))


@plugin.method("hive-plcr-poll-result")
def hive_plcr_poll_result(plugin: Plugin, poll_id: int) -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    totals = svc.get_totals(poll_id=_parse_int(poll_id, 0))
    if "error" in totals:
        return totals
    passed = svc.is_passed(poll_id=_parse_int(poll_id, 0))
    totals["finalized"] = "error" not in passed
    totals["passed"] = passed.get("passed")
    return totals


@plugin.method("hive-plcr-request-rights")
def hive_plcr_request_rights(plugin: Plugin, amount: int, voter: str = "", signature: str = "") -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    amount = _parse_int(amount, 0)
    acting, err = svc.authenticate(voter, "request-rights", {"amount": amount}, signature)
    if err:
        return err
    return svc.request_voting_rights(voter=acting, amount=amount)


@plugin.method("hive-plcr-withdraw-rights")
def hive_plcr_withdraw_rights(plugin: Plugin, amount: int, voter: str = "", signature: str = "") -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    amount = _parse_int(amount, 0)
    acting, err = svc.authenticate(voter, "withdraw-rights", {"amount": amount}, signature)
    if err:
        return err
    return svc.withdraw_voting_rights(voter=acting, amount=amount)


@plugin.method("hive-plcr-delegate")
def hive_plcr_delegate(
    plugin: Plugin,
    delegate: str,
    amount: int,
    voter: str = "",
    signature: str = "",
) -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    amount = _parse_int(amount, 0)
    acting, err = svc.authenticate(voter, "delegate", {"delegate": delegate, "amount": amount}, signature)
    if err:
        return err
    return svc.delegate_voting_rights(delegator=acting, delegate=delegate, amount=amount)


@plugin.method("hive-plcr-revoke-delegation")
def hive_plcr_revoke_delegation(plugin: Plugin, delegate: str, voter: str = "", signature: str = "") -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    acting, err = svc.authenticate(voter, "revoke-delegation", {"delegate": delegate}, signature)
    if err:
        return err
    return svc.revoke_delegation(delegator=acting, delegate=delegate)


@plugin.method("hive-plcr-commit")
def hive_plcr_commit(
    plugin: Plugin,
    poll_id: int,
    secret_hash: str,
    num_tokens: int,
    prev_poll_id: int = 0,
    voter: str = "",
    signature: str = "",
) -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    params = {
        "poll_id": _parse_int(poll_id, 0),
        "secret_hash": secret_hash,
        "num_tokens": _parse_int(num_tokens, 0),
        "prev_poll_id": _parse_int(prev_poll_id, -1),
    }
    acting, err = svc.authenticate(voter, "commit", params, signature)
    if err:
        return err
    return svc.commit_vote(voter=acting, **params)


@plugin.method("hive-plcr-commit-on-behalf")
def hive_plcr_commit_on_behalf(
    plugin: Plugin,
    delegator: str,
    poll_id: int,
    secret_hash: str,
    num_tokens: int,
    prev_poll_id: int = 0,
    voter: str = "",
    signature: str = "",
) -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    params = {
        "delegator": delegator,
        "poll_id": _parse_int(poll_id, 0),
        "secret_hash": secret_hash,
        "num_tokens": _parse_int(num_tokens, 0),
        "prev_poll_id": _parse_int(prev_poll_id, -1),
    }
    acting, err = svc.authenticate(voter, "commit-on-behalf", params, signature)
    if err:
        return err
    return svc.commit_vote_on_behalf(delegate=acting, **params)


@plugin.method("hive-plcr-reveal")
def hive_plcr_reveal(plugin: Plugin, poll_id: int, vote_option: int, salt: int, voter: str = "") -> Dict[str, Any]:
    """Reveal needs no signature: only the committed hash's preimage is accepted."""
    del plugin
    svc = _require_service()
    owner = voter.strip() if isinstance(voter, str) and voter.strip() else svc.local_voter_id()
    return svc.reveal_vote(
        voter=owner,
        poll_id=_parse_int(poll_id, 0),
        vote_option=_parse_int(vote_option, -1),
        salt=_parse_int(salt, -1),
    )


@plugin.method("hive-plcr-rescue")
def hive_plcr_rescue(plugin: Plugin, poll_id: int, voter: str = "", signature: str = "") -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    poll_id = _parse_int(poll_id, 0)
    acting, err = svc.authenticate(voter, "rescue", {"poll_id": poll_id}, signature)
    if err:
        return err
    return svc.rescue_tokens(voter=acting, poll_id=poll_id)


@plugin.method("hive-plcr-insert-point")
def hive_plcr_insert_point(plugin: Plugin, num_tokens: int, voter: str = "", poll_id: int = 0) -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    owner = voter.strip() if isinstance(voter, str) and voter.strip() else svc.local_voter_id()
    return svc.get_insertion_point(
        voter=owner,
        num_tokens=_parse_int(num_tokens, -1),
        poll_id=_parse_int(poll_id, 0),
    )


@plugin.method("hive-plcr-ledger")
def hive_plcr_ledger(plugin: Plugin, voter: str = "", limit: int = 50) -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    owner = voter.strip() if isinstance(voter, str) and voter.strip() else svc.local_voter_id()
    return svc.voter_status(voter=owner, limit=_parse_int(limit, 50))


@plugin.method("hive-plcr-secret-hash")
def hive_plcr_secret_hash(plugin: Plugin, vote_option: int, salt: int) -> Dict[str, Any]:
    del plugin
    try:
        secret_hash = compute_secret_hash(_parse_int(vote_option, -1), _parse_int(salt, -1))
    except ValueError as exc:
        return {"error": str(exc), "code": "invalid_argument", "category": "invalid_argument"}
    return {"ok": True, "secret_hash": secret_hash}


@plugin.method("hive-plcr-token-mint")
def hive_plcr_token_mint(plugin: Plugin, account: str, amount: int) -> Dict[str, Any]:
    del plugin
    return _require_service().mint_tokens(account, _parse_int(amount, 0))


if __name__ == "__main__":
    plugin.run()
