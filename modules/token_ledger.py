"""Token ledger backends used when locking and releasing voting rights."""

from __future__ import annotations

import json
import urllib.request
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote as _url_quote
from urllib.parse import urlparse

from modules.plcr_store import PLCRStore


def is_valid_gateway_url(url: str) -> bool:
    if not isinstance(url, str) or not url.strip():
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("https", "http"):
        return False
    if not parsed.netloc:
        return False
    if not parsed.hostname:
        return False
    return True


class LocalTokenLedger:
    """Fungible balances kept in the plugin database."""

    def __init__(self, store: PLCRStore, logger: Optional[Callable[[str, str], None]] = None):
        self.store = store
        self._logger = logger

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def balance_of(self, account: str) -> int:
        return self.store.get_token_balance(account)

    def mint(self, account: str, amount: int) -> int:
        if not isinstance(account, str) or not account.strip():
            raise ValueError("account is required")
        if not isinstance(amount, int) or amount <= 0:
            raise ValueError("mint amount must be a positive integer")
        self.store.adjust_token_balance(account, amount)
        self._log(f"plcr: minted {amount} tokens to {account}", "debug")
        return self.store.get_token_balance(account)

    def transfer_from(self, source: str, destination: str, amount: int) -> bool:
        if not isinstance(amount, int) or amount <= 0:
            return False
        with self.store.transaction():
            if self.store.get_token_balance(source) < amount:
                return False
            self.store.adjust_token_balance(source, -amount)
            self.store.adjust_token_balance(destination, amount)
        return True


class TokenGatewayClient:
    """Small HTTP client for a remote token ledger service."""

    def __init__(self, base_url: str, timeout_seconds: int = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(
            f"{self.base_url}{path}",
            data=body,
            headers=headers,
            method=method,
        )
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as response:
            raw = response.read().decode("utf-8")
            return json.loads(raw) if raw else {}

    def balance_of(self, account: str) -> int:
        safe_account = _url_quote(account, safe="")
        data = self._request("GET", f"/v1/tokens/{safe_account}/balance")
        try:
            return max(0, int(data.get("balance", 0)))
        except (TypeError, ValueError):
            return 0

    def transfer_from(self, source: str, destination: str, amount: int) -> bool:
        payload = {
            "from": source,
            "to": destination,
            "amount": int(amount),
        }
        data = self._request("POST", "/v1/tokens/transfer", payload)
        return bool(data.get("ok", False))
