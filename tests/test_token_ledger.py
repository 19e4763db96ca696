"""Unit tests for the local and gateway token ledgers."""

import json
import os
import sys
from unittest.mock import MagicMock, patch
from urllib.error import URLError

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.plcr_service import PLCRService
from modules.plcr_store import PLCRStore
from modules.token_ledger import LocalTokenLedger, TokenGatewayClient, is_valid_gateway_url


def _make_local(tmp_path):
    store = PLCRStore(db_path=str(tmp_path / "tokens.db"))
    store.initialize()
    return LocalTokenLedger(store)


def test_local_transfer_moves_balances(tmp_path):
    tokens = _make_local(tmp_path)
    assert tokens.mint("alice", 10) == 10

    assert tokens.transfer_from("alice", "bob", 4) is True
    assert tokens.balance_of("alice") == 6
    assert tokens.balance_of("bob") == 4


def test_local_transfer_never_overdraws(tmp_path):
    tokens = _make_local(tmp_path)
    tokens.mint("alice", 3)

    assert tokens.transfer_from("alice", "bob", 4) is False
    assert tokens.transfer_from("alice", "bob", 0) is False
    assert tokens.balance_of("alice") == 3
    assert tokens.balance_of("bob") == 0


def test_local_mint_validates_input(tmp_path):
    tokens = _make_local(tmp_path)
    with pytest.raises(ValueError):
        tokens.mint("alice", 0)
    with pytest.raises(ValueError):
        tokens.mint("", 5)


def test_gateway_url_validation():
    assert is_valid_gateway_url("https://tokens.example.com") is True
    assert is_valid_gateway_url("http://localhost:4224") is True
    assert is_valid_gateway_url("ftp://tokens.example.com") is False
    assert is_valid_gateway_url("") is False


# ---------------------------------------------------------------------------
# TokenGatewayClient tests
# ---------------------------------------------------------------------------


def _mock_urlopen_response(data: dict, status: int = 200):
    """Create a mock context manager for urllib.request.urlopen."""
    body = json.dumps(data).encode("utf-8")
    mock_response = MagicMock()
    mock_response.read.return_value = body
    mock_response.status = status
    mock_response.__enter__ = lambda s: s
    mock_response.__exit__ = MagicMock(return_value=False)
    return mock_response


@patch("modules.token_ledger.urllib.request.urlopen")
def test_gateway_balance_of(mock_urlopen):
    mock_urlopen.return_value = _mock_urlopen_response({"balance": 42})

    client = TokenGatewayClient("https://tokens.example.com/")
    assert client.balance_of("node/1") == 42

    req = mock_urlopen.call_args[0][0]
    assert req.full_url == "https://tokens.example.com/v1/tokens/node%2F1/balance"
    assert req.get_method() == "GET"
    assert req.data is None


@patch("modules.token_ledger.urllib.request.urlopen")
def test_gateway_balance_of_bad_payload(mock_urlopen):
    mock_urlopen.return_value = _mock_urlopen_response({"balance": "lots"})

    client = TokenGatewayClient("https://tokens.example.com")
    assert client.balance_of("alice") == 0


@patch("modules.token_ledger.urllib.request.urlopen")
def test_gateway_transfer_from(mock_urlopen):
    mock_urlopen.return_value = _mock_urlopen_response({"ok": True})

    client = TokenGatewayClient("https://tokens.example.com")
    assert client.transfer_from("alice", "plcr-engine", 7) is True

    req = mock_urlopen.call_args[0][0]
    assert "/v1/tokens/transfer" in req.full_url
    assert req.get_method() == "POST"
    body = json.loads(req.data)
    assert body == {"from": "alice", "to": "plcr-engine", "amount": 7}


@patch("modules.token_ledger.urllib.request.urlopen")
def test_gateway_transfer_rejected(mock_urlopen):
    mock_urlopen.return_value = _mock_urlopen_response({"ok": False, "error": "insufficient"})

    client = TokenGatewayClient("https://tokens.example.com")
    assert client.transfer_from("alice", "plcr-engine", 7) is False


@patch("modules.token_ledger.urllib.request.urlopen")
def test_service_reports_unreachable_gateway(mock_urlopen, tmp_path):
    mock_urlopen.side_effect = URLError("connection refused")
    store = PLCRStore(db_path=str(tmp_path / "plcr.db"))
    service = PLCRService(store=store, token_ledger=TokenGatewayClient("https://tokens.example.com"))

    result = service.request_voting_rights("voter-1", 5)
    assert result["code"] == "token_ledger_unavailable"
    assert service.store.get_voting_rights("voter-1") == 0
