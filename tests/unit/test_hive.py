"""
Unit tests for the Hive JSON-RPC client and account parsing.
"""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from userbase.errors import HiveAccountNotFound, UpstreamUnavailable
from userbase.hive import HiveAccount, HiveClient

WALLET_A = "0x" + "aa" * 20
WALLET_B = "0x" + "bb" * 20
CUSTODY = "0x" + "cc" * 20


def _response(body, status=200):
    resp = Mock()
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


def _account_row(name="alice", keys=("STM1",), posting_metadata="", metadata=""):
    return {
        "name": name,
        "posting": {"weight_threshold": 1, "account_auths": [], "key_auths": [[key, 1] for key in keys]},
        "posting_json_metadata": posting_metadata,
        "json_metadata": metadata,
    }


class TestHiveAccount:
    """Test parsing of condenser_api account rows."""

    def test_from_rpc_reads_posting_keys(self):
        account = HiveAccount.from_rpc(_account_row(keys=("STM1", "STM2")))

        assert account.name == "alice"
        assert account.posting_keys == ["STM1", "STM2"]
        assert account.metadata == {}

    def test_posting_metadata_wins(self):
        """Test that posting_json_metadata is preferred over the legacy field."""
        row = _account_row(
            posting_metadata=json.dumps({"extensions": {"wallets": {"primary_wallet": WALLET_A}}}),
            metadata=json.dumps({"extensions": {"wallets": {"primary_wallet": WALLET_B}}}),
        )

        assert HiveAccount.from_rpc(row).wallet_addresses() == [WALLET_A]

    def test_legacy_metadata_fallback(self):
        """Test that json_metadata is used when posting metadata has no extensions."""
        row = _account_row(
            posting_metadata=json.dumps({"profile": {"name": "Alice"}}),
            metadata=json.dumps({"extensions": {"wallets": {"primary_wallet": WALLET_B}}}),
        )

        assert HiveAccount.from_rpc(row).wallet_addresses() == [WALLET_B]

    def test_unparseable_metadata_is_empty(self):
        account = HiveAccount.from_rpc(_account_row(posting_metadata="{not json", metadata="[]"))

        assert account.metadata == {}
        assert account.wallet_addresses() == []
        assert account.farcaster_account() is None

    def test_wallet_addresses_are_deduplicated(self):
        """Test that wallets from both extensions are lower-cased, validated and de-duplicated."""
        account = HiveAccount(
            name="alice",
            posting_keys=[],
            metadata={
                "extensions": {
                    "wallets": {"primary_wallet": WALLET_A.upper().replace("0X", "0x"), "additional": [WALLET_B, "nope"]},
                    "farcaster": {"fid": 7, "custody_address": CUSTODY, "verified_wallets": [WALLET_A]},
                }
            },
        )

        assert account.wallet_addresses() == [WALLET_A, CUSTODY, WALLET_B]

    def test_farcaster_account(self):
        account = HiveAccount(
            name="alice",
            posting_keys=[],
            metadata={
                "extensions": {
                    "farcaster": {"fid": 7, "username": "alice", "custody_address": CUSTODY, "verified_wallets": [WALLET_A]}
                }
            },
        )

        assert account.farcaster_account() == {
            "fid": "7",
            "username": "alice",
            "custody_address": CUSTODY,
            "verified_wallets": [WALLET_A],
        }

    def test_farcaster_without_fid_is_ignored(self):
        account = HiveAccount(name="alice", posting_keys=[], metadata={"extensions": {"farcaster": {"username": "alice"}}})

        assert account.farcaster_account() is None


class TestHiveClient:
    """Test node failover and error mapping."""

    @pytest.fixture
    def client(self):
        return HiveClient(nodes=["https://node-a.example", "https://node-b.example"], timeout=2)

    def test_fetch_account(self, client):
        with patch("userbase.hive.requests.post", return_value=_response({"result": [_account_row()]})) as post:
            account = client.fetch_account("alice")

        assert account.posting_keys == ["STM1"]
        post.assert_called_once()
        args, kwargs = post.call_args
        assert args[0] == "https://node-a.example"
        assert kwargs["json"]["method"] == "condenser_api.get_accounts"
        assert kwargs["json"]["params"] == [["alice"]]
        assert kwargs["timeout"] == 2

    def test_unknown_account(self, client):
        with patch("userbase.hive.requests.post", return_value=_response({"result": []})):
            with pytest.raises(HiveAccountNotFound):
                client.fetch_account("ghost")

    def test_fails_over_to_next_node(self, client):
        """Test that a connection error moves on to the next configured node."""
        responses = [requests.ConnectionError("refused"), _response({"result": [_account_row()]})]
        with patch("userbase.hive.requests.post", side_effect=responses) as post:
            account = client.fetch_account("alice")

        assert account.name == "alice"
        assert [call.args[0] for call in post.call_args_list] == ["https://node-a.example", "https://node-b.example"]

    def test_rpc_error_body_tries_next_node(self, client):
        responses = [_response({"error": {"code": -32000, "message": "busy"}}), _response({"result": [_account_row()]})]
        with patch("userbase.hive.requests.post", side_effect=responses):
            assert client.fetch_account("alice").name == "alice"

    def test_all_nodes_failing(self, client):
        """Test that exhausting every node reports the upstream as unavailable."""
        responses = [_response({}, status=503), requests.Timeout("slow")]
        with patch("userbase.hive.requests.post", side_effect=responses):
            with pytest.raises(UpstreamUnavailable) as exc_info:
                client.fetch_account("alice")

        assert exc_info.value.status_code == 502
        assert isinstance(exc_info.value.details["cause"], requests.Timeout)

    def test_empty_node_list_uses_defaults(self):
        assert HiveClient(nodes=["", ""]).nodes[0] == "https://api.hive.blog"
