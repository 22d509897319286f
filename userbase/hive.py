"""
Hive account lookups over JSON-RPC.

Only what account linking needs: the posting authority keys of an account and
the wallet and Farcaster links it publishes in its profile metadata.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests

from userbase.errors import HiveAccountNotFound, UpstreamUnavailable
from userbase.records import IdentityType
from userbase.utils import identifier_for, is_evm_address, normalize_address

logger = logging.getLogger(__name__)

DEFAULT_HIVE_NODES = ("https://api.hive.blog", "https://anyx.io", "https://api.openhive.network")


def _parse_metadata(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw or not isinstance(raw, str):
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


@dataclass(frozen=True)
class HiveAccount:
    name: str
    posting_keys: List[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rpc(cls, row: Dict[str, Any]) -> "HiveAccount":
        posting = row.get("posting") or {}
        keys = [entry[0] for entry in posting.get("key_auths") or [] if entry]

        # posting_json_metadata is where current clients write; json_metadata is the legacy slot
        metadata = _parse_metadata(row.get("posting_json_metadata"))
        if "extensions" not in metadata:
            legacy = _parse_metadata(row.get("json_metadata"))
            if "extensions" in legacy:
                metadata = legacy

        return cls(name=row.get("name", ""), posting_keys=keys, metadata=metadata)

    @property
    def extensions(self) -> Dict[str, Any]:
        extensions = self.metadata.get("extensions")
        return extensions if isinstance(extensions, dict) else {}

    def wallet_addresses(self) -> List[str]:
        """Valid evm addresses from the wallets and farcaster extensions, lower-cased and de-duplicated."""
        wallets = self.extensions.get("wallets")
        farcaster = self.extensions.get("farcaster")
        wallets = wallets if isinstance(wallets, dict) else {}
        farcaster = farcaster if isinstance(farcaster, dict) else {}

        candidates: List[Any] = [wallets.get("primary_wallet"), farcaster.get("custody_address")]
        for listed in (wallets.get("additional"), farcaster.get("verified_wallets")):
            if isinstance(listed, list):
                candidates.extend(listed)

        addresses: List[str] = []
        for candidate in candidates:
            if isinstance(candidate, str) and is_evm_address(candidate):
                address = normalize_address(candidate)
                if address not in addresses:
                    addresses.append(address)
        return addresses

    def farcaster_account(self) -> Optional[Dict[str, Any]]:
        farcaster = self.extensions.get("farcaster")
        if not isinstance(farcaster, dict):
            return None
        fid = identifier_for(IdentityType.FARCASTER, external_id=farcaster.get("fid"))
        if not fid:
            return None
        custody = farcaster.get("custody_address")
        verified = farcaster.get("verified_wallets")
        return {
            "fid": fid,
            "username": farcaster.get("username") if isinstance(farcaster.get("username"), str) else None,
            "custody_address": custody if isinstance(custody, str) and is_evm_address(custody) else None,
            "verified_wallets": verified if isinstance(verified, list) else [],
        }


class HiveClient:
    """condenser_api client trying each configured node in turn."""

    def __init__(self, nodes: Sequence[str] = DEFAULT_HIVE_NODES, timeout: float = 5):
        self.nodes = [node for node in nodes if node] or list(DEFAULT_HIVE_NODES)
        self.timeout = timeout

    def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": 1}
        last_error: Optional[Exception] = None

        for node in self.nodes:
            try:
                resp = requests.post(node, json=payload, timeout=self.timeout)
                resp.raise_for_status()
                body = resp.json()
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"Hive node failed | node={node} | method={method} | error={type(e).__name__}")
                last_error = e
                continue

            if not isinstance(body, dict) or body.get("error"):
                logger.warning(f"Hive node returned an error | node={node} | method={method}")
                last_error = RuntimeError(str(body.get("error") if isinstance(body, dict) else body))
                continue
            return body.get("result")

        raise UpstreamUnavailable(operation=method, cause=last_error)

    def fetch_account(self, handle: str) -> HiveAccount:
        """
        Fetch one account.

        Raises:
            HiveAccountNotFound: the chain has no such account
            UpstreamUnavailable: no node answered
        """
        result = self._call("condenser_api.get_accounts", [[handle]])
        if not result:
            raise HiveAccountNotFound()
        return HiveAccount.from_rpc(result[0])
