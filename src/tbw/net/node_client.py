# src/tbw/net/node_client.py
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Iterable, List, Mapping, Optional

from tbw.ledger.types import NetworkConfig, Stake, StakeTimestamps, Voter
from tbw.runtime.config import TbwConfig
from tbw.runtime.errors import CollaboratorError
from tbw.runtime.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("tbw.node_client")

VOTERS_PAGE_LIMIT = 100


def _http_json(method: str, url: str, timeout_s: float = 10.0) -> Json:
    """One JSON request. Any transport, status or decoding failure raises CollaboratorError."""
    method = method.upper().strip()
    headers = {"Content-Type": "application/json", "API-Version": "2"}
    req = urllib.request.Request(url, headers=headers, method=method)

    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        raise CollaboratorError("node_unavailable", "http_error", {"url": url, "status": int(e.code or 0)}) from e
    except urllib.error.URLError as e:
        raise CollaboratorError("node_unavailable", "url_error", {"url": url, "reason": str(e.reason)}) from e
    except OSError as e:
        raise CollaboratorError("node_unavailable", "io_error", {"url": url, "error": str(e)}) from e

    try:
        out = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CollaboratorError("node_bad_response", "bad_json", {"url": url}) from e
    if not isinstance(out, dict):
        raise CollaboratorError("node_bad_response", "not_an_object", {"url": url})
    return out


def _stakes(raw: Any) -> List[Stake]:
    """Stake entries from either {id: stake} or [stake, ...] payloads."""
    if not raw:
        return []
    items: Iterable[Any]
    if isinstance(raw, Mapping):
        items = ({**v, "id": v.get("id", k)} for k, v in raw.items() if isinstance(v, Mapping))
    else:
        items = raw
    out: List[Stake] = []
    for s in items:
        ts = s.get("timestamps") or {}
        out.append(
            Stake(
                id=str(s["id"]),
                amount=s.get("amount", 0),
                power=s.get("power", s.get("amount", 0)),
                timestamps=StakeTimestamps(power_up=int(ts.get("powerUp", 0)), redeemable=int(ts.get("redeemable", 0))),
            )
        )
    return out


def wallet_to_voter(data: Mapping[str, Any]) -> Voter:
    """Project a node wallet payload onto the fields the replay uses."""
    attrs = data.get("attributes") or {}
    balance = data.get("balance", 0)
    return Voter(
        address=str(data["address"]),
        public_key=str(data.get("publicKey") or ""),
        balance=balance,
        power=data.get("power", attrs.get("stakePower", 0)) or 0,
        processed_stakes=_stakes(data.get("processedStakes", data.get("stakes", attrs.get("stakes")))),
    )


class NodeClient:
    """Read-only client for the node's public API. No retries."""

    def __init__(self, base_url: str, *, timeout_s: float = 10.0) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.timeout_s = float(timeout_s)

    @classmethod
    def from_config(cls, config: TbwConfig) -> "NodeClient":
        return cls(config.node_url, timeout_s=config.api_timeout_s)

    def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Json:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        return _http_json("GET", url, timeout_s=self.timeout_s)

    def _data(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        body = self._get(path, params)
        if "data" not in body:
            raise CollaboratorError("node_bad_response", "missing_data", {"path": path})
        return body["data"]

    def get_delegate_public_key(self, delegate: str) -> str:
        data = self._data(f"/api/delegates/{urllib.parse.quote(delegate)}")
        pk = data.get("publicKey") if isinstance(data, Mapping) else None
        if not pk:
            raise CollaboratorError("node_bad_response", "delegate_public_key_missing", {"delegate": delegate})
        log.info("%s's Public Key: %s", delegate, pk)
        return str(pk)

    def get_voters(self, delegate: str) -> List[Voter]:
        """All current voters, following pages until an empty or short one."""
        path = f"/api/delegates/{urllib.parse.quote(delegate)}/voters"
        voters: List[Voter] = []
        page = 1
        while True:
            data = self._data(path, {"page": page, "limit": VOTERS_PAGE_LIMIT})
            if not isinstance(data, list):
                raise CollaboratorError("node_bad_response", "voters_not_a_list", {"page": page})
            if not data:
                break
            voters.extend(self._voter(w) for w in data)
            if len(data) < VOTERS_PAGE_LIMIT:
                break
            page += 1
        log_event(log, "current_voters_loaded", delegate=delegate, count=len(voters), pages=page)
        return voters

    def get_wallet(self, address: str) -> Voter:
        data = self._data(f"/api/wallets/{urllib.parse.quote(address)}")
        if not isinstance(data, Mapping):
            raise CollaboratorError("node_bad_response", "wallet_not_an_object", {"address": address})
        return self._voter(data)

    def get_network_config(self) -> NetworkConfig:
        data = self._data("/api/node/configuration")
        if not isinstance(data, Mapping):
            raise CollaboratorError("node_bad_response", "configuration_not_an_object")
        constants = data.get("constants") or {}
        try:
            return NetworkConfig(
                epoch=str(constants.get("epoch", "")),
                version=int(data["version"]),
                reward=constants.get("reward", 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CollaboratorError("node_bad_response", "configuration_invalid", {"error": str(e)}) from e

    def get_nonce(self, address: str) -> int:
        data = self._data(f"/api/wallets/{urllib.parse.quote(address)}")
        try:
            return int(data.get("nonce", 0))
        except (AttributeError, TypeError, ValueError) as e:
            raise CollaboratorError("node_bad_response", "nonce_invalid", {"address": address}) from e

    @staticmethod
    def _voter(data: Mapping[str, Any]) -> Voter:
        try:
            return wallet_to_voter(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CollaboratorError("node_bad_response", "wallet_invalid", {"error": str(e)}) from e
