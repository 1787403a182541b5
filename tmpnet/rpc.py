"""JSON-RPC clients for the platform chain API of a node."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from tmpnet.errors import RPCError
from tmpnet.keys import PrivateKey

logger = logging.getLogger(__name__)

PLATFORM_ENDPOINT = "/ext/bc/P"


class JSONRPCClient:
    """Minimal JSON-RPC 2.0 client bound to one node endpoint."""

    def __init__(self, uri: str, endpoint: str, timeout_s: float = 5.0, session: Optional[requests.Session] = None) -> None:
        self.url = f"{uri.rstrip('/')}{endpoint}"
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Invoke a method and return its result.

        Raises:
            RPCError: On transport failure, a non-2xx status, an invalid
                reply or an error reported by the node
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or {},
        }
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout_s)
            response.raise_for_status()
            reply = response.json()
        except requests.RequestException as e:
            raise RPCError(f"{method} to {self.url} failed: {e}") from e
        except ValueError as e:
            raise RPCError(f"{method} to {self.url} returned an invalid reply: {e}") from e

        if not isinstance(reply, dict):
            raise RPCError(f"{method} to {self.url} returned an invalid reply: {reply!r}")
        if reply.get("error"):
            error = reply["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RPCError(f"{method} to {self.url} failed: {message}")
        return reply.get("result")


class PlatformClient(JSONRPCClient):
    """Queries validator state on the platform chain."""

    def __init__(self, uri: str, timeout_s: float = 5.0, session: Optional[requests.Session] = None) -> None:
        super().__init__(uri, PLATFORM_ENDPOINT, timeout_s, session)

    def get_current_validators(self, subnet_id: str = "", node_ids: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        """
        Active validators of a subnet (the primary network if subnet_id is empty).

        Returns:
            Validator records, each with at least `nodeID`
        """
        params: Dict[str, Any] = {}
        if subnet_id:
            params["subnetID"] = subnet_id
        if node_ids:
            params["nodeIDs"] = list(node_ids)
        result = self.call("platform.getCurrentValidators", params) or {}
        return list(result.get("validators") or [])

    def get_validator_end_time(self, node_id: str) -> Optional[int]:
        """End time (unix seconds) of a primary network validator, or None if it isn't one."""
        for validator in self.get_current_validators(node_ids=[node_id]):
            if validator.get("nodeID") == node_id:
                return int(validator["endTime"])
        return None


class SubnetWallet(JSONRPCClient):
    """Issues subnet, validator and chain transactions funded by one key."""

    def __init__(self, uri: str, key: PrivateKey, timeout_s: float = 5.0, session: Optional[requests.Session] = None) -> None:
        super().__init__(uri, PLATFORM_ENDPOINT, timeout_s, session)
        self.key = key

    def _issue(self, method: str, params: Dict[str, Any]) -> str:
        params = dict(params, **{"from": [self.key.address], "changeAddr": self.key.address})
        result = self.call(method, params) or {}
        tx_id = result.get("txID")
        if not tx_id:
            raise RPCError(f"{method} to {self.url} returned no transaction id")
        logger.debug(f"Issued {method} tx {tx_id}")
        return tx_id

    def create_subnet(self) -> str:
        """
        Returns:
            Id of the created subnet
        """
        return self._issue("platform.createSubnet", {
            "controlKeys": [self.key.address],
            "threshold": 1,
        })

    def add_subnet_validator(self, subnet_id: str, node_id: str, end_time: int, weight: int) -> str:
        return self._issue("platform.addSubnetValidator", {
            "subnetID": subnet_id,
            "nodeID": node_id,
            "endTime": end_time,
            "weight": weight,
        })

    def create_chain(self, subnet_id: str, vm_id: str, name: str, genesis: bytes) -> str:
        """
        Returns:
            Id of the created chain
        """
        return self._issue("platform.createBlockchain", {
            "subnetID": subnet_id,
            "vmID": vm_id,
            "name": name,
            "genesisData": "0x" + genesis.hex(),
            "encoding": "hex",
        })
