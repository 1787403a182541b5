"""Node flag maps and the composition of the flags used to start a node."""

from __future__ import annotations

import base64
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tmpnet.errors import ConfigurationError

if TYPE_CHECKING:
    from tmpnet.state import Network, Node

logger = logging.getLogger(__name__)

# Node flag keys
NETWORK_ID = "network-id"
BOOTSTRAP_IDS = "bootstrap-ids"
BOOTSTRAP_IPS = "bootstrap-ips"
GENESIS_FILE_CONTENT = "genesis-file-content"
SUBNET_CONFIG_CONTENT = "subnet-config-content"
CHAIN_CONFIG_CONTENT = "chain-config-content"
SYBIL_PROTECTION_ENABLED = "sybil-protection-enabled"
TRACK_SUBNETS = "track-subnets"
DATA_DIR = "data-dir"
PLUGIN_DIR = "plugin-dir"
HTTP_HOST = "http-host"
HTTP_PORT = "http-port"
STAKING_PORT = "staking-port"
PUBLIC_IP = "public-ip"
PROCESS_CONTEXT_FILE = "process-context-file"
STAKING_TLS_KEY_CONTENT = "staking-tls-key-file-content"
STAKING_TLS_CERT_CONTENT = "staking-tls-cert-file-content"
NETWORK_PEER_LIST_PULL_GOSSIP_FREQ = "network-peer-list-pull-gossip-frequency"
NETWORK_MAX_RECONNECT_DELAY = "network-max-reconnect-delay"
HEALTH_CHECK_FREQ = "health-check-frequency"
ADMIN_API_ENABLED = "api-admin-enabled"
INDEX_ENABLED = "index-enabled"

# Subnet id of the primary network
PRIMARY_NETWORK_ID = "11111111111111111111111111111111LpoYY"

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


class FlagsMap(dict):
    """Flag key/value map with set-if-absent helpers."""

    def set_default(self, key: str, value: Any) -> None:
        """Set the value only if the key is not already present."""
        if key not in self:
            self[key] = value

    def set_defaults(self, defaults: Optional[Mapping[str, Any]]) -> None:
        for key, value in (defaults or {}).items():
            self.set_default(key, value)

    def get_string(self, key: str) -> str:
        """
        Retrieve a flag value as a string.

        Returns:
            The value, or an empty string if the key is not set

        Raises:
            ConfigurationError: If the value is not a string
        """
        value = self.get(key)
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ConfigurationError(f"expected value of flag {key!r} to be a string, got {type(value).__name__}")
        return value

    def get_bool(self, key: str, default: bool) -> bool:
        """
        Retrieve a flag value as a boolean.

        String values are accepted since flags read back from JSON or set
        via the environment are not guaranteed to be typed.
        """
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
        raise ConfigurationError(f"expected value of flag {key!r} to be a bool, got {value!r}")

    def copy(self) -> "FlagsMap":
        return FlagsMap(self)


def _b64_json(value: Any) -> str:
    return base64.b64encode(json.dumps(value, separators=(",", ":")).encode("utf-8")).decode("ascii")


class FlagComposer:
    """
    Computes the final set of flags used to start a node.

    Layers are applied set-if-absent so that any value present in the
    node's own flags is never overwritten.
    """

    def __init__(self, network: "Network", orchestrator_flags: Optional[Mapping[str, Any]] = None) -> None:
        """
        Args:
            network: Network the composed flags are for
            orchestrator_flags: Orchestrator-wide defaults, applied last
        """
        self.network = network
        self.orchestrator_flags = FlagsMap(orchestrator_flags or {})

    def compose(self, node: "Node", known_nodes: Iterable["Node"]) -> FlagsMap:
        """
        Compose the flags for a node.

        Args:
            node: Node to compose flags for
            known_nodes: Nodes that may serve as bootstrap peers

        Returns:
            The composed flags (the node's own flags are not modified)
        """
        network = self.network
        flags = FlagsMap(node.flags)

        # Stringified to keep the value stable when round-tripping through JSON
        flags.set_default(NETWORK_ID, str(network.get_network_id()))

        bootstrap_ips, bootstrap_ids = bootstrap_ips_and_ids(known_nodes, skipped=node)
        flags.set_default(BOOTSTRAP_IDS, ",".join(bootstrap_ids))
        flags.set_default(BOOTSTRAP_IPS, ",".join(bootstrap_ips))

        if network.genesis is not None:
            flags.set_default(GENESIS_FILE_CONTENT, self.genesis_file_content())

            if len(network.nodes) == 1 and len(network.genesis.initial_stakers) == 1:
                logger.info("defaulting to sybil protection disabled to enable a single-node network to start")
                flags.set_default(SYBIL_PROTECTION_ENABLED, False)

        subnet_config_content = self.subnet_config_content()
        if subnet_config_content:
            flags.set_default(SUBNET_CONFIG_CONTENT, subnet_config_content)

        chain_config_content = self.chain_config_content()
        if chain_config_content:
            flags.set_default(CHAIN_CONFIG_CONTENT, chain_config_content)

        # Network and orchestrator defaults go last so that anything above can override them
        flags.set_defaults(network.default_flags)
        flags.set_defaults(self.orchestrator_flags)
        return flags

    def genesis_file_content(self) -> str:
        """Base64-encoded JSON of the network genesis, or empty if there is none."""
        if self.network.genesis is None:
            return ""
        return _b64_json(self.network.genesis.to_dict())

    def subnet_config_content(self) -> str:
        """Base64-encoded JSON map of subnet id to subnet configuration."""
        subnet_configs: Dict[str, Any] = {}
        if self.network.primary_subnet_config is not None:
            subnet_configs[PRIMARY_NETWORK_ID] = self.network.primary_subnet_config

        for subnet in self.network.subnets:
            # Configuration can't be supplied for a subnet without an id
            if not subnet.subnet_id or subnet.config is None:
                continue
            subnet_configs[subnet.subnet_id] = subnet.config

        if not subnet_configs:
            return ""
        return _b64_json(subnet_configs)

    def chain_config_content(self) -> str:
        """Base64-encoded JSON map of chain alias or id to chain configuration."""
        chain_configs: Dict[str, Any] = {}
        for alias, chain_flags in self.network.primary_chain_configs.items():
            chain_configs[alias] = {"Config": _b64_json(dict(chain_flags)), "Upgrade": None}

        for subnet in self.network.subnets:
            for chain in subnet.chains:
                # Configuration can't be supplied for a chain without an id
                if not chain.chain_id:
                    continue
                config = base64.b64encode(chain.config.encode("utf-8")).decode("ascii") if chain.config else None
                chain_configs[chain.chain_id] = {"Config": config, "Upgrade": None}

        if not chain_configs:
            return ""
        return _b64_json(chain_configs)


def bootstrap_ips_and_ids(nodes: Iterable["Node"], skipped: Optional["Node"] = None) -> Tuple[List[str], List[str]]:
    """
    Collect the staking addresses and ids of nodes usable as bootstrap peers.

    Ephemeral nodes, nodes that are not running and the skipped node are
    excluded.
    """
    bootstrap_ips: List[str] = []
    bootstrap_ids: List[str] = []
    for candidate in nodes:
        if skipped is not None and candidate.node_id == skipped.node_id:
            continue
        if candidate.is_ephemeral:
            continue
        if not candidate.staking_address:
            # Not running
            continue
        bootstrap_ips.append(candidate.staking_address)
        bootstrap_ids.append(candidate.node_id)
    return bootstrap_ips, bootstrap_ids
