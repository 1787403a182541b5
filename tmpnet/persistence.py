"""Reading and writing the on-disk mirror of a network."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from tmpnet import defaults
from tmpnet.errors import NetworkReadError
from tmpnet.flags import FlagsMap
from tmpnet.genesis import Genesis
from tmpnet.keys import PrivateKey
from tmpnet.state import Network, Node, NodeRuntimeConfig, Subnet

logger = logging.getLogger(__name__)


def to_canonical_dir(path: str) -> str:
    """
    Absolute path with symlinks resolved.

    Node configuration embeds the network path, so it must keep working
    regardless of symlink and working directory changes.
    """
    return str(Path(path).expanduser().resolve())


def _write_json(path: str, data: Any) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp_path, path)


def _read_json(path: str) -> Any:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise NetworkReadError(f"missing configuration file {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise NetworkReadError(f"failed to read configuration file {path}: {e}") from e


# ----------------------------------------------------------------------
# Nodes
# ----------------------------------------------------------------------
def write_node(node: Node) -> None:
    """Write the node's configuration to its data dir."""
    if not node.get_data_dir():
        raise NetworkReadError(f"node {node.node_id} has no data dir to write its configuration to")
    _write_json(node.config_path, node.to_dict())


def write_node_flags(node: Node, flags: FlagsMap) -> None:
    """Write the composed flags the node will be started with."""
    _write_json(node.flags_path, dict(flags))


def read_node_flags(node: Node) -> FlagsMap:
    return FlagsMap(_read_json(node.flags_path))


def read_node(data_dir: str) -> Node:
    data = _read_json(os.path.join(data_dir, defaults.CONFIG_FILENAME))
    try:
        node = Node.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise NetworkReadError(f"invalid node configuration in {data_dir}: {e}") from e
    # The data dir may not have been recorded if the node was never written by a network
    node.flags.set_default("data-dir", data_dir)
    return node


def read_process_context(node: Node) -> Optional[Dict[str, Any]]:
    """
    Read the runtime context the node process writes on startup.

    Returns:
        The context, or None if the node has not written one
    """
    path = node.process_context_path
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError:
        # Partially written, the caller retries
        return None


def remove_process_context(node: Node) -> None:
    try:
        os.remove(node.process_context_path)
    except FileNotFoundError:
        pass


def read_nodes(network_dir: str, include_ephemeral: bool) -> List[Node]:
    """
    Read every node whose configuration is stored under the network dir.

    Args:
        network_dir: Network directory
        include_ephemeral: Whether to include ephemeral nodes

    Returns:
        Nodes ordered by directory name
    """
    nodes = []
    for entry in sorted(os.scandir(network_dir), key=lambda e: e.name):
        if not entry.is_dir() or entry.name == defaults.SUBNETS_DIRNAME:
            continue
        if not os.path.exists(os.path.join(entry.path, defaults.CONFIG_FILENAME)):
            continue
        node = read_node(entry.path)
        if node.is_ephemeral and not include_ephemeral:
            continue
        nodes.append(node)
    return nodes


# ----------------------------------------------------------------------
# Subnets
# ----------------------------------------------------------------------
def write_subnet(subnet: Subnet, subnet_dir: str) -> None:
    _write_json(os.path.join(subnet_dir, f"{subnet.name}.json"), subnet.to_dict())


def read_subnets(subnet_dir: str) -> Dict[str, Subnet]:
    subnets: Dict[str, Subnet] = {}
    if not os.path.isdir(subnet_dir):
        return subnets
    for entry in sorted(os.scandir(subnet_dir), key=lambda e: e.name):
        if not entry.is_file() or not entry.name.endswith(".json"):
            continue
        data = _read_json(entry.path)
        try:
            subnet = Subnet.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkReadError(f"invalid subnet configuration in {entry.path}: {e}") from e
        subnets[subnet.name] = subnet
    return subnets


# ----------------------------------------------------------------------
# Networks
# ----------------------------------------------------------------------
def network_to_dict(network: Network) -> Dict[str, Any]:
    return {
        "uuid": network.uuid,
        "owner": network.owner,
        "networkID": network.network_id,
        "genesis": network.genesis.to_dict() if network.genesis else None,
        "primarySubnetConfig": network.primary_subnet_config,
        "primaryChainConfigs": {alias: dict(flags) for alias, flags in network.primary_chain_configs.items()},
        "defaultFlags": dict(network.default_flags),
        "defaultRuntimeConfig": network.default_runtime_config.to_dict(),
        "preFundedKeys": [key.to_string() for key in network.pre_funded_keys],
        "nodes": [node.node_id for node in network.nodes],
        "subnets": [subnet.name for subnet in network.subnets],
    }


def write_network(network: Network) -> None:
    """Write the network, its subnets and its nodes to the network dir."""
    if not network.dir:
        raise NetworkReadError("network has no dir to write its configuration to")
    _write_json(os.path.join(network.dir, defaults.CONFIG_FILENAME), network_to_dict(network))
    for subnet in network.subnets:
        write_subnet(subnet, network.get_subnet_dir())
    for node in network.nodes:
        write_node(node)


def read_network(network_dir: str) -> Network:
    """
    Reconstruct a network from its directory.

    Raises:
        NetworkReadError: If the directory does not hold a readable network
    """
    canonical_dir = to_canonical_dir(network_dir)
    data = _read_json(os.path.join(canonical_dir, defaults.CONFIG_FILENAME))

    try:
        network = Network(
            uuid=data.get("uuid", ""),
            owner=data.get("owner", ""),
            dir=canonical_dir,
            network_id=int(data.get("networkID", 0)),
            genesis=Genesis.from_dict(data["genesis"]) if data.get("genesis") else None,
            primary_subnet_config=data.get("primarySubnetConfig"),
            primary_chain_configs={
                alias: FlagsMap(flags) for alias, flags in (data.get("primaryChainConfigs") or {}).items()
            },
            default_flags=FlagsMap(data.get("defaultFlags") or {}),
            default_runtime_config=NodeRuntimeConfig.from_dict(data.get("defaultRuntimeConfig")),
            pre_funded_keys=[PrivateKey.from_string(k) for k in data.get("preFundedKeys") or []],
        )
    except (KeyError, TypeError, ValueError) as e:
        raise NetworkReadError(f"invalid network configuration in {canonical_dir}: {e}") from e

    nodes_by_id = {node.node_id: node for node in read_nodes(canonical_dir, include_ephemeral=False)}
    for node_id in data.get("nodes") or []:
        node = nodes_by_id.get(node_id)
        if node is None:
            raise NetworkReadError(f"node {node_id} is in the roster but has no configuration on disk")
        network.nodes.append(node)

    subnets_by_name = read_subnets(network.get_subnet_dir())
    for name in data.get("subnets") or []:
        subnet = subnets_by_name.get(name)
        if subnet is None:
            raise NetworkReadError(f"subnet {name!r} is in the roster but has no configuration on disk")
        network.subnets.append(subnet)

    logger.debug(f"Read network {network.uuid} from {canonical_dir}: {len(network.nodes)} nodes, {len(network.subnets)} subnets")
    return network
