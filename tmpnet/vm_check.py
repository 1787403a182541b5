"""Best-effort check that VM plugin binaries speak the node's plugin protocol."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from typing import Iterable, List, Optional, Sequence

from tmpnet.state import Subnet

logger = logging.getLogger(__name__)

NODE_VERSION_ARGS = ["--version-json"]
VERSION_TIMEOUT_S = 10.0


def read_rpc_chain_vm_version(path: str, args: Sequence[str]) -> Optional[int]:
    """
    Invoke a binary with version arguments and parse `{"rpcchainvm": N}`.

    Returns:
        The protocol version, or None if it could not be determined
    """
    if not os.path.isfile(path):
        logger.warning(f"Binary {path} not found, unable to check its rpcchainvm version")
        return None
    try:
        result = subprocess.run(
            [path, *args],
            capture_output=True,
            check=True,
            timeout=VERSION_TIMEOUT_S,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Failed to read version of {path}: {e}")
        return None

    try:
        version = json.loads(result.stdout)
        return int(version["rpcchainvm"])
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Unable to parse version output of {path}: {e}")
        return None


def check_vm_binaries(subnets: Iterable[Subnet], node_path: str, plugin_dir: str) -> List[str]:
    """
    Compare the rpcchainvm version of each chain's VM binary with the node's.

    Mismatches are logged as errors. Missing binaries and unreadable
    version output are logged as warnings. Nothing is raised since the
    node enforces compatibility itself.

    Returns:
        One message per incompatible VM binary
    """
    # Without version args a VM binary would start serving instead of exiting
    chains = [(subnet, chain) for subnet in subnets for chain in subnet.chains if chain.version_args]
    if not chains:
        return []

    node_version = read_rpc_chain_vm_version(node_path, NODE_VERSION_ARGS)
    if node_version is None:
        return []

    mismatches = []
    for subnet, chain in chains:
        vm_path = os.path.join(plugin_dir, chain.vm_id)
        vm_version = read_rpc_chain_vm_version(vm_path, chain.version_args)
        if vm_version is None or vm_version == node_version:
            continue
        message = (
            f"VM binary {vm_path} of subnet {subnet.name!r} has rpcchainvm version {vm_version}, "
            f"incompatible with version {node_version} of node binary {node_path}"
        )
        logger.error(message)
        mismatches.append(message)
    return mismatches
