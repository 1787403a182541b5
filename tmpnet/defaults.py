"""Default values used when configuring and orchestrating temporary networks."""

from __future__ import annotations

from typing import Dict

from tmpnet import flags as keys
from tmpnet.flags import FlagsMap

# Names of shell variables whose value can configure network orchestration.
NETWORK_DIR_ENV_NAME = "TMPNET_NETWORK_DIR"
ROOT_DIR_ENV_NAME = "TMPNET_ROOT_DIR"
SKIP_BOOTSTRAP_CHECKS_ENV_NAME = "TMPNET_SKIP_BOOTSTRAP_CHECKS"

# Larger than 50ms to avoid spamming node APIs while they start up.
NETWORK_HEALTH_CHECK_INTERVAL_S = 0.2

# Interval for operations that should be retried periodically but not too often.
DEFAULT_POLLING_INTERVAL_S = 0.5

DEFAULT_NETWORK_TIMEOUT_S = 240.0

# Minimum required for connectivity-based health checks to pass
DEFAULT_NODE_COUNT = 2

DEFAULT_PRE_FUNDED_KEY_COUNT = 50

# Arbitrary network id used by all temporary networks unless configured otherwise.
DEFAULT_NETWORK_ID = 88888

DEFAULT_NODE_HTTP_PORT = 9650
DEFAULT_NODE_STAKING_PORT = 9651

DEFAULT_KUBE_NAMESPACE = "tmpnet"
DEFAULT_KUBE_IMAGE = "avaplatform/avalanchego:latest"

CONFIG_FILENAME = "config.json"
FLAGS_FILENAME = "flags.json"
PROCESS_CONTEXT_FILENAME = "process.json"
SUBNETS_DIRNAME = "subnets"

# Denominations of value
NANO_VOLREX = 1
MICRO_VOLREX = 1000 * NANO_VOLREX
SCHMECKLE = 49 * MICRO_VOLREX + 463 * NANO_VOLREX
MILLI_VOLREX = 1000 * MICRO_VOLREX
VOLREX = 1000 * MILLI_VOLREX
KILO_VOLREX = 1000 * VOLREX
MEGA_VOLREX = 1000 * KILO_VOLREX


def default_tmpnet_flags() -> FlagsMap:
    """Flags applied to every node unless the node or network sets them."""
    return FlagsMap({
        keys.NETWORK_PEER_LIST_PULL_GOSSIP_FREQ: "250ms",
        keys.NETWORK_MAX_RECONNECT_DELAY: "1s",
        keys.HEALTH_CHECK_FREQ: "500ms",
        keys.ADMIN_API_ENABLED: True,
        keys.INDEX_ENABLED: True,
    })


def default_chain_configs() -> Dict[str, FlagsMap]:
    """
    Chain configuration appropriate for testing.

    Only non-default values are supplied so that the node's own defaults
    remain in effect for everything else.
    """
    return {
        "C": FlagsMap({
            "warp-api-enabled": True,
            "log-level": "info",
        }),
    }
