"""Orchestrator configuration loaded from YAML and environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tmpnet import defaults
from tmpnet.errors import ConfigurationError
from tmpnet.flags import FlagsMap

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV_NAME = "TMPNET_CONFIG"


def default_tmpnet_dir() -> Path:
    return Path.home() / ".tmpnet"


@dataclass
class OrchestratorConfig:
    """Process-wide settings threaded through the network controller."""
    root_dir: Path = field(default_factory=lambda: default_tmpnet_dir() / "networks")
    network_timeout_s: float = defaults.DEFAULT_NETWORK_TIMEOUT_S
    health_check_interval_s: float = defaults.NETWORK_HEALTH_CHECK_INTERVAL_S
    polling_interval_s: float = defaults.DEFAULT_POLLING_INTERVAL_S
    pre_funded_key_count: int = defaults.DEFAULT_PRE_FUNDED_KEY_COUNT
    default_network_id: int = defaults.DEFAULT_NETWORK_ID
    node_start_timeout_s: float = 30.0
    request_timeout_s: float = 5.0
    tmpnet_flags: FlagsMap = field(default_factory=defaults.default_tmpnet_flags)

    def reusable_network_path(self, owner: str) -> Path:
        """Path of the symlink used to discover a network intended for reuse."""
        return self.root_dir / f"latest_{owner}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root_dir": str(self.root_dir),
            "network_timeout_s": self.network_timeout_s,
            "health_check_interval_s": self.health_check_interval_s,
            "polling_interval_s": self.polling_interval_s,
            "pre_funded_key_count": self.pre_funded_key_count,
            "default_network_id": self.default_network_id,
            "node_start_timeout_s": self.node_start_timeout_s,
            "request_timeout_s": self.request_timeout_s,
            "tmpnet_flags": dict(self.tmpnet_flags),
        }


_FLOAT_FIELDS = (
    "network_timeout_s",
    "health_check_interval_s",
    "polling_interval_s",
    "node_start_timeout_s",
    "request_timeout_s",
)
_INT_FIELDS = ("pre_funded_key_count", "default_network_id")


def load_config(path: Optional[str] = None) -> OrchestratorConfig:
    """
    Load orchestrator configuration.

    Values are taken from, in increasing order of precedence: built-in
    defaults, the YAML file at `path` (or $TMPNET_CONFIG), and TMPNET_*
    environment variables.

    Args:
        path: Optional path to a YAML configuration file

    Returns:
        OrchestratorConfig

    Raises:
        ConfigurationError: If the file can't be parsed or holds invalid values
    """
    cfg = OrchestratorConfig()
    path = path or os.getenv(CONFIG_PATH_ENV_NAME)
    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed to load orchestrator config from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"orchestrator config at {path} must be a mapping")
        _apply(cfg, data)
        logger.info(f"Loaded orchestrator config from {path}")

    env_overrides: Dict[str, Any] = {}
    root_dir = os.getenv(defaults.ROOT_DIR_ENV_NAME)
    if root_dir:
        env_overrides["root_dir"] = root_dir
    for name in _FLOAT_FIELDS + _INT_FIELDS:
        raw = (os.getenv(f"TMPNET_{name.upper()}") or "").strip()
        if raw:
            env_overrides[name] = raw
    _apply(cfg, env_overrides)
    return cfg


def _apply(cfg: OrchestratorConfig, data: Dict[str, Any]) -> None:
    try:
        if "root_dir" in data:
            cfg.root_dir = Path(os.path.expanduser(str(data["root_dir"])))
        for name in _FLOAT_FIELDS:
            if name in data:
                setattr(cfg, name, float(data[name]))
        for name in _INT_FIELDS:
            if name in data:
                setattr(cfg, name, int(data[name]))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid orchestrator config value: {e}") from e

    if "tmpnet_flags" in data:
        extra = data["tmpnet_flags"] or {}
        if not isinstance(extra, dict):
            raise ConfigurationError("tmpnet_flags must be a mapping")
        cfg.tmpnet_flags.update(extra)
