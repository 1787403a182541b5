"""Exceptions raised by network orchestration."""

from __future__ import annotations

from typing import List, Sequence


class TmpnetError(Exception):
    """Base class for orchestration errors."""


class ConfigurationError(TmpnetError):
    """Invalid or missing configuration. Never retried."""


class InsufficientNodesError(ConfigurationError):
    def __init__(self) -> None:
        super().__init__("at least one node is required")


class MissingValidatorsError(ConfigurationError):
    def __init__(self, subnet_name: str) -> None:
        super().__init__(f"subnet {subnet_name!r} needs at least one validator")
        self.subnet_name = subnet_name


class KeyPoolExhaustedError(ConfigurationError):
    def __init__(self, subnet_name: str) -> None:
        super().__init__(f"no pre-funded keys available to create subnet {subnet_name!r}")
        self.subnet_name = subnet_name


class NetworkReadError(ConfigurationError):
    """On-disk network state is missing or unreadable."""


class DeadlineExceededError(TmpnetError):
    """A wait did not converge before its deadline."""


class HealthTimeoutError(DeadlineExceededError):
    def __init__(self, unhealthy_node_ids: Sequence[str]) -> None:
        super().__init__(
            f"failed to see all nodes healthy before timeout: {', '.join(unhealthy_node_ids) or 'unknown'}"
        )
        self.unhealthy_node_ids = list(unhealthy_node_ids)


class ValidatorActivationTimeoutError(DeadlineExceededError):
    def __init__(self, subnet_name: str, missing_validator_ids: Sequence[str]) -> None:
        super().__init__(
            f"failed to see the expected active validators of subnet {subnet_name!r} before timeout: "
            f"missing {', '.join(missing_validator_ids)}"
        )
        self.subnet_name = subnet_name
        self.missing_validator_ids = list(missing_validator_ids)


class NodeHealthError(TmpnetError):
    """The health of a node could not be determined."""


class RPCError(TmpnetError):
    """A node API call failed at the transport or RPC level."""


class NodeStartError(TmpnetError):
    """A node failed to start."""

    def __init__(self, message: str, node_id: str = "") -> None:
        super().__init__(message)
        self.node_id = node_id


class NodeStopError(TmpnetError):
    """A node failed to stop."""

    def __init__(self, message: str, node_id: str = "") -> None:
        super().__init__(message)
        self.node_id = node_id


class NetworkStopError(TmpnetError):
    """One or more nodes of a network failed to stop."""

    def __init__(self, errors: Sequence[Exception]) -> None:
        self.errors: List[Exception] = list(errors)
        details = "\n".join(f"  {e}" for e in self.errors)
        super().__init__(f"failed to stop network:\n{details}")
