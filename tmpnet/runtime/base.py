"""Capability interface implemented by node runtime backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict

from tmpnet.deadline import Deadline
from tmpnet.errors import ConfigurationError

if TYPE_CHECKING:
    from tmpnet.config import OrchestratorConfig
    from tmpnet.state import Node


class NodeRuntime(ABC):
    """
    Executes a single node.

    Implementations start the node from the flags file already written to
    its data dir and keep `node.uri` and `node.staking_address` current.
    """

    def __init__(self, node: "Node", config: "OrchestratorConfig") -> None:
        self.node = node
        self.config = config

    def runtime_flags(self) -> Dict[str, Any]:
        """Flags the backend needs, applied only where the node does not set them."""
        return {}

    @abstractmethod
    def start(self) -> None:
        """Start the node and wait until its API URI and staking address are known."""

    @abstractmethod
    def initiate_stop(self) -> None:
        """Request the node to stop without waiting for it to exit."""

    @abstractmethod
    def wait_for_stopped(self, deadline: Deadline) -> None:
        """Wait for the node to exit."""

    @abstractmethod
    def is_healthy(self, deadline: Deadline) -> bool:
        """Query the node's health endpoint."""

    @abstractmethod
    def read_state(self) -> None:
        """Refresh the node's URI and staking address from the runtime."""


def new_runtime(node: "Node", config: "OrchestratorConfig") -> NodeRuntime:
    """
    Select the runtime backend for a node.

    Raises:
        ConfigurationError: If the node has no runtime configuration
    """
    runtime_config = node.runtime_config
    if runtime_config is not None and runtime_config.kube is not None:
        from tmpnet.runtime.kube import KubeRuntime
        return KubeRuntime(node, config)
    if runtime_config is not None and runtime_config.process is not None:
        from tmpnet.runtime.process import ProcessRuntime
        return ProcessRuntime(node, config)
    raise ConfigurationError(f"node {node.node_id} has no runtime configuration")
