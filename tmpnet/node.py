"""Lifecycle of a single node, independent of how it is executed."""

from __future__ import annotations

import logging
from urllib.parse import urlparse

from tmpnet import flags as keys
from tmpnet import persistence
from tmpnet.deadline import Deadline
from tmpnet.flags import FlagsMap
from tmpnet.health import HealthMonitor
from tmpnet.runtime.base import NodeRuntime
from tmpnet.state import Node

logger = logging.getLogger(__name__)


class NodeController:
    """Owns start and stop of one node and exposes its runtime identity."""

    def __init__(self, node: Node, runtime: NodeRuntime) -> None:
        self.node = node
        self.runtime = runtime

    @property
    def node_id(self) -> str:
        return self.node.node_id

    def write_config(self) -> None:
        persistence.write_node(self.node)

    def write_flags(self, flags: FlagsMap) -> FlagsMap:
        """
        Write the flags the node will be started with.

        Flags required by the runtime backend are added where not already set.

        Returns:
            The flags as written
        """
        flags = FlagsMap(flags)
        flags.set_defaults(self.runtime.runtime_flags())
        persistence.write_node_flags(self.node, flags)
        return flags

    def start(self) -> None:
        self.runtime.start()

    def initiate_stop(self) -> None:
        self.runtime.initiate_stop()

    def wait_for_stopped(self, deadline: Deadline) -> None:
        self.runtime.wait_for_stopped(deadline)

    def stop(self, deadline: Deadline) -> None:
        self.initiate_stop()
        self.wait_for_stopped(deadline)
        logger.info(f"Stopped node {self.node_id}")

    def is_healthy(self, deadline: Deadline) -> bool:
        return self.runtime.is_healthy(deadline)

    def wait_for_healthy(self, deadline: Deadline, monitor: HealthMonitor) -> None:
        monitor.wait_for_node_healthy(deadline, self)

    def refresh(self) -> None:
        """Reload the node's URI and staking address from its runtime."""
        self.runtime.read_state()

    def save_api_port(self) -> None:
        """
        Pin the API port the node is currently listening on so that a
        restart reuses it. A no-op unless the node's runtime config asks
        for dynamic ports to be reused.
        """
        runtime_config = self.node.runtime_config
        if runtime_config is None or runtime_config.process is None or not runtime_config.process.reuse_dynamic_ports:
            return
        if not self.node.uri:
            return
        port = urlparse(self.node.uri).port
        if port is None:
            return
        self.node.flags[keys.HTTP_PORT] = port
        self.write_config()
        logger.debug(f"Saved API port {port} for node {self.node_id}")
