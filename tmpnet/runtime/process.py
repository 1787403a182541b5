"""Runs a node as a local child process."""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Any, Dict, Optional

import psutil

from tmpnet import flags as keys
from tmpnet import persistence
from tmpnet.deadline import Deadline
from tmpnet.errors import ConfigurationError, NodeHealthError, NodeStartError, NodeStopError
from tmpnet.health import check_node_health
from tmpnet.runtime.base import NodeRuntime

logger = logging.getLogger(__name__)

LOG_FILENAME = "process.log"


def _process_is_running(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class ProcessRuntime(NodeRuntime):
    """
    Launches `<node_path> --config-file=<data-dir>/flags.json`.

    The node reports its pid, API URI and staking address by writing a
    process context file to its data dir once it is listening.
    """

    def __init__(self, node, config) -> None:
        super().__init__(node, config)
        self._proc: Optional[subprocess.Popen] = None

    @property
    def node_path(self) -> str:
        runtime_config = self.node.runtime_config
        return runtime_config.node_path if runtime_config else ""

    def runtime_flags(self) -> Dict[str, Any]:
        return {
            keys.PROCESS_CONTEXT_FILE: self.node.process_context_path,
            # Dynamic ports avoid conflicts between nodes on the same host
            keys.HTTP_PORT: 0,
            keys.STAKING_PORT: 0,
        }

    def _read_context(self) -> Optional[Dict[str, Any]]:
        context = persistence.read_process_context(self.node)
        if not context or not context.get("pid"):
            return None
        return context

    def read_state(self) -> None:
        context = self._read_context()
        if context is None or not _process_is_running(int(context["pid"])):
            self.node.uri = ""
            self.node.staking_address = ""
            return
        self.node.uri = context.get("uri", "")
        self.node.staking_address = context.get("stakingAddress", "")

    def start(self) -> None:
        node_path = self.node_path
        if not node_path:
            raise ConfigurationError(f"no node path configured for node {self.node.node_id}")
        if not os.path.isfile(node_path):
            raise NodeStartError(f"node binary not found at {node_path}", self.node.node_id)

        self.read_state()
        if self.node.is_running:
            logger.info(f"Node {self.node.node_id} is already running at {self.node.uri}")
            return

        # A stale context would be mistaken for the new process
        persistence.remove_process_context(self.node)

        cmd = [node_path, f"--config-file={self.node.flags_path}"]
        data_dir = self.node.get_data_dir()
        os.makedirs(data_dir, exist_ok=True)
        logger.info(f"Starting node {self.node.node_id}: {' '.join(cmd)}")
        try:
            with open(os.path.join(data_dir, LOG_FILENAME), "ab") as log_file:
                # Detached so that the node outlives the orchestrator
                self._proc = subprocess.Popen(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise NodeStartError(f"failed to launch {node_path}: {e}", self.node.node_id) from e

        self._wait_for_context()
        logger.info(f"Started node {self.node.node_id} with pid {self._proc.pid} at {self.node.uri}")

    def _wait_for_context(self) -> None:
        deadline = Deadline(self.config.node_start_timeout_s)
        while True:
            exit_code = self._proc.poll()
            if exit_code is not None:
                raise NodeStartError(
                    f"node process exited with code {exit_code} before it was ready, see "
                    f"{os.path.join(self.node.get_data_dir(), LOG_FILENAME)}",
                    self.node.node_id,
                )

            context = self._read_context()
            if context is not None and context.get("uri") and context.get("stakingAddress"):
                self.node.uri = context["uri"]
                self.node.staking_address = context["stakingAddress"]
                return

            if not deadline.wait(self.config.polling_interval_s):
                raise NodeStartError(
                    f"timed out after {self.config.node_start_timeout_s}s waiting for process context "
                    f"at {self.node.process_context_path}",
                    self.node.node_id,
                )

    def _pid(self) -> Optional[int]:
        if self._proc is not None and self._proc.poll() is None:
            return self._proc.pid
        context = self._read_context()
        return int(context["pid"]) if context else None

    def initiate_stop(self) -> None:
        pid = self._pid()
        if pid is None or not _process_is_running(pid):
            return
        try:
            psutil.Process(pid).terminate()
            logger.info(f"Sent SIGTERM to node {self.node.node_id} (pid {pid})")
        except psutil.NoSuchProcess:
            return
        except psutil.AccessDenied as e:
            raise NodeStopError(f"not permitted to stop pid {pid}: {e}", self.node.node_id) from e

    def wait_for_stopped(self, deadline: Deadline) -> None:
        pid = self._pid()
        while pid is not None:
            if self._proc is not None and self._proc.pid == pid:
                # Reap the child so that it doesn't linger as a zombie
                self._proc.poll()
            if not _process_is_running(pid):
                break
            if not deadline.wait(self.config.polling_interval_s):
                raise NodeStopError(f"timed out waiting for pid {pid} to exit", self.node.node_id)
        self._proc = None
        self.node.uri = ""
        self.node.staking_address = ""

    def is_healthy(self, deadline: Deadline) -> bool:
        self.read_state()
        if not self.node.is_running:
            raise NodeHealthError(f"node {self.node.node_id} is not running")
        return check_node_health(self.node.uri, deadline.timeout_for(self.config.request_timeout_s))
