"""Runs a node as a pod in a kubernetes cluster."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from k8s_executor.pod_gen import generate_pod_for_node, pod_name_for_node
from tmpnet import defaults
from tmpnet import flags as keys
from tmpnet import persistence
from tmpnet.deadline import Deadline
from tmpnet.errors import ConfigurationError, NodeHealthError, NodeStartError, NodeStopError
from tmpnet.health import check_node_health
from tmpnet.runtime.base import NodeRuntime

logger = logging.getLogger(__name__)


def load_core_api(kubeconfig: str = "", context: str = "") -> client.CoreV1Api:
    """
    Initialize a CoreV1Api client.

    Args:
        kubeconfig: Path to a kubeconfig file (uses the default if empty)
        context: Kubeconfig context (uses the current context if empty)

    Raises:
        ConfigurationError: If no usable configuration is found
    """
    try:
        api_client = config.new_client_from_config(
            config_file=kubeconfig or None,
            context=context or None,
        )
        logger.info(f"Loaded kubeconfig {kubeconfig or '(default)'} context {context or '(current)'}")
        return client.CoreV1Api(api_client)
    except config.ConfigException as e:
        if kubeconfig:
            raise ConfigurationError(f"failed to load kubeconfig {kubeconfig}: {e}") from e
        # Fall back to in-cluster config when running inside a pod
        try:
            config.load_incluster_config()
        except config.ConfigException as incluster_err:
            raise ConfigurationError(f"no kubernetes configuration available: {incluster_err}") from e
        logger.info("Loaded in-cluster Kubernetes config")
        return client.CoreV1Api()


def check_cluster_running(core: client.CoreV1Api) -> None:
    """
    Verify the cluster API is reachable.

    Raises:
        ConfigurationError: If the cluster can't be queried
    """
    try:
        core.list_namespace(limit=1)
    except ApiException as e:
        raise ConfigurationError(f"kubernetes cluster is not reachable: {e.status} {e.reason}") from e


class KubeRuntime(NodeRuntime):
    """
    Runs the node in a pod created from its composed flags.

    The node API is addressed at the pod IP, so the orchestrator must be
    able to route to pod IPs (e.g. run inside the cluster).
    """

    def __init__(self, node, config, core: Optional[client.CoreV1Api] = None) -> None:
        super().__init__(node, config)
        kube_config = node.runtime_config.kube
        self.namespace = kube_config.namespace
        self.image = kube_config.image
        self.pod_name = pod_name_for_node(node.node_id)
        self._kubeconfig = kube_config.kubeconfig
        self._context = kube_config.context
        self._core = core

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = load_core_api(self._kubeconfig, self._context)
        return self._core

    def runtime_flags(self) -> Dict[str, Any]:
        return {
            keys.HTTP_HOST: "0.0.0.0",
            keys.HTTP_PORT: defaults.DEFAULT_NODE_HTTP_PORT,
            keys.STAKING_PORT: defaults.DEFAULT_NODE_STAKING_PORT,
        }

    def _read_pod(self) -> Optional[client.V1Pod]:
        try:
            return self.core.read_namespaced_pod(self.pod_name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def _set_addresses(self, pod: Optional[client.V1Pod]) -> bool:
        if pod is None or pod.status is None or pod.status.phase != "Running" or not pod.status.pod_ip:
            self.node.uri = ""
            self.node.staking_address = ""
            return False
        pod_ip = pod.status.pod_ip
        self.node.uri = f"http://{pod_ip}:{defaults.DEFAULT_NODE_HTTP_PORT}"
        self.node.staking_address = f"{pod_ip}:{defaults.DEFAULT_NODE_STAKING_PORT}"
        return True

    def read_state(self) -> None:
        try:
            self._set_addresses(self._read_pod())
        except ApiException as e:
            logger.warning(f"Failed to read pod {self.namespace}/{self.pod_name}: {e.status} {e.reason}")
            self._set_addresses(None)

    def start(self) -> None:
        check_cluster_running(self.core)

        flags = persistence.read_node_flags(self.node)
        pod = generate_pod_for_node(
            node_id=self.node.node_id,
            flags=flags,
            network_uuid=self.node.network_uuid,
            network_owner=self.node.network_owner,
            namespace=self.namespace,
            image=self.image,
        )
        try:
            self.core.create_namespaced_pod(namespace=self.namespace, body=pod)
            logger.info(f"Created pod {self.namespace}/{self.pod_name} for node {self.node.node_id}")
        except ApiException as e:
            raise NodeStartError(
                f"failed to create pod {self.namespace}/{self.pod_name}: {e.status} {e.reason}",
                self.node.node_id,
            ) from e

        deadline = Deadline(self.config.node_start_timeout_s)
        while True:
            try:
                pod = self._read_pod()
            except ApiException as e:
                raise NodeStartError(f"failed to read pod {self.pod_name}: {e.status} {e.reason}", self.node.node_id) from e
            if pod is not None and pod.status is not None and pod.status.phase in ("Failed", "Succeeded"):
                raise NodeStartError(f"pod {self.pod_name} exited with phase {pod.status.phase}", self.node.node_id)
            if self._set_addresses(pod):
                logger.info(f"Node {self.node.node_id} is running at {self.node.uri}")
                return
            if not deadline.wait(self.config.polling_interval_s):
                raise NodeStartError(f"timed out waiting for pod {self.pod_name} to be assigned an IP", self.node.node_id)

    def initiate_stop(self) -> None:
        try:
            self.core.delete_namespaced_pod(self.pod_name, self.namespace)
            logger.info(f"Deleting pod {self.namespace}/{self.pod_name}")
        except ApiException as e:
            if e.status == 404:
                return
            raise NodeStopError(
                f"failed to delete pod {self.namespace}/{self.pod_name}: {e.status} {e.reason}",
                self.node.node_id,
            ) from e

    def wait_for_stopped(self, deadline: Deadline) -> None:
        while True:
            try:
                pod = self._read_pod()
            except ApiException as e:
                raise NodeStopError(f"failed to read pod {self.pod_name}: {e.status} {e.reason}", self.node.node_id) from e
            if pod is None:
                break
            if not deadline.wait(self.config.polling_interval_s):
                raise NodeStopError(f"timed out waiting for pod {self.pod_name} to be deleted", self.node.node_id)
        self.node.uri = ""
        self.node.staking_address = ""

    def is_healthy(self, deadline: Deadline) -> bool:
        self.read_state()
        if not self.node.is_running:
            raise NodeHealthError(f"pod {self.namespace}/{self.pod_name} of node {self.node.node_id} is not running")
        return check_node_health(self.node.uri, deadline.timeout_for(self.config.request_timeout_s))
