import os
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
from kubernetes.client import V1PodStatus
from kubernetes.client.exceptions import ApiException

from tmpnet import flags as keys
from tmpnet import persistence
from tmpnet.config import OrchestratorConfig
from tmpnet.deadline import Deadline
from tmpnet.errors import NodeHealthError, NodeStartError, NodeStopError
from tmpnet.flags import FlagsMap
from tmpnet.runtime import new_runtime
from tmpnet.runtime.kube import KubeRuntime
from tmpnet.runtime.process import ProcessRuntime
from tmpnet.state import KubeRuntimeConfig, NodeRuntimeConfig, ProcessRuntimeConfig, new_nodes


class FakeCoreV1Api:
    """Pods are scheduled after `pending_reads` reads and deleted on request."""

    def __init__(self, pending_reads=1, phase="Running"):
        self.pods = {}
        self.pending_reads = pending_reads
        self.phase = phase
        self.deleted = []

    def list_namespace(self, limit=None):
        return []

    def create_namespaced_pod(self, namespace, body):
        if (namespace, body.metadata.name) in self.pods:
            raise ApiException(status=409, reason="AlreadyExists")
        body.status = V1PodStatus(phase="Pending")
        self.pods[(namespace, body.metadata.name)] = body
        return body

    def read_namespaced_pod(self, name, namespace):
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise ApiException(status=404, reason="NotFound")
        if self.pending_reads > 0:
            self.pending_reads -= 1
        else:
            pod.status = V1PodStatus(phase=self.phase, pod_ip="10.1.2.3" if self.phase == "Running" else None)
        return pod

    def delete_namespaced_pod(self, name, namespace):
        if self.pods.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="NotFound")
        self.deleted.append(name)


@pytest.fixture
def config():
    return OrchestratorConfig(node_start_timeout_s=2.0, polling_interval_s=0.01)


def kube_runtime(tmp_path, config, core):
    node = new_nodes(1)[0]
    node.network_uuid = "c0ffee"
    node.flags[keys.DATA_DIR] = str(tmp_path / node.node_id)
    node.runtime_config = NodeRuntimeConfig(kube=KubeRuntimeConfig(namespace="tmpnet-ci", image="node:ci"))
    runtime = KubeRuntime(node, config, core=core)
    flags = FlagsMap(node.flags)
    flags.set_defaults(runtime.runtime_flags())
    os.makedirs(node.get_data_dir(), exist_ok=True)
    persistence.write_node_flags(node, flags)
    return runtime


def test_start_creates_pod_and_waits_for_ip(tmp_path, config):
    core = FakeCoreV1Api(pending_reads=2)
    runtime = kube_runtime(tmp_path, config, core)

    runtime.start()

    assert runtime.node.uri == "http://10.1.2.3:9650"
    assert runtime.node.staking_address == "10.1.2.3:9651"
    pod = core.pods[("tmpnet-ci", runtime.pod_name)]
    assert pod.spec.containers[0].image == "node:ci"
    env = {var.name: var.value for var in pod.spec.containers[0].env}
    assert env["AVAGO_HTTP_HOST"] == "0.0.0.0"
    assert pod.metadata.labels["tmpnet.network_uuid"] == "c0ffee"


def test_failed_pod_fails_start(tmp_path, config):
    runtime = kube_runtime(tmp_path, config, FakeCoreV1Api(pending_reads=0, phase="Failed"))
    with pytest.raises(NodeStartError):
        runtime.start()


def test_existing_pod_fails_start(tmp_path, config):
    core = FakeCoreV1Api()
    runtime = kube_runtime(tmp_path, config, core)
    runtime.start()
    with pytest.raises(NodeStartError):
        runtime.start()


def test_stop_deletes_pod(tmp_path, config):
    core = FakeCoreV1Api(pending_reads=0)
    runtime = kube_runtime(tmp_path, config, core)
    runtime.start()

    runtime.initiate_stop()
    runtime.wait_for_stopped(Deadline(1))

    assert core.deleted == [runtime.pod_name]
    assert not runtime.node.is_running
    # Stopping a node without a pod is a no-op
    runtime.initiate_stop()

    with pytest.raises(NodeHealthError):
        runtime.is_healthy(Deadline(1))


def test_delete_failure_raises_stop_error(tmp_path, config):
    class Forbidden(FakeCoreV1Api):
        def delete_namespaced_pod(self, name, namespace):
            raise ApiException(status=403, reason="Forbidden")

    runtime = kube_runtime(tmp_path, config, Forbidden())
    with pytest.raises(NodeStopError):
        runtime.initiate_stop()


def test_runtime_selection(tmp_path, config):
    node = new_nodes(1)[0]
    node.flags[keys.DATA_DIR] = str(tmp_path / node.node_id)

    node.runtime_config = NodeRuntimeConfig(process=ProcessRuntimeConfig(node_path="/bin/node"))
    assert isinstance(new_runtime(node, config), ProcessRuntime)

    # Kube wins when both are configured
    node.runtime_config.kube = KubeRuntimeConfig()
    assert isinstance(new_runtime(node, config), KubeRuntime)
