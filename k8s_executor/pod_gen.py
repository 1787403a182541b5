"""Generate Kubernetes V1Pod objects for network nodes."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping

from kubernetes.client import (
    V1Container,
    V1ContainerPort,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1ResourceRequirements,
    V1Volume,
    V1VolumeMount,
)

# Prefix the node binary uses to read flags from the environment
ENV_PREFIX = "AVAGO_"
DATA_MOUNT_PATH = "/data"

# Flags that refer to paths on the orchestrator host and are meaningless in a pod
_HOST_ONLY_FLAGS = {"data-dir", "plugin-dir", "process-context-file"}


def pod_name_for_node(node_id: str) -> str:
    """Pod names must be valid DNS labels."""
    return node_id.lower().replace("_", "-")


def flag_to_env_name(key: str) -> str:
    return ENV_PREFIX + key.upper().replace("-", "_").replace(".", "_")


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flags_to_env(flags: Mapping[str, Any]) -> List[V1EnvVar]:
    """Convert node flags to environment variables, sorted for stable pod specs."""
    env = [
        V1EnvVar(name=flag_to_env_name(key), value=_env_value(value))
        for key, value in sorted(flags.items())
        if key not in _HOST_ONLY_FLAGS
    ]
    env.append(V1EnvVar(name=flag_to_env_name("data-dir"), value=DATA_MOUNT_PATH))
    return env


def _get_resource_requirements(cpu: str = "500m", memory: str = "1Gi") -> V1ResourceRequirements:
    """Requests sized for a test node; limits allow 2x for bursts during bootstrap."""
    return V1ResourceRequirements(
        requests={"cpu": cpu, "memory": memory},
        limits={"memory": "2Gi"},
    )


def generate_pod_for_node(
    node_id: str,
    flags: Mapping[str, Any],
    network_uuid: str,
    network_owner: str = "",
    namespace: str = "tmpnet",
    image: str = "avaplatform/avalanchego:latest",
    http_port: int = 9650,
    staking_port: int = 9651,
) -> V1Pod:
    """
    Generate a V1Pod that runs a node with the given flags.

    Args:
        node_id: Id of the node, used to name the pod
        flags: Composed flags of the node
        network_uuid: UUID of the network, used for labeling
        network_owner: Owner of the network, used for labeling
        namespace: Kubernetes namespace
        image: Node container image
        http_port: Port the node API listens on
        staking_port: Port the node accepts peer connections on

    Returns:
        V1Pod object ready for creation
    """
    labels: Dict[str, str] = {
        "app": "tmpnet-node",
        "tmpnet.network_uuid": network_uuid,
        "tmpnet.node_id": pod_name_for_node(node_id),
    }
    if network_owner:
        labels["tmpnet.network_owner"] = network_owner

    container = V1Container(
        name="node",
        image=image,
        image_pull_policy="IfNotPresent",
        resources=_get_resource_requirements(),
        env=flags_to_env(flags),
        ports=[
            V1ContainerPort(name="http", container_port=http_port),
            V1ContainerPort(name="staking", container_port=staking_port),
        ],
        volume_mounts=[V1VolumeMount(name="data", mount_path=DATA_MOUNT_PATH)],
    )

    pod_spec = V1PodSpec(
        containers=[container],
        volumes=[V1Volume(name="data", empty_dir=V1EmptyDirVolumeSource())],
        restart_policy="Never",
    )

    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=V1ObjectMeta(
            name=pod_name_for_node(node_id),
            namespace=namespace,
            labels=labels,
        ),
        spec=pod_spec,
    )
