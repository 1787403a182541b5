from __future__ import annotations

import base64
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tmpnet import defaults
from tmpnet import flags as keys
from tmpnet.flags import FlagsMap
from tmpnet.genesis import Genesis
from tmpnet.keys import PrivateKey, new_staking_cert_and_key, node_id_from_cert


@dataclass
class ProcessRuntimeConfig:
        """Runs a node as a local child process."""
        node_path: str = ""
        # Attempt to keep the API port of a node across restarts
        reuse_dynamic_ports: bool = False


@dataclass
class KubeRuntimeConfig:
        """Runs a node as a pod in a kubernetes cluster."""
        kubeconfig: str = ""
        context: str = ""
        namespace: str = defaults.DEFAULT_KUBE_NAMESPACE
        image: str = defaults.DEFAULT_KUBE_IMAGE


@dataclass
class NodeRuntimeConfig:
        """Selects and configures the runtime backend of a node. Kube wins if both are set."""
        process: Optional[ProcessRuntimeConfig] = None
        kube: Optional[KubeRuntimeConfig] = None

        @property
        def node_path(self) -> str:
                return self.process.node_path if self.process else ""

        def copy(self) -> "NodeRuntimeConfig":
                return NodeRuntimeConfig.from_dict(self.to_dict())

        def to_dict(self) -> Dict[str, Any]:
                data: Dict[str, Any] = {}
                if self.process is not None:
                        data["process"] = {
                                "nodePath": self.process.node_path,
                                "reuseDynamicPorts": self.process.reuse_dynamic_ports,
                        }
                if self.kube is not None:
                        data["kube"] = {
                                "kubeconfig": self.kube.kubeconfig,
                                "context": self.kube.context,
                                "namespace": self.kube.namespace,
                                "image": self.kube.image,
                        }
                return data

        @classmethod
        def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NodeRuntimeConfig":
                data = data or {}
                process = None
                kube = None
                if data.get("process") is not None:
                        p = data["process"]
                        process = ProcessRuntimeConfig(
                                node_path=p.get("nodePath", ""),
                                reuse_dynamic_ports=bool(p.get("reuseDynamicPorts", False)),
                        )
                if data.get("kube") is not None:
                        k = data["kube"]
                        kube = KubeRuntimeConfig(
                                kubeconfig=k.get("kubeconfig", ""),
                                context=k.get("context", ""),
                                namespace=k.get("namespace", defaults.DEFAULT_KUBE_NAMESPACE),
                                image=k.get("image", defaults.DEFAULT_KUBE_IMAGE),
                        )
                return cls(process=process, kube=kube)


@dataclass
class Node:
        """A member of a temporary network."""
        flags: FlagsMap = field(default_factory=FlagsMap)
        node_id: str = ""
        runtime_config: Optional[NodeRuntimeConfig] = None
        # Ephemeral nodes are started ad hoc and never join the network roster
        is_ephemeral: bool = False
        network_uuid: str = ""
        network_owner: str = ""
        # Only set while the node is running
        uri: str = ""
        staking_address: str = ""

        def __post_init__(self) -> None:
                if not isinstance(self.flags, FlagsMap):
                        self.flags = FlagsMap(self.flags or {})

        def ensure_keys(self) -> None:
                """Ensure the node has staking key material and a node id derived from it."""
                if not self.flags.get(keys.STAKING_TLS_CERT_CONTENT):
                        key_pem, cert_pem = new_staking_cert_and_key()
                        self.flags[keys.STAKING_TLS_KEY_CONTENT] = base64.b64encode(key_pem).decode("ascii")
                        self.flags[keys.STAKING_TLS_CERT_CONTENT] = base64.b64encode(cert_pem).decode("ascii")
                if not self.node_id:
                        cert_pem = base64.b64decode(self.flags.get_string(keys.STAKING_TLS_CERT_CONTENT))
                        self.node_id = node_id_from_cert(cert_pem)

        def get_data_dir(self) -> str:
                return self.flags.get_string(keys.DATA_DIR)

        @property
        def config_path(self) -> str:
                return os.path.join(self.get_data_dir(), defaults.CONFIG_FILENAME)

        @property
        def flags_path(self) -> str:
                return os.path.join(self.get_data_dir(), defaults.FLAGS_FILENAME)

        @property
        def process_context_path(self) -> str:
                return os.path.join(self.get_data_dir(), defaults.PROCESS_CONTEXT_FILENAME)

        @property
        def is_running(self) -> bool:
                return bool(self.uri)

        def to_dict(self) -> Dict[str, Any]:
                return {
                        "nodeID": self.node_id,
                        "flags": dict(self.flags),
                        "runtimeConfig": self.runtime_config.to_dict() if self.runtime_config else None,
                        "isEphemeral": self.is_ephemeral,
                        "networkUUID": self.network_uuid,
                        "networkOwner": self.network_owner,
                }

        @classmethod
        def from_dict(cls, data: Dict[str, Any]) -> "Node":
                runtime_config = data.get("runtimeConfig")
                return cls(
                        flags=FlagsMap(data.get("flags") or {}),
                        node_id=data.get("nodeID", ""),
                        runtime_config=NodeRuntimeConfig.from_dict(runtime_config) if runtime_config is not None else None,
                        is_ephemeral=bool(data.get("isEphemeral", False)),
                        network_uuid=data.get("networkUUID", ""),
                        network_owner=data.get("networkOwner", ""),
                )


def new_nodes(count: int) -> List[Node]:
        """Create nodes with keys so that their ids are known up front."""
        nodes = []
        for _ in range(count):
                node = Node()
                node.ensure_keys()
                nodes.append(node)
        return nodes


def new_ephemeral_node(flags: Optional[Dict[str, Any]] = None) -> Node:
        return Node(flags=FlagsMap(flags or {}), is_ephemeral=True)


# Arguments that make a VM binary print {"rpcchainvm": N} and exit
DEFAULT_VM_VERSION_ARGS = ("--version-json",)


@dataclass
class Chain:
        vm_id: str
        # JSON configuration passed to the chain
        config: str = ""
        genesis: bytes = b""
        # Empty until the chain is created
        chain_id: str = ""
        version_args: List[str] = field(default_factory=lambda: list(DEFAULT_VM_VERSION_ARGS))

        def to_dict(self) -> Dict[str, Any]:
                return {
                        "vmID": self.vm_id,
                        "config": self.config,
                        "genesis": base64.b64encode(self.genesis).decode("ascii"),
                        "chainID": self.chain_id,
                        "versionArgs": list(self.version_args),
                }

        @classmethod
        def from_dict(cls, data: Dict[str, Any]) -> "Chain":
                return cls(
                        vm_id=data["vmID"],
                        config=data.get("config", ""),
                        genesis=base64.b64decode(data.get("genesis") or ""),
                        chain_id=data.get("chainID", ""),
                        version_args=list(data.get("versionArgs", DEFAULT_VM_VERSION_ARGS) or []),
                )


@dataclass
class Subnet:
        name: str
        validator_ids: List[str] = field(default_factory=list)
        chains: List[Chain] = field(default_factory=list)
        config: Optional[Dict[str, Any]] = None
        # Allocated from the network's pre-funded keys on creation if not set
        owning_key: Optional[PrivateKey] = None
        # Empty until the subnet is created
        subnet_id: str = ""

        def has_chain_config(self) -> bool:
                return any(chain.config for chain in self.chains)

        def to_dict(self) -> Dict[str, Any]:
                return {
                        "name": self.name,
                        "subnetID": self.subnet_id,
                        "validatorIDs": list(self.validator_ids),
                        "owningKey": self.owning_key.to_string() if self.owning_key else None,
                        "config": self.config,
                        "chains": [chain.to_dict() for chain in self.chains],
                }

        @classmethod
        def from_dict(cls, data: Dict[str, Any]) -> "Subnet":
                owning_key = data.get("owningKey")
                return cls(
                        name=data["name"],
                        subnet_id=data.get("subnetID", ""),
                        validator_ids=list(data.get("validatorIDs") or []),
                        owning_key=PrivateKey.from_string(owning_key) if owning_key else None,
                        config=data.get("config"),
                        chains=[Chain.from_dict(c) for c in data.get("chains") or []],
                )


@dataclass
class Network:
        """Declarative description of a temporary network."""
        # Correlates the network across tooling; unrelated to the ledger's network id
        uuid: str = ""
        owner: str = ""
        dir: str = ""
        # If zero, the network id comes from the genesis
        network_id: int = 0
        genesis: Optional[Genesis] = None
        primary_subnet_config: Optional[Dict[str, Any]] = None
        primary_chain_configs: Dict[str, FlagsMap] = field(default_factory=dict)
        default_flags: FlagsMap = field(default_factory=FlagsMap)
        default_runtime_config: NodeRuntimeConfig = field(default_factory=NodeRuntimeConfig)
        pre_funded_keys: List[PrivateKey] = field(default_factory=list)
        nodes: List[Node] = field(default_factory=list)
        subnets: List[Subnet] = field(default_factory=list)

        def get_network_id(self) -> int:
                """Effective network id: the genesis id if nonzero, otherwise network_id."""
                if self.genesis is not None and self.genesis.network_id > 0:
                        return self.genesis.network_id
                return self.network_id

        def get_plugin_dir(self) -> str:
                return self.default_flags.get_string(keys.PLUGIN_DIR)

        def get_subnet_dir(self) -> str:
                return os.path.join(self.dir, defaults.SUBNETS_DIRNAME)

        def get_subnet(self, name: str) -> Optional[Subnet]:
                for subnet in self.subnets:
                        if subnet.name == name:
                                return subnet
                return None

        def get_node(self, node_id: str) -> Optional[Node]:
                for node in self.nodes:
                        if node.node_id == node_id:
                                return node
                return None


def new_default_network(owner: str, node_count: int = defaults.DEFAULT_NODE_COUNT) -> Network:
        return Network(uuid=str(uuid.uuid4()), owner=owner, nodes=new_nodes(node_count))
