"""
Network orchestration: configuration defaulting, the staged bootstrap
protocol, subnet setup and lifecycle operations on the whole roster.
"""

from __future__ import annotations

import enum
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from tmpnet import defaults
from tmpnet import flags as keys
from tmpnet import persistence
from tmpnet.config import OrchestratorConfig
from tmpnet.deadline import Deadline
from tmpnet.errors import (
    ConfigurationError,
    InsufficientNodesError,
    KeyPoolExhaustedError,
    MissingValidatorsError,
    NetworkStopError,
    NodeStartError,
    NodeStopError,
)
from tmpnet.flags import FlagComposer, FlagsMap, bootstrap_ips_and_ids
from tmpnet.genesis import new_test_genesis
from tmpnet.health import HealthMonitor
from tmpnet.keys import new_private_keys
from tmpnet.node import NodeController
from tmpnet.runtime.base import NodeRuntime, new_runtime
from tmpnet.state import Network, Node, ProcessRuntimeConfig, Subnet, new_ephemeral_node
from tmpnet.subnet import SubnetProvisioner
from tmpnet.vm_check import check_vm_binaries

logger = logging.getLogger(__name__)

RuntimeFactory = Callable[[Node, OrchestratorConfig], NodeRuntime]
ProvisionerFactory = Callable[[str], SubnetProvisioner]


class BootstrapPhase(enum.Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    CREATED = "created"
    SINGLE_NODE_UP = "single_node_up"
    SUBNETS_CREATED = "subnets_created"
    VALIDATORS_ASSIGNED = "validators_assigned"
    CHAINS_CREATED = "chains_created"
    RESTARTED = "restarted"
    ALL_STARTED = "all_started"


class NetworkController:
    """
    Drives a network description to a running cluster and back.

    All mutation of the network's nodes and subnets happens through this
    controller, from a single thread.
    """

    def __init__(
        self,
        network: Network,
        config: Optional[OrchestratorConfig] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
        provisioner_factory: Optional[ProvisionerFactory] = None,
        health_monitor: Optional[HealthMonitor] = None,
    ) -> None:
        """
        Args:
            network: Network to orchestrate
            config: Orchestrator settings (defaults if None)
            runtime_factory: Creates the runtime backend of a node
            provisioner_factory: Creates a subnet provisioner for a node API URI
            health_monitor: Monitor used to wait for node health
        """
        self.network = network
        self.config = config or OrchestratorConfig()
        self.runtime_factory = runtime_factory or new_runtime
        self.provisioner_factory = provisioner_factory or self._new_provisioner
        self.health = health_monitor or HealthMonitor(self.config.health_check_interval_s)
        self.bootstrap_phase = BootstrapPhase.UNCONFIGURED
        self._bootstrapping = False
        self._controllers: Dict[str, NodeController] = {}

    def _new_provisioner(self, api_uri: str) -> SubnetProvisioner:
        return SubnetProvisioner(
            api_uri,
            request_timeout_s=self.config.request_timeout_s,
            polling_interval_s=self.config.polling_interval_s,
        )

    def _set_phase(self, phase: BootstrapPhase) -> None:
        self.bootstrap_phase = phase
        logger.info(f"Network {self.network.uuid} reached phase {phase.value}")

    def _advance_bootstrap(self, phase: BootstrapPhase) -> None:
        if self._bootstrapping:
            self._set_phase(phase)

    def _known_node(self, disk_node: Node) -> Node:
        """The in-memory node with the id of a node read from disk, if there is one."""
        node = self.network.get_node(disk_node.node_id)
        if node is not None:
            return node
        # Ephemeral nodes are only known through their controllers
        controller = self._controllers.get(disk_node.node_id)
        return controller.node if controller is not None else disk_node

    def controller_for(self, node: Node) -> NodeController:
        """The controller of a node, created on first use."""
        controller = self._controllers.get(node.node_id)
        if controller is None or controller.node is not node:
            controller = NodeController(node, self.runtime_factory(node, self.config))
            self._controllers[node.node_id] = controller
        return controller

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def ensure_default_config(self, node_path: str = "", plugin_dir: str = "") -> None:
        """
        Fill in any configuration the network does not specify.

        Safe to call repeatedly; only the first call changes anything.

        Args:
            node_path: Path of the node binary used by process runtimes
            plugin_dir: Directory holding VM plugin binaries
        """
        network = self.network
        if not network.uuid:
            network.uuid = str(uuid.uuid4())

        if network.default_flags is None:
            network.default_flags = FlagsMap()
        if network.primary_chain_configs is None:
            network.primary_chain_configs = {}

        if plugin_dir:
            network.default_flags.set_default(keys.PLUGIN_DIR, plugin_dir)

        # A network with a genesis funds its own keys
        if network.genesis is None and not network.pre_funded_keys:
            network.pre_funded_keys = new_private_keys(self.config.pre_funded_key_count)

        for alias, chain_flags in defaults.default_chain_configs().items():
            existing = network.primary_chain_configs.get(alias)
            if existing is None:
                network.primary_chain_configs[alias] = chain_flags
            else:
                existing.set_defaults(chain_flags)

        runtime_config = network.default_runtime_config
        if node_path and runtime_config.kube is None:
            if runtime_config.process is None:
                runtime_config.process = ProcessRuntimeConfig(node_path=node_path)
            elif not runtime_config.process.node_path:
                runtime_config.process.node_path = node_path

        for node in network.nodes:
            self.ensure_node_config(node)

        if self.bootstrap_phase == BootstrapPhase.UNCONFIGURED:
            self._set_phase(BootstrapPhase.CONFIGURED)

    def ensure_node_config(self, node: Node) -> None:
        """Ensure a node has labels, keys, a data dir and a runtime config."""
        network = self.network
        node.network_uuid = network.uuid
        node.network_owner = network.owner
        node.ensure_keys()

        # The data dir can only be defaulted once the network has a dir
        if network.dir:
            node.flags.set_default(keys.DATA_DIR, os.path.join(network.dir, node.node_id))

        default_runtime = network.default_runtime_config
        runtime_config = node.runtime_config
        if runtime_config is None or (runtime_config.process is None and runtime_config.kube is None):
            node.runtime_config = default_runtime.copy()
        elif runtime_config.process is not None and not runtime_config.process.node_path:
            runtime_config.process.node_path = default_runtime.node_path

    def create(self, root_dir: Optional[str] = None) -> None:
        """
        Allocate the network dir and write the initial configuration to it.

        Args:
            root_dir: Dir to create the network dir in (the configured root if None)
        """
        network = self.network
        root = Path(root_dir) if root_dir else self.config.root_dir
        root.mkdir(parents=True, exist_ok=True)

        dirname = datetime.now().strftime("%Y%m%d-%H%M%S.%f")
        if network.owner:
            dirname = f"{dirname}-{network.owner}"
        network_dir = persistence.to_canonical_dir(str(root / dirname))
        os.makedirs(network_dir, exist_ok=True)
        network.dir = network_dir

        plugin_dir = network.get_plugin_dir()
        if plugin_dir:
            os.makedirs(plugin_dir, exist_ok=True)

        for node in network.nodes:
            self.ensure_node_config(node)

        if network.network_id == 0 and network.genesis is None:
            network.genesis = new_test_genesis(self.config.default_network_id, network.nodes, network.pre_funded_keys)

        persistence.write_network(network)
        self._set_phase(BootstrapPhase.CREATED)
        logger.info(f"Created network {network.uuid} in {network_dir}")

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------
    def bootstrap(self, deadline: Deadline) -> None:
        """
        Start the network, creating any declared subnets and chains.

        Subnet creation requires a running validator, but a network of
        several validators can't report healthy until a quorum of them is
        up. Node 0 is therefore started alone with sybil protection
        disabled, used to create the subnets, and then restarted with its
        original configuration before the remaining nodes are started.

        Raises:
            InsufficientNodesError: If the network has no nodes
        """
        network = self.network
        if not network.nodes:
            raise InsufficientNodesError()

        self._bootstrapping = True
        try:
            if not network.subnets:
                logger.info(f"Starting all {len(network.nodes)} nodes of network {network.uuid}")
                self.start_nodes(deadline, *network.nodes)
                self._set_phase(BootstrapPhase.ALL_STARTED)
                return

            bootstrap_node = network.nodes[0]
            # The existing value must be read before it is overwritten
            existing_sybil_protection = bootstrap_node.flags.get_bool(keys.SYBIL_PROTECTION_ENABLED, True)
            re_enable_sybil_protection = False
            if len(network.nodes) > 1:
                re_enable_sybil_protection = existing_sybil_protection
                bootstrap_node.flags[keys.SYBIL_PROTECTION_ENABLED] = False

            logger.info(f"Starting bootstrap node {bootstrap_node.node_id}")
            self.start_nodes(deadline, bootstrap_node)
            self._set_phase(BootstrapPhase.SINGLE_NODE_UP)

            # The bootstrap node is restarted below in any case
            self.create_subnets(deadline, bootstrap_node.uri, restart_required=False)

            if re_enable_sybil_protection:
                logger.info(f"Re-enabling sybil protection for bootstrap node {bootstrap_node.node_id}")
                del bootstrap_node.flags[keys.SYBIL_PROTECTION_ENABLED]

            if len(network.nodes) == 1:
                # No peers to wait for, so a restart that waits for health is safe
                self.restart_node(deadline, bootstrap_node)
                self._set_phase(BootstrapPhase.RESTARTED)
                self._set_phase(BootstrapPhase.ALL_STARTED)
                return

            self.restart_bootstrap_node(deadline, bootstrap_node)
            self._set_phase(BootstrapPhase.RESTARTED)

            logger.info(f"Starting remaining {len(network.nodes) - 1} nodes")
            self.start_nodes(deadline, *network.nodes[1:])
            self._set_phase(BootstrapPhase.ALL_STARTED)
        finally:
            self._bootstrapping = False

    # ------------------------------------------------------------------
    # Node lifecycle
    # ------------------------------------------------------------------
    def _read_running_roster(self) -> List[Node]:
        """Non-ephemeral nodes on disk, with runtime state refreshed."""
        nodes = []
        for disk_node in persistence.read_nodes(self.network.dir, include_ephemeral=False):
            node = self._known_node(disk_node)
            self.controller_for(node).refresh()
            nodes.append(node)
        return nodes

    def get_bootstrap_ips_and_ids(self, skipped_node: Optional[Node] = None) -> Tuple[List[str], List[str]]:
        """Staking addresses and ids of running roster nodes, excluding skipped_node."""
        return bootstrap_ips_and_ids(self._read_running_roster(), skipped=skipped_node)

    def compose_flags(self, node: Node) -> FlagsMap:
        composer = FlagComposer(self.network, self.config.tmpnet_flags)
        return composer.compose(node, self._read_running_roster())

    def start_nodes(self, deadline: Deadline, *nodes: Node) -> None:
        """
        Start the nodes and wait for them to report healthy.

        Starts are issued one after another without waiting for health in
        between. If the batch excludes the bootstrap node, the health of
        the whole roster is awaited.
        """
        if not nodes:
            raise InsufficientNodesError()

        for node in nodes:
            self.start_node(deadline, node)

        nodes_to_wait_for = list(nodes)
        roster = self.network.nodes
        if roster and all(node.node_id != roster[0].node_id for node in nodes):
            nodes_to_wait_for = list(roster)

        logger.info(f"Waiting for {len(nodes_to_wait_for)} nodes to report healthy")
        self.health.wait_for_healthy(deadline, [self.controller_for(node) for node in nodes_to_wait_for])

        uris = ", ".join(f"{node.node_id}={node.uri}" for node in nodes_to_wait_for)
        logger.info(f"Started network in {self.network.dir}: {uris}")

    def start_node(self, deadline: Deadline, node: Node) -> None:
        """
        Start a single node without waiting for it to become healthy.

        Raises:
            NodeStartError: If the node fails to start; a best-effort stop
                is attempted first
        """
        self.ensure_node_config(node)
        controller = self.controller_for(node)
        controller.write_config()

        runtime_config = node.runtime_config
        if runtime_config is not None and runtime_config.process is not None:
            mismatches = check_vm_binaries(self.network.subnets, runtime_config.node_path, self.network.get_plugin_dir())
            if mismatches:
                logger.warning(f"Starting node {node.node_id} with {len(mismatches)} incompatible VM binaries")

        controller.write_flags(self.compose_flags(node))

        try:
            controller.start()
        except Exception as e:
            # Backends may raise client errors that are not TmpnetErrors
            logger.error(f"Failed to start node {node.node_id}: {e}")
            try:
                controller.stop(deadline)
            except Exception as stop_err:
                raise NodeStartError(
                    f"failed to start node {node.node_id}: {e}; failed to stop it afterwards: {stop_err}",
                    node.node_id,
                ) from e
            raise NodeStartError(f"failed to start node {node.node_id}: {e}", node.node_id) from e

    def restart_node(self, deadline: Deadline, node: Node) -> None:
        """Stop the node, start it with recomposed flags and wait for it to report healthy."""
        controller = self.controller_for(node)
        controller.save_api_port()
        logger.info(f"Restarting node {node.node_id}")
        controller.stop(deadline)
        self.start_node(deadline, node)
        controller.wait_for_healthy(deadline, self.health)

    def restart_bootstrap_node(self, deadline: Deadline, node: Node) -> None:
        """
        Stop the node and start it again without waiting for health.

        A validator restarted with sybil protection enabled can't report
        healthy until its peers are running.
        """
        controller = self.controller_for(node)
        controller.save_api_port()
        logger.info(f"Restarting bootstrap node {node.node_id}")
        controller.stop(deadline)
        self.start_node(deadline, node)

    def restart(self, deadline: Deadline) -> None:
        """Restart all roster nodes one at a time."""
        logger.info(f"Restarting network {self.network.uuid} in {self.network.dir}")
        for node in self.network.nodes:
            self.restart_node(deadline, node)

    def stop(self, deadline: Deadline) -> None:
        """
        Stop every node on disk, ephemeral ones included.

        Raises:
            NetworkStopError: Carrying every per-node failure
        """
        nodes = [self._known_node(disk_node) for disk_node in persistence.read_nodes(self.network.dir, include_ephemeral=True)]

        errors: List[Exception] = []
        stopping: List[NodeController] = []
        for node in nodes:
            try:
                controller = self.controller_for(node)
                controller.initiate_stop()
            except Exception as e:
                errors.append(NodeStopError(f"failed to stop node {node.node_id}: {e}", node.node_id))
                continue
            stopping.append(controller)

        for controller in stopping:
            try:
                controller.wait_for_stopped(deadline)
            except Exception as e:
                errors.append(NodeStopError(f"failed to wait for node {controller.node_id} to stop: {e}", controller.node_id))

        if errors:
            raise NetworkStopError(errors)
        logger.info(f"Stopped network {self.network.uuid} in {self.network.dir}")

    def wait_for_healthy(self, deadline: Deadline) -> None:
        self.health.wait_for_healthy(deadline, [self.controller_for(node) for node in self.network.nodes])

    # ------------------------------------------------------------------
    # Subnets
    # ------------------------------------------------------------------
    def tracked_subnets_for_node(self, node_id: str) -> str:
        """Comma-separated ids of the created subnets the node validates."""
        return ",".join(
            subnet.subnet_id
            for subnet in self.network.subnets
            if subnet.subnet_id and node_id in subnet.validator_ids
        )

    def _allocate_owning_key(self, subnet: Subnet) -> None:
        # Keys are taken from the end so that the first keys stay available to callers
        if not self.network.pre_funded_keys:
            raise KeyPoolExhaustedError(subnet.name)
        subnet.owning_key = self.network.pre_funded_keys.pop()

    def create_subnets(self, deadline: Deadline, api_uri: str, restart_required: bool = True) -> None:
        """
        Create subnets that have not yet been created, add their
        validators and create their chains.

        Args:
            deadline: Deadline bounding every wait
            api_uri: URI of the running node used to issue transactions
            restart_required: Whether nodes are restarted to pick up new
                configuration; if False the caller must restart them

        Raises:
            MissingValidatorsError: If a subnet declares no validators
            KeyPoolExhaustedError: If an owning key is needed and none remain
        """
        network = self.network
        provisioner = self.provisioner_factory(api_uri)

        created: List[Subnet] = []
        for subnet in network.subnets:
            if not subnet.validator_ids:
                raise MissingValidatorsError(subnet.name)
            if subnet.subnet_id:
                continue
            if subnet.owning_key is None:
                self._allocate_owning_key(subnet)
                # The reduced pool must be on disk before the key is used
                persistence.write_network(network)
            provisioner.create(subnet)
            persistence.write_subnet(subnet, network.get_subnet_dir())
            created.append(subnet)

        if not created:
            return

        self._advance_bootstrap(BootstrapPhase.SUBNETS_CREATED)

        reconfigured: List[Node] = []
        for node in network.nodes:
            tracked_subnets = self.tracked_subnets_for_node(node.node_id)
            if node.flags.get(keys.TRACK_SUBNETS, "") == tracked_subnets:
                continue
            node.flags[keys.TRACK_SUBNETS] = tracked_subnets
            persistence.write_node(node)
            reconfigured.append(node)

        if restart_required:
            for node in reconfigured:
                self.controller_for(node).refresh()
                if node.is_running:
                    self.restart_node(deadline, node)

        for subnet in created:
            validator_nodes = [node for node in network.nodes if node.node_id in subnet.validator_ids]
            provisioner.add_validators(subnet, validator_nodes)
        self._advance_bootstrap(BootstrapPhase.VALIDATORS_ASSIGNED)

        validators_to_restart: List[str] = []
        for subnet in created:
            # Chain creation assumes the subnet is validated
            provisioner.wait_for_active_validators(deadline, subnet)
            provisioner.create_chains(subnet)
            persistence.write_subnet(subnet, network.get_subnet_dir())
            if subnet.has_chain_config():
                validators_to_restart.extend(v for v in subnet.validator_ids if v not in validators_to_restart)
        self._advance_bootstrap(BootstrapPhase.CHAINS_CREATED)

        if not restart_required or not validators_to_restart:
            return

        logger.info(f"Restarting {len(validators_to_restart)} validators to apply chain configuration")
        for node_id in validators_to_restart:
            node = network.get_node(node_id)
            if node is None:
                raise ConfigurationError(f"validator {node_id} is not a node of the network")
            self.restart_node(deadline, node)

    # ------------------------------------------------------------------
    # Ephemeral nodes and reuse
    # ------------------------------------------------------------------
    def add_ephemeral_node(self, deadline: Deadline, flags: Optional[Dict[str, Any]] = None) -> Node:
        """
        Start a node that is not part of the roster and wait for it to report healthy.

        The node is written to the network dir so that stopping the
        network also stops it.
        """
        node = new_ephemeral_node(flags)
        self.start_node(deadline, node)
        self.controller_for(node).wait_for_healthy(deadline, self.health)
        logger.info(f"Started ephemeral node {node.node_id} at {node.uri}")
        return node

    def check_bootstrap_is_possible(self, deadline: Deadline) -> Optional[Node]:
        """
        Verify that a new node can bootstrap from the running network.

        An ephemeral node tracking every subnet is started and must report
        healthy, then the roster must still be healthy. The ephemeral node
        is stopped afterwards.

        Returns:
            The ephemeral node, or None if the check is disabled via the environment
        """
        if os.getenv(defaults.SKIP_BOOTSTRAP_CHECKS_ENV_NAME):
            logger.info(f"Skipping bootstrap check since {defaults.SKIP_BOOTSTRAP_CHECKS_ENV_NAME} is set")
            return None

        subnet_ids = [subnet.subnet_id for subnet in self.network.subnets if subnet.subnet_id]
        node = self.add_ephemeral_node(deadline, {keys.TRACK_SUBNETS: ",".join(subnet_ids)})
        try:
            self.wait_for_healthy(deadline)
        finally:
            self.controller_for(node).stop(deadline)
        return node

    def link_for_reuse(self) -> Path:
        """Point the owner's reuse symlink at this network's dir."""
        if not self.network.owner:
            raise ConfigurationError("a network must have an owner to be linked for reuse")
        link = self.config.reusable_network_path(self.network.owner)
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(self.network.dir, target_is_directory=True)
        logger.info(f"Linked {link} to network {self.network.uuid}")
        return link

    def snapshot(self) -> Dict[str, Any]:
        network = self.network
        return {
            "uuid": network.uuid,
            "owner": network.owner,
            "dir": network.dir,
            "network_id": network.get_network_id(),
            "bootstrap_phase": self.bootstrap_phase.value,
            "pre_funded_keys": len(network.pre_funded_keys),
            "nodes": [
                {
                    "node_id": node.node_id,
                    "uri": node.uri,
                    "staking_address": node.staking_address,
                    "running": node.is_running,
                }
                for node in network.nodes
            ],
            "subnets": [
                {
                    "name": subnet.name,
                    "subnet_id": subnet.subnet_id,
                    "validator_ids": list(subnet.validator_ids),
                    "chains": [{"vm_id": c.vm_id, "chain_id": c.chain_id} for c in subnet.chains],
                }
                for subnet in network.subnets
            ],
        }


def bootstrap_new_network(
    network: Network,
    config: Optional[OrchestratorConfig] = None,
    node_path: str = "",
    plugin_dir: str = "",
    root_dir: Optional[str] = None,
    deadline: Optional[Deadline] = None,
    **controller_kwargs: Any,
) -> NetworkController:
    """
    Configure, create and bootstrap a new network.

    If bootstrap fails, nodes that were started are stopped and the
    network dir is left in place for inspection.

    Args:
        network: Network to bootstrap; must have at least one node
        config: Orchestrator settings
        node_path: Path of the node binary
        plugin_dir: Directory holding VM plugin binaries
        root_dir: Dir to create the network dir in
        deadline: Deadline for bootstrap (the configured network timeout if None)
        **controller_kwargs: Passed to NetworkController

    Returns:
        The controller of the running network
    """
    if not network.nodes:
        raise InsufficientNodesError()

    controller = NetworkController(network, config, **controller_kwargs)
    controller.ensure_default_config(node_path, plugin_dir)
    controller.create(root_dir)

    deadline = deadline or Deadline(controller.config.network_timeout_s)
    try:
        controller.bootstrap(deadline)
    except Exception as e:
        logger.error(f"Failed to bootstrap network {network.uuid}, stopping it: {e}")
        try:
            # The bootstrap deadline may have expired
            controller.stop(Deadline(controller.config.network_timeout_s))
        except Exception as stop_err:
            logger.error(f"Failed to stop network {network.uuid} after bootstrap failure: {stop_err}")
        raise
    return controller


def read_network(network_dir: str, config: Optional[OrchestratorConfig] = None, **controller_kwargs: Any) -> NetworkController:
    """Read a network from disk and refresh the runtime state of its nodes."""
    network = persistence.read_network(network_dir)
    controller = NetworkController(network, config, **controller_kwargs)
    for node in network.nodes:
        controller.controller_for(node).refresh()
    # Everything on disk has been configured and created
    controller.bootstrap_phase = BootstrapPhase.CREATED
    if network.nodes and all(node.is_running for node in network.nodes):
        controller.bootstrap_phase = BootstrapPhase.ALL_STARTED
    return controller


def stop_network(network_dir: str, config: Optional[OrchestratorConfig] = None, **controller_kwargs: Any) -> None:
    controller = read_network(network_dir, config, **controller_kwargs)
    controller.stop(Deadline(controller.config.network_timeout_s))


def restart_network(network_dir: str, config: Optional[OrchestratorConfig] = None, **controller_kwargs: Any) -> NetworkController:
    controller = read_network(network_dir, config, **controller_kwargs)
    controller.restart(Deadline(controller.config.network_timeout_s))
    return controller


def get_reusable_network_path_for_owner(owner: str, config: Optional[OrchestratorConfig] = None) -> Optional[str]:
    """
    Path of the network last linked for reuse by the owner.

    Returns:
        The canonical network dir, or None if no network is linked
    """
    config = config or OrchestratorConfig()
    link = config.reusable_network_path(owner)
    if not link.is_symlink() and not link.exists():
        return None
    network_dir = persistence.to_canonical_dir(str(link))
    if not os.path.isfile(os.path.join(network_dir, defaults.CONFIG_FILENAME)):
        logger.warning(f"Reuse link {link} does not point to a network")
        return None
    return network_dir
