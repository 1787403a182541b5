import os
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
import requests
from urllib3.exceptions import MaxRetryError

from fakes import FakeBackend
from tmpnet import defaults
from tmpnet import flags as keys
from tmpnet import persistence
from tmpnet.config import OrchestratorConfig
from tmpnet.deadline import Deadline
from tmpnet.errors import (
    InsufficientNodesError,
    KeyPoolExhaustedError,
    MissingValidatorsError,
    NetworkStopError,
    NodeStartError,
)
from tmpnet.flags import FlagsMap
from tmpnet.health import HealthMonitor
from tmpnet.network import (
    BootstrapPhase,
    NetworkController,
    bootstrap_new_network,
    get_reusable_network_path_for_owner,
    read_network,
    restart_network,
    stop_network,
)
from tmpnet.state import Chain, Network, NodeRuntimeConfig, ProcessRuntimeConfig, Subnet, new_default_network

API_URI = "http://127.0.0.1:9650"


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def config(tmp_path):
    return OrchestratorConfig(
        root_dir=tmp_path / "networks",
        pre_funded_key_count=3,
        health_check_interval_s=0.01,
        polling_interval_s=0.01,
        network_timeout_s=5.0,
    )


def new_controller(network, config, backend):
    return NetworkController(
        network,
        config,
        runtime_factory=backend.runtime_factory,
        provisioner_factory=backend.provisioner_factory,
    )


def created_controller(network, config, backend):
    controller = new_controller(network, config, backend)
    controller.ensure_default_config()
    controller.create()
    return controller


def bootstrapped(network, config, backend):
    return bootstrap_new_network(
        network,
        config,
        runtime_factory=backend.runtime_factory,
        provisioner_factory=backend.provisioner_factory,
    )


def network_state(network):
    return persistence.network_to_dict(network), [node.to_dict() for node in network.nodes]


def test_ensure_default_config_is_idempotent(config, backend, tmp_path):
    network = new_default_network("idempotent", node_count=2)
    network.primary_chain_configs = {"C": FlagsMap({"log-level": "debug"})}
    controller = new_controller(network, config, backend)

    plugin_dir = str(tmp_path / "plugins")
    controller.ensure_default_config(node_path="/usr/local/bin/node", plugin_dir=plugin_dir)
    first = network_state(network)
    controller.ensure_default_config(node_path="/usr/local/bin/node", plugin_dir=plugin_dir)

    assert network_state(network) == first
    assert len(network.pre_funded_keys) == config.pre_funded_key_count
    # Caller-supplied chain config wins over the built-in defaults
    assert network.primary_chain_configs["C"]["log-level"] == "debug"
    assert network.primary_chain_configs["C"]["warp-api-enabled"] is True
    assert network.default_flags[keys.PLUGIN_DIR] == plugin_dir
    for node in network.nodes:
        assert node.node_id.startswith("NodeID-")
        assert node.runtime_config.node_path == "/usr/local/bin/node"
        assert node.network_uuid == network.uuid
    assert controller.bootstrap_phase == BootstrapPhase.CONFIGURED


def test_create_writes_network_with_test_genesis(config, backend):
    network = new_default_network("create", node_count=2)
    controller = created_controller(network, config, backend)

    assert controller.bootstrap_phase == BootstrapPhase.CREATED
    assert Path(network.dir).parent == config.root_dir.resolve()
    assert network.dir.endswith("-create")
    assert os.path.isfile(os.path.join(network.dir, defaults.CONFIG_FILENAME))
    assert network.get_network_id() == defaults.DEFAULT_NETWORK_ID
    assert [s.node_id for s in network.genesis.initial_stakers] == [n.node_id for n in network.nodes]
    for node in network.nodes:
        assert node.get_data_dir() == os.path.join(network.dir, node.node_id)
        assert os.path.isfile(node.config_path)


def test_bootstrap_requires_nodes(config, backend):
    controller = new_controller(Network(uuid="empty"), config, backend)
    with pytest.raises(InsufficientNodesError):
        controller.bootstrap(Deadline(1))


def test_bootstrap_without_subnets_starts_all_nodes(config, backend):
    network = new_default_network("plain", node_count=2)
    controller = bootstrapped(network, config, backend)

    node_ids = [n.node_id for n in network.nodes]
    assert backend.events == [("start", node_ids[0]), ("start", node_ids[1])]
    assert backend.rpc_events() == []
    assert controller.bootstrap_phase == BootstrapPhase.ALL_STARTED
    assert sorted(backend.health_queries) == sorted(node_ids)
    assert all(node.is_running for node in network.nodes)

    # The second node bootstraps from the first
    second_flags = backend.started(node_ids[1])[0]
    assert second_flags[keys.BOOTSTRAP_IDS] == node_ids[0]
    assert second_flags[keys.BOOTSTRAP_IPS] == network.nodes[0].staking_address
    assert second_flags[keys.NETWORK_ID] == str(defaults.DEFAULT_NETWORK_ID)


def test_bootstrap_with_subnet_uses_bootstrap_node(config, backend):
    network = new_default_network("subnets", node_count=5)
    nodes = network.nodes
    validators = [n.node_id for n in nodes[:3]]
    network.subnets.append(
        Subnet(name="xsvm", validator_ids=validators, chains=[Chain(vm_id="xsvm-vm", config='{"log-level":"debug"}')])
    )
    controller = bootstrapped(network, config, backend)

    subnet = network.subnets[0]
    chain = subnet.chains[0]
    bootstrap_id = nodes[0].node_id
    assert backend.events == (
        [("start", bootstrap_id), ("create_subnet", subnet.subnet_id)]
        + [("add_validator", node_id) for node_id in validators]
        + [("create_chain", chain.chain_id), ("stop", bootstrap_id), ("start", bootstrap_id)]
        + [("start", n.node_id) for n in nodes[1:]]
    )

    first_start, second_start = backend.started(bootstrap_id)
    assert first_start[keys.SYBIL_PROTECTION_ENABLED] is False
    assert keys.SYBIL_PROTECTION_ENABLED not in second_start
    assert keys.SYBIL_PROTECTION_ENABLED not in nodes[0].flags
    assert second_start[keys.TRACK_SUBNETS] == subnet.subnet_id
    # Restarted before any peer is running
    assert second_start[keys.BOOTSTRAP_IDS] == ""

    for node in nodes[1:]:
        assert keys.SYBIL_PROTECTION_ENABLED not in backend.started(node.node_id)[0]
    assert backend.started(nodes[1].node_id)[0][keys.BOOTSTRAP_IDS] == bootstrap_id
    assert keys.TRACK_SUBNETS not in nodes[4].flags

    # Health of the bootstrap node alone, then once per node of the whole roster
    assert backend.health_queries[0] == bootstrap_id
    assert sorted(backend.health_queries[1:]) == sorted(n.node_id for n in nodes)
    assert controller.bootstrap_phase == BootstrapPhase.ALL_STARTED
    assert len(network.pre_funded_keys) == config.pre_funded_key_count - 1


def test_bootstrap_single_node_with_subnet_restarts_and_waits(config, backend):
    network = new_default_network("single", node_count=1)
    node = network.nodes[0]
    network.subnets.append(Subnet(name="solo", validator_ids=[node.node_id], chains=[Chain(vm_id="vm")]))
    bootstrapped(network, config, backend)

    subnet = network.subnets[0]
    assert [e[0] for e in backend.events] == [
        "start", "create_subnet", "add_validator", "create_chain", "stop", "start",
    ]
    assert backend.health_queries == [node.node_id, node.node_id]
    # A lone staker needs sybil protection disabled to become healthy
    for flags in backend.started(node.node_id):
        assert flags[keys.SYBIL_PROTECTION_ENABLED] is False
    assert backend.started(node.node_id)[1][keys.TRACK_SUBNETS] == subnet.subnet_id


def test_bootstrap_keeps_explicitly_disabled_sybil_protection(config, backend):
    network = new_default_network("sybil-off", node_count=2)
    network.nodes[0].flags[keys.SYBIL_PROTECTION_ENABLED] = False
    network.subnets.append(Subnet(name="s", validator_ids=[network.nodes[0].node_id]))
    bootstrapped(network, config, backend)

    assert backend.started(network.nodes[0].node_id)[1][keys.SYBIL_PROTECTION_ENABLED] is False


def test_create_subnets_exhausted_key_pool(config, backend):
    config.pre_funded_key_count = 1
    network = new_default_network("rerun", node_count=2)
    controller = created_controller(network, config, backend)
    validator = network.nodes[0].node_id
    network.subnets = [Subnet(name="first", validator_ids=[validator]), Subnet(name="second", validator_ids=[validator])]

    with pytest.raises(KeyPoolExhaustedError):
        controller.create_subnets(Deadline(5), API_URI, restart_required=False)

    assert [e[0] for e in backend.rpc_events()] == ["create_subnet"]
    assert network.subnets[0].subnet_id
    assert network.subnets[1].subnet_id == ""
    assert network.pre_funded_keys == []
    # The key held by the first subnet is gone from the pool on disk too
    restored = persistence.read_network(network.dir)
    assert restored.pre_funded_keys == []
    assert restored.subnets[0].owning_key == network.subnets[0].owning_key


def test_create_subnets_allocates_distinct_keys(config, backend):
    network = new_default_network("keys", node_count=2)
    controller = created_controller(network, config, backend)
    pool = list(network.pre_funded_keys)
    validator = network.nodes[1].node_id
    network.subnets = [Subnet(name="a", validator_ids=[validator]), Subnet(name="b", validator_ids=[validator])]

    controller.create_subnets(Deadline(5), API_URI, restart_required=False)

    # Allocated from the end of the pool
    assert network.subnets[0].owning_key == pool[-1]
    assert network.subnets[1].owning_key == pool[-2]
    assert network.pre_funded_keys == pool[:-2]
    assert len(persistence.read_network(network.dir).pre_funded_keys) == len(pool) - 2
    assert controller.tracked_subnets_for_node(validator) == ",".join(s.subnet_id for s in network.subnets)
    assert controller.tracked_subnets_for_node(network.nodes[0].node_id) == ""


def test_create_subnets_is_at_most_once(config, backend):
    network = new_default_network("once", node_count=2)
    controller = created_controller(network, config, backend)
    network.subnets = [Subnet(name="a", validator_ids=[network.nodes[0].node_id])]

    controller.create_subnets(Deadline(5), API_URI, restart_required=False)
    events = list(backend.events)
    keys_left = len(network.pre_funded_keys)
    controller.create_subnets(Deadline(5), API_URI, restart_required=False)

    assert backend.events == events
    assert len(network.pre_funded_keys) == keys_left


def test_create_subnets_requires_validators(config, backend):
    network = new_default_network("no-validators", node_count=2)
    controller = created_controller(network, config, backend)
    network.subnets = [Subnet(name="empty")]

    with pytest.raises(MissingValidatorsError):
        controller.create_subnets(Deadline(5), API_URI)
    assert backend.rpc_events() == []


def test_create_subnets_restarts_reconfigured_nodes(config, backend):
    network = new_default_network("restart", node_count=2)
    controller = bootstrapped(network, config, backend)
    validator = network.nodes[1].node_id
    network.subnets.append(Subnet(name="late", validator_ids=[validator], chains=[Chain(vm_id="vm", config="{}")]))
    del backend.events[:]

    controller.create_subnets(Deadline(5), network.nodes[0].uri, restart_required=True)

    # Tracked-subnet restart precedes validator assignment, chain config restart follows chain creation
    assert [e[0] for e in backend.events] == [
        "create_subnet", "stop", "start", "add_validator", "create_chain", "stop", "start",
    ]
    assert all(node_id == validator for action, node_id in backend.events if action in ("stop", "start"))


def test_validator_activation_is_awaited(config, backend):
    backend.activation_delay_queries = 3
    network = new_default_network("activation", node_count=2)
    controller = created_controller(network, config, backend)
    network.subnets = [Subnet(name="a", validator_ids=[network.nodes[0].node_id], chains=[Chain(vm_id="vm")])]

    controller.create_subnets(Deadline(5), API_URI, restart_required=False)

    assert backend.validator_queries == 4
    assert network.subnets[0].chains[0].chain_id


def test_failed_bootstrap_stops_started_nodes(config, backend):
    network = new_default_network("failing", node_count=3)
    backend.fail_start.add(network.nodes[1].node_id)

    with pytest.raises(NodeStartError) as exc_info:
        bootstrapped(network, config, backend)

    assert exc_info.value.node_id == network.nodes[1].node_id
    assert backend.running == {}
    assert ("stop", network.nodes[0].node_id) in backend.events
    # Left in place for inspection
    assert os.path.isfile(os.path.join(network.dir, defaults.CONFIG_FILENAME))


def test_stop_collects_every_failure(config, backend):
    network = new_default_network("stop", node_count=3)
    controller = bootstrapped(network, config, backend)
    failing = network.nodes[1].node_id
    backend.fail_stop.add(failing)

    with pytest.raises(NetworkStopError) as exc_info:
        controller.stop(Deadline(5))

    assert len(exc_info.value.errors) == 1
    assert failing in str(exc_info.value.errors[0])
    assert set(backend.running) == {failing}


def test_ephemeral_node_is_not_in_roster_but_is_stopped(config, backend):
    network = new_default_network("ephemeral", node_count=2)
    controller = bootstrapped(network, config, backend)

    node = controller.add_ephemeral_node(Deadline(5), {"log-level": "debug"})

    assert network.get_node(node.node_id) is None
    assert node.is_running
    assert persistence.read_node(node.get_data_dir()).is_ephemeral
    assert sorted(backend.started(node.node_id)[0][keys.BOOTSTRAP_IDS].split(",")) == sorted(
        n.node_id for n in network.nodes
    )
    _, ids = controller.get_bootstrap_ips_and_ids()
    assert node.node_id not in ids

    controller.stop(Deadline(5))
    assert ("stop", node.node_id) in backend.events
    assert backend.running == {}
    # The node handed out by add_ephemeral_node reflects the stop
    assert not node.is_running
    assert controller.controller_for(node).node is node


def test_check_bootstrap_is_possible(config, backend, monkeypatch):
    monkeypatch.delenv(defaults.SKIP_BOOTSTRAP_CHECKS_ENV_NAME, raising=False)
    network = new_default_network("check", node_count=2)
    network.subnets.append(Subnet(name="s", validator_ids=[network.nodes[0].node_id]))
    controller = bootstrapped(network, config, backend)

    node = controller.check_bootstrap_is_possible(Deadline(5))

    assert backend.started(node.node_id)[0][keys.TRACK_SUBNETS] == network.subnets[0].subnet_id
    assert ("stop", node.node_id) in backend.events
    assert not node.is_running

    monkeypatch.setenv(defaults.SKIP_BOOTSTRAP_CHECKS_ENV_NAME, "1")
    assert controller.check_bootstrap_is_possible(Deadline(5)) is None


def test_bootstrap_ips_and_ids_skip_node(config, backend):
    network = new_default_network("peers", node_count=3)
    controller = bootstrapped(network, config, backend)

    ips, ids = controller.get_bootstrap_ips_and_ids(network.nodes[0])

    assert sorted(ids) == sorted(n.node_id for n in network.nodes[1:])
    assert sorted(ips) == sorted(n.staking_address for n in network.nodes[1:])


def test_read_network_resumes_lifecycle(config, backend):
    network = new_default_network("resume", node_count=2)
    network.subnets.append(Subnet(name="s", validator_ids=[network.nodes[0].node_id]))
    bootstrapped(network, config, backend)

    controller = read_network(network.dir, config, runtime_factory=backend.runtime_factory)

    restored = controller.network
    assert restored.uuid == network.uuid
    assert [n.node_id for n in restored.nodes] == [n.node_id for n in network.nodes]
    assert restored.subnets[0].subnet_id == network.subnets[0].subnet_id
    assert restored.subnets[0].owning_key == network.subnets[0].owning_key
    assert restored.genesis.to_dict() == network.genesis.to_dict()
    assert all(n.is_running for n in restored.nodes)
    assert controller.bootstrap_phase == BootstrapPhase.ALL_STARTED

    del backend.events[:]
    restart_network(network.dir, config, runtime_factory=backend.runtime_factory)
    node_ids = [n.node_id for n in network.nodes]
    assert backend.events == [
        ("stop", node_ids[0]), ("start", node_ids[0]), ("stop", node_ids[1]), ("start", node_ids[1]),
    ]


def test_link_for_reuse(config, backend):
    network = new_default_network("reuse", node_count=1)
    controller = created_controller(network, config, backend)

    assert get_reusable_network_path_for_owner("reuse", config) is None
    link = controller.link_for_reuse()

    assert link.is_symlink()
    assert get_reusable_network_path_for_owner("reuse", config) == network.dir


def test_failed_bootstrap_stops_nodes_on_client_errors(config, backend):
    network = new_default_network("unreachable", node_count=3)
    backend.start_exceptions[network.nodes[1].node_id] = MaxRetryError(None, "/api/v1/namespaces", "connection refused")

    with pytest.raises(NodeStartError) as exc_info:
        bootstrapped(network, config, backend)

    assert isinstance(exc_info.value.__cause__, MaxRetryError)
    assert backend.running == {}
    assert ("stop", network.nodes[0].node_id) in backend.events


def test_failed_health_wait_stops_started_nodes(config, backend):
    class UnreachableMonitor(HealthMonitor):
        def wait_for_healthy(self, deadline, nodes):
            raise requests.ConnectionError("connection reset by peer")

    network = new_default_network("reset", node_count=2)

    with pytest.raises(requests.ConnectionError):
        bootstrap_new_network(
            network,
            config,
            runtime_factory=backend.runtime_factory,
            provisioner_factory=backend.provisioner_factory,
            health_monitor=UnreachableMonitor(),
        )

    assert len(backend.started(network.nodes[1].node_id)) == 1
    assert backend.running == {}


def test_stop_network_from_dir(config, backend):
    network = new_default_network("teardown", node_count=2)
    controller = bootstrapped(network, config, backend)
    ephemeral = controller.add_ephemeral_node(Deadline(5))

    stop_network(network.dir, config, runtime_factory=backend.runtime_factory)

    assert backend.running == {}
    stopped = [node_id for action, node_id in backend.events if action == "stop"]
    assert sorted(stopped) == sorted([n.node_id for n in network.nodes] + [ephemeral.node_id])


def test_incompatible_vm_binaries_do_not_block_start(config, backend, monkeypatch, caplog):
    network = new_default_network("vm-mismatch", node_count=1)
    network.default_runtime_config = NodeRuntimeConfig(process=ProcessRuntimeConfig(node_path="/opt/node"))
    checked = []

    def mismatched(subnets, node_path, plugin_dir):
        checked.append(node_path)
        return ["vm incompatible"]

    monkeypatch.setattr("tmpnet.network.check_vm_binaries", mismatched)

    with caplog.at_level("WARNING", logger="tmpnet.network"):
        bootstrapped(network, config, backend)

    assert checked == ["/opt/node"]
    assert network.nodes[0].is_running
    assert "1 incompatible VM binaries" in caplog.text
