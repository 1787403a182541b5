import base64
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from tmpnet import flags as keys
from tmpnet.errors import ConfigurationError
from tmpnet.flags import FlagComposer, FlagsMap
from tmpnet.genesis import new_test_genesis
from tmpnet.keys import new_private_keys
from tmpnet.state import Chain, Network, Subnet, new_ephemeral_node, new_nodes


def decode(value):
    return json.loads(base64.b64decode(value))


def new_network(node_count=2, **kwargs):
    nodes = new_nodes(node_count)
    genesis = new_test_genesis(88888, nodes, new_private_keys(1))
    return Network(uuid="flags", nodes=nodes, genesis=genesis, **kwargs)


def test_set_default_keeps_existing_value():
    flags = FlagsMap({"log-level": "debug"})
    flags.set_default("log-level", "info")
    flags.set_defaults({"log-level": "warn", "index-enabled": True})

    assert flags == {"log-level": "debug", "index-enabled": True}


def test_get_bool_accepts_strings():
    flags = FlagsMap({"a": "true", "b": "False", "c": False, "d": "maybe", "e": 1})

    assert flags.get_bool("a", False) is True
    assert flags.get_bool("b", True) is False
    assert flags.get_bool("c", True) is False
    assert flags.get_bool("missing", True) is True
    with pytest.raises(ConfigurationError):
        flags.get_bool("d", True)
    with pytest.raises(ConfigurationError):
        flags.get_string("e")


def test_compose_never_overwrites_node_flags():
    network = new_network(node_count=1, default_flags=FlagsMap({"log-level": "info", "index-enabled": False}))
    node = network.nodes[0]
    explicit = {
        keys.NETWORK_ID: "1234",
        keys.BOOTSTRAP_IDS: "NodeID-custom",
        keys.BOOTSTRAP_IPS: "10.0.0.1:9651",
        keys.GENESIS_FILE_CONTENT: "custom-genesis",
        keys.SYBIL_PROTECTION_ENABLED: True,
        "log-level": "debug",
    }
    node.flags.update(explicit)
    running_peer = new_nodes(1)[0]
    running_peer.staking_address = "127.0.0.1:9651"

    composed = FlagComposer(network, {"log-level": "warn", keys.HEALTH_CHECK_FREQ: "500ms"}).compose(node, [running_peer])

    for key, value in explicit.items():
        assert composed[key] == value
    # Network defaults take precedence over orchestrator defaults
    assert composed["index-enabled"] is False
    assert composed[keys.HEALTH_CHECK_FREQ] == "500ms"
    # The node's own flags are left untouched
    assert keys.HEALTH_CHECK_FREQ not in node.flags


def test_bootstrap_peers_exclude_self_ephemeral_and_stopped_nodes():
    network = new_network(node_count=3)
    target, running, stopped = network.nodes
    target.staking_address = "127.0.0.1:9001"
    running.staking_address = "127.0.0.1:9003"
    ephemeral = new_ephemeral_node()
    ephemeral.ensure_keys()
    ephemeral.staking_address = "127.0.0.1:9005"

    composed = FlagComposer(network).compose(target, [target, running, stopped, ephemeral])

    assert composed[keys.BOOTSTRAP_IDS] == running.node_id
    assert composed[keys.BOOTSTRAP_IPS] == "127.0.0.1:9003"
    assert composed[keys.NETWORK_ID] == "88888"


def test_single_node_network_disables_sybil_protection():
    single = new_network(node_count=1)
    composed = FlagComposer(single).compose(single.nodes[0], [])
    assert composed[keys.SYBIL_PROTECTION_ENABLED] is False

    pair = new_network(node_count=2)
    composed = FlagComposer(pair).compose(pair.nodes[0], [])
    assert keys.SYBIL_PROTECTION_ENABLED not in composed


def test_content_flags_are_base64_json():
    network = new_network(
        primary_subnet_config={"validatorOnly": False},
        primary_chain_configs={"C": FlagsMap({"log-level": "info"})},
    )
    created = Subnet(
        name="created",
        subnet_id="subnet-1",
        validator_ids=[network.nodes[0].node_id],
        config={"proposerMinBlockDelay": 0},
        chains=[Chain(vm_id="vm", chain_id="chain-1", config='{"log-level":"debug"}')],
    )
    pending = Subnet(name="pending", validator_ids=[network.nodes[0].node_id], config={"x": 1}, chains=[Chain(vm_id="vm")])
    network.subnets = [created, pending]

    composed = FlagComposer(network).compose(network.nodes[0], [])

    assert decode(composed[keys.GENESIS_FILE_CONTENT])["networkID"] == 88888
    subnet_configs = decode(composed[keys.SUBNET_CONFIG_CONTENT])
    assert subnet_configs == {
        keys.PRIMARY_NETWORK_ID: {"validatorOnly": False},
        "subnet-1": {"proposerMinBlockDelay": 0},
    }
    chain_configs = decode(composed[keys.CHAIN_CONFIG_CONTENT])
    assert set(chain_configs) == {"C", "chain-1"}
    assert decode(chain_configs["C"]["Config"]) == {"log-level": "info"}
    assert decode(chain_configs["chain-1"]["Config"]) == {"log-level": "debug"}


def test_empty_content_flags_are_omitted():
    network = Network(uuid="bare", network_id=1337, nodes=new_nodes(1))

    composed = FlagComposer(network).compose(network.nodes[0], [])

    assert composed[keys.NETWORK_ID] == "1337"
    for key in (keys.GENESIS_FILE_CONTENT, keys.SUBNET_CONFIG_CONTENT, keys.CHAIN_CONFIG_CONTENT):
        assert key not in composed
