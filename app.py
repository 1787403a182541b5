from __future__ import annotations

import os
import logging

from tmpnet import defaults
from tmpnet.api import create_app
from tmpnet.config import load_config
from tmpnet.errors import ConfigurationError
from tmpnet.network import bootstrap_new_network, get_reusable_network_path_for_owner, read_network
from tmpnet.state import new_default_network

logger = logging.getLogger(__name__)


def load_controller(config):
    """
    Attach to an existing network or bootstrap a new one.

    An existing network is found via TMPNET_NETWORK_DIR or the reuse link
    of TMPNET_OWNER. Otherwise a new network is bootstrapped with the node
    binary at TMPNET_NODE_PATH.
    """
    owner = os.getenv("TMPNET_OWNER", "tmpnet-api")

    network_dir = os.getenv(defaults.NETWORK_DIR_ENV_NAME) or get_reusable_network_path_for_owner(owner, config)
    if network_dir:
        logger.info(f"Attaching to network in {network_dir}")
        return read_network(network_dir, config)

    node_path = os.getenv("TMPNET_NODE_PATH", "")
    if not node_path:
        raise ConfigurationError(
            f"set {defaults.NETWORK_DIR_ENV_NAME} to attach to a network or TMPNET_NODE_PATH to bootstrap one"
        )
    node_count = int(os.getenv("TMPNET_NODE_COUNT", str(defaults.DEFAULT_NODE_COUNT)))
    network = new_default_network(owner, node_count)
    controller = bootstrap_new_network(
        network,
        config,
        node_path=node_path,
        plugin_dir=os.getenv("TMPNET_PLUGIN_DIR", ""),
    )
    controller.link_for_reuse()
    return controller


def build_app():
	"""Build the Flask app for the configured network."""
	config = load_config()
	controller = load_controller(config)
	return create_app(controller)


if __name__ == "__main__":
	logging.basicConfig(
		level=os.getenv("TMPNET_LOG_LEVEL", "INFO"),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	app = build_app()
	app.run(host="0.0.0.0", port=int(os.getenv("TMPNET_API_PORT", "8080")))
