"""Gunicorn configuration for serving the network control API.

Run with: gunicorn -c gunicorn_config.py "app:build_app()"
"""
import logging
import os

from tmpnet import defaults

# Gunicorn config variables
bind = f"0.0.0.0:{os.getenv('TMPNET_API_PORT', '8080')}"
# Nodes are owned by a single controller, so only one worker may serve it
workers = 1
worker_class = "sync"
# Restarts wait for the whole network to report healthy
timeout = int(float(os.getenv("TMPNET_NETWORK_TIMEOUT_S", str(defaults.DEFAULT_NETWORK_TIMEOUT_S)))) + 30
preload_app = True  # Attach to or bootstrap the network once, in the master

logger = logging.getLogger("gunicorn.error")


def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    controller = worker.wsgi.config.get("network_controller")
    if controller is None:
        logger.warning(f"[Worker {worker.pid}] No network controller found in app.config")
        return
    network = controller.network
    logger.info(
        f"[Worker {worker.pid}] Serving network {network.uuid} in {network.dir} "
        f"with {len(network.nodes)} nodes"
    )
