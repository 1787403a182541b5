"""Node health queries and timeout-bounded health convergence."""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

import requests

from tmpnet import defaults
from tmpnet.deadline import Deadline
from tmpnet.errors import HealthTimeoutError, NodeHealthError

logger = logging.getLogger(__name__)

HEALTH_PATH = "/ext/health"


class HealthCheckable(Protocol):
    node_id: str

    def is_healthy(self, deadline: Deadline) -> bool:
        ...


def _is_connection_refused(exc: BaseException) -> bool:
    """Search the chain of wrapped exceptions for a refused connection."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        pending.extend(arg for arg in getattr(current, "args", ()) if isinstance(arg, BaseException))
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            pending.append(reason)
        pending.append(current.__cause__)
        pending.append(current.__context__)
    return False


def check_node_health(uri: str, timeout_s: float, session: requests.Session = None) -> bool:
    """
    Query the health endpoint of a node.

    Args:
        uri: Base URI of the node API
        timeout_s: Request timeout in seconds
        session: Optional session to issue the request with

    Returns:
        True if the node reports healthy, False if it reports unhealthy or
        is not yet accepting connections

    Raises:
        NodeHealthError: If the query fails for any other reason
    """
    url = f"{uri.rstrip('/')}{HEALTH_PATH}"
    http = session or requests
    try:
        response = http.get(url, timeout=timeout_s)
    except requests.ConnectionError as e:
        if _is_connection_refused(e):
            # Not yet listening
            return False
        raise NodeHealthError(f"failed to query health of {url}: {e}") from e
    except requests.RequestException as e:
        raise NodeHealthError(f"failed to query health of {url}: {e}") from e

    # The node responds with 503 and the same body when unhealthy
    if response.status_code not in (200, 503):
        raise NodeHealthError(f"unexpected status {response.status_code} from {url}")
    try:
        reply = response.json()
    except ValueError as e:
        raise NodeHealthError(f"invalid health reply from {url}: {e}") from e
    if not isinstance(reply, dict) or "healthy" not in reply:
        raise NodeHealthError(f"health reply from {url} is missing the healthy field")
    return bool(reply["healthy"])


class HealthMonitor:
    """Waits for a set of nodes to report healthy."""

    def __init__(self, interval_s: float = defaults.NETWORK_HEALTH_CHECK_INTERVAL_S) -> None:
        self.interval_s = interval_s

    def wait_for_healthy(self, deadline: Deadline, nodes: Iterable[HealthCheckable]) -> None:
        """
        Wait until every node reports healthy.

        Each polling round queries only the nodes that have not yet
        reported healthy. A negative result is retried on the next round.

        Args:
            deadline: Deadline bounding the wait
            nodes: Nodes to wait for

        Raises:
            NodeHealthError: If a health query fails
            HealthTimeoutError: If the deadline expires first
        """
        unhealthy = {node.node_id: node for node in nodes}
        while True:
            for node_id, node in list(unhealthy.items()):
                if node.is_healthy(deadline):
                    del unhealthy[node_id]
                    logger.info(f"Node {node_id} is healthy")

            if not unhealthy:
                return

            if not deadline.wait(self.interval_s):
                raise HealthTimeoutError(sorted(unhealthy))

    def wait_for_node_healthy(self, deadline: Deadline, node: HealthCheckable) -> None:
        logger.info(f"Waiting for node {node.node_id} to report healthy")
        self.wait_for_healthy(deadline, [node])
