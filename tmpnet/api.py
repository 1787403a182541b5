from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Flask, jsonify

from tmpnet.deadline import Deadline
from tmpnet.errors import ConfigurationError, DeadlineExceededError, NetworkStopError, TmpnetError
from tmpnet.network import NetworkController

logger = logging.getLogger(__name__)


def create_app(controller: NetworkController) -> Flask:
	app = Flask(__name__)
	# Store the controller in app config so it's accessible in all endpoints
	app.config['network_controller'] = controller

	def operation_deadline() -> Deadline:
		return Deadline(controller.config.network_timeout_s)

	@app.errorhandler(TmpnetError)
	def handle_error(e: TmpnetError) -> Any:
		logger.error(f"Request failed: {e}")
		status = 500
		if isinstance(e, ConfigurationError):
			status = 400
		elif isinstance(e, DeadlineExceededError):
			status = 504
		body: Dict[str, Any] = {"error": str(e), "type": type(e).__name__}
		if isinstance(e, NetworkStopError):
			body["errors"] = [str(err) for err in e.errors]
		return jsonify(body), status

	@app.get("/snapshot")
	def snapshot() -> Any:
		return jsonify(controller.snapshot())

	@app.get("/health")
	def health() -> Any:
		# A single query per node, no waiting
		deadline = Deadline(controller.config.request_timeout_s)
		nodes: Dict[str, Any] = {}
		for node in controller.network.nodes:
			try:
				nodes[node.node_id] = {"healthy": controller.controller_for(node).is_healthy(deadline)}
			except TmpnetError as e:
				nodes[node.node_id] = {"healthy": False, "error": str(e)}
		healthy = bool(nodes) and all(n["healthy"] for n in nodes.values())
		return jsonify({"healthy": healthy, "nodes": nodes}), 200 if healthy else 503

	@app.post("/stop")
	def stop() -> Any:
		controller.stop(operation_deadline())
		return jsonify({"status": "stopped", "network": controller.network.uuid})

	@app.post("/restart")
	def restart() -> Any:
		controller.restart(operation_deadline())
		return jsonify({"status": "restarted", "network": controller.network.uuid})

	@app.post("/nodes/<node_id>/restart")
	def restart_node(node_id: str) -> Any:
		node = controller.network.get_node(node_id)
		if node is None:
			return jsonify({"error": f"unknown node {node_id}"}), 404
		controller.restart_node(operation_deadline(), node)
		return jsonify({"status": "restarted", "node_id": node_id, "uri": node.uri})

	return app
