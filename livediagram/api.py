from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request, stream_with_context

from livediagram.aggregator import LiveAggregator
from livediagram.errors import DiagramNotFound, InvalidTopology
from livediagram.stream import snapshot_events
from livediagram.topology import Topology, TopologyStore

logger = logging.getLogger(__name__)


def bearer_identity(header: Optional[str]) -> Optional[str]:
	"""Opaque bearer token from an ``Authorization`` header, if any."""
	if not header:
		return None
	scheme, _, token = header.strip().partition(" ")
	if scheme.lower() != "bearer" or not token.strip():
		return None
	return token.strip()


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_app(store: TopologyStore, aggregator: LiveAggregator) -> Flask:
	app = Flask(__name__)
	# Shared objects live in app config so every endpoint (and worker hooks) can reach them
	app.config['topology_store'] = store
	app.config['live_aggregator'] = aggregator

	def _identity() -> Optional[str]:
		return bearer_identity(request.headers.get("Authorization"))

	@app.get("/health")
	def health() -> Any:
		return jsonify({"status": "ok"})

	@app.get("/api/live/diagrams")
	def list_diagrams() -> Any:
		return jsonify({"diagrams": store.list()})

	@app.get("/api/live/diagrams/<diagram_id>")
	def get_diagram(diagram_id: str) -> Any:
		topology = store.get(diagram_id)
		if topology is None:
			return jsonify({"error": f"diagram not found: {diagram_id}"}), 404
		return jsonify({"diagram": topology.to_dict()})

	@app.post("/api/live/diagrams")
	def save_diagram() -> Any:
		body = request.get_json(silent=True)
		if not isinstance(body, dict):
			return jsonify({"error": "request body must be a JSON object"}), 400
		if not body.get("id") or not body.get("version"):
			return jsonify({"error": "missing 'id' or 'version' field"}), 400

		now = _now_iso()
		body = dict(body)
		body["updatedAt"] = now
		body.setdefault("createdAt", now)
		try:
			topology = Topology.from_dict(body)
		except InvalidTopology as e:
			return jsonify({"error": str(e)}), 400

		store.save(topology)
		logger.info(f"Saved diagram {topology.id} (version {topology.version})")
		return jsonify({"ok": True, "id": topology.id}), 201

	@app.delete("/api/live/diagrams/<diagram_id>")
	def delete_diagram(diagram_id: str) -> Any:
		if not store.delete(diagram_id):
			return jsonify({"error": f"diagram not found: {diagram_id}"}), 404
		aggregator.forget(diagram_id)
		logger.info(f"Deleted diagram {diagram_id}")
		return jsonify({"ok": True, "id": diagram_id})

	@app.get("/api/live/snapshot")
	def snapshot() -> Any:
		diagram_id = request.args.get("diagramId")
		if not diagram_id:
			return jsonify({"error": "missing 'diagramId' query parameter"}), 400
		try:
			snap = aggregator.build_snapshot(diagram_id, _identity())
		except DiagramNotFound as e:
			return jsonify({"error": str(e)}), 404
		return jsonify(snap.to_dict())

	@app.get("/api/live/stream")
	def stream() -> Any:
		diagram_id = request.args.get("diagramId")
		if not diagram_id:
			return jsonify({"error": "missing 'diagramId' query parameter"}), 400
		if store.get(diagram_id) is None:
			return jsonify({"error": f"diagram not found: {diagram_id}"}), 404

		events = snapshot_events(aggregator, diagram_id, _identity())
		return Response(
			stream_with_context(events),
			mimetype="text/event-stream",
			headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
		)

	@app.get("/api/live/status")
	def status() -> Any:
		return jsonify(aggregator.status())

	return app
