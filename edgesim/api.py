from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from edgesim.errors import (
	AlreadyExists,
	AlreadyRunning,
	InvalidRange,
	NotConfigured,
	NotFound,
	PersistenceFailure,
)
from edgesim.manager import SimulationManager
from edgesim.state import HeartbeatData, parse_timestamp

logger = logging.getLogger(__name__)

_TRUE = ("1", "true", "yes", "on")


def _body() -> Dict[str, Any]:
	body = request.get_json(force=True, silent=True)
	if body is None:
		return {}
	if not isinstance(body, dict):
		raise ValueError("request body must be a JSON object")
	return body


def _require(body: Dict[str, Any], *keys: str) -> None:
	missing = [k for k in keys if body.get(k) is None]
	if missing:
		raise ValueError(f"missing field(s): {', '.join(missing)}")


def _optional_ts(value: Optional[str]):
	return parse_timestamp(value) if value else None


def create_app(manager: SimulationManager) -> Flask:
	app = Flask(__name__)
	app.config['sim_manager'] = manager

	def mgr() -> SimulationManager:
		return app.config['sim_manager']

	# ------------------------------------------------------------------
	# Error mapping
	# ------------------------------------------------------------------
	def _error(e: Exception, code: int) -> Any:
		return jsonify({"error": str(e)}), code

	@app.errorhandler(NotFound)
	def not_found(e: NotFound) -> Any:
		return _error(e, 404)

	@app.errorhandler(AlreadyExists)
	def already_exists(e: AlreadyExists) -> Any:
		return _error(e, 409)

	@app.errorhandler(AlreadyRunning)
	def already_running(e: AlreadyRunning) -> Any:
		return _error(e, 409)

	@app.errorhandler(InvalidRange)
	def invalid_range(e: InvalidRange) -> Any:
		return _error(e, 400)

	@app.errorhandler(NotConfigured)
	def not_configured(e: NotConfigured) -> Any:
		return _error(e, 400)

	@app.errorhandler(ValueError)
	def bad_request(e: ValueError) -> Any:
		return _error(e, 400)

	@app.errorhandler(PersistenceFailure)
	def persistence_failure(e: PersistenceFailure) -> Any:
		logger.error(f"Persistence failure: {e}")
		return _error(e, 500)

	# ------------------------------------------------------------------
	# Cluster
	# ------------------------------------------------------------------
	@app.get("/status")
	def status() -> Any:
		return jsonify(mgr().cluster_status())

	@app.get("/nodes")
	def list_nodes() -> Any:
		return jsonify({"nodes": [n.status_payload() for n in mgr().nodes()]})

	@app.post("/nodes")
	def add_node() -> Any:
		body = _body()
		_require(body, "name")
		config = dict(body)
		name = config.pop("name")
		node = mgr().add_node(name, **config)
		return jsonify(node.snapshot(include_traces=False)), 201

	@app.get("/nodes/<name>")
	def get_node(name: str) -> Any:
		node = mgr().get_node(name)
		payload = node.snapshot(include_traces=False)
		payload["effective_status"] = node.get_status().value
		return jsonify(payload)

	@app.delete("/nodes/<name>")
	def remove_node(name: str) -> Any:
		mgr().remove_node(name)
		return jsonify({"status": "ok", "node": name})

	@app.post("/nodes/<name>/heartbeat")
	def heartbeat(name: str) -> Any:
		node = mgr().get_node(name)
		accepted = node.update_heartbeat(HeartbeatData.from_dict(_body()))
		return jsonify({"accepted": accepted, "node": node.status_payload()})

	@app.post("/nodes/<name>/failure")
	def failure(name: str) -> Any:
		node = mgr().get_node(name)
		initiated = node.handle_failure()
		return jsonify({
			"recovery_initiated": initiated,
			"failure_count": node.failure_count,
			"status": node.stored_status.value,
		})

	@app.post("/nodes/<name>/command")
	def command(name: str) -> Any:
		body = _body()
		_require(body, "type")
		node = mgr().get_node(name)
		node.handle_command(body)
		return jsonify({"status": "ok", "node": node.status_payload()})

	@app.get("/nodes/<name>/traces")
	def get_traces(name: str) -> Any:
		traces = mgr().get_node(name).traces()
		limit = request.args.get("limit", type=int)
		if limit is not None:
			traces = traces[-limit:] if limit > 0 else []
		return jsonify({"node": name, "traces": [t.to_dict() for t in traces]})

	@app.delete("/nodes/<name>/traces")
	def clear_traces(name: str) -> Any:
		mgr().clear_node_traces(name)
		return jsonify({"status": "ok", "node": name})

	@app.post("/strategy")
	def set_strategy() -> Any:
		body = _body()
		_require(body, "strategy")
		mgr().set_load_balancing_strategy(body["strategy"])
		return jsonify({"strategy": mgr().registry.strategy.value})

	@app.post("/config/recovery")
	def recovery_config() -> Any:
		config = mgr().set_recovery_config(_body())
		return jsonify({"recovery": config.to_dict()})

	@app.post("/config/compression")
	def compression_config() -> Any:
		config = mgr().set_compression_config(_body())
		return jsonify({"compression": config.to_dict()})

	@app.get("/optimal-device")
	def optimal_device() -> Any:
		choice = mgr().get_optimal_device()
		if choice is None:
			return jsonify({"error": "no online node has a device available"}), 404
		node, device = choice
		return jsonify({"node": node.name, "device": device.to_dict()})

	# ------------------------------------------------------------------
	# Sensors & datasets
	# ------------------------------------------------------------------
	@app.post("/sensors/historical")
	def sensors_historical() -> Any:
		body = _body()
		_require(body, "device_count", "start")
		max_records = body.get("max_records")
		entry = mgr().start_historical_sensors(
			int(body["device_count"]),
			float(body.get("anomaly_factor", 0.0)),
			parse_timestamp(body["start"]),
			_optional_ts(body.get("end")),
			dataset_id=body.get("dataset_id"),
			max_records=int(max_records) if max_records is not None else None,
		)
		return jsonify(entry.to_dict()), 201

	@app.post("/sensors/realtime")
	def sensors_realtime() -> Any:
		body = _body()
		_require(body, "device_count")
		sensors = mgr().start_realtime_sensors(
			int(body["device_count"]),
			float(body.get("anomaly_factor", 0.0)),
		)
		return jsonify({"status": "running", "device_count": sensors.device_count, "tick_s": sensors.tick_s})

	@app.post("/sensors/stop")
	def sensors_stop() -> Any:
		mgr().stop_sensors()
		return jsonify({"status": "stopped"})

	@app.get("/datasets")
	def datasets() -> Any:
		return jsonify({"datasets": [e.to_dict() for e in mgr().index.entries()]})

	@app.get("/datasets/query")
	def query_datasets() -> Any:
		args = request.args
		device_id = args.get("device_id")
		readings = mgr().query_dataset(
			start=_optional_ts(args.get("start")),
			end=_optional_ts(args.get("end")),
			device_id=int(device_id) if device_id not in (None, "") else None,
			only_anomalies=args.get("only_anomalies", "").lower() in _TRUE,
		)
		return jsonify({"count": len(readings), "readings": [r.to_dict() for r in readings]})

	# ------------------------------------------------------------------
	# Simulations
	# ------------------------------------------------------------------
	@app.get("/simulations")
	def list_simulations() -> Any:
		return jsonify({"simulations": [s.to_dict() for s in mgr().simulations()]})

	@app.post("/simulations")
	def add_simulation() -> Any:
		body = _body()
		_require(body, "name")
		sim = mgr().add_simulation(body)
		return jsonify(sim.to_dict()), 201

	@app.delete("/simulations/<name>")
	def remove_simulation(name: str) -> Any:
		mgr().remove_simulation(name)
		return jsonify({"status": "ok", "simulation": name})

	@app.get("/simulations/<name>/telemetry")
	def simulation_telemetry(name: str) -> Any:
		limit = request.args.get("limit", type=int)
		return jsonify({"simulation": name, "telemetry": mgr().simulation_telemetry(name, limit)})

	@app.post("/simulations/<name>/<action>")
	def simulation_action(name: str, action: str) -> Any:
		m = mgr()
		if action == "start":
			sim = m.start_simulation(name)
		elif action == "stop":
			sim = m.stop_simulation(name)
		elif action == "pause":
			sim = m.pause_simulation(name)
		elif action == "history":
			body = _body()
			_require(body, "start", "end")
			count = m.generate_simulation_history(
				name,
				parse_timestamp(body["start"]),
				parse_timestamp(body["end"]),
				float(body.get("anomaly_factor", 0.0)),
			)
			return jsonify({"simulation": name, "records": count})
		else:
			return jsonify({"error": f"unknown action: {action}"}), 400
		return jsonify(sim.to_dict())

	return app
