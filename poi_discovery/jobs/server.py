"""HTTP trigger surface for operators: discovery runs, extraction and enrichment control."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

from flask import Flask, jsonify, request

from poi_discovery.core.errors import PersistenceUnavailable, QueueFull
from poi_discovery.core.models import Priority, Scope, ScopeKind
from poi_discovery.jobs.bootstrap import build_services

logger = logging.getLogger(__name__)


def parse_scope(payload: Dict[str, Any]) -> Scope:
    """Accept either a nested ``scope`` object or flat ``scope``/``name``/``country`` keys."""
    raw = payload.get("scope")
    if isinstance(raw, dict):
        return Scope(kind=raw.get("kind") or ScopeKind.GLOBAL.value, name=raw.get("name"), country=raw.get("country"))
    return Scope(kind=raw or ScopeKind.GLOBAL.value, name=payload.get("name"), country=payload.get("country"))


def create_app(services) -> Flask:
    app = Flask(__name__)
    app.config["SERVICES"] = services

    @app.get("/healthz")
    def healthcheck() -> Any:
        settings = services.settings
        return (
            jsonify(
                {
                    "status": "ok",
                    "discovery_enabled": settings.discovery_enabled,
                    "sources": services.orchestrator.source_names,
                    "revision": os.getenv("K_REVISION", "unknown"),
                }
            ),
            200,
        )

    @app.post("/discovery")
    def run_discovery() -> Any:
        """
        Run a discovery pass synchronously and return its summary.
        JSON: scope (global|continent|country|region or object), name, country, sources (optional list)
        """
        if not services.settings.discovery_enabled:
            return jsonify({"error": "discovery is disabled"}), 503

        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        try:
            scope = parse_scope(payload)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        sources = payload.get("sources")
        if sources is not None and (not isinstance(sources, list) or not all(isinstance(s, str) for s in sources)):
            return jsonify({"error": "sources must be a list of source names"}), 400

        try:
            summary = services.orchestrator.run_discovery(scope, sources=sources)
        except PersistenceUnavailable as exc:
            logger.error("Discovery aborted, location store unavailable: %s", exc)
            return jsonify({"error": "location store unavailable"}), 503

        return jsonify({"data": summary.to_dict()}), 200

    @app.get("/discovery/stats")
    def discovery_stats() -> Any:
        stats = {
            "queue": services.orchestrator.get_queue_stats(),
            "cache": services.cache.stats(),
            "rate_limits": services.rate_limiter.usage(),
        }
        return jsonify({"data": stats}), 200

    @app.post("/extract")
    def extract() -> Any:
        """Normalize a free-text submission. Nothing is persisted."""
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            return jsonify({"error": "message is required"}), 400
        conversation = payload.get("conversation") or []
        if not isinstance(conversation, list) or not all(isinstance(turn, dict) for turn in conversation):
            return jsonify({"error": "conversation must be a list of {role, content} objects"}), 400

        result = services.normalizer.normalize(message, conversation=conversation, interactive=True)
        return jsonify({"data": result.to_dict()}), 200

    @app.post("/enrichment")
    def request_enrichment() -> Any:
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        record_id = payload.get("record_id")
        if not record_id:
            return jsonify({"error": "record_id is required"}), 400
        try:
            priority = Priority(str(payload.get("priority") or Priority.MEDIUM.value).lower())
        except ValueError:
            return jsonify({"error": "priority must be one of high, medium, low"}), 400

        try:
            location = services.store.get_by_id(str(record_id))
        except PersistenceUnavailable as exc:
            logger.error("Cannot look up %s: %s", record_id, exc)
            return jsonify({"error": "location store unavailable"}), 503
        if location is None:
            return jsonify({"error": f"unknown record {record_id}"}), 404

        try:
            item = services.queue.enqueue(location.id, priority)
        except QueueFull as exc:
            return jsonify({"error": str(exc)}), 429
        return jsonify({"data": item.to_dict()}), 202

    @app.post("/enrichment/<record_id>/cancel")
    def cancel_enrichment(record_id: str) -> Any:
        if not services.queue.cancel(record_id):
            return jsonify({"error": f"no active enrichment for {record_id}"}), 404
        return jsonify({"data": {"record_id": record_id, "cancelled": True}}), 200

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    services = build_services()
    services.start()

    port = int(os.getenv("PORT") or services.settings.worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    try:
        create_app(services).run(host="0.0.0.0", port=port)
    finally:
        services.stop()


if __name__ == "__main__":
    main()
