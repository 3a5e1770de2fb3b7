"""HTTP front-end exposing the pipeline as ``GET|POST /query``."""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request

from . import __version__
from .core.keys import K_ERROR, K_MESSAGE, K_STATUS
from .pipeline import error_payload, run_pipeline
from .workflows.pong0_config import PipelineConfig

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def service_descriptor() -> Dict[str, Any]:
    return {
        "name": "pong0 API",
        "version": __version__,
        "endpoints": {
            "query": {
                "url": "/query",
                "methods": ["GET", "POST"],
                "params": {"ip": "(optional) address to look up, defaults to the caller's address"},
            }
        },
    }


def _requested_ip() -> str:
    ip = request.args.get("ip")
    if not ip and request.method == "POST":
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            ip = body.get("ip")
        if not ip:
            ip = request.form.get("ip")
    return str(ip or "").strip()


def create_app(
    config: Optional[PipelineConfig] = None,
    api_key: Optional[str] = None,
    verbose: bool = False,
) -> Flask:
    """Build the Flask app; bearer gating is enabled when ``api_key`` is set."""

    config = config or PipelineConfig.from_env(verbose=verbose)
    app = Flask(__name__)
    app.json.ensure_ascii = False
    app.json.sort_keys = False

    def _auth_failure() -> Optional[Any]:
        if not api_key:
            return None
        header = request.headers.get("Authorization", "")
        if not header.startswith(BEARER_PREFIX):
            return jsonify({
                K_ERROR: True,
                K_MESSAGE: "Missing API key, add an 'Authorization: Bearer YOUR_API_KEY' header",
            }), 401
        provided = header[len(BEARER_PREFIX):]
        if not hmac.compare_digest(provided.encode("utf-8"), api_key.encode("utf-8")):
            return jsonify({K_ERROR: True, K_MESSAGE: "Invalid API key"}), 403
        return None

    if verbose:
        @app.before_request
        def _start_timer() -> None:
            g.started = time.perf_counter()

        @app.after_request
        def _log_request(response):
            elapsed = int((time.perf_counter() - g.get("started", time.perf_counter())) * 1000)
            logger.info("%s %s - %s - %dms", request.method, request.full_path.rstrip("?"), response.status_code, elapsed)
            return response

    @app.get("/")
    def index():
        return jsonify(service_descriptor())

    @app.route("/query", methods=["GET", "POST"])
    def query():
        denied = _auth_failure()
        if denied is not None:
            return denied
        ip = _requested_ip()
        try:
            record = asyncio.run(run_pipeline(ip, False, verbose, config=config))
        except Exception as exc:
            payload = error_payload(exc)
            status = payload.get(K_STATUS) or 500
            payload[K_STATUS] = status
            if status >= 500:
                logger.error("Query for %s failed: %s", ip or "local address", payload.get(K_MESSAGE))
            else:
                logger.warning("Query for %s failed: %s", ip or "local address", payload.get(K_MESSAGE))
            return jsonify(payload), status
        return jsonify(record.to_dict())

    return app


__all__ = ["create_app", "service_descriptor"]
