"""Flask front-end for the gateway.

A single catch-all route turns the inbound request URI into a proxy
target: the routing prefix and any extra leading slashes are removed and
the remainder (query string included) is handed to ``ProxyEngine``.

Endpoints (relative to the routing prefix):
- /<scheme>://<upstream URL> - proxied fetch
- /perl-pe-para - shell snippet rewriting script
- /healthz - config status as JSON
"""

from __future__ import annotations

from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.routing import PathConverter

from ghproxy.config_store import ConfigStore
from ghproxy.engine import ProxyEngine, ProxyRequest
from ghproxy.errors import GatewayError
from ghproxy.logging_config import flask_request_middleware, get_logger
from ghproxy.settings import GatewaySettings

logger = get_logger(__name__)

HEALTH_PATH = "healthz"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class _AnyPathConverter(PathConverter):
    """Like ``path`` but also matches empty strings and leading slashes."""

    regex = ".*"
    part_isolating = False


def requested_target(prefix: str) -> Optional[str]:
    """Extract the proxy target from the current request.

    Returns:
        The target, or None when the request lies outside the prefix.
    """
    raw_uri = request.environ.get("RAW_URI") or request.environ.get("REQUEST_URI") or request.path
    if "?" not in raw_uri and request.query_string:
        raw_uri = f"{raw_uri}?{request.query_string.decode('latin-1')}"
    if not raw_uri.startswith(prefix):
        return None
    return raw_uri[len(prefix):].lstrip("/")


def _request_body():
    if request.content_length or "chunked" in request.headers.get("Transfer-Encoding", "").lower():
        return request.stream
    return None


def create_app(
    store: Optional[ConfigStore] = None,
    engine: Optional[ProxyEngine] = None,
    settings: Optional[GatewaySettings] = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        store: Config store holding the access lists. Defaults to a store
            for ``settings.config_path`` (not loaded).
        engine: Proxy engine. Defaults to one built from *store*.
        settings: Gateway settings. Defaults to ``GatewaySettings.from_env()``.

    Returns:
        Configured Flask application.
    """
    if settings is None:
        settings = engine.settings if engine is not None else GatewaySettings.from_env()
    if store is None:
        store = engine.store if engine is not None else ConfigStore(settings.config_path)
    if engine is None:
        engine = ProxyEngine(store, settings)

    app = Flask(__name__)
    app.url_map.merge_slashes = False
    app.url_map.converters["anypath"] = _AnyPathConverter
    app.extensions["ghproxy"] = {"store": store, "engine": engine, "settings": settings}
    flask_request_middleware(app)

    @app.errorhandler(GatewayError)
    def gateway_error(error: GatewayError):
        return Response(error.message, status=error.status_code, mimetype="text/plain")

    @app.errorhandler(500)
    def internal_error(error):
        logger.error("Internal server error: %s", error)
        return Response("server error", status=500, mimetype="text/plain")

    def health():
        snapshot = store.current()
        return jsonify({
            "status": "healthy",
            "config_version": snapshot.version,
            "config_loaded_at": snapshot.loaded_at,
            "allow_entries": len(snapshot.policy.allow),
            "deny_entries": len(snapshot.policy.deny),
        }), 200

    @app.route("/", defaults={"path": ""}, methods=ALL_METHODS, merge_slashes=False)
    @app.route("/<anypath:path>", methods=ALL_METHODS, merge_slashes=False)
    def catch_all(path):
        target = requested_target(settings.route_prefix)
        if target is None:
            return Response("Not found", status=404, mimetype="text/plain")
        if target == HEALTH_PATH and request.method == "GET":
            return health()

        proxy_request = ProxyRequest(
            method=request.method,
            target=target,
            headers=list(request.headers.items()),
            body=_request_body(),
            self_url=request.url,
        )
        upstream = engine.forward(proxy_request)

        response = Response(
            upstream.body,
            status=upstream.status_code,
            headers=upstream.headers,
            direct_passthrough=True,
        )
        if upstream.header("Content-Type") is None:
            del response.headers["Content-Type"]
        response.call_on_close(upstream.close)
        return response

    return app
