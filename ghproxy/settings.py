"""Runtime settings for the gateway.

Configuration (via environment variables):
- GHPROXY_HOST: Listen address (default: 0.0.0.0)
- GHPROXY_PORT: Listen port (default: 5000)
- GHPROXY_CONFIG: Path to the allow/deny list JSON file (default: config.json)
- GHPROXY_RELOAD_INTERVAL: Seconds between config reloads (default: 600)
- GHPROXY_ROUTE_PREFIX: Routing prefix stripped from inbound paths (default: /)
- GHPROXY_SIZE_LIMIT: Maximum declared response size in bytes (default: 10 GiB)
- GHPROXY_CONNECT_TIMEOUT: Upstream connect timeout in seconds (default: 30)
- GHPROXY_READ_TIMEOUT: Upstream response/read timeout in seconds (default: 300)
- GHPROXY_KEEPALIVE: TCP keep-alive idle time in seconds (default: 30)
- GHPROXY_POOL_CONNECTIONS: Number of per-host pools kept (default: 100)
- GHPROXY_POOL_MAXSIZE: Idle connections kept per host (default: 1000)
- GHPROXY_MAX_REDIRECTS: Followed redirect hops per request, 0 = unbounded (default: 0)
- GHPROXY_CHUNK_SIZE: Body relay chunk size in bytes (default: 65536)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

SIZE_LIMIT = 1024 * 1024 * 1024 * 10  # 10 GiB


def normalize_prefix(prefix: str) -> str:
    """Return *prefix* with exactly one leading and one trailing slash."""
    stripped = prefix.strip("/")
    if not stripped:
        return "/"
    return f"/{stripped}/"


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class GatewaySettings:
    """Immutable gateway settings."""

    host: str = "0.0.0.0"
    port: int = 5000
    config_path: str = "config.json"
    reload_interval: float = 600.0
    route_prefix: str = "/"
    size_limit: int = SIZE_LIMIT
    connect_timeout: float = 30.0
    read_timeout: float = 300.0
    keepalive: int = 30
    pool_connections: int = 100
    pool_maxsize: int = 1000
    max_redirects: int = 0
    chunk_size: int = 65536

    def __post_init__(self):
        object.__setattr__(self, "route_prefix", normalize_prefix(self.route_prefix))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        """Build settings from environment variables.

        Raises:
            ValueError: If a numeric variable is malformed or out of range.
        """
        env = os.environ if env is None else env
        return cls(
            host=env.get("GHPROXY_HOST", "0.0.0.0"),
            port=_env_int(env, "GHPROXY_PORT", 5000, minimum=1),
            config_path=env.get("GHPROXY_CONFIG", "config.json"),
            reload_interval=_env_float(env, "GHPROXY_RELOAD_INTERVAL", 600.0),
            route_prefix=env.get("GHPROXY_ROUTE_PREFIX", "/"),
            size_limit=_env_int(env, "GHPROXY_SIZE_LIMIT", SIZE_LIMIT, minimum=1),
            connect_timeout=_env_float(env, "GHPROXY_CONNECT_TIMEOUT", 30.0),
            read_timeout=_env_float(env, "GHPROXY_READ_TIMEOUT", 300.0),
            keepalive=_env_int(env, "GHPROXY_KEEPALIVE", 30, minimum=1),
            pool_connections=_env_int(env, "GHPROXY_POOL_CONNECTIONS", 100, minimum=1),
            pool_maxsize=_env_int(env, "GHPROXY_POOL_MAXSIZE", 1000, minimum=1),
            max_redirects=_env_int(env, "GHPROXY_MAX_REDIRECTS", 0),
            chunk_size=_env_int(env, "GHPROXY_CHUNK_SIZE", 65536, minimum=1),
        )

    def with_overrides(self, **overrides) -> "GatewaySettings":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)
