"""Request validation and redirect-resolving proxy engine.

``ProxyEngine.forward`` takes an inbound ``ProxyRequest`` and either
raises a ``GatewayError`` (rendered by the Flask layer) or returns a
``ProxyResponse`` whose body streams straight from the upstream socket.

Pipeline for a single request:
1. The diagnostic token short-circuits to the canned perl script
2. Targets without an explicit http(s) scheme are rejected
3. Targets must match an upstream shape and pass the access lists
4. GitHub blob viewer URLs are rewritten to their raw equivalent
5. The upstream is fetched through a shared pooled session
6. Declared sizes over the ceiling are refused before any body byte
7. Security-policy and hop-by-hop response headers are dropped
8. Redirects to recognised shapes are rewritten to route back through
   the proxy; redirects anywhere else are followed here

Redirects are followed in a loop rather than by recursion. A chain that
revisits a target is treated as an upstream failure; beyond that the
chain length is only bounded when ``max_redirects`` is set.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.connection import HTTPConnection
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from ghproxy.config_store import ConfigStore
from ghproxy.diagnostic import CACHE_CONTROL, CONTENT_TYPE, DIAGNOSTIC_TOKEN, render_script
from ghproxy.errors import AccessDenied, InputRejected, ResponseTooLarge, UpstreamUnreachable
from ghproxy.logging_config import get_logger
from ghproxy.patterns import ensure_scheme, has_scheme, is_blob_style, match, rewrite_blob_to_raw
from ghproxy.settings import GatewaySettings

logger = get_logger(__name__)

HeaderList = List[Tuple[str, str]]

# Response headers never relayed to the caller.
STRIPPED_RESPONSE_HEADERS = frozenset({
    "content-security-policy",
    "referrer-policy",
    "strict-transport-security",
})

# Connection-scoped headers that must not cross the proxy in either direction.
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


@dataclass
class ProxyRequest:
    """Inbound request as seen by the engine."""

    method: str
    target: str
    headers: HeaderList = field(default_factory=list)
    body: Any = None
    """File-like or iterable request body, or None when there is none."""
    self_url: Optional[str] = None
    """URL the caller used to reach the proxy."""


@dataclass
class ProxyResponse:
    """Response to relay to the caller."""

    status_code: int
    headers: HeaderList
    body: Iterable[bytes]
    content_length: Optional[int] = None
    upstream: Optional[requests.Response] = field(default=None, repr=False)

    def header(self, name: str) -> Optional[str]:
        """Return the first value of header *name* (case-insensitive)."""
        want = name.lower()
        for key, value in self.headers:
            if key.lower() == want:
                return value
        return None

    def header_values(self, name: str) -> List[str]:
        want = name.lower()
        return [value for key, value in self.headers if key.lower() == want]

    def close(self) -> None:
        if self.upstream is not None:
            self.upstream.close()


def keepalive_socket_options(idle: int) -> list:
    """urllib3 socket options enabling TCP keep-alive probes after *idle* seconds."""
    options = list(HTTPConnection.default_socket_options)
    options.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))
    if hasattr(socket, "TCP_KEEPIDLE"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle))
    if hasattr(socket, "TCP_KEEPINTVL"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, idle))
    return options


class KeepAliveAdapter(HTTPAdapter):
    """HTTPAdapter whose pooled connections use TCP keep-alive."""

    def __init__(self, keepalive: int = 30, **kwargs):
        # Must be set before HTTPAdapter.__init__ builds the pool manager.
        self.keepalive = keepalive
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["socket_options"] = keepalive_socket_options(self.keepalive)
        super().init_poolmanager(*args, **kwargs)


def build_session(settings: GatewaySettings) -> requests.Session:
    """Create the shared upstream session.

    The session sends only what the caller sent: no default headers, no
    environment proxies or netrc credentials, and no cookie jar shared
    between callers. Retries are disabled.
    """
    session = requests.Session()
    session.trust_env = False
    session.headers.clear()
    session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    adapter = KeepAliveAdapter(
        keepalive=settings.keepalive,
        pool_connections=settings.pool_connections,
        pool_maxsize=settings.pool_maxsize,
        max_retries=0,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def outbound_headers(pairs: Sequence[Tuple[str, str]], drop: Iterable[str] = ()) -> CaseInsensitiveDict:
    """Copy inbound headers for the upstream request.

    ``Host`` and hop-by-hop headers are dropped; repeated headers are
    folded into one comma-separated value.
    """
    skip = {"host", *HOP_BY_HOP_HEADERS, *(name.lower() for name in drop)}
    headers = CaseInsensitiveDict()
    for name, value in pairs:
        if name.lower() in skip:
            continue
        if name in headers:
            headers[name] = f"{headers[name]}, {value}"
        else:
            headers[name] = value
    return headers


def relay_headers(upstream: requests.Response) -> HeaderList:
    """Upstream response headers that may be relayed, duplicates preserved."""
    raw_headers = getattr(upstream.raw, "headers", None)
    items = raw_headers.items() if raw_headers is not None else upstream.headers.items()
    return [
        (name, value)
        for name, value in items
        if name.lower() not in STRIPPED_RESPONSE_HEADERS and name.lower() not in HOP_BY_HOP_HEADERS
    ]


def declared_length(upstream: requests.Response) -> Optional[int]:
    raw = upstream.headers.get("Content-Length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def stream_body(upstream: requests.Response, chunk_size: int) -> Iterator[bytes]:
    """Yield the undecoded upstream body.

    A read failure part way through ends the stream quietly; the caller
    sees a truncated body.
    """
    try:
        for chunk in upstream.raw.stream(chunk_size, decode_content=False):
            if chunk:
                yield chunk
    except (Urllib3HTTPError, requests.RequestException, OSError) as e:
        logger.debug("Upstream body stream ended early: %s", e)
    finally:
        upstream.close()


class ProxyEngine:
    """Validates targets, fetches them and resolves upstream redirects."""

    def __init__(
        self,
        store: ConfigStore,
        settings: Optional[GatewaySettings] = None,
        session: Optional[requests.Session] = None,
    ):
        self.store = store
        self.settings = settings or GatewaySettings()
        self.session = session or build_session(self.settings)

    def forward(self, request: ProxyRequest) -> ProxyResponse:
        """Validate *request* and return the response to relay.

        Raises:
            InputRejected: Target lacks a scheme or matches no upstream shape.
            AccessDenied: Identity refused by the allow or deny list.
            UpstreamUnreachable: Transport failure or redirect loop.
            ResponseTooLarge: Declared Content-Length above the ceiling.
        """
        target = request.target
        if target == DIAGNOSTIC_TOKEN:
            return self.diagnostic_response(request)

        if not has_scheme(target):
            logger.info("Rejected target without scheme: %s", target)
            raise InputRejected()

        captures = match(target)
        if captures is None:
            logger.info("Rejected unrecognised target: %s", target)
            raise InputRejected()

        try:
            self.store.current().policy.check(captures)
        except AccessDenied as e:
            logger.info("Access denied for %s (%s)", e.identity, e.reason.value)
            raise

        if is_blob_style(target):
            target = rewrite_blob_to_raw(target)

        return self._resolve(request, target)

    def diagnostic_response(self, request: ProxyRequest) -> ProxyResponse:
        self_url = request.self_url or f"{self.settings.route_prefix}{DIAGNOSTIC_TOKEN}"
        base_url = self_url.split("?", 1)[0]
        if base_url.endswith(DIAGNOSTIC_TOKEN):
            base_url = base_url[: -len(DIAGNOSTIC_TOKEN)]
        body = render_script(self_url, base_url).encode("utf-8")
        headers = [
            ("Content-Type", CONTENT_TYPE),
            ("Cache-Control", CACHE_CONTROL),
            ("Content-Length", str(len(body))),
        ]
        return ProxyResponse(200, headers, [body], content_length=len(body))

    def _resolve(self, request: ProxyRequest, target: str) -> ProxyResponse:
        method = request.method.upper()
        headers = outbound_headers(request.headers)
        body = request.body
        visited = {target}
        hops = 0

        while True:
            upstream = self._dispatch(method, target, headers, body)

            content_length = declared_length(upstream)
            if content_length is not None and content_length > self.settings.size_limit:
                upstream.close()
                logger.warning("Refusing %s: declared size %d exceeds limit", target, content_length)
                raise ResponseTooLarge()

            relayed = relay_headers(upstream)
            location = upstream.headers.get("Location")
            if not location:
                return self._relay(upstream, relayed, content_length)

            # A schemeless location in a recognised shape names a host, not a relative path.
            next_target = location if match(location) is not None else urljoin(target, location)
            if match(next_target) is not None:
                rewritten = f"{self.settings.route_prefix}{ensure_scheme(next_target)}"
                logger.info("Rewriting redirect %s -> %s", location, rewritten)
                return self._relay(upstream, replace_location(relayed, rewritten), content_length)

            upstream.close()
            hops += 1
            if next_target in visited:
                logger.warning("Redirect loop detected at %s", next_target)
                raise UpstreamUnreachable(f"redirect loop at {next_target}")
            if self.settings.max_redirects and hops > self.settings.max_redirects:
                raise UpstreamUnreachable(f"more than {self.settings.max_redirects} redirects")
            visited.add(next_target)
            logger.info("Following redirect %s -> %s", target, next_target)
            target = next_target
            # The body was consumed by the previous hop.
            body = None
            headers = outbound_headers(request.headers, drop=("content-length",))

    def _dispatch(self, method: str, url: str, headers: CaseInsensitiveDict, body: Any) -> requests.Response:
        try:
            prepared = self.session.prepare_request(
                requests.Request(method=method, url=url, headers=dict(headers), data=body)
            )
            if body is not None and "Content-Length" in prepared.headers:
                prepared.headers.pop("Transfer-Encoding", None)
            logger.debug("Dispatching %s %s", method, url)
            return self.session.send(
                prepared,
                stream=True,
                allow_redirects=False,
                timeout=(self.settings.connect_timeout, self.settings.read_timeout),
            )
        except requests.RequestException as e:
            logger.error("Upstream request %s %s failed: %s", method, url, e)
            raise UpstreamUnreachable(str(e)) from e

    def _relay(self, upstream: requests.Response, headers: HeaderList, content_length: Optional[int]) -> ProxyResponse:
        return ProxyResponse(
            status_code=upstream.status_code,
            headers=headers,
            body=stream_body(upstream, self.settings.chunk_size),
            content_length=content_length,
            upstream=upstream,
        )


def replace_location(headers: HeaderList, location: str) -> HeaderList:
    """Return *headers* with a single Location header set to *location*."""
    result: HeaderList = []
    replaced = False
    for name, value in headers:
        if name.lower() == "location":
            if replaced:
                continue
            result.append((name, location))
            replaced = True
        else:
            result.append((name, value))
    if not replaced:
        result.append(("Location", location))
    return result
