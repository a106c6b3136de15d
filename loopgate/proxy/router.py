"""
SNI-multiplexed HTTPS reverse proxy.

All routes on a port share one TLS listener. The certificate for each
handshake is chosen by the SNI callback from an immutable table that
``start``/``stop`` replace wholesale, so handshakes never see a table
being edited.
"""

import asyncio
import functools
import logging
import ssl
from types import MappingProxyType
from typing import AsyncIterator, Dict, List, Mapping, Optional

import aiohttp
from aiohttp import web
from multidict import CIMultiDict

from ..errors import CryptoError, ListenError, UpstreamError
from ..validation import normalize_domain, normalize_target, validate_port
from .models import ProxyRoute
from .store import RouteStore

logger = logging.getLogger("loopgate.proxy")

PROXY_IDENTIFIER = "loopgate"
CHUNK_SIZE = 65_536

HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-authenticate",
    "proxy-authorization", "te", "trailer", "trailers",
    "transfer-encoding", "upgrade",
})


def _host_without_port(host: str) -> str:
    host = host.strip()
    if host.startswith("["):
        return host[1:host.find("]")].lower() if "]" in host else host.lower()
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.lower().rstrip(".")


def build_forward_headers(request_headers, route: ProxyRoute, original_host: str) -> CIMultiDict:
    """Headers for the backend request, derived from the client's."""
    headers = CIMultiDict()
    for name, value in request_headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered in ("host", "x-forwarded-for"):
            continue
        headers.add(name, value)

    headers["Host"] = route.target_authority
    headers["X-Forwarded-Host"] = original_host
    headers["X-Forwarded-Proto"] = "https"
    forwarded_for = request_headers.get("X-Forwarded-For")
    headers["X-Forwarded-For"] = f"{forwarded_for}, 127.0.0.1" if forwarded_for else "127.0.0.1"
    headers["X-Proxied-By"] = PROXY_IDENTIFIER
    headers["X-Original-Domain"] = route.domain
    return headers


class ProxyRouter:
    """
    Route table plus the shared HTTPS listeners serving it.

    One instance owns its listeners, SNI table and backend HTTP session;
    several routers can coexist (e.g. in tests) as long as they use
    different ports.
    """

    def __init__(
        self,
        routes_file,
        host: str = "0.0.0.0",
        default_port: int = 443,
        shutdown_timeout: float = 5.0,
    ):
        self.store = RouteStore(routes_file)
        self.host = host
        self.default_port = default_port
        self.shutdown_timeout = shutdown_timeout
        self._routes: Dict[str, ProxyRoute] = self.store.load()
        self._contexts: Mapping[str, ssl.SSLContext] = MappingProxyType({})
        self._listeners: Dict[int, web.BaseRunner] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    # ── Route table ───────────────────────────────────────────────────

    def get(self, domain: str) -> Optional[ProxyRoute]:
        return self._routes.get(normalize_domain(domain))

    def list(self) -> List[ProxyRoute]:
        return [self._routes[d] for d in sorted(self._routes)]

    @property
    def listening_ports(self) -> List[int]:
        return sorted(self._listeners)

    @property
    def sni_domains(self) -> List[str]:
        return sorted(self._contexts)

    async def _save(self) -> None:
        await asyncio.to_thread(self.store.save, self.list())

    async def register(self, domain: str, target: str, port: Optional[int] = None) -> ProxyRoute:
        """
        Add or replace a route. New routes are always stored stopped.

        A running route being replaced is stopped first.
        """
        domain = normalize_domain(domain)
        route = ProxyRoute(
            domain=domain,
            target=normalize_target(target),
            port=validate_port(port) if port is not None else self.default_port,
        )
        async with self._lock:
            existing = self._routes.get(domain)
            if existing and existing.is_running:
                await self._stop(domain)
            if existing:
                route.cert_path = existing.cert_path
                route.key_path = existing.key_path
            self._routes[domain] = route
            await self._save()
        logger.info(f"Registered route {domain} -> {route.target} on port {route.port}")
        return route

    async def unregister(self, domain: str) -> bool:
        """Stop and forget a route; False if it was never registered."""
        domain = normalize_domain(domain)
        async with self._lock:
            if domain not in self._routes:
                return False
            await self._stop(domain)
            del self._routes[domain]
            await self._save()
        logger.info(f"Unregistered route {domain}")
        return True

    async def update(
        self,
        domain: str,
        target: Optional[str] = None,
        port: Optional[int] = None,
    ) -> bool:
        """
        Change a route's target and/or port, re-applying it live when the
        route is running.
        """
        domain = normalize_domain(domain)
        new_target = normalize_target(target) if target is not None else None
        new_port = validate_port(port) if port is not None else None

        async with self._lock:
            route = self._routes.get(domain)
            if route is None:
                return False

            changed = False
            if new_target is not None and new_target != route.target:
                route.target = new_target
                changed = True
            if new_port is not None and new_port != route.port:
                route.port = new_port
                changed = True

            if changed and route.is_running and route.cert_path and route.key_path:
                logger.info(f"Restarting route {domain} to apply new configuration")
                await self._stop(domain)
                await self._start(domain, route.cert_path, route.key_path)

            await self._save()
        return True

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self, domain: str, cert_path: str, key_path: str) -> bool:
        """
        Serve ``domain`` on its port with the given certificate.

        Returns False for an unknown route. Raises CryptoError for an
        unusable key pair and ListenError when the port cannot be bound.
        """
        domain = normalize_domain(domain)
        async with self._lock:
            return await self._start(domain, cert_path, key_path)

    async def _start(self, domain: str, cert_path: str, key_path: str) -> bool:
        route = self._routes.get(domain)
        if route is None:
            return False

        context = await asyncio.to_thread(self._load_context, cert_path, key_path)
        self._contexts = MappingProxyType({**self._contexts, domain: context})

        try:
            await self._ensure_listener(route.port)
        except ListenError:
            self._drop_context(domain)
            route.is_running = False
            await self._close_idle_listeners()
            await self._save()
            raise

        route.cert_path = cert_path
        route.key_path = key_path
        route.is_running = True
        await self._save()
        logger.info(f"Route {domain} running on port {route.port} -> {route.target}")
        return True

    async def stop(self, domain: str) -> bool:
        """Stop serving ``domain``; False if it was not running."""
        domain = normalize_domain(domain)
        async with self._lock:
            return await self._stop(domain)

    async def _stop(self, domain: str) -> bool:
        route = self._routes.get(domain)
        if route is None or not route.is_running:
            return False

        self._drop_context(domain)
        route.is_running = False
        await self._close_idle_listeners()
        await self._save()
        logger.info(f"Route {domain} stopped")
        return True

    async def stop_all(self) -> None:
        """Stop every route, close all listeners and the backend session."""
        async with self._lock:
            for route in self._routes.values():
                route.is_running = False
            self._contexts = MappingProxyType({})
            for port in list(self._listeners):
                await self._close_listener(port)
            if self._session is not None:
                await self._session.close()
                self._session = None
            if self._routes:
                await self._save()
        logger.info("All routes stopped")

    # ── TLS ───────────────────────────────────────────────────────────

    @staticmethod
    def _load_context(cert_path: str, key_path: str) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.set_alpn_protocols(["http/1.1"])
        try:
            context.load_cert_chain(cert_path, key_path)
        except (OSError, ssl.SSLError) as e:
            raise CryptoError(f"Failed to load certificate {cert_path}: {e}") from e
        return context

    def _drop_context(self, domain: str) -> None:
        self._contexts = MappingProxyType(
            {name: ctx for name, ctx in self._contexts.items() if name != domain}
        )

    def _server_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.set_alpn_protocols(["http/1.1"])
        context.sni_callback = self._select_context
        return context

    def _select_context(self, ssl_object, server_name, base_context):
        """SNI callback: swap in the requested domain's context or refuse."""
        contexts = self._contexts
        context = contexts.get(server_name.lower()) if server_name else None
        if context is None:
            logger.debug(f"Rejected TLS handshake for unknown server name {server_name!r}")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        ssl_object.context = context
        return None

    # ── Listeners ─────────────────────────────────────────────────────

    async def _ensure_listener(self, port: int) -> None:
        if port in self._listeners:
            return

        server = web.Server(
            functools.partial(self._handle, port),
            handler_cancellation=True,
            access_log=None,
        )
        runner = web.ServerRunner(server, shutdown_timeout=self.shutdown_timeout)
        await runner.setup()
        site = web.TCPSite(runner, self.host, port, ssl_context=self._server_context())
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            logger.error(f"Cannot listen on {self.host}:{port}: {e}")
            raise ListenError(f"Failed to listen on {self.host}:{port}: {e}", port) from e

        self._listeners[port] = runner
        logger.info(f"HTTPS listener started on {self.host}:{port}")

    async def _close_listener(self, port: int) -> None:
        runner = self._listeners.pop(port, None)
        if runner is not None:
            await runner.cleanup()
            logger.info(f"HTTPS listener on port {port} closed")

    async def _close_idle_listeners(self) -> None:
        busy = {r.port for r in self._routes.values() if r.is_running}
        for port in list(self._listeners):
            if port not in busy:
                await self._close_listener(port)

    # ── Request handling ──────────────────────────────────────────────

    def _resolve(self, host: Optional[str], port: int) -> Optional[ProxyRoute]:
        if not host:
            return None
        route = self._routes.get(_host_without_port(host))
        if route is None or not route.is_running or route.port != port:
            return None
        return route

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(auto_decompress=False)
        return self._session

    async def _handle(self, port: int, request: web.BaseRequest) -> web.StreamResponse:
        original_host = request.headers.get("Host", "")
        route = self._resolve(original_host, port)
        if route is None:
            return web.Response(status=404, text=f"No running route for {original_host or 'this host'}\n")

        peer = request.remote or "-"
        logger.info(f"{peer} {request.method} {request.path_qs} -> {route.target}")

        try:
            return await self._forward(request, route)
        except UpstreamError as e:
            logger.error(f"Proxy error for {route.domain} (target: {route.target}): {e}")
            return web.Response(
                status=502,
                text=f"Proxy error: {e}. Target: {route.target}\n",
                headers={"X-Proxied-By": PROXY_IDENTIFIER},
            )

    async def _forward(self, request: web.BaseRequest, route: ProxyRoute) -> web.StreamResponse:
        headers = build_forward_headers(request.headers, route, request.headers.get("Host", route.domain))
        data = self._stream_body(request) if request.body_exists else None
        session = self._get_session()

        response = web.StreamResponse()
        try:
            async with session.request(
                request.method,
                route.target_url(request.raw_path),
                headers=headers,
                data=data,
                allow_redirects=False,
                ssl=False,
                skip_auto_headers=("Accept-Encoding", "User-Agent"),
            ) as upstream:
                response.set_status(upstream.status, upstream.reason)
                for name, value in upstream.headers.items():
                    if name.lower() not in HOP_BY_HOP_HEADERS:
                        response.headers.add(name, value)
                response.headers["X-Proxied-By"] = PROXY_IDENTIFIER

                await response.prepare(request)
                async for chunk in upstream.content.iter_chunked(CHUNK_SIZE):
                    await response.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if response.prepared:
                # Headers are gone; cut the client connection so the
                # truncated body is not mistaken for a complete one.
                logger.error(f"Backend stream for {route.domain} failed mid-response: {e}")
                if request.transport is not None:
                    request.transport.close()
                return response
            raise UpstreamError(str(e) or e.__class__.__name__) from e

        await response.write_eof()
        return response

    @staticmethod
    async def _stream_body(request: web.BaseRequest) -> AsyncIterator[bytes]:
        async for chunk in request.content.iter_chunked(CHUNK_SIZE):
            yield chunk
