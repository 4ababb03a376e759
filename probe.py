#!/usr/bin/env python3

"""
HTTP probe client for the canary route.

Issues a single GET against a route host and returns the full response along
with per-phase timing. Transport problems are raised as ProbeError tagged with
the failure class so DNS problems can be told apart from unreachable hosts.
"""

import asyncio
import logging
import socket
import ssl
from dataclasses import dataclass, field
from typing import Mapping, Optional

import aiohttp
from multidict import CIMultiDict

import config
from errors import ProbeError, ProbeErrorKind, RouteNotReadyError
from models import Route

logger = logging.getLogger(__name__)


@dataclass
class ProbeTimings:
    """
    Request phase durations in seconds.

    aiohttp resolves DNS inside connection setup and performs the TLS
    handshake as part of it, so tls_handshake stays None and connection
    includes the handshake for https probes.
    """

    dns_lookup: Optional[float] = None
    connection: Optional[float] = None
    tls_handshake: Optional[float] = None
    server_processing: Optional[float] = None
    content_transfer: Optional[float] = None
    total: float = 0.0


@dataclass
class ProbeOutcome:
    """A completed canary response"""

    status_code: int
    body: bytes
    headers: Mapping[str, str]
    total_latency: float
    timings: ProbeTimings = field(default_factory=ProbeTimings)

    @property
    def latency_ms(self) -> int:
        return int(self.total_latency * 1000)


class _TimingRecorder:
    """Collects monotonic timestamps from aiohttp trace hooks"""

    def __init__(self, clock):
        self._clock = clock
        self.marks = {}

    def mark(self, name: str) -> None:
        # First occurrence wins, later chunks do not move response start
        self.marks.setdefault(name, self._clock())

    def span(self, start: str, end: str) -> Optional[float]:
        if start in self.marks and end in self.marks:
            return self.marks[end] - self.marks[start]
        return None

    def timings(self, finished: float) -> ProbeTimings:
        dns = self.span("dns_start", "dns_end")
        connection = self.span("connect_start", "connect_end")
        if connection is not None and dns is not None:
            connection = max(connection - dns, 0.0)

        content_transfer = None
        if "response_start" in self.marks:
            content_transfer = finished - self.marks["response_start"]

        return ProbeTimings(
            dns_lookup=dns,
            connection=connection,
            server_processing=self.span("headers_sent", "response_start"),
            content_transfer=content_transfer,
            total=finished - self.marks.get("request_start", finished),
        )


def _marker(name: str):
    async def on_event(session, trace_config_ctx, params):
        recorder = trace_config_ctx.trace_request_ctx
        if recorder is not None:
            recorder.mark(name)

    return on_event


def _build_trace_config() -> aiohttp.TraceConfig:
    trace_config = aiohttp.TraceConfig()
    trace_config.on_request_start.append(_marker("request_start"))
    trace_config.on_dns_resolvehost_start.append(_marker("dns_start"))
    trace_config.on_dns_resolvehost_end.append(_marker("dns_end"))
    trace_config.on_connection_create_start.append(_marker("connect_start"))
    trace_config.on_connection_create_end.append(_marker("connect_end"))
    trace_config.on_request_headers_sent.append(_marker("headers_sent"))
    # Fired once the response headers have been received
    trace_config.on_request_end.append(_marker("response_start"))
    return trace_config


def _is_dns_error(exc: aiohttp.ClientConnectorError) -> bool:
    if isinstance(exc, aiohttp.ClientConnectorDNSError):
        return True
    return isinstance(exc.os_error, socket.gaierror)


def build_ssl_context(ca_bundle: Optional[str] = None) -> ssl.SSLContext:
    """Create the trust configuration for https probes"""
    return ssl.create_default_context(cafile=ca_bundle or None)


class ProbeClient:
    """
    Stateless canary HTTP client.

    Every probe opens its own session with keep-alive disabled, so concurrent
    probes share nothing and each probe measures a fresh connection.
    """

    def __init__(
        self,
        scheme: str = "http",
        ssl_context: Optional[ssl.SSLContext] = None,
        timeout: float = config.PROBE_TIMEOUT,
    ):
        if scheme not in ("http", "https"):
            raise ValueError(f"Unsupported probe scheme: {scheme}")
        self.scheme = scheme
        self.ssl_context = ssl_context
        self.timeout = timeout

    def url_for(self, host: str) -> str:
        return f"{self.scheme}://{host}/"

    async def probe(self, host: str, timeout: Optional[float] = None) -> ProbeOutcome:
        """
        Send one GET request to the given host.

        Args:
            host: Route host, optionally with a port
            timeout: Deadline in seconds for the whole request including the body

        Returns:
            ProbeOutcome with status, body, headers and timing

        Raises:
            ProbeError: On DNS, transport or timeout failures
        """
        if timeout is None:
            timeout = self.timeout

        url = self.url_for(host)
        loop = asyncio.get_running_loop()
        recorder = _TimingRecorder(loop.time)
        connector = aiohttp.TCPConnector(force_close=True)
        request_kwargs = {"trace_request_ctx": recorder}
        if self.scheme == "https" and self.ssl_context is not None:
            request_kwargs["ssl"] = self.ssl_context

        try:
            async with aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=timeout),
                trace_configs=[_build_trace_config()],
            ) as session:
                async with session.get(url, **request_kwargs) as response:
                    try:
                        body = await response.read()
                    except asyncio.TimeoutError:
                        raise
                    except (aiohttp.ClientError, OSError) as e:
                        raise ProbeError(
                            ProbeErrorKind.TRANSPORT,
                            f"Error reading canary response body: {e}",
                        ) from e
                    finished = loop.time()
                    status = response.status
                    headers = CIMultiDict(response.headers)
        except ProbeError:
            raise
        except asyncio.TimeoutError as e:
            raise ProbeError(
                ProbeErrorKind.TIMEOUT,
                f"Canary request to host {host} timed out after {timeout}s",
            ) from e
        except aiohttp.ClientConnectorError as e:
            if _is_dns_error(e):
                raise ProbeError(
                    ProbeErrorKind.DNS,
                    f"Error sending canary HTTP request: DNS error: {e}",
                ) from e
            raise ProbeError(
                ProbeErrorKind.TRANSPORT,
                f"Error sending canary HTTP request on host {host}: {e}",
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise ProbeError(
                ProbeErrorKind.TRANSPORT,
                f"Error sending canary HTTP request on host {host}: {e}",
            ) from e

        timings = recorder.timings(finished)
        logger.debug(
            f"Canary probe {url} returned {status} in {timings.total * 1000:.1f}ms "
            f"(dns={timings.dns_lookup}, connect={timings.connection}, "
            f"server={timings.server_processing}, transfer={timings.content_transfer})"
        )
        return ProbeOutcome(
            status_code=status,
            body=body,
            headers=headers,
            total_latency=timings.total,
            timings=timings,
        )

    async def probe_route(self, route: Route, timeout: Optional[float] = None) -> ProbeOutcome:
        """Probe a route's host, failing fast if the router has not admitted it"""
        if not route.is_routable:
            raise RouteNotReadyError(
                f"Route {route.namespace}/{route.name} has no host, cannot test route"
            )
        return await self.probe(route.host, timeout)
