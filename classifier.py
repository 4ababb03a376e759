#!/usr/bin/env python3

"""
Classification of canary probe results.

Every probe maps to exactly one Classification. Checks run in a fixed order:
missing host, DNS/transport errors, empty body, body contents, echoed port,
then the status code. Only STATUS_OK counts as reachable.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Union

import config
from errors import ClassificationFailure, ProbeError, ProbeErrorKind
from models import PortRef, port_to_str
from probe import ProbeOutcome

logger = logging.getLogger(__name__)


class Classification(str, enum.Enum):
    ROUTE_NOT_READY = "RouteNotReady"
    DNS_FAILURE = "DNSFailure"
    TRANSPORT_FAILURE = "TransportFailure"
    EMPTY_BODY = "EmptyBody"
    UNEXPECTED_BODY = "UnexpectedBody"
    MISSING_PORT_HEADER = "MissingPortHeader"
    WRONG_PORT_ECHO = "WrongPortEcho"
    STATUS_OK = "StatusOK"
    STATUS_TIMEOUT = "StatusTimeout"
    STATUS_UNAVAILABLE = "StatusUnavailable"
    STATUS_UNEXPECTED = "StatusUnexpected"


@dataclass(frozen=True)
class ClassificationResult:
    classification: Classification
    detail: str
    latency_ms: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.classification is Classification.STATUS_OK

    @property
    def wrong_port(self) -> bool:
        return self.classification is Classification.WRONG_PORT_ECHO

    def raise_for_status(self) -> None:
        """Raise ClassificationFailure unless the probe succeeded"""
        if not self.success:
            raise ClassificationFailure(self.classification, self.detail)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    # Plain dicts are case sensitive, HTTP header names are not
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def classify(
    result: Union[ProbeOutcome, ProbeError, None],
    host: str,
    expected_port: Optional[PortRef],
    expected_body: str = config.EXPECTED_BODY,
    port_header: str = config.PORT_HEADER,
) -> ClassificationResult:
    """
    Decide what a probe result says about the canary route.

    Args:
        result: Probe outcome, the ProbeError raised by the probe, or None
            when no probe was attempted
        host: Route host that was probed
        expected_port: Target port the route is configured with
        expected_body: Text the canary application always responds with
        port_header: Response header in which the canary echoes its port

    Returns:
        ClassificationResult with a human readable detail message
    """
    if not host:
        return ClassificationResult(
            Classification.ROUTE_NOT_READY,
            "Route has no host assigned yet, cannot test route",
        )

    if isinstance(result, ProbeError):
        if result.kind is ProbeErrorKind.DNS:
            return ClassificationResult(Classification.DNS_FAILURE, str(result))
        return ClassificationResult(Classification.TRANSPORT_FAILURE, str(result))

    if result is None:
        return ClassificationResult(
            Classification.TRANSPORT_FAILURE, f"No canary response received from {host}"
        )

    if len(result.body) == 0:
        return ClassificationResult(
            Classification.EMPTY_BODY, "Expected canary response body to not be empty"
        )

    body = result.body.decode("utf-8", errors="replace")
    if expected_body not in body:
        return ClassificationResult(
            Classification.UNEXPECTED_BODY,
            f"Expected canary response body to contain {expected_body!r}, instead got {body[:256]!r}",
        )

    received_port = _header(result.headers, port_header)
    if not received_port:
        return ClassificationResult(
            Classification.MISSING_PORT_HEADER,
            f"Expected {port_header!r} header in canary response to have a value",
        )

    expected = port_to_str(expected_port)
    if received_port.strip() != expected:
        return ClassificationResult(
            Classification.WRONG_PORT_ECHO,
            f"Canary request received on port {received_port}, but route specifies {expected or 'no port'}",
        )

    status = result.status_code
    if status == 200:
        return ClassificationResult(
            Classification.STATUS_OK,
            f"Canary route {host} reachable in {result.latency_ms}ms",
            latency_ms=result.latency_ms,
        )
    if status == 408:
        return ClassificationResult(
            Classification.STATUS_TIMEOUT, f"Status code {status}: request timed out"
        )
    if status == 503:
        return ClassificationResult(
            Classification.STATUS_UNAVAILABLE,
            f"Status code {status}: route not available via router",
        )
    return ClassificationResult(
        Classification.STATUS_UNEXPECTED, f"Unexpected status code: {status}"
    )
