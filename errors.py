#!/usr/bin/env python3

"""
Exception hierarchy for the ingress canary operator.

None of these are fatal to the operator process: the monitor loop catches
them, logs them and reflects the failure in the next published signal.
"""

import enum


class CanaryError(Exception):
    """Base class for all canary operator errors"""

    pass


class ConfigurationError(CanaryError):
    """Raised when canary resources cannot support the requested operation"""

    pass


class RotationError(ConfigurationError):
    """Raised when the route target port cannot be rotated"""

    pass


class NoPortsError(RotationError):
    """Raised when the canary service exposes no ports"""

    pass


class SinglePortOnlyError(RotationError):
    """Raised when the canary service offers no alternative port"""

    pass


class TransientFetchError(CanaryError):
    """Raised when the current canary resources cannot be read"""

    pass


class ApplyError(CanaryError):
    """Raised when a route update could not be written"""

    pass


class RouteNotReadyError(CanaryError):
    """Raised when a route has no host assigned by the router yet"""

    pass


class ClassificationFailure(CanaryError):
    """Raised for a canary response that was received but is not healthy"""

    def __init__(self, classification, detail: str):
        super().__init__(detail)
        self.classification = classification
        self.detail = detail


class ProbeErrorKind(str, enum.Enum):
    DNS = "dns"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"


class ProbeError(CanaryError):
    """Raised when a canary request could not be completed"""

    def __init__(self, kind: ProbeErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value} error: {self.message}"
