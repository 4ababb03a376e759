#!/usr/bin/env python3

"""
Prometheus metrics for the Ingress Canary Operator.

Exposes the canary route reachability state and latency, wedged router
detections, and the operator's own retry behaviour.
"""

import logging
from prometheus_client import Counter, Gauge, Histogram, Info

logger = logging.getLogger(__name__)

# Info metrics
operator_info = Info("ingress_canary_operator", "Ingress Canary Operator information")

# Canary route metrics
canary_route_reachable = Gauge(
    "ingress_canary_route_reachable",
    "Whether the last canary request to the route host succeeded (1) or failed (0)",
    ["host"],
)

canary_request_time = Histogram(
    "ingress_canary_check_duration",
    "Canary endpoint request time in milliseconds",
    ["host"],
    buckets=(10, 25, 50, 100, 200, 400, 800, 1600, 3200, 6400, 10000),
)

canary_endpoint_wrong_port_echo = Counter(
    "ingress_canary_endpoint_wrong_port_echo",
    "Number of canary requests received on a port other than the one the route targets",
)

canary_probe_results = Counter(
    "ingress_canary_probe_results_total",
    "Canary probe results by classification",
    ["classification"],
)

canary_route_rotations = Counter(
    "ingress_canary_route_rotations_total",
    "Canary route target port rotation attempts",
    ["result"],
)

# Retry metrics
retries_total = Counter(
    "ingress_canary_retries_total",
    "Total number of operation retries",
    ["operation", "attempt"],
)

retries_exhausted = Counter(
    "ingress_canary_retries_exhausted_total",
    "Total number of operations that exhausted all retries",
    ["operation"],
)


def init_metrics():
    """Initialize metrics with operator information"""
    operator_info.info(
        {
            "version": "0.1.0",
            "name": "ingress-canary-operator",
            "component": "canary-monitor",
        }
    )
    logger.info("Prometheus metrics initialized")


# Helper functions for common metric operations
def record_probe_result(classification: str):
    """Record the classification of one canary probe"""
    canary_probe_results.labels(classification=classification).inc()


def record_rotation(success: bool):
    """Record a route rotation attempt"""
    result = "success" if success else "failure"
    canary_route_rotations.labels(result=result).inc()


def record_retry(operation: str, attempt: int):
    """Record a retried operation"""
    retries_total.labels(operation=operation, attempt=str(attempt)).inc()


def record_retries_exhausted(operation: str):
    """Record an operation that ran out of attempts"""
    retries_exhausted.labels(operation=operation).inc()


class PrometheusSink:
    """Reachability signals published by the canary monitor"""

    def set_reachable(self, host: str) -> None:
        canary_route_reachable.labels(host=host).set(1)

    def set_unreachable(self, host: str) -> None:
        canary_route_reachable.labels(host=host).set(0)

    def observe_latency(self, host: str, milliseconds: float) -> None:
        canary_request_time.labels(host=host).observe(milliseconds)

    def increment_wrong_port_echo(self) -> None:
        canary_endpoint_wrong_port_echo.inc()

    def record_probe_result(self, classification: str) -> None:
        record_probe_result(classification)

    def record_rotation(self, success: bool) -> None:
        record_rotation(success)
