#!/usr/bin/env python3

"""
Configuration module for the Ingress Canary Operator.

All configuration values are loaded from environment variables with sensible defaults.
This eliminates hardcoded values and allows runtime configuration via ConfigMaps/Secrets.
"""

import os


def get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {key}={value} is not a valid integer")


def get_env_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {key}={value} is not a valid float")


def get_env_str(key: str, default: str) -> str:
    """Get string value from environment variable."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool) -> bool:
    """Get boolean value from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Environment variable {key}={value} is not a valid boolean")


# Canary resources
CANARY_NAMESPACE = get_env_str("CANARY_NAMESPACE", "openshift-ingress-canary")
CANARY_ROUTE_NAME = get_env_str("CANARY_ROUTE_NAME", "canary")
CANARY_SERVICE_NAME = get_env_str("CANARY_SERVICE_NAME", "ingress-canary")

# Monitor loop
TICK_INTERVAL = get_env_float("CANARY_TICK_INTERVAL", 60.0)
ROTATION_PERIOD = get_env_int("CANARY_ROTATION_PERIOD", 6)
COUNT_FAILED_TICKS = get_env_bool("CANARY_COUNT_FAILED_TICKS", False)
PROBE_AFTER_FAILED_ROTATION = get_env_bool("CANARY_PROBE_AFTER_FAILED_ROTATION", True)

# Probe
PROBE_TIMEOUT = get_env_float("CANARY_PROBE_TIMEOUT", 10.0)
PROBE_SCHEME = get_env_str("CANARY_PROBE_SCHEME", "http")
CA_BUNDLE = get_env_str("CANARY_CA_BUNDLE", "")
EXPECTED_BODY = get_env_str("CANARY_EXPECTED_BODY", "Hello OpenShift!")
PORT_HEADER = get_env_str("CANARY_PORT_HEADER", "request-port")

# Retry configuration for Kubernetes API calls
RETRY_MAX_ATTEMPTS = get_env_int("CANARY_RETRY_MAX_ATTEMPTS", 3)
RETRY_INITIAL_DELAY = get_env_float("CANARY_RETRY_INITIAL_DELAY", 1.0)
RETRY_MAX_DELAY = get_env_float("CANARY_RETRY_MAX_DELAY", 5.0)
API_REQUEST_TIMEOUT = get_env_float("CANARY_API_REQUEST_TIMEOUT", 10.0)

# Metrics and health checks
METRICS_PORT = get_env_int("METRICS_PORT", 8000)
HEALTH_CHECK_PORT = get_env_int("HEALTH_CHECK_PORT", 8080)


def get_config_summary() -> str:
    """Return configuration summary for logging."""
    return f"""Ingress Canary Operator Configuration:
  Canary resources:
    - Namespace: {CANARY_NAMESPACE}
    - Route: {CANARY_ROUTE_NAME}
    - Service: {CANARY_SERVICE_NAME}

  Monitor:
    - Tick interval: {TICK_INTERVAL}s
    - Rotation period: {ROTATION_PERIOD} ticks
    - Count failed ticks toward rotation: {COUNT_FAILED_TICKS}
    - Probe after failed rotation: {PROBE_AFTER_FAILED_ROTATION}

  Probe:
    - Scheme: {PROBE_SCHEME}
    - Timeout: {PROBE_TIMEOUT}s
    - CA bundle: {CA_BUNDLE or "system default"}
    - Expected body: {EXPECTED_BODY}
    - Port header: {PORT_HEADER}

  Retry:
    - Max attempts: {RETRY_MAX_ATTEMPTS}
    - Initial delay: {RETRY_INITIAL_DELAY}s
    - Max delay: {RETRY_MAX_DELAY}s
    - API request timeout: {API_REQUEST_TIMEOUT}s

  Observability:
    - Metrics port: {METRICS_PORT}
    - Health check port: {HEALTH_CHECK_PORT}
"""
