#!/usr/bin/env python3

import asyncio
import logging
from typing import Optional

import kopf
from prometheus_client import start_http_server

import config
from clients import get_api_client, get_core_v1_api, get_custom_objects_api
from errors import CanaryError, ConfigurationError
from events import KopfEventRecorder
from health import run_health_server, HealthCheckServer
from metrics import init_metrics, PrometheusSink
from models import Service
from monitor import CanaryMonitor
from probe import ProbeClient, build_ssl_context
from reconciler import CanaryResources


# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
logger.info("Ingress Canary Operator starting")

# Global instances owned by the operator lifecycle
_health_server: Optional[HealthCheckServer] = None
_resources: Optional[CanaryResources] = None
_monitor: Optional[CanaryMonitor] = None
_monitor_task: Optional[asyncio.Task] = None


def build_probe_client() -> ProbeClient:
    ssl_context = None
    if config.PROBE_SCHEME == "https":
        ssl_context = build_ssl_context(config.CA_BUNDLE)
    return ProbeClient(
        scheme=config.PROBE_SCHEME,
        ssl_context=ssl_context,
        timeout=config.PROBE_TIMEOUT,
    )


def is_canary_service(name, namespace, **_) -> bool:
    return name == config.CANARY_SERVICE_NAME and namespace == config.CANARY_NAMESPACE


@kopf.on.event("", "v1", "services", when=is_canary_service)
async def on_canary_service_event(event, body, name, namespace, **kwargs):
    """Keep the canary route in place for the canary service"""
    if event.get("type") == "DELETED" or _resources is None:
        return

    service = Service.from_k8s(body)
    try:
        created, route = await _resources.ensure_canary_route(service)
    except CanaryError as e:
        raise kopf.TemporaryError(f"Failed to ensure canary route: {e}", delay=30)

    if created:
        logger.info(f"Created canary route {route.namespace}/{route.name} for service {name}")


@kopf.on.startup()
async def configure(settings: kopf.OperatorSettings, **_):
    global _health_server, _resources, _monitor, _monitor_task

    settings.posting.level = logging.WARNING

    # Initialize Prometheus metrics
    init_metrics()

    # Start Prometheus metrics server
    start_http_server(config.METRICS_PORT)
    logger.info(f"Prometheus metrics server started on port {config.METRICS_PORT}")

    try:
        _resources = CanaryResources.from_kubernetes(
            get_core_v1_api(),
            get_custom_objects_api(),
            get_api_client(),
        )
    except ConfigurationError as e:
        raise kopf.PermanentError(str(e)) from e
    _monitor = CanaryMonitor(
        resources=_resources,
        probe_client=build_probe_client(),
        sink=PrometheusSink(),
        event_recorder=KopfEventRecorder(),
    )
    _monitor_task = asyncio.create_task(_monitor.run())

    # Start health check server
    _health_server = await run_health_server(
        host="0.0.0.0",
        port=config.HEALTH_CHECK_PORT,
        monitor=_monitor,
    )
    # Mark as ready after initialization
    _health_server.mark_ready()
    logger.info(f"Health check server started on port {config.HEALTH_CHECK_PORT}")

    # Log configuration summary
    logger.info(config.get_config_summary())


@kopf.on.cleanup()
async def cleanup_handler(**kwargs):
    """Cleanup handler called on operator shutdown"""
    logger.info("Operator cleanup: stopping canary monitor...")

    # Mark as not ready to stop receiving traffic
    if _health_server:
        _health_server.mark_not_ready()

    if _monitor and _monitor_task:
        _monitor.stop()
        try:
            # An in-flight probe finishes within its timeout
            await asyncio.wait_for(_monitor_task, timeout=config.PROBE_TIMEOUT + 5)
        except asyncio.TimeoutError:
            logger.warning("Canary monitor did not stop in time, cancelling")
            _monitor_task.cancel()

    # Stop health check server
    if _health_server:
        await _health_server.stop()

    logger.info("Operator cleanup complete")


if __name__ == "__main__":
    try:
        kopf.run(namespaces=[config.CANARY_NAMESPACE])
    except KeyboardInterrupt:
        logger.info("Operator stopped by user")
    except Exception as e:
        logger.error(f"Operator crashed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Ingress Canary Operator shutdown complete")
