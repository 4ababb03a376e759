#!/usr/bin/env python3

import kopf
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


def emit_route_rotated_event(body: Dict[str, Any], message: str) -> None:
    """Create event about a canary route target port rotation"""
    try:
        kopf.info(body, reason="CanaryRouteRotated", message=message)
        logger.info(f"Emitted route rotated event: {message}")
    except Exception as e:
        logger.error(f"Failed to emit route rotated event: {e}")


def emit_wrong_port_echo_event(body: Dict[str, Any], message: str) -> None:
    """Create event about a canary request served by the wrong backend port"""
    try:
        kopf.warn(body, reason="CanaryRouterWedged", message=message)
        logger.warning(f"Emitted wrong port echo event: {message}")
    except Exception as e:
        logger.error(f"Failed to emit wrong port echo event: {e}")


def emit_error_event(body: Dict[str, Any], reason: str, message: str) -> None:
    """Create error event"""
    try:
        kopf.exception(body, reason=reason, message=message)
        logger.error(f"Emitted error event: {message}")
    except Exception as e:
        logger.error(f"Failed to emit error event: {e}")


class KopfEventRecorder:
    """Posts canary monitor events on the canary route object"""

    def route_rotated(self, route_body: Dict[str, Any], message: str) -> None:
        if route_body:
            emit_route_rotated_event(route_body, message)

    def wrong_port_echo(self, route_body: Dict[str, Any], message: str) -> None:
        if route_body:
            emit_wrong_port_echo_event(route_body, message)

    def rotation_failed(self, route_body: Dict[str, Any], message: str) -> None:
        if route_body:
            emit_error_event(route_body, "CanaryRouteRotationFailed", message)
