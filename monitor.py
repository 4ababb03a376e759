#!/usr/bin/env python3

"""
Canary monitor loop.

Every tick the monitor either probes the canary route or, once enough clean
probes have passed, rotates the route to a different service port. Rotation
proves that traffic follows the route configuration; a response echoing the
old port means the router is wedged on a stale backend.

The loop owns its rotation state and runs as a single task, so probing and
rotation never overlap.
"""

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

import config
from classifier import Classification, ClassificationResult, classify
from errors import ApplyError, ProbeError, RotationError, TransientFetchError
from models import Route, port_to_str
from rotation import choose_random_port

logger = logging.getLogger(__name__)


@dataclass
class RotationState:
    cycles_since_rotation: int = 0


class TickAction(str, enum.Enum):
    SKIPPED = "skipped"
    ROTATED = "rotated"
    PROBED = "probed"


@dataclass(frozen=True)
class TickReport:
    action: TickAction
    classification: Optional[Classification] = None
    detail: str = ""


class CanaryMonitor:
    """
    Periodic canary route check.

    Args:
        resources: Reconciler view providing get_current_route,
            get_current_service and apply_route_target_port
        probe_client: ProbeClient used to reach the route host
        sink: Reachability signal publisher (see metrics.PrometheusSink)
        rng: Random source for port rotation
        event_recorder: Optional recorder for Kubernetes events on the route
        tick_interval: Seconds between ticks
        rotation_period: Counted ticks between route rotations
        probe_timeout: Seconds allowed for one probe including the body
        count_failed_ticks: Whether failed probes advance the rotation counter
        probe_after_failed_rotation: Whether a failed rotation falls through
            to a probe in the same tick
    """

    def __init__(
        self,
        resources,
        probe_client,
        sink,
        rng: Optional[random.Random] = None,
        event_recorder=None,
        tick_interval: float = config.TICK_INTERVAL,
        rotation_period: int = config.ROTATION_PERIOD,
        probe_timeout: float = config.PROBE_TIMEOUT,
        count_failed_ticks: bool = config.COUNT_FAILED_TICKS,
        probe_after_failed_rotation: bool = config.PROBE_AFTER_FAILED_ROTATION,
        expected_body: str = config.EXPECTED_BODY,
        port_header: str = config.PORT_HEADER,
        clock=time.monotonic,
    ):
        if rotation_period < 1:
            raise ValueError(f"rotation_period must be positive, got {rotation_period}")
        self.resources = resources
        self.probe_client = probe_client
        self.sink = sink
        self.rng = rng or random.Random()
        self.event_recorder = event_recorder
        self.tick_interval = tick_interval
        self.rotation_period = rotation_period
        self.probe_timeout = probe_timeout
        self.count_failed_ticks = count_failed_ticks
        self.probe_after_failed_rotation = probe_after_failed_rotation
        self.expected_body = expected_body
        self.port_header = port_header
        self.state = RotationState()
        self._clock = clock
        self._stop_event = asyncio.Event()
        self.started_at: Optional[float] = None
        self.last_tick_completed: Optional[float] = None
        self.last_report: Optional[TickReport] = None

    @property
    def running(self) -> bool:
        return self.started_at is not None and not self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to exit at the next tick boundary"""
        self._stop_event.set()

    def is_stalled(self, max_age: Optional[float] = None) -> bool:
        """True when a running loop has not finished a tick recently"""
        if not self.running:
            return False
        if max_age is None:
            max_age = 3 * self.tick_interval + self.probe_timeout
        last = self.last_tick_completed or self.started_at
        return self._clock() - last > max_age

    def status(self) -> dict:
        """Snapshot of loop progress for the health endpoint"""
        last = self.last_tick_completed
        report = self.last_report
        return {
            "running": self.running,
            "stalled": self.is_stalled(),
            "cycles_since_rotation": self.state.cycles_since_rotation,
            "rotation_period": self.rotation_period,
            "seconds_since_last_tick": None if last is None else round(self._clock() - last, 3),
            "last_action": report.action.value if report else None,
            "last_classification": report.classification.value if report and report.classification else None,
        }

    async def run(self) -> None:
        """Tick until stop() is called"""
        self.started_at = self._clock()
        logger.info(
            f"Starting canary monitor (interval={self.tick_interval}s, "
            f"rotation period={self.rotation_period} ticks)"
        )
        while not self._stop_event.is_set():
            try:
                report = await self.tick()
                self.last_report = report
                logger.debug(f"Canary tick {report.action.value}: {report.detail}")
            except Exception as e:
                logger.error(f"Unexpected error during canary tick: {e}", exc_info=True)
            self.last_tick_completed = self._clock()

            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Canary monitor stopped")

    async def tick(self) -> TickReport:
        """Run one rotation or probe step"""
        try:
            exists, route = await self.resources.get_current_route()
        except TransientFetchError as e:
            logger.error(f"Failed to get canary route: {e}")
            return TickReport(TickAction.SKIPPED, detail=str(e))
        if not exists:
            logger.error("Failed to get canary route: route does not exist")
            return TickReport(TickAction.SKIPPED, detail="canary route does not exist")

        if self.state.cycles_since_rotation >= self.rotation_period:
            report = await self._rotate(route)
            if report is not None:
                return report
            if not self.probe_after_failed_rotation:
                return TickReport(TickAction.SKIPPED, detail="route rotation failed")

        return await self._probe(route)

    async def _rotate(self, route: Route) -> Optional[TickReport]:
        """
        Rotate the route's target port.

        Returns a report when the tick is finished, or None when rotation
        failed and the tick may continue with a probe.
        """
        try:
            exists, service = await self.resources.get_current_service()
        except TransientFetchError as e:
            logger.error(f"Failed to get canary service: {e}")
            return TickReport(TickAction.SKIPPED, detail=str(e))
        if not exists:
            logger.error("Failed to get canary service: service does not exist")
            return TickReport(TickAction.SKIPPED, detail="canary service does not exist")

        try:
            new_port = choose_random_port(service.ports, route.target_port, self.rng)
            await self.resources.apply_route_target_port(route, new_port)
        except RotationError as e:
            logger.warning(f"Cannot rotate canary route endpoint: {e}")
            self.sink.record_rotation(False)
            return None
        except ApplyError as e:
            logger.error(f"Failed to rotate canary route endpoint: {e}")
            self.sink.record_rotation(False)
            if self.event_recorder is not None:
                self.event_recorder.rotation_failed(route.raw, str(e))
            return None

        self.state.cycles_since_rotation = 0
        self.sink.record_rotation(True)
        message = (
            f"Rotated canary route endpoint from port {port_to_str(route.target_port)} "
            f"to port {port_to_str(new_port)}"
        )
        logger.info(message)
        if self.event_recorder is not None:
            self.event_recorder.route_rotated(route.raw, message)
        # Give the router time to reload before probing the new port
        return TickReport(TickAction.ROTATED, detail=message)

    async def _probe(self, route: Route) -> TickReport:
        outcome = None
        if route.is_routable:
            try:
                outcome = await self.probe_client.probe(route.host, self.probe_timeout)
            except ProbeError as e:
                outcome = e

        result = classify(
            outcome,
            route.host,
            route.target_port,
            expected_body=self.expected_body,
            port_header=self.port_header,
        )
        self._publish(route, result)
        return TickReport(TickAction.PROBED, result.classification, result.detail)

    def _publish(self, route: Route, result: ClassificationResult) -> None:
        host = route.host
        self.sink.record_probe_result(result.classification.value)

        if result.success:
            logger.info(f"Canary check succeeded: {result.detail}")
            self.sink.set_reachable(host)
            self.sink.observe_latency(host, result.latency_ms)
            self.state.cycles_since_rotation += 1
            return

        logger.error(f"Canary route check failed ({result.classification.value}): {result.detail}")
        self.sink.set_unreachable(host)
        if result.wrong_port:
            self.sink.increment_wrong_port_echo()
            if self.event_recorder is not None:
                self.event_recorder.wrong_port_echo(route.raw, result.detail)
        if self.count_failed_ticks:
            self.state.cycles_since_rotation += 1
