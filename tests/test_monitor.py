#!/usr/bin/env python3

"""Unit tests for the canary monitor loop."""

import asyncio
import random
from unittest.mock import MagicMock

import pytest
from classifier import Classification
from errors import ApplyError, ProbeError, ProbeErrorKind, TransientFetchError
from models import Route, Service
from monitor import CanaryMonitor, TickAction
from probe import ProbeOutcome

HOST = "canary-openshift-ingress-canary.apps.example.com"
BODY = b"Hello OpenShift!"


class FakeResources:
    """In-memory reconciler view of the canary route and service."""

    def __init__(self, host=HOST, target_port="8080", ports=("8080", "8888")):
        self.route = Route(
            name="canary",
            namespace="openshift-ingress-canary",
            host=host,
            target_port=target_port,
            raw={"metadata": {"name": "canary"}},
        )
        self.service = Service(name="ingress-canary", namespace="openshift-ingress-canary", ports=tuple(ports))
        self.route_error = None
        self.service_error = None
        self.apply_error = None
        self.route_exists = True
        self.applied = []

    async def get_current_route(self):
        if self.route_error:
            raise self.route_error
        if not self.route_exists:
            return False, None
        return True, self.route

    async def get_current_service(self):
        if self.service_error:
            raise self.service_error
        return True, self.service

    async def apply_route_target_port(self, route, port):
        if self.apply_error:
            raise self.apply_error
        self.applied.append(port)
        changed = self.route.target_port != port
        self.route = Route(
            name=route.name,
            namespace=route.namespace,
            host=route.host,
            target_port=port,
            raw=route.raw,
        )
        return changed


class FakeProbeClient:
    """Probe client answering like a canary on the route's current port."""

    def __init__(self, resources):
        self.resources = resources
        self.calls = []
        self.error = None
        self.echo_port = None
        self.status = 200

    async def probe(self, host, timeout=None):
        self.calls.append((host, timeout))
        if self.error:
            raise self.error
        port = self.echo_port or str(self.resources.route.target_port)
        return ProbeOutcome(
            status_code=self.status,
            body=BODY,
            headers={"request-port": port},
            total_latency=0.05,
        )


@pytest.fixture
def resources():
    return FakeResources()


@pytest.fixture
def probe_client(resources):
    return FakeProbeClient(resources)


@pytest.fixture
def sink():
    return MagicMock()


@pytest.fixture
def monitor(resources, probe_client, sink):
    return CanaryMonitor(
        resources=resources,
        probe_client=probe_client,
        sink=sink,
        rng=random.Random(5),
        tick_interval=0.01,
        rotation_period=6,
        probe_timeout=10,
    )


@pytest.mark.asyncio
class TestProbeTicks:
    """Tests for ticks that probe the route."""

    async def test_successful_probe(self, monitor, probe_client, sink):
        """A clean probe publishes reachable and latency and counts toward rotation."""
        report = await monitor.tick()

        assert report.action is TickAction.PROBED
        assert report.classification is Classification.STATUS_OK
        assert probe_client.calls == [(HOST, 10)]
        sink.set_reachable.assert_called_once_with(HOST)
        sink.observe_latency.assert_called_once_with(HOST, 50)
        sink.set_unreachable.assert_not_called()
        sink.record_probe_result.assert_called_once_with("StatusOK")
        assert monitor.state.cycles_since_rotation == 1

    async def test_wrong_port_echo(self, monitor, probe_client, sink):
        """A wedged router is counted once and marks the host unreachable."""
        probe_client.echo_port = "8888"

        report = await monitor.tick()

        assert report.classification is Classification.WRONG_PORT_ECHO
        sink.increment_wrong_port_echo.assert_called_once_with()
        sink.set_unreachable.assert_called_once_with(HOST)
        sink.set_reachable.assert_not_called()
        sink.observe_latency.assert_not_called()
        assert monitor.state.cycles_since_rotation == 0

    async def test_dns_failure(self, monitor, probe_client, sink):
        """DNS failures publish unreachable without a latency sample."""
        probe_client.error = ProbeError(ProbeErrorKind.DNS, "no such host")

        report = await monitor.tick()

        assert report.classification is Classification.DNS_FAILURE
        sink.set_unreachable.assert_called_once_with(HOST)
        sink.observe_latency.assert_not_called()
        sink.increment_wrong_port_echo.assert_not_called()

    async def test_status_failure(self, monitor, probe_client, sink):
        probe_client.status = 503
        report = await monitor.tick()
        assert report.classification is Classification.STATUS_UNAVAILABLE
        sink.set_unreachable.assert_called_once_with(HOST)

    async def test_route_without_host(self, resources, probe_client, sink, monitor):
        """Routes without a host are not probed."""
        resources.route = Route(name="canary", namespace="ns", host="", target_port="8080")

        report = await monitor.tick()

        assert report.classification is Classification.ROUTE_NOT_READY
        assert probe_client.calls == []
        sink.set_unreachable.assert_called_once_with("")

    async def test_failed_ticks_do_not_count_by_default(self, monitor, probe_client):
        probe_client.status = 500
        for _ in range(10):
            await monitor.tick()
        assert monitor.state.cycles_since_rotation == 0

    async def test_failed_ticks_count_when_configured(self, resources, probe_client, sink):
        monitor = CanaryMonitor(
            resources, probe_client, sink, rng=random.Random(1), count_failed_ticks=True
        )
        probe_client.status = 500
        for _ in range(3):
            await monitor.tick()
        assert monitor.state.cycles_since_rotation == 3


@pytest.mark.asyncio
class TestFetchFailures:
    """Tests for reconciler read failures."""

    async def test_route_fetch_error_skips_tick(self, monitor, resources, probe_client, sink):
        resources.route_error = TransientFetchError("api unavailable")

        report = await monitor.tick()

        assert report.action is TickAction.SKIPPED
        assert probe_client.calls == []
        sink.set_unreachable.assert_not_called()
        assert monitor.state.cycles_since_rotation == 0

    async def test_missing_route_skips_tick(self, monitor, resources, probe_client):
        resources.route_exists = False
        report = await monitor.tick()
        assert report.action is TickAction.SKIPPED
        assert probe_client.calls == []

    async def test_service_fetch_error_skips_rotation_tick(self, monitor, resources, probe_client):
        monitor.state.cycles_since_rotation = 6
        resources.service_error = TransientFetchError("api unavailable")

        report = await monitor.tick()

        assert report.action is TickAction.SKIPPED
        assert probe_client.calls == []
        assert resources.applied == []
        assert monitor.state.cycles_since_rotation == 6


@pytest.mark.asyncio
class TestRotation:
    """Tests for route target port rotation."""

    async def test_rotation_after_six_clean_ticks(self, monitor, resources, probe_client, sink):
        """The seventh tick rotates instead of probing and resets the counter."""
        for _ in range(6):
            report = await monitor.tick()
            assert report.action is TickAction.PROBED
        assert monitor.state.cycles_since_rotation == 6
        assert len(probe_client.calls) == 6

        report = await monitor.tick()

        assert report.action is TickAction.ROTATED
        assert len(probe_client.calls) == 6
        assert resources.applied == ["8888"]
        assert resources.route.target_port == "8888"
        assert monitor.state.cycles_since_rotation == 0
        sink.record_rotation.assert_called_once_with(True)

    async def test_probe_after_rotation_expects_new_port(self, monitor, resources, probe_client):
        monitor.state.cycles_since_rotation = 6
        await monitor.tick()

        report = await monitor.tick()

        assert report.classification is Classification.STATUS_OK
        assert monitor.state.cycles_since_rotation == 1

    async def test_stale_backend_after_rotation(self, monitor, resources, probe_client, sink):
        """Traffic still answering on the old port is a wedged router."""
        monitor.state.cycles_since_rotation = 6
        await monitor.tick()
        probe_client.echo_port = "8080"

        report = await monitor.tick()

        assert report.classification is Classification.WRONG_PORT_ECHO
        sink.increment_wrong_port_echo.assert_called_once_with()

    async def test_single_port_falls_through_to_probe(self, resources, probe_client, sink):
        """An unrotatable service is logged and the tick probes instead."""
        resources.service = Service(name="svc", namespace="ns", ports=("8080",))
        monitor = CanaryMonitor(resources, probe_client, sink, rng=random.Random(1))
        monitor.state.cycles_since_rotation = 6

        report = await monitor.tick()

        assert report.action is TickAction.PROBED
        assert resources.applied == []
        sink.record_rotation.assert_called_once_with(False)
        assert monitor.state.cycles_since_rotation == 7

    async def test_apply_error_keeps_counter(self, resources, probe_client, sink):
        """A failed route update does not reset the rotation counter."""
        resources.apply_error = ApplyError("conflict")
        recorder = MagicMock()
        monitor = CanaryMonitor(
            resources, probe_client, sink, rng=random.Random(1), event_recorder=recorder
        )
        monitor.state.cycles_since_rotation = 6

        report = await monitor.tick()

        assert report.action is TickAction.PROBED
        assert monitor.state.cycles_since_rotation == 7
        recorder.rotation_failed.assert_called_once()

        # Rotation is retried on the following tick
        resources.apply_error = None
        report = await monitor.tick()
        assert report.action is TickAction.ROTATED
        assert monitor.state.cycles_since_rotation == 0

    async def test_failed_rotation_without_fallthrough(self, resources, probe_client, sink):
        resources.apply_error = ApplyError("conflict")
        monitor = CanaryMonitor(
            resources,
            probe_client,
            sink,
            rng=random.Random(1),
            probe_after_failed_rotation=False,
        )
        monitor.state.cycles_since_rotation = 6

        report = await monitor.tick()

        assert report.action is TickAction.SKIPPED
        assert probe_client.calls == []
        assert monitor.state.cycles_since_rotation == 6

    async def test_rotation_event_recorded(self, resources, probe_client, sink):
        recorder = MagicMock()
        monitor = CanaryMonitor(
            resources, probe_client, sink, rng=random.Random(1), event_recorder=recorder
        )
        monitor.state.cycles_since_rotation = 6

        await monitor.tick()

        recorder.route_rotated.assert_called_once()
        body, message = recorder.route_rotated.call_args[0]
        assert body == {"metadata": {"name": "canary"}}
        assert "8888" in message

    async def test_custom_rotation_period(self, resources, probe_client, sink):
        monitor = CanaryMonitor(resources, probe_client, sink, rotation_period=2)
        actions = [(await monitor.tick()).action for _ in range(3)]
        assert actions == [TickAction.PROBED, TickAction.PROBED, TickAction.ROTATED]


class TestMonitorConfiguration:
    """Tests for monitor construction."""

    def test_defaults(self, resources, probe_client, sink):
        monitor = CanaryMonitor(resources, probe_client, sink)
        assert monitor.tick_interval == 60.0
        assert monitor.rotation_period == 6
        assert monitor.probe_timeout == 10.0
        assert monitor.count_failed_ticks is False
        assert monitor.probe_after_failed_rotation is True
        assert monitor.state.cycles_since_rotation == 0

    def test_rejects_non_positive_rotation_period(self, resources, probe_client, sink):
        with pytest.raises(ValueError):
            CanaryMonitor(resources, probe_client, sink, rotation_period=0)


@pytest.mark.asyncio
class TestRunLoop:
    """Tests for the long running loop."""

    async def test_run_ticks_until_stopped(self, monitor, probe_client):
        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.1)
        assert monitor.running is True

        monitor.stop()
        await asyncio.wait_for(task, timeout=1)

        assert len(probe_client.calls) >= 2
        assert monitor.running is False

    async def test_stop_interrupts_sleep(self, resources, probe_client, sink):
        """Stopping does not wait for the full tick interval."""
        monitor = CanaryMonitor(resources, probe_client, sink, tick_interval=3600)
        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.05)

        monitor.stop()
        await asyncio.wait_for(task, timeout=1)

        assert len(probe_client.calls) == 1

    async def test_unexpected_errors_do_not_stop_loop(self, monitor, resources, probe_client):
        resources.route_error = RuntimeError("boom")
        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.05)
        assert not task.done()

        resources.route_error = None
        await asyncio.sleep(0.05)
        monitor.stop()
        await asyncio.wait_for(task, timeout=1)

        assert len(probe_client.calls) >= 1
        assert monitor.last_tick_completed is not None

    async def test_is_stalled(self, resources, probe_client, sink):
        now = [100.0]
        monitor = CanaryMonitor(
            resources, probe_client, sink, tick_interval=60, probe_timeout=10, clock=lambda: now[0]
        )
        assert monitor.is_stalled() is False

        monitor.started_at = 100.0
        monitor.last_tick_completed = 100.0
        now[0] = 150.0
        assert monitor.is_stalled() is False

        now[0] = 100.0 + 3 * 60 + 10 + 1
        assert monitor.is_stalled() is True

        monitor.stop()
        assert monitor.is_stalled() is False

    async def test_status_reflects_last_tick(self, resources, probe_client, sink):
        monitor = CanaryMonitor(resources, probe_client, sink, tick_interval=3600)
        assert monitor.status()["last_action"] is None

        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.05)
        monitor.stop()
        await asyncio.wait_for(task, timeout=1)

        status = monitor.status()
        assert status["running"] is False
        assert status["last_action"] == "probed"
        assert status["last_classification"] == "StatusOK"
        assert status["cycles_since_rotation"] == 1
