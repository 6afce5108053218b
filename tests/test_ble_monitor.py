"""
Tests for the BLE heart rate source.

The bleak client is replaced by FakeClient: it connects instantly, exposes
whichever characteristics the test asks for, and plays a scripted list of
notification payloads once notifications are started (None in the script
fires the disconnected callback).
"""

import asyncio
import struct

import pytest
from bleak.exc import BleakDeviceNotFoundError

from ironheart.bus import Bus
from ironheart.config import BleSettings
from ironheart.errors import ClassifiedError, Severity
from ironheart.measurement import (BATTERY_LEVEL_CHARACTERISTIC_UUID,
                                   HEART_RATE_MEASUREMENT_CHARACTERISTIC_UUID)
from ironheart.sources import ble
from ironheart.sources.ble import BleMonitor, MonitorState, RrBurnIn
from ironheart.status import BatteryLevel, HeartRateStatus
from tests.utils import drain, wait_until


def hrm(bpm, *rr_1024):
    """Heart Rate Measurement payload with uint8 bpm and optional intervals."""
    flags = 0x10 if rr_1024 else 0x00
    return bytes([flags, bpm]) + b"".join(struct.pack('<H', rr) for rr in rr_1024)


class FakeServices:
    def __init__(self, uuids):
        self.uuids = uuids

    def get_characteristic(self, uuid):
        return uuid if uuid in self.uuids else None


class FakeClient:
    def __init__(self, target, disconnected_callback=None, script=(), has_hr=True,
                 battery=b"\x55", connect_error=None, on_connect=None):
        self.target = target
        self.disconnected_callback = disconnected_callback
        self.script = list(script)
        self.battery = battery
        self.connect_error = connect_error
        self.on_connect = on_connect
        self.is_connected = False
        self.disconnects = 0
        self.played = asyncio.Event()

        uuids = set()
        if has_hr:
            uuids.add(HEART_RATE_MEASUREMENT_CHARACTERISTIC_UUID)
        if battery is not None:
            uuids.add(BATTERY_LEVEL_CHARACTERISTIC_UUID)
        self.services = FakeServices(uuids)

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.is_connected = True
        if self.on_connect is not None:
            self.on_connect.set()

    async def read_gatt_char(self, char):
        return bytearray(self.battery)

    async def start_notify(self, char, callback):
        asyncio.get_running_loop().call_soon(self._play, char, callback)

    def _play(self, char, callback):
        for payload in self.script:
            if payload is None:
                self.is_connected = False
                self.disconnected_callback(self)
            else:
                callback(char, bytearray(payload))
        self.played.set()

    async def disconnect(self):
        self.is_connected = False
        self.disconnects += 1


class FakeClientFactory:
    """Builds one FakeClient per connection attempt from a list of keyword sets."""

    def __init__(self, *plans):
        self.plans = list(plans)
        self.clients = []

    def __call__(self, target, disconnected_callback=None):
        plan = self.plans.pop(0) if self.plans else {}
        client = FakeClient(target, disconnected_callback, **plan)
        self.clients.append(client)
        return client


class FakeDiscovery:
    def __init__(self, found=None):
        self.paused = False
        self.restarts = 0
        self.searches = 0
        self.found = found

    def request_restart(self):
        self.restarts += 1

    async def find_monitor(self, address="", name=""):
        self.searches += 1
        return self.found


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(ble, "RECONNECT_BACKOFF_S", 0.0)
    monkeypatch.setattr(ble, "UNREACHABLE_BACKOFF_S", 0.0)


def make_monitor(factory, settings=None, discovery=None):
    bus = Bus(capacity=100)
    observer = bus.subscribe()
    shutdown = asyncio.Event()
    monitor = BleMonitor(
        settings or BleSettings(saved_address="AA:BB:CC:DD:EE:FF"), 0.05, bus, shutdown,
        discovery or FakeDiscovery(), client_factory=factory,
    )
    return monitor, observer, shutdown


def statuses(messages):
    return [m for m in messages if isinstance(m, HeartRateStatus)]


def errors(messages):
    return [m for m in messages if isinstance(m, ClassifiedError)]


class TestRrBurnIn:

    def test_disabled(self):
        burn_in = RrBurnIn(0)
        assert burn_in.filter([0.8]) == [0.8]
        assert burn_in.filter([]) == []
        assert burn_in.filter([0.9, 0.7]) == [0.9, 0.7]

    def test_drops_first_intervals(self):
        burn_in = RrBurnIn(2)
        assert burn_in.filter([0.8]) == []
        assert burn_in.filter([0.81, 0.79, 0.8]) == [0.79, 0.8]
        assert burn_in.filter([0.82]) == [0.82]

    def test_empty_update_rearms(self):
        burn_in = RrBurnIn(1)
        assert burn_in.filter([0.8, 0.9]) == [0.9]
        assert burn_in.filter([]) == []
        assert burn_in.filter([0.7]) == []
        assert burn_in.filter([0.75]) == [0.75]

    def test_empty_during_cooldown_keeps_count(self):
        burn_in = RrBurnIn(2)
        burn_in.filter([0.8])
        burn_in.filter([])
        assert burn_in.left == 1


class TestStreaming:

    def test_notifications_published(self, no_backoff):
        factory = FakeClientFactory({"script": [hrm(60, 1024), hrm(80), b"\x01"]})

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory)
            task = asyncio.create_task(monitor.run())
            await wait_until(lambda: monitor.notifications == 3)
            assert monitor.state is MonitorState.STREAMING
            assert factory.clients[0].target == "AA:BB:CC:DD:EE:FF"

            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return monitor, drain(observer)

        monitor, messages = asyncio.run(scenario())
        published = statuses(messages)

        assert [s.bpm for s in published] == [60, 80, 0]
        assert published[0].rr_intervals == (1.0,)
        assert published[1].rr_intervals == ()
        assert all(s.battery == BatteryLevel.of(85) for s in published)

        # The truncated payload is reported but not published
        invalid = errors(messages)
        assert len(invalid) == 1
        assert invalid[0].message.startswith("Invalid heart rate data")

        assert monitor.state is MonitorState.IDLE
        assert factory.clients[0].disconnects == 1

    def test_no_battery_characteristic(self, no_backoff):
        factory = FakeClientFactory({"script": [hrm(70)], "battery": None})

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory)
            task = asyncio.create_task(monitor.run())
            await wait_until(lambda: monitor.notifications == 1)
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return drain(observer)

        first = statuses(asyncio.run(scenario()))[0]
        assert first.battery == BatteryLevel.not_reported()

    def test_twitches_from_intervals(self, no_backoff):
        factory = FakeClientFactory({"script": [hrm(60, 1024), hrm(75, 800)]})

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory)
            task = asyncio.create_task(monitor.run())
            await wait_until(lambda: monitor.notifications == 2)
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return drain(observer)

        second = statuses(asyncio.run(scenario()))[1]
        assert second.twitch_down
        assert not second.twitch_up

    def test_burn_in_applied(self, no_backoff):
        factory = FakeClientFactory({"script": [hrm(60, 1024), hrm(60, 960)]})
        settings = BleSettings(saved_address="AA:BB:CC:DD:EE:FF", rr_ignore_after_empty=1)

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory, settings)
            task = asyncio.create_task(monitor.run())
            await wait_until(lambda: monitor.notifications == 2)
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return drain(observer)

        published = statuses(asyncio.run(scenario()))
        assert published[0].rr_intervals == ()
        assert published[1].rr_intervals == (960 / 1024,)


class TestReconnect:

    def test_watchdog_reconnects(self, no_backoff):
        reconnected = asyncio.Event()
        factory = FakeClientFactory({}, {"on_connect": reconnected})
        settings = BleSettings(saved_address="AA:BB:CC:DD:EE:FF", no_packet_timeout_sec=0.05)

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory, settings)
            task = asyncio.create_task(monitor.run())
            await asyncio.wait_for(reconnected.wait(), timeout=2.0)
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return monitor, drain(observer)

        monitor, messages = asyncio.run(scenario())
        stalls = [e for e in errors(messages) if e.message == "No HR data received in 0.05 seconds!"]
        assert len(stalls) == 1
        assert stalls[0].severity is Severity.INTERMITTENT
        assert len(factory.clients) == 2
        assert factory.clients[0].disconnects == 1

    def test_disconnect_callback_ends_session(self, no_backoff):
        reconnected = asyncio.Event()
        factory = FakeClientFactory({"script": [hrm(72), None]}, {"on_connect": reconnected})

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory)
            task = asyncio.create_task(monitor.run())
            await asyncio.wait_for(reconnected.wait(), timeout=2.0)
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return drain(observer)

        messages = asyncio.run(scenario())
        assert "Device disconnected" in [e.message for e in errors(messages)]
        # 72, then the zero published when the link dropped
        assert [s.bpm for s in statuses(messages)][:2] == [72, 0]

    def test_unreachable_device_restarts_discovery(self, no_backoff):
        reconnected = asyncio.Event()
        factory = FakeClientFactory(
            {"connect_error": BleakDeviceNotFoundError("AA:BB:CC:DD:EE:FF")},
            {"on_connect": reconnected},
        )
        discovery = FakeDiscovery()

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory, discovery=discovery)
            task = asyncio.create_task(monitor.run())
            await asyncio.wait_for(reconnected.wait(), timeout=2.0)
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return drain(observer)

        messages = asyncio.run(scenario())
        assert discovery.restarts == 1
        assert errors(messages)[0].message.startswith("Device unreachable")
        assert factory.clients[0].disconnects == 0

    def test_missing_characteristic_fatal_after_retries(self, no_backoff):
        factory = FakeClientFactory({"has_hr": False}, {"has_hr": False})
        settings = BleSettings(saved_address="AA:BB:CC:DD:EE:FF", max_discovery_attempts=2)

        async def scenario():
            monitor, observer, _shutdown = make_monitor(factory, settings)
            await asyncio.wait_for(monitor.run(), timeout=2.0)
            return monitor, drain(observer)

        monitor, messages = asyncio.run(scenario())
        reported = errors(messages)

        assert [e.severity for e in reported] == [
            Severity.INTERMITTENT, Severity.INTERMITTENT, Severity.FATAL
        ]
        assert reported[0].message == "Heart rate characteristic missing (1/2)"
        assert monitor.connections == 2
        assert all(client.disconnects == 1 for client in factory.clients)

    def test_discovery_paused_while_connected(self, no_backoff):
        factory = FakeClientFactory({"script": [hrm(65)]})
        discovery = FakeDiscovery()

        async def scenario():
            monitor, _observer, shutdown = make_monitor(factory, discovery=discovery)
            task = asyncio.create_task(monitor.run())
            await wait_until(lambda: monitor.notifications == 1)
            paused_while_streaming = discovery.paused
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return paused_while_streaming

        assert asyncio.run(scenario()) is True
        assert discovery.paused is False


class TestTargetResolution:

    def test_no_monitor_found(self, monkeypatch):
        monkeypatch.setattr(ble, "RECONNECT_BACKOFF_S", 0.01)
        factory = FakeClientFactory()
        discovery = FakeDiscovery(found=None)
        settings = BleSettings(saved_name="Polar")

        async def scenario():
            monitor, observer, shutdown = make_monitor(factory, settings, discovery)
            task = asyncio.create_task(monitor.run())
            await wait_until(lambda: discovery.searches >= 2)
            shutdown.set()
            await asyncio.wait_for(task, timeout=2.0)
            return drain(observer)

        messages = asyncio.run(scenario())
        assert errors(messages)[0].message == "No heart rate monitor found"
        assert factory.clients == []
