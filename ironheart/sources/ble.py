"""
BLE heart rate monitor source.

Connects to a standard Bluetooth heart rate monitor, subscribes to Heart
Rate Measurement notifications, and publishes HeartRateStatus snapshots.

STATE MACHINE:
    IDLE -> CONNECTING -> SERVICE_DISCOVERY -> SUBSCRIBING -> STREAMING
    Any failure publishes a classified error and goes back to IDLE; the
    next attempt starts after RECONNECT_BACKOFF_S. Shutdown is checked at
    every wait and always ends with a disconnect.

ERRORS:
- Connect timeout, dropped link, no data for no_packet_timeout_sec:
  Intermittent, reconnect
- Device unreachable: Intermittent, discovery restart, longer backoff
- Measurement characteristic missing max_discovery_attempts times in a
  row: Fatal, actor ends
"""

import asyncio
from enum import Enum
from typing import Callable, List, Optional, Sequence

from bleak import BleakClient
from bleak.exc import BleakDeviceNotFoundError, BleakError

from ironheart.actor import ShutdownRequested, race, sleep_or_shutdown
from ironheart.bus import Bus, BusClosed
from ironheart.config import BleSettings
from ironheart.errors import ClassifiedError, MeasurementError
from ironheart.log import get_logger
from ironheart.measurement import (BATTERY_LEVEL_CHARACTERISTIC_UUID,
                                   HEART_RATE_MEASUREMENT_CHARACTERISTIC_UUID,
                                   parse_hrm)
from ironheart.scan import Discovery
from ironheart.status import BatteryLevel, HeartRateStatus
from ironheart.twitcher import Twitcher

logger = get_logger(__name__)


RECONNECT_BACKOFF_S = 1.0
UNREACHABLE_BACKOFF_S = 3.0
BATTERY_POLL_INTERVAL_S = 300.0
BATTERY_READ_TIMEOUT_S = 10.0

# Queued in place of a payload when the link drops
_DISCONNECTED = None


class MonitorState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SERVICE_DISCOVERY = "service_discovery"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"


class RrBurnIn:
    """Drops the first intervals reported after a gap.

    Monitors tend to report garbage intervals right after a notification
    without any. After every empty update the next `cooldown` intervals are
    discarded. A fresh filter starts in the cooldown state.

    Example with cooldown=2:
        >>> burn_in = RrBurnIn(2)
        >>> burn_in.filter([0.8]), burn_in.filter([0.81, 0.79, 0.8])
        ([], [0.79, 0.8])
    """

    def __init__(self, cooldown: int):
        self.cooldown = cooldown
        self.left = cooldown

    def filter(self, rr_intervals: Sequence[float]) -> List[float]:
        rr_intervals = list(rr_intervals)
        kept = rr_intervals[self.left:] if len(rr_intervals) > self.left else []
        if self.left == 0 and not rr_intervals:
            self.left = self.cooldown
        else:
            self.left = max(0, self.left - len(rr_intervals))
        return kept


class _SessionEnded(Exception):
    """Internal: current connection is done, reconnect."""


class BleMonitor:
    """BLE source actor.

    Args:
        settings: BLE section of the configuration
        twitch_threshold_s: Twitch detector threshold
        bus: Bus to publish statuses and errors on
        shutdown: Shared shutdown event
        discovery: Scanner used to find the monitor and to signal restarts
        client_factory: Builds a client from (device_or_address,
            disconnected_callback=...), BleakClient by default

    Attributes:
        state (MonitorState): Current connection state
        battery (BatteryLevel): Last battery reading
        discovery_misses (int): Consecutive connections without the
            measurement characteristic
    """

    def __init__(self, settings: BleSettings, twitch_threshold_s: float,
                 bus: Bus, shutdown: asyncio.Event, discovery: Discovery,
                 client_factory: Callable = BleakClient):
        self.settings = settings
        self.twitch_threshold_s = twitch_threshold_s
        self.bus = bus
        self.shutdown = shutdown
        self.discovery = discovery
        self._client_factory = client_factory

        self.state = MonitorState.IDLE
        self.battery = BatteryLevel.not_reported()
        self.discovery_misses = 0
        self.connections = 0
        self.notifications = 0

    async def run(self) -> None:
        """Connect/stream/reconnect until shutdown or a fatal error."""
        logger.info("BLE monitor started")
        try:
            while not self.shutdown.is_set():
                backoff = RECONNECT_BACKOFF_S
                try:
                    await self._session()
                except ShutdownRequested:
                    break
                except _SessionEnded:
                    pass
                except BleakDeviceNotFoundError as e:
                    self._report(ClassifiedError.intermittent(f"Device unreachable: {e}", source="ble"))
                    self.discovery.request_restart()
                    backoff += UNREACHABLE_BACKOFF_S
                except asyncio.TimeoutError:
                    self._report(ClassifiedError.intermittent("Connection timed out", source="ble"))
                except (BleakError, OSError) as e:
                    self._report(ClassifiedError.intermittent(f"Bluetooth error: {e}", source="ble"))

                self.state = MonitorState.IDLE
                if self.discovery_misses >= self.settings.max_discovery_attempts:
                    self._report(ClassifiedError.fatal(
                        "Heart rate characteristic not found on device",
                        source="ble"
                    ))
                    break
                if await sleep_or_shutdown(backoff, self.shutdown):
                    break
        finally:
            self.state = MonitorState.IDLE
            self.discovery.paused = False
            logger.info("BLE monitor stopped")

    async def _session(self) -> None:
        self.state = MonitorState.CONNECTING
        target = await self._resolve_target()

        queue: asyncio.Queue = asyncio.Queue()
        client = self._client_factory(
            target, disconnected_callback=lambda _client: queue.put_nowait(_DISCONNECTED)
        )
        timeout = self.settings.no_packet_timeout_sec

        try:
            logger.info(f"Connecting to {getattr(target, 'address', target)}")
            await race(client.connect(), self.shutdown, timeout=timeout)
            self.connections += 1
            self.discovery.paused = True

            self.state = MonitorState.SERVICE_DISCOVERY
            hr_char = client.services.get_characteristic(HEART_RATE_MEASUREMENT_CHARACTERISTIC_UUID)
            battery_char = client.services.get_characteristic(BATTERY_LEVEL_CHARACTERISTIC_UUID)
            if hr_char is None:
                self.discovery_misses += 1
                self._report(ClassifiedError.intermittent(
                    f"Heart rate characteristic missing "
                    f"({self.discovery_misses}/{self.settings.max_discovery_attempts})",
                    source="ble"
                ))
                raise _SessionEnded()

            if battery_char is None:
                self.battery = BatteryLevel.not_reported()
            else:
                await self._read_battery(client, battery_char)

            self.state = MonitorState.SUBSCRIBING
            await race(
                client.start_notify(hr_char, lambda _char, data: queue.put_nowait(bytes(data))),
                self.shutdown, timeout=timeout
            )
            self.discovery_misses = 0

            self.state = MonitorState.STREAMING
            logger.info("Streaming heart rate")
            await self._stream(client, queue, battery_char)
        finally:
            self.discovery.paused = False
            await self._disconnect(client)
            if self.state is MonitorState.STREAMING:
                self._publish(HeartRateStatus(battery=self.battery))

    async def _resolve_target(self):
        if self.settings.saved_address:
            return self.settings.saved_address
        found = await race(
            self.discovery.find_monitor(name=self.settings.saved_name), self.shutdown
        )
        if found is None:
            self._report(ClassifiedError.intermittent("No heart rate monitor found", source="ble"))
            raise _SessionEnded()
        return found.device

    async def _stream(self, client, queue: asyncio.Queue, battery_char) -> None:
        loop = asyncio.get_running_loop()
        timeout = self.settings.no_packet_timeout_sec
        twitcher = Twitcher(self.twitch_threshold_s)
        burn_in = RrBurnIn(self.settings.rr_ignore_after_empty)

        last_data = loop.time()
        battery_at = loop.time() + BATTERY_POLL_INTERVAL_S if battery_char is not None else None

        while True:
            now = loop.time()
            if battery_at is not None and now >= battery_at:
                await self._read_battery(client, battery_char)
                battery_at = now + BATTERY_POLL_INTERVAL_S
                continue

            data_deadline = last_data + timeout
            if now >= data_deadline:
                self._report(ClassifiedError.intermittent(
                    f"No HR data received in {timeout:g} seconds!", source="ble"
                ))
                return

            wake_at = data_deadline if battery_at is None else min(data_deadline, battery_at)
            try:
                payload = await race(queue.get(), self.shutdown, timeout=wake_at - now)
            except asyncio.TimeoutError:
                continue

            if payload is _DISCONNECTED:
                self._report(ClassifiedError.intermittent("Device disconnected", source="ble"))
                return

            last_data = loop.time()
            self.notifications += 1
            self._handle_payload(payload, twitcher, burn_in)

    def _handle_payload(self, payload: bytes, twitcher: Twitcher, burn_in: RrBurnIn) -> None:
        try:
            measurement = parse_hrm(payload)
        except MeasurementError as e:
            self._report(ClassifiedError.intermittent(f"Invalid heart rate data: {e}", source="ble"))
            return

        rr_intervals = burn_in.filter(measurement.rr_intervals)
        twitch_up, twitch_down = twitcher.handle(measurement.bpm, rr_intervals)
        self._publish(HeartRateStatus(
            bpm=measurement.bpm,
            rr_intervals=rr_intervals,
            battery=self.battery,
            twitch_up=twitch_up,
            twitch_down=twitch_down,
        ))

    async def _read_battery(self, client, battery_char) -> None:
        try:
            data = await race(
                client.read_gatt_char(battery_char), self.shutdown, timeout=BATTERY_READ_TIMEOUT_S
            )
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Battery read failed: {e!r}")
            return
        if data:
            self.battery = BatteryLevel.of(min(int(data[0]), 100))
            logger.debug(f"Battery level {int(self.battery)}%")

    async def _disconnect(self, client) -> None:
        if not client.is_connected:
            return
        try:
            await asyncio.wait_for(client.disconnect(), timeout=BATTERY_READ_TIMEOUT_S)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Disconnect failed: {e!r}")
        else:
            logger.info("Disconnected")

    def _publish(self, status: HeartRateStatus) -> None:
        try:
            self.bus.publish(status)
        except BusClosed:
            raise ShutdownRequested()

    def _report(self, error: ClassifiedError) -> None:
        if error.is_fatal:
            logger.error(str(error))
        else:
            logger.warning(str(error))
        try:
            self.bus.publish(error)
        except BusClosed:
            pass
