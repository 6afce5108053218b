"""
WebSocket heart rate source.

Listens on 0.0.0.0:<port> for apps that push heart rate as JSON text frames:

    {"bpm": 72, "latest_rr_ms": 833, "battery": 90}

"heartrate" and "heartRate" are accepted in place of "bpm"; latest_rr_ms
and battery are optional. A latest_rr_ms replaces the stored interval list,
a battery replaces the stored level; both persist across frames. The
interval and the twitch detector start over with each peer.

One peer is served at a time. Later peers wait until the active one is
gone. When a peer's session ends a zero-bpm status is published.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from ironheart.actor import ShutdownRequested, race
from ironheart.bus import Bus, BusClosed, SourceReady
from ironheart.config import WebSocketSettings
from ironheart.errors import ClassifiedError
from ironheart.log import get_logger
from ironheart.status import BatteryLevel, HeartRateStatus
from ironheart.twitcher import Twitcher

logger = get_logger(__name__)


LISTEN_HOST = "0.0.0.0"
BPM_KEYS = ("bpm", "heartrate", "heartRate")
BPM_MAX = 65535
RR_MS_MAX = 2 ** 64 - 1


def parse_heart_rate_json(text: str) -> Tuple[int, Optional[int], Optional[int]]:
    """Decode one JSON heart rate frame.

    Returns:
        (bpm, latest_rr_ms or None, battery or None)

    Raises:
        ValueError: If the text isn't a JSON object with a valid bpm, or an
            optional field has the wrong type

    Examples:
        >>> parse_heart_rate_json('{"heartRate": 80, "latest_rr_ms": 750}')
        (80, 750, None)
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")

    bpm = None
    for key in BPM_KEYS:
        if key in data:
            bpm = data[key]
            break
    if not _is_uint(bpm) or bpm > BPM_MAX:
        raise ValueError(f"invalid bpm: {bpm!r}")

    latest_rr_ms = data.get("latest_rr_ms")
    if latest_rr_ms is not None and (not _is_uint(latest_rr_ms) or latest_rr_ms > RR_MS_MAX):
        raise ValueError(f"invalid latest_rr_ms: {latest_rr_ms!r}")

    battery = data.get("battery")
    if battery is not None and (not _is_uint(battery) or battery > 255):
        raise ValueError(f"invalid battery: {battery!r}")

    return bpm, latest_rr_ms, battery


def _is_uint(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class WebSocketSource:
    """WebSocket ingest actor.

    Args:
        settings: WebSocket section of the configuration
        twitch_threshold_s: Twitch detector threshold
        bus: Bus to publish on
        shutdown: Shared shutdown event
        port: Overrides settings.port when given (0 picks a free port)
    """

    def __init__(self, settings: WebSocketSettings, twitch_threshold_s: float,
                 bus: Bus, shutdown: asyncio.Event, port: Optional[int] = None):
        self.settings = settings
        self.bus = bus
        self.shutdown = shutdown
        self.port = settings.port if port is None else port
        self.address: Optional[str] = None

        self.twitch_threshold_s = twitch_threshold_s
        self.hr_status = HeartRateStatus(battery=BatteryLevel.not_reported())
        self.twitcher = Twitcher(twitch_threshold_s)
        self._peer_lock = asyncio.Lock()
        self.frames = 0
        self.sessions = 0

    async def run(self) -> None:
        """Serve until shutdown. A failed bind is fatal."""
        try:
            server = await websockets.serve(self._handle_peer, LISTEN_HOST, self.port)
        except OSError as e:
            self._report(ClassifiedError.fatal("Failed to build websocket", e, source="websocket"))
            return

        bound_port = server.sockets[0].getsockname()[1]
        self.address = f"{LISTEN_HOST}:{bound_port}"
        logger.info(f"Websocket server listening on {self.address}")
        self._publish(SourceReady(self.address))

        try:
            await self.shutdown.wait()
        finally:
            logger.info("Shutting down websocket server")
            server.close()
            await server.wait_closed()

    async def _handle_peer(self, connection) -> None:
        async with self._peer_lock:
            if self.shutdown.is_set():
                return
            self.sessions += 1
            self.start_session()
            logger.info(f"Websocket client connected from {connection.remote_address}")
            try:
                await self._receive(connection)
            finally:
                # Peer gone: report the disconnect downstream
                self.hr_status = self.hr_status.evolve(
                    bpm=0, twitch_up=False, twitch_down=False, timestamp=datetime.now()
                )
                self._publish(self.hr_status)

    def start_session(self) -> None:
        """Fresh twitch detector and interval for a new peer. Battery carries over."""
        self.twitcher = Twitcher(self.twitch_threshold_s)
        self.hr_status = self.hr_status.evolve(rr_intervals=())

    async def _receive(self, connection) -> None:
        timeout = self.settings.no_packet_timeout_sec
        while True:
            try:
                message = await race(connection.recv(), self.shutdown, timeout=timeout)
            except ShutdownRequested:
                await connection.close()
                return
            except asyncio.TimeoutError:
                self._report(ClassifiedError.intermittent(
                    f"No HR data received in {timeout:g} seconds!", source="websocket"
                ))
                await connection.close()
                return
            except ConnectionClosedOK:
                self._report(ClassifiedError.intermittent("Device closed connection!", source="websocket"))
                return
            except ConnectionClosedError as e:
                self._report(ClassifiedError.intermittent(
                    f"Websocket client disconnected: {e}", source="websocket"
                ))
                return

            if not isinstance(message, str):
                self._report(ClassifiedError.must_dismiss(
                    "Invalid message type (expected text)", source="websocket"
                ))
                await connection.close()
                return

            self.handle_text(message)

    def handle_text(self, message: str) -> None:
        """Apply one text frame and publish the resulting status."""
        try:
            bpm, latest_rr_ms, battery = parse_heart_rate_json(message)
        except ValueError as e:
            self._report(ClassifiedError.intermittent(
                f"Invalid heart rate message: {message[:100]} ({e})", source="websocket"
            ))
            return

        self.frames += 1
        changes = {"bpm": bpm}
        if battery is not None:
            changes["battery"] = BatteryLevel.of(min(battery, 100))
        if latest_rr_ms is not None:
            changes["rr_intervals"] = (latest_rr_ms / 1000.0,)
        status = self.hr_status.evolve(**changes)

        twitch_up, twitch_down = self.twitcher.handle(status.bpm, status.rr_intervals)
        self.hr_status = status.evolve(twitch_up=twitch_up, twitch_down=twitch_down, timestamp=datetime.now())
        self._publish(self.hr_status)

    def _publish(self, message) -> None:
        try:
            self.bus.publish(message)
        except BusClosed:
            logger.debug("Bus closed, dropping message")

    def _report(self, error: ClassifiedError) -> None:
        if error.is_fatal:
            logger.error(str(error))
        else:
            logger.warning(str(error))
        self._publish(error)

