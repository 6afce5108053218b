"""
Application wiring: bus, consumers, one source, shutdown.

Startup order matters: every consumer subscribes before the source starts,
so no consumer misses the first status. Shutdown sets the shared event,
joins the source, closes the bus and joins the consumers, each join bounded
by JOIN_TIMEOUT_S.
"""

import asyncio
import signal
from typing import List, Optional

from ironheart.actor import join
from ironheart.bus import Bus, BusClosed, Lagged, SourceReady
from ironheart.config import Settings
from ironheart.errors import ClassifiedError, Severity
from ironheart.log import get_logger
from ironheart.osc import MessageStatistics
from ironheart.recorder import SessionRecorder
from ironheart.scan import Discovery
from ironheart.simulator.synthetic import SyntheticSource
from ironheart.sources.ble import BleMonitor
from ironheart.sources.websocket import WebSocketSource
from ironheart.transmitter import OscActor

logger = get_logger(__name__)


SOURCE_BLE = "ble"
SOURCE_WEBSOCKET = "ws"
SOURCE_DUMMY = "dummy"
SOURCES = (SOURCE_BLE, SOURCE_WEBSOCKET, SOURCE_DUMMY)


def source_from_settings(settings: Settings) -> str:
    """Source to run when none is given on the command line."""
    if settings.dummy.enabled:
        return SOURCE_DUMMY
    if settings.websocket.enabled:
        return SOURCE_WEBSOCKET
    return SOURCE_BLE


class ErrorReporter:
    """Logs classified errors and source notifications from the bus.

    Without a UI nobody can dismiss a USER_MUST_DISMISS error, so those are
    logged as errors and counted like the rest. Runs until the bus closes,
    so errors published during shutdown are still reported.
    """

    def __init__(self, bus: Bus):
        self.bus = bus
        self.subscription = bus.subscribe()
        self.stats = MessageStatistics()
        self.source_address: Optional[str] = None

    async def run(self) -> None:
        while True:
            try:
                message = await self.subscription.recv()
            except BusClosed:
                return
            except Lagged as e:
                logger.warning(f"Error reporter lagged! Missed {e.count} messages")
                continue
            self.handle(message)

    def handle(self, message) -> None:
        if isinstance(message, ClassifiedError):
            self.stats.increment(f"{message.severity.value}_errors")
            source = f"{message.source}: " if message.source else ""
            if message.severity is Severity.INTERMITTENT:
                logger.warning(f"{source}{message}")
            elif message.severity is Severity.USER_MUST_DISMISS:
                logger.error(f"{source}{message}")
            else:
                logger.critical(f"{source}{message}")
        elif isinstance(message, SourceReady):
            self.source_address = message.address
            logger.info(f"Source ready at {message.address}")


class App:
    """Runs one heart rate source and the configured consumers.

    Args:
        settings: Validated settings
        source: One of SOURCES
        port_override: WebSocket port from the command line
    """

    def __init__(self, settings: Settings, source: str, port_override: Optional[int] = None):
        if source not in SOURCES:
            raise ValueError(f"Unknown source: {source}")
        self.settings = settings
        self.source_name = source
        self.port_override = port_override

        self.shutdown: Optional[asyncio.Event] = None
        self.bus: Optional[Bus] = None
        self.reporter: Optional[ErrorReporter] = None
        self.transmitter: Optional[OscActor] = None
        self.recorder: Optional[SessionRecorder] = None
        self.source = None

    def request_shutdown(self) -> None:
        if self.shutdown is not None and not self.shutdown.is_set():
            logger.info("Shutdown requested")
            self.shutdown.set()

    def build(self) -> None:
        """Create the bus, subscribe consumers, then create the source."""
        settings = self.settings
        self.shutdown = asyncio.Event()
        self.bus = Bus(settings.misc.bus_capacity)

        self.reporter = ErrorReporter(self.bus)
        if settings.osc.enabled:
            self.transmitter = OscActor(settings.osc, self.bus, self.shutdown)
        recorder = SessionRecorder(settings.misc, self.bus)
        if recorder.enabled:
            self.recorder = recorder

        threshold = settings.osc.twitch_threshold_s
        if self.source_name == SOURCE_DUMMY:
            self.source = SyntheticSource(settings.dummy, self.bus, self.shutdown)
        elif self.source_name == SOURCE_WEBSOCKET:
            self.source = WebSocketSource(
                settings.websocket, threshold, self.bus, self.shutdown, port=self.port_override
            )
        else:
            discovery = Discovery(scan_timeout=settings.ble.scan_timeout_sec)
            self.source = BleMonitor(settings.ble, threshold, self.bus, self.shutdown, discovery)

    def _consumers(self) -> List:
        return [c for c in (self.reporter, self.transmitter, self.recorder) if c is not None]

    async def run(self) -> None:
        """Run until a signal arrives or the source stops."""
        if self.bus is None:
            self.build()
        self._install_signal_handlers()

        consumer_tasks = [
            asyncio.create_task(consumer.run(), name=type(consumer).__name__)
            for consumer in self._consumers()
        ]
        source_task = asyncio.create_task(self.source.run(), name=type(self.source).__name__)
        logger.info(f"Started {self.source_name} source")

        stop = asyncio.create_task(self.shutdown.wait())
        await asyncio.wait({source_task, stop}, return_when=asyncio.FIRST_COMPLETED)
        if source_task.done() and not self.shutdown.is_set():
            logger.error("Source stopped, shutting down")
        self.shutdown.set()
        stop.cancel()

        await join([source_task])
        self.bus.close()
        await join(consumer_tasks)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform/thread; Ctrl+C still raises
                pass

    def statistics(self) -> MessageStatistics:
        stats = MessageStatistics()
        if self.bus is not None:
            stats.increment('bus_messages', self.bus.published)
        for consumer in (self.reporter, self.transmitter):
            if consumer is not None:
                stats.merge(consumer.stats)
        if self.recorder is not None:
            stats.increment('recorded_readings', self.recorder.record_count)
        return stats
