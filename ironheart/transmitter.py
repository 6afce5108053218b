"""
OSC transmission actor - relays heart rate statuses to an OSC receiver.

ARCHITECTURE:
- Subscribes to the bus at construction time
- Every HeartRateStatus re-encodes and sends the full parameter bundle
- Heartbeat scheduler: one deadline that alternates between the pulse
  width and (latest interval - pulse width), sending pulse/toggle edges
- Mimicry scheduler: every MIMIC_INTERVAL_S, while a disconnect is being
  hidden, sends a jittered copy of the last good status
- Starts and ends by sending the zero snapshot so the receiver always
  begins (and is left) in a known state

STATE:
- delay_connected: True until one nonzero status has been sent; the
  connected flag stays false for that first bundle so a single bad reading
  never flashes "connected"
- disconnected_at: When a zero status was first seen while hiding
- hiding: Last good status is being replayed in place of zeros

Send and encoding failures are classified as Fatal and end the actor.
"""

import asyncio
import random
import time
from enum import Enum
from typing import Callable, Optional, Tuple

from pythonosc.osc_message_builder import BuildError

from ironheart.actor import ShutdownRequested, race
from ironheart.bus import Bus, BusClosed, Lagged
from ironheart.config import OscSettings
from ironheart.errors import ClassifiedError, OscAddressError
from ironheart.log import get_logger
from ironheart.osc import (MessageStatistics, OscAddressTable, OscSender,
                           build_beat_bundle, build_status_bundle)
from ironheart.status import HeartRateStatus, rr_from_bpm
from ironheart.twitcher import INITIAL_RR_S

logger = get_logger(__name__)


# Heartbeat period before any interval is known
INITIAL_BEAT_PERIOD_S = 1.0

# How often a hidden disconnect is checked and mimicked
MIMIC_INTERVAL_S = 6.0

# Mimicked bpm jitter range (inclusive) and twitch odds (1 in N)
MIMIC_BPM_JITTER = 3
MIMIC_TWITCH_ODDS = 5


class Edge(Enum):
    RISING = "rising"
    FALLING = "falling"


class BeatPulse:
    """Two-state heartbeat pulse generator.

    fire() emits the next edge; next_delay() says how long until the one
    after it. Rising edges flip the toggle and raise the pulse, falling
    edges drop the pulse and leave the toggle alone.

    Example with a 100ms pulse and a 0.8s interval:
        fire() -> (True, True)    next_delay(0.8) -> 0.1
        fire() -> (False, True)   next_delay(0.8) -> 0.7
        fire() -> (True, False)   next_delay(0.8) -> 0.1

    Attributes:
        pulse_length_s (float): Pulse width
        edge (Edge): Edge the next fire() produces
        pulse (bool): Current pulse output
        toggle (bool): Current toggle output
    """

    def __init__(self, pulse_length_s: float):
        self.pulse_length_s = pulse_length_s
        self.reset()

    def reset(self) -> None:
        self.edge = Edge.RISING
        self.pulse = False
        self.toggle = False

    def fire(self) -> Tuple[bool, bool]:
        """Advance one edge.

        Returns:
            (pulse, toggle) to transmit
        """
        if self.edge is Edge.RISING:
            self.pulse = True
            self.toggle = not self.toggle
            self.edge = Edge.FALLING
        else:
            self.pulse = False
            self.edge = Edge.RISING
        return self.pulse, self.toggle

    def next_delay(self, latest_rr: float) -> float:
        """Seconds until the next edge should fire."""
        if self.edge is Edge.FALLING:
            return self.pulse_length_s
        return max(0.0, latest_rr - self.pulse_length_s)


class OscActor:
    """Bus consumer that drives avatar parameters over OSC.

    Args:
        settings: OSC section of the configuration
        bus: Bus to subscribe to (and publish classified errors on)
        shutdown: Shared shutdown event
        sender_factory: Builds the UDP sender from (host_ip, target_ip, port)
        clock: Monotonic time source for disconnect hiding
        rng: Random source for mimicry
    """

    def __init__(self, settings: OscSettings, bus: Bus, shutdown: asyncio.Event,
                 sender_factory: Callable[[str, str, int], OscSender] = OscSender,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        self.settings = settings
        self.bus = bus
        self.shutdown = shutdown
        self.subscription = bus.subscribe()
        self._sender_factory = sender_factory
        self._clock = clock
        self._rng = rng or random.Random()

        self.table: Optional[OscAddressTable] = None
        self.sender = None
        self.stats = MessageStatistics()

        self.beat = BeatPulse(settings.pulse_length_ms / 1000.0)
        self.hr_status = HeartRateStatus()
        self.delay_connected = True
        self.disconnected_at: Optional[float] = None
        self.hiding = False
        self.latest_rr = INITIAL_RR_S
        self._use_real_rr = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Actor main loop. Returns on shutdown, bus close, or a fatal error."""
        try:
            self.open()
        except OscAddressError as e:
            self._report(ClassifiedError.fatal("Invalid OSC address configuration", e, source="osc"))
            return
        except OSError as e:
            self._report(ClassifiedError.fatal(
                f"Couldn't open OSC socket on {self.settings.host_ip}", e, source="osc"
            ))
            return

        logger.info(f"Sending OSC to {self.settings.target_ip}:{self.settings.port}")

        try:
            self.init_params()
            await self._loop()
            # Leave the receiver in the disconnected state
            self.init_params()
        except (OSError, BuildError) as e:
            self._report(ClassifiedError.fatal("Failed to send OSC data", e, source="osc"))
        finally:
            self.sender.close()
            logger.info("OSC actor stopped")

    def open(self) -> None:
        """Build the address table and the UDP sender.

        Raises:
            OscAddressError: If an address in the settings is invalid
            OSError: If the UDP socket can't be bound
        """
        self.table = OscAddressTable.build(self.settings)
        self.sender = self._sender_factory(
            self.settings.host_ip, self.settings.target_ip, self.settings.port
        )

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        beat_at = loop.time() + INITIAL_BEAT_PERIOD_S
        mimic_at = loop.time() + MIMIC_INTERVAL_S

        while True:
            now = loop.time()
            if now >= beat_at:
                beat_at = now + self.heart_beat()
                continue
            if now >= mimic_at:
                self.mimic_tick()
                mimic_at = now + MIMIC_INTERVAL_S
                continue

            try:
                message = await race(
                    self.subscription.recv(), self.shutdown,
                    timeout=min(beat_at, mimic_at) - now
                )
            except asyncio.TimeoutError:
                continue
            except ShutdownRequested:
                logger.debug("Shutdown requested")
                return
            except Lagged as e:
                logger.warning(f"OSC actor lagged behind, {e.count} messages skipped")
                self.stats.increment('lagged_messages', e.count)
                continue
            except BusClosed:
                logger.debug("Bus closed")
                return

            if isinstance(message, HeartRateStatus):
                self.handle_status(message)

    def _report(self, error: ClassifiedError) -> None:
        logger.error(str(error))
        try:
            self.bus.publish(error)
        except BusClosed:
            pass

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def init_params(self) -> None:
        """Reset to the zero snapshot and send it, re-arming the connected delay."""
        self.delay_connected = True
        self.disconnected_at = None
        self.hiding = False
        self.hr_status = HeartRateStatus()
        self.beat.reset()
        self.send_status()
        self.send_beat()

    def handle_status(self, status: HeartRateStatus) -> None:
        """Apply one status from the bus and send the resulting bundle."""
        if status.bpm > 0:
            self.hr_status = status
            self.disconnected_at = None
            if status.latest_rr is not None:
                self.latest_rr = status.latest_rr
                self._use_real_rr = True
            elif not self._use_real_rr:
                self.latest_rr = rr_from_bpm(status.bpm)
        elif self.settings.hide_disconnections:
            if self.disconnected_at is None:
                logger.info("Heart rate lost, hiding disconnection")
                self.disconnected_at = self._clock()
            elif not self._within_hide_window():
                self.give_up_hiding()
                return
        else:
            self.init_params()
            return

        self.hiding = self._within_hide_window()
        self.send_status()
        if self.delay_connected and self.hr_status.bpm > 0:
            self.delay_connected = False

    def _within_hide_window(self) -> bool:
        if self.disconnected_at is None or self.hr_status.bpm == 0:
            return False
        elapsed = self._clock() - self.disconnected_at
        return elapsed < self.settings.max_hide_disconnection_sec

    def give_up_hiding(self) -> None:
        logger.info(
            f"No heart rate for {self.settings.max_hide_disconnection_sec}s, "
            f"reporting disconnection"
        )
        self.init_params()

    def heart_beat(self) -> float:
        """Fire one heartbeat edge if a live signal is being sent.

        Returns:
            Seconds until the next heartbeat check
        """
        if self.hr_status.bpm == 0 or self.delay_connected:
            # Suppressed; keep checking at the current interval
            return max(self.latest_rr, self.beat.pulse_length_s)

        self.beat.fire()
        self.send_beat()
        return self.beat.next_delay(self.latest_rr)

    def mimic_tick(self) -> None:
        """Send a jittered status while hiding, give up once the window closes."""
        if self.disconnected_at is None:
            return
        self.hiding = self._within_hide_window()
        if not self.hiding:
            self.give_up_hiding()
            return
        mimic = self.make_mimic()
        self.send_status(mimic)
        self.stats.increment('mimic_bundles')

    def make_mimic(self) -> HeartRateStatus:
        """Plausible variant of the last good status."""
        jitter = self._rng.randint(-MIMIC_BPM_JITTER, MIMIC_BPM_JITTER)
        return HeartRateStatus(
            bpm=max(1, self.hr_status.bpm + jitter),
            battery=self.hr_status.battery,
            twitch_up=self._rng.randrange(MIMIC_TWITCH_ODDS) == 0,
            twitch_down=self._rng.randrange(MIMIC_TWITCH_ODDS) == 0,
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_status(self, status: Optional[HeartRateStatus] = None) -> None:
        status = status or self.hr_status
        connected = False if self.delay_connected else status.bpm > 0
        bundle = build_status_bundle(
            self.table, status, connected, self.hiding,
            self.settings.only_positive_float_bpm
        )
        self.sender.send(bundle)
        self.stats.increment('status_bundles')

    def send_beat(self) -> None:
        self.sender.send(build_beat_bundle(self.table, self.beat.pulse, self.beat.toggle))
        self.stats.increment('beat_bundles')
