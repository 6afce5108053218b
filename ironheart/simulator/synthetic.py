"""
Synthetic heart rate source - hardware-free testing.

Sweeps bpm up and down between low_bpm and high_bpm, one step per tick
(bpm_speed ticks per second), with the interval derived from bpm and a
full battery. Every loops_before_dc-th sweep is replaced by a simulated
outage: each tick of that sweep publishes an Intermittent error instead of
a status. loops_before_dc of 0 never simulates an outage.
"""

import asyncio
from typing import Optional

from ironheart.actor import sleep_or_shutdown
from ironheart.bus import Bus, BusClosed
from ironheart.config import DummySettings
from ironheart.errors import ClassifiedError
from ironheart.log import get_logger
from ironheart.status import BatteryLevel, HeartRateStatus, rr_from_bpm

logger = get_logger(__name__)


LOST_CONNECTION_MESSAGE = "Simulating lost connection"


class SyntheticSignal:
    """Triangle-wave bpm generator.

    Starts one below low_bpm so the first tick lands on low_bpm.

    Args:
        low_bpm: Lower bound (>= 1)
        high_bpm: Upper bound
        loops_before_dc: Sweeps between simulated outages (0 disables)
    """

    def __init__(self, low_bpm: int, high_bpm: int, loops_before_dc: int):
        self.low_bpm = low_bpm
        self.high_bpm = high_bpm
        self.loops_before_dc = loops_before_dc

        self.bpm = max(0, low_bpm - 1)
        self.rising = True
        self.loops = 0

    def tick(self) -> Optional[HeartRateStatus]:
        """Advance one step.

        Returns:
            The new status, or None while a simulated outage is running
        """
        if self.rising:
            self.bpm += 1
            bound = self.high_bpm
        else:
            self.bpm -= 1
            bound = self.low_bpm

        if self.bpm == bound:
            self.rising = not self.rising
            self.loops += 1
            if self.loops > self.loops_before_dc:
                self.loops = 0

        if self.in_outage:
            return None
        return HeartRateStatus(
            bpm=self.bpm,
            rr_intervals=(rr_from_bpm(self.bpm),),
            battery=BatteryLevel.of(100),
        )

    @property
    def in_outage(self) -> bool:
        return self.loops_before_dc != 0 and self.loops == self.loops_before_dc


class SyntheticSource:
    """Actor publishing a SyntheticSignal on the bus.

    Args:
        settings: Dummy section of the configuration
        bus: Bus to publish on
        shutdown: Shared shutdown event
    """

    def __init__(self, settings: DummySettings, bus: Bus, shutdown: asyncio.Event):
        self.settings = settings
        self.bus = bus
        self.shutdown = shutdown
        self.signal = SyntheticSignal(settings.low_bpm, settings.high_bpm, settings.loops_before_dc)
        self.period_s = 1.0 / settings.bpm_speed
        self.ticks = 0

    async def run(self) -> None:
        logger.info(
            f"Synthetic source started: {self.settings.low_bpm}-{self.settings.high_bpm} bpm, "
            f"{self.settings.bpm_speed:g} steps/s"
        )
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        try:
            while not self.shutdown.is_set():
                status = self.signal.tick()
                self.ticks += 1
                if status is None:
                    message = ClassifiedError.intermittent(LOST_CONNECTION_MESSAGE, source="dummy")
                else:
                    message = status
                self.bus.publish(message)

                # Fixed-rate ticks, no drift from publish time
                next_tick += self.period_s
                if await sleep_or_shutdown(max(0.0, next_tick - loop.time()), self.shutdown):
                    break
        except BusClosed:
            logger.debug("Bus closed")
        finally:
            logger.info("Synthetic source stopped")
