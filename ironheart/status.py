"""
Canonical heart rate status shared by every source and consumer.

Every source (BLE monitor, WebSocket ingest, synthetic generator) produces
HeartRateStatus snapshots; every consumer (OSC transmitter, recorder,
reporter) reads them off the bus. Snapshots are frozen, so the same object
can be handed to all subscribers.

Intervals are stored as float seconds, most recent last. A bpm of 0 is the
only way a source signals "no signal / disconnected".
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class BatteryState(Enum):
    UNKNOWN = "unknown"
    NOT_REPORTED = "not_reported"
    LEVEL = "level"


@dataclass(frozen=True)
class BatteryLevel:
    """Battery level variant: Unknown, NotReported, or Level(0-100).

    Use the constructors instead of building instances directly:
        >>> BatteryLevel.of(87)
        BatteryLevel(state=<BatteryState.LEVEL: 'level'>, level=87)
        >>> int(BatteryLevel.not_reported())
        0
    """
    state: BatteryState = BatteryState.UNKNOWN
    level: int = 0

    def __post_init__(self):
        if self.state is BatteryState.LEVEL:
            if not 0 <= self.level <= 100:
                raise ValueError(f"Battery level must be in range 0-100, got {self.level}")
        elif self.level != 0:
            raise ValueError(f"{self.state.value} battery can't carry a level")

    @classmethod
    def unknown(cls) -> "BatteryLevel":
        return cls(BatteryState.UNKNOWN)

    @classmethod
    def not_reported(cls) -> "BatteryLevel":
        return cls(BatteryState.NOT_REPORTED)

    @classmethod
    def of(cls, level: int) -> "BatteryLevel":
        return cls(BatteryState.LEVEL, int(level))

    @property
    def is_level(self) -> bool:
        return self.state is BatteryState.LEVEL

    def __int__(self) -> int:
        return self.level if self.is_level else 0


def rr_from_bpm(bpm: int) -> float:
    """Beat-to-beat interval in seconds derived from bpm.

    Only a fallback for sources that don't report real intervals.
    """
    return 60.0 / bpm


@dataclass(frozen=True)
class HeartRateStatus:
    """One normalized heart rate reading.

    Attributes:
        bpm: Beats per minute, 0 means disconnected
        rr_intervals: Beat-to-beat intervals in seconds, most recent last
        battery: Monitor battery level
        twitch_up: Interval grew past the twitch threshold (heart rate dropped)
        twitch_down: Interval shrank past the twitch threshold (heart rate rose)
        timestamp: When the reading was observed
    """
    bpm: int = 0
    rr_intervals: Tuple[float, ...] = ()
    battery: BatteryLevel = field(default_factory=BatteryLevel.unknown)
    twitch_up: bool = False
    twitch_down: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if self.bpm < 0:
            raise ValueError(f"bpm can't be negative, got {self.bpm}")
        # Accept any sequence, store a tuple
        object.__setattr__(self, "rr_intervals", tuple(self.rr_intervals))

    @property
    def connected(self) -> bool:
        return self.bpm > 0

    @property
    def latest_rr(self) -> Optional[float]:
        """Most recent interval in seconds, None if the reading had none."""
        return self.rr_intervals[-1] if self.rr_intervals else None

    def evolve(self, **changes) -> "HeartRateStatus":
        """Copy with the given fields replaced."""
        return replace(self, **changes)
