"""
Twitch detection from beat-to-beat intervals.

Drives simple avatar effects (ears twitching and the like) from changes in
the interval between beats. Each source owns one Twitcher per connection
and stamps its result onto the HeartRateStatus it publishes, so every
subscriber sees the same twitch at the same time.

USAGE:
    twitcher = Twitcher(threshold_s=0.05)
    twitch_up, twitch_down = twitcher.handle(bpm=72, rr_intervals=[0.81])
"""

from typing import Sequence, Tuple

from ironheart.status import rr_from_bpm


# Baseline interval before anything has been observed
INITIAL_RR_S = 1.0


class Twitcher:
    """Flags interval changes larger than a threshold.

    Until a real interval has been supplied, intervals are derived from bpm.
    Once one has, bpm is ignored for the rest of this instance's life.

    Attributes:
        threshold_s (float): Minimum interval change (seconds) that counts
        latest_rr (float): Interval the next one is compared against
        use_real_rr (bool): Latched once a real interval is seen
    """

    def __init__(self, threshold_s: float) -> None:
        self.threshold_s = threshold_s
        self.latest_rr = INITIAL_RR_S
        self.use_real_rr = False

    def handle(self, bpm: int, rr_intervals: Sequence[float]) -> Tuple[bool, bool]:
        """Compare the new intervals against the running baseline.

        Intervals are compared in order and each one becomes the baseline
        for the next, so a single call can flag both directions.

        Args:
            bpm: Current heart rate, used only before real intervals appear
            rr_intervals: Measured intervals in seconds (may be empty)

        Returns:
            (twitch_up, twitch_down) for this call only
                twitch_up: interval increased (bpm lowered)
                twitch_down: interval decreased (bpm raised)
        """
        if rr_intervals:
            self.use_real_rr = True

        if self.use_real_rr:
            intervals = list(rr_intervals)
        elif bpm > 0:
            intervals = [rr_from_bpm(bpm)]
        else:
            intervals = []

        twitch_up = False
        twitch_down = False
        for new_rr in intervals:
            if abs(new_rr - self.latest_rr) > self.threshold_s:
                twitch_up |= new_rr > self.latest_rr
                twitch_down |= new_rr < self.latest_rr
            self.latest_rr = new_rr

        return twitch_up, twitch_down
