"""
Session Recorder - writes heart rate readings to disk

ARCHITECTURE:
- Bus subscriber, subscribed at construction time
- Nothing is created on disk until the first nonzero reading
- Zero-bpm statuses are skipped
- Runs until the bus closes, so the last statuses a source publishes
  while stopping are still written

OUTPUT:
    CSV session log (misc.log_sessions_to_csv):
        <log_sessions_csv_path>/ironheart-YYYY-MM-DD_HH-MM-SS.csv
        Timestamp,BPM,RR,Battery,TwitchUp,TwitchDown,Activity
        2024-05-01 18:22:03,72,833,90,0,1,0

    BPM text file (misc.write_bpm_to_file), overwritten on every reading:
        72
        833          <- only with misc.write_rr_to_file

RR is the latest interval in milliseconds, or the previous one when the
reading had none. Activity is the last ActivitySelected index (0 before
any).

Write failures publish a Fatal classified error and end the recorder.
"""

import csv
import os
from datetime import datetime
from typing import Optional, TextIO

from ironheart.bus import ActivitySelected, Bus, BusClosed, Lagged
from ironheart.config import MiscSettings
from ironheart.errors import ClassifiedError
from ironheart.log import get_logger
from ironheart.status import HeartRateStatus

logger = get_logger(__name__)


CSV_FILE_PREFIX = "ironheart-"
CSV_HEADER = ["Timestamp", "BPM", "RR", "Battery", "TwitchUp", "TwitchDown", "Activity"]


class SessionRecorder:
    """Bus consumer writing the CSV session log and the BPM text file.

    Args:
        settings: Misc section of the configuration
        bus: Bus to subscribe to
    """

    def __init__(self, settings: MiscSettings, bus: Bus) -> None:
        self.settings = settings
        self.bus = bus
        self.subscription = bus.subscribe()

        self.csv_path: Optional[str] = None
        self.txt_path: Optional[str] = None
        self._csv_file: Optional[TextIO] = None
        self._csv_writer = None
        self._txt_file: Optional[TextIO] = None
        self.files_initialized = False

        self.last_rr_ms = 0
        self.activity = 0
        self.record_count = 0

    @property
    def enabled(self) -> bool:
        return self.settings.log_sessions_to_csv or self.settings.write_bpm_to_file

    async def run(self) -> None:
        try:
            while True:
                try:
                    message = await self.subscription.recv()
                except Lagged as e:
                    logger.warning(f"Recorder lagged! Missed {e.count} messages")
                    continue
                except BusClosed:
                    return

                if isinstance(message, ActivitySelected):
                    self.activity = message.index
                elif isinstance(message, HeartRateStatus):
                    self.handle_status(message)
        except OSError as e:
            logger.error(f"Session recording failed: {e}")
            try:
                self.bus.publish(ClassifiedError.fatal("Failed to write session files", e, source="recorder"))
            except BusClosed:
                pass
        finally:
            self.close()

    def initialize_files(self) -> None:
        """Create the output files.

        Raises:
            OSError: If a directory or file can't be created
        """
        if self.settings.log_sessions_to_csv:
            os.makedirs(self.settings.log_sessions_csv_path, exist_ok=True)
            timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
            self.csv_path = os.path.join(
                self.settings.log_sessions_csv_path, f"{CSV_FILE_PREFIX}{timestamp}.csv"
            )
            self._csv_file = open(self.csv_path, 'w', newline='')
            self._csv_writer = csv.writer(self._csv_file)
            self._csv_writer.writerow(CSV_HEADER)
            self._csv_file.flush()
            logger.info(f"Recording session to: {self.csv_path}")

        if self.settings.write_bpm_to_file:
            self.txt_path = self.settings.bpm_file_path
            parent = os.path.dirname(self.txt_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            self._txt_file = open(self.txt_path, 'w')
            logger.info(f"Writing BPM to: {self.txt_path}")

        self.files_initialized = True

    def handle_status(self, status: HeartRateStatus) -> None:
        """Record one status. Zero bpm is skipped.

        Raises:
            OSError: On any write failure
        """
        if status.bpm <= 0 or not self.enabled:
            return
        if not self.files_initialized:
            self.initialize_files()

        if status.latest_rr is not None:
            self.last_rr_ms = int(status.latest_rr * 1000)

        if self._csv_writer is not None:
            self._csv_writer.writerow([
                status.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                status.bpm,
                self.last_rr_ms,
                int(status.battery),
                int(status.twitch_up),
                int(status.twitch_down),
                self.activity,
            ])
            self._csv_file.flush()

        if self._txt_file is not None:
            text = f"{status.bpm}\n"
            if self.settings.write_rr_to_file:
                text += f"{self.last_rr_ms}\n"
            self._txt_file.seek(0)
            self._txt_file.write(text)
            self._txt_file.truncate()
            self._txt_file.flush()

        self.record_count += 1

    def close(self) -> None:
        for handle in (self._csv_file, self._txt_file):
            if handle is not None:
                handle.close()
        self._csv_file = None
        self._csv_writer = None
        self._txt_file = None
        if self.record_count:
            logger.info(f"Recorded {self.record_count} readings")
