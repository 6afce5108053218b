"""
Heart rate monitor discovery over BLE.

Discovery is shared between the scanner loop and the BLE monitor:
- paused: set by the monitor while it holds a connection, so scanning
  doesn't compete with the live link
- restart: set by the monitor when the device became unreachable; the
  scanner drops its results and scans again immediately

USAGE:
    discovery = Discovery(scan_timeout=10.0)
    device = await discovery.find_monitor(name="Polar")
    await discovery.watch(shutdown)   # keeps scanning until shutdown
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from ironheart.actor import ShutdownRequested, race
from ironheart.log import get_logger
from ironheart.measurement import HEART_RATE_SERVICE_UUID

logger = get_logger(__name__)


# Seconds between scans while nothing asks for a restart
RESCAN_INTERVAL_S = 30.0


@dataclass(frozen=True)
class FoundMonitor:
    """A device advertising the heart rate service."""
    device: BLEDevice
    name: str
    address: str
    rssi: Optional[int] = None


class Discovery:
    """Scanner for heart rate monitors, with pause and restart signals.

    Attributes:
        scan_timeout (float): Seconds per scan
        paused (bool): Scanner stays quiet while True
        restart (asyncio.Event): Set to force an immediate rescan
        found (list): Results of the latest scan
    """

    def __init__(self, scan_timeout: float = 10.0,
                 scanner: Callable = BleakScanner.discover):
        self.scan_timeout = scan_timeout
        self.paused = False
        self.restart = asyncio.Event()
        self.found: List[FoundMonitor] = []
        self._discover = scanner

    def request_restart(self) -> None:
        logger.info("Discovery restart requested")
        self.found = []
        self.restart.set()

    async def scan(self) -> List[FoundMonitor]:
        """Run one scan and return devices advertising the heart rate service."""
        results = await self._discover(timeout=self.scan_timeout, return_adv=True)

        monitors = []
        for device, adv in results.values():
            uuids = [u.lower() for u in (adv.service_uuids or [])]
            if HEART_RATE_SERVICE_UUID not in uuids:
                continue
            monitors.append(FoundMonitor(
                device=device,
                name=device.name or adv.local_name or "",
                address=device.address,
                rssi=adv.rssi,
            ))

        monitors.sort(key=lambda m: m.rssi if m.rssi is not None else -999, reverse=True)
        self.found = monitors
        logger.debug(f"Scan found {len(monitors)} heart rate monitor(s)")
        return monitors

    async def find_monitor(self, address: str = "", name: str = "") -> Optional[FoundMonitor]:
        """Scan for a specific monitor.

        Args:
            address: Exact device address (case-insensitive), preferred if set
            name: Substring of the advertised name (case-insensitive)

        Returns:
            First match, or the strongest heart rate monitor when neither
            address nor name is given; None if nothing matched
        """
        monitors = await self.scan()
        for monitor in monitors:
            if address and monitor.address.lower() == address.lower():
                return monitor
            if not address and name and name.lower() in monitor.name.lower():
                return monitor
        if not address and not name and monitors:
            return monitors[0]
        return None

    async def watch(self, shutdown: asyncio.Event,
                    on_scan: Optional[Callable[[List[FoundMonitor]], None]] = None,
                    interval: float = RESCAN_INTERVAL_S) -> None:
        """Scan repeatedly until shutdown.

        Skips scans while paused. A restart request cuts the wait short.
        """
        on_scan = on_scan or _log_monitors
        while not shutdown.is_set():
            self.restart.clear()
            if not self.paused:
                try:
                    monitors = await race(self.scan(), shutdown)
                except ShutdownRequested:
                    return
                except (BleakError, OSError) as e:
                    logger.warning(f"BLE scan failed: {e}")
                else:
                    on_scan(monitors)

            try:
                await race(self.restart.wait(), shutdown, timeout=interval)
            except asyncio.TimeoutError:
                continue
            except ShutdownRequested:
                return


def _log_monitors(monitors: List[FoundMonitor]) -> None:
    if not monitors:
        logger.info("No heart rate monitors found")
    for monitor in monitors:
        rssi = f"{monitor.rssi} dBm" if monitor.rssi is not None else "n/a"
        logger.info(f"  {monitor.address}  {monitor.name or '(unnamed)'}  RSSI {rssi}")
