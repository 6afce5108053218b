"""
Bluetooth Heart Rate Measurement (0x2A37) decoding and GATT constants.

Payload layout:
    byte 0: flags
        bit 0: heart rate is uint16 (else uint8)
        bit 1-2: sensor contact status (ignored)
        bit 3: energy expended field present (uint16, skipped)
        bit 4: one or more RR-interval fields present
    byte 1[-2]: heart rate
    [2 bytes]: energy expended
    [2 bytes]*: RR intervals, uint16 little-endian, 1/1024 s units

Examples:
    >>> parse_hrm(bytes([0x00, 72]))
    Measurement(bpm=72, rr_intervals=())
    >>> parse_hrm(bytes([0x10, 60, 0x00, 0x04])).rr_intervals
    (1.0,)
"""

import struct
from dataclasses import dataclass
from typing import Tuple

from ironheart.errors import MeasurementError


HEART_RATE_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HEART_RATE_MEASUREMENT_CHARACTERISTIC_UUID = "00002a37-0000-1000-8000-00805f9b34fb"
BATTERY_SERVICE_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_CHARACTERISTIC_UUID = "00002a19-0000-1000-8000-00805f9b34fb"

FLAG_HR_UINT16 = 0x01
FLAG_ENERGY_EXPENDED = 0x08
FLAG_RR_PRESENT = 0x10

RR_UNITS_PER_SECOND = 1024.0


@dataclass(frozen=True)
class Measurement:
    bpm: int
    rr_intervals: Tuple[float, ...]


def parse_hrm(payload: bytes) -> Measurement:
    """Decode a Heart Rate Measurement notification.

    Args:
        payload: Raw characteristic value

    Returns:
        Measurement with bpm and intervals in seconds

    Raises:
        MeasurementError: If the payload is shorter than its flags promise
    """
    data = bytes(payload)
    if len(data) < 2:
        raise MeasurementError(f"Heart rate payload too short: {len(data)} bytes")

    flags = data[0]
    offset = 1

    if flags & FLAG_HR_UINT16:
        if len(data) < offset + 2:
            raise MeasurementError("Heart rate payload missing uint16 bpm")
        bpm = struct.unpack_from('<H', data, offset)[0]
        offset += 2
    else:
        bpm = data[offset]
        offset += 1

    if flags & FLAG_ENERGY_EXPENDED:
        if len(data) < offset + 2:
            raise MeasurementError("Heart rate payload missing energy expended field")
        offset += 2

    rr_intervals = []
    if flags & FLAG_RR_PRESENT:
        remaining = len(data) - offset
        if remaining % 2:
            # Trailing odd byte can't be an interval
            remaining -= 1
        for (raw,) in struct.iter_unpack('<H', data[offset:offset + remaining]):
            rr_intervals.append(raw / RR_UNITS_PER_SECOND)

    return Measurement(bpm=bpm, rr_intervals=tuple(rr_intervals))
