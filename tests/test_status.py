"""
Tests for the canonical status model and the measurement decoder.
"""

import struct

import pytest

from ironheart.errors import MeasurementError
from ironheart.measurement import parse_hrm
from ironheart.status import BatteryLevel, BatteryState, HeartRateStatus, rr_from_bpm


class TestBatteryLevel:

    def test_int_view(self):
        assert int(BatteryLevel.of(87)) == 87
        assert int(BatteryLevel.unknown()) == 0
        assert int(BatteryLevel.not_reported()) == 0

    def test_level_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            BatteryLevel.of(101)
        with pytest.raises(ValueError):
            BatteryLevel.of(-1)

    def test_non_level_variants_carry_no_level(self):
        with pytest.raises(ValueError):
            BatteryLevel(BatteryState.UNKNOWN, 50)


class TestHeartRateStatus:

    def test_defaults_mean_disconnected(self):
        status = HeartRateStatus()
        assert status.bpm == 0
        assert not status.connected
        assert status.latest_rr is None
        assert status.battery == BatteryLevel.unknown()

    def test_intervals_stored_as_tuple(self):
        status = HeartRateStatus(bpm=70, rr_intervals=[0.85, 0.86])
        assert status.rr_intervals == (0.85, 0.86)
        assert status.latest_rr == 0.86

    def test_negative_bpm_rejected(self):
        with pytest.raises(ValueError):
            HeartRateStatus(bpm=-1)

    def test_evolve_keeps_other_fields(self):
        status = HeartRateStatus(bpm=70, battery=BatteryLevel.of(50))
        changed = status.evolve(bpm=0)
        assert changed.bpm == 0
        assert changed.battery == BatteryLevel.of(50)
        assert status.bpm == 70

    def test_rr_from_bpm(self):
        assert rr_from_bpm(60) == 1.0
        assert rr_from_bpm(120) == 0.5


class TestParseHrm:
    """Heart Rate Measurement payload decoding."""

    def test_uint8_bpm(self):
        measurement = parse_hrm(bytes([0x00, 72]))
        assert measurement.bpm == 72
        assert measurement.rr_intervals == ()

    def test_uint16_bpm(self):
        measurement = parse_hrm(bytes([0x01]) + struct.pack('<H', 300))
        assert measurement.bpm == 300

    def test_rr_intervals_in_1024ths(self):
        payload = bytes([0x10, 60]) + struct.pack('<HH', 1024, 512)
        assert parse_hrm(payload).rr_intervals == (1.0, 0.5)

    def test_energy_expended_skipped(self):
        payload = bytes([0x18, 60]) + struct.pack('<H', 0xFFFF) + struct.pack('<H', 1024)
        measurement = parse_hrm(payload)
        assert measurement.bpm == 60
        assert measurement.rr_intervals == (1.0,)

    def test_trailing_odd_byte_ignored(self):
        payload = bytes([0x10, 60]) + struct.pack('<H', 1024) + b'\x01'
        assert parse_hrm(payload).rr_intervals == (1.0,)

    def test_rr_flag_without_intervals(self):
        assert parse_hrm(bytes([0x10, 60])).rr_intervals == ()

    @pytest.mark.parametrize("payload", [b"", b"\x00", b"\x01\x48", b"\x08\x48\x00"])
    def test_truncated_payload_rejected(self, payload):
        with pytest.raises(MeasurementError):
            parse_hrm(payload)
