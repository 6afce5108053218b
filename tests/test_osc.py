"""
Tests for OSC address building and bundle encoding.
"""

import pytest
from pythonosc import osc_bundle

from ironheart.config import OscSettings
from ironheart.errors import ConfigError, OscAddressError
from ironheart.osc import (INT32_MAX, MessageStatistics, OscAddressTable, bpm_to_float,
                           build_beat_bundle, build_status_bundle,
                           format_address, format_prefix, is_valid_address)
from ironheart.status import BatteryLevel, HeartRateStatus
from tests.utils import bundle_messages


PREFIX = "/avatar/parameters"


class TestFormatPrefix:

    @pytest.mark.parametrize("prefix", [
        "avatar/parameters",
        "/avatar/parameters/",
        "avatar///parameters/",
        "//avatar/parameters",
    ])
    def test_normalizes(self, prefix):
        assert format_prefix(prefix) == PREFIX

    def test_empty_prefix_is_root(self):
        assert format_prefix("") == "/"
        assert format_prefix("/") == "/"

    @pytest.mark.parametrize("prefix", ["/avatar/[parameters]", "avatar/param]", "/a b", "/a#b"])
    def test_rejects_reserved_characters(self, prefix):
        with pytest.raises(OscAddressError) as excinfo:
            format_prefix(prefix)
        assert isinstance(excinfo.value, ConfigError)
        assert prefix in str(excinfo.value)


class TestFormatAddress:

    def test_joins_prefix_and_param(self):
        assert format_address(PREFIX, "HR") == "/avatar/parameters/HR"

    def test_collapses_slashes(self):
        assert format_address("/avatar/parameters/", "/HR/") == "/avatar/parameters/HR"

    def test_root_prefix(self):
        assert format_address("/", "HR") == "/HR"

    @pytest.mark.parametrize("param", ["", "/", "///"])
    def test_empty_param_rejected(self, param):
        with pytest.raises(OscAddressError):
            format_address(PREFIX, param, "param_bpm_int")

    def test_invalid_param_rejected(self):
        with pytest.raises(OscAddressError) as excinfo:
            format_address(PREFIX, "H*R", "param_bpm_int")
        assert "param_bpm_int" in str(excinfo.value)

    @pytest.mark.parametrize("prefix,param", [
        ("avatar/parameters", "HR"),
        ("", "floatHR"),
        ("//a//b//", "c/d/"),
        ("/x", "nested/param"),
    ])
    def test_result_is_valid_and_stable(self, prefix, param):
        address = format_address(format_prefix(prefix), param)
        assert is_valid_address(address)
        # Re-applying the same normalization changes nothing
        assert format_prefix(address) == address


class TestAddressTable:

    def test_defaults(self):
        table = OscAddressTable.build(OscSettings())
        assert table.bpm_int == "/avatar/parameters/HR"
        assert table.connected == "/avatar/parameters/isHRConnected"
        assert table.hiding_disconnect == "/avatar/parameters/isHRReconnecting"
        assert table.twitch_down == "/avatar/parameters/HRTwitchDown"
        assert table.latest_rr_int == "/avatar/parameters/RRInterval"

    def test_custom_prefix(self):
        table = OscAddressTable.build(OscSettings(address_prefix="hr"))
        assert table.beat_pulse == "/hr/isHRBeat"

    def test_bad_prefix_fails(self):
        with pytest.raises(OscAddressError):
            OscAddressTable.build(OscSettings(address_prefix="/avatar/{x}"))

    def test_empty_param_fails(self):
        with pytest.raises(OscAddressError) as excinfo:
            OscAddressTable.build(OscSettings(param_bpm_float=""))
        assert excinfo.value.param_name == "param_bpm_float"


@pytest.fixture
def table():
    return OscAddressTable.build(OscSettings())


class TestStatusBundle:

    def test_full_parameter_set(self, table):
        status = HeartRateStatus(
            bpm=75, rr_intervals=(0.8,), battery=BatteryLevel.of(90), twitch_down=True
        )
        bundle = build_status_bundle(table, status, connected=True, hiding_disconnect=False)

        assert isinstance(bundle, osc_bundle.OscBundle)
        assert bundle_messages(bundle) == [
            ("/avatar/parameters/RRInterval", 800),
            ("/avatar/parameters/HR", 75),
            ("/avatar/parameters/floatHR", pytest.approx(75 / 255 * 2 - 1, abs=1e-6)),
            ("/avatar/parameters/isHRConnected", True),
            ("/avatar/parameters/isHRReconnecting", False),
            ("/avatar/parameters/HRBattery", 90),
            ("/avatar/parameters/HRBatteryFloat", pytest.approx(0.9, abs=1e-6)),
            ("/avatar/parameters/HRTwitchUp", False),
            ("/avatar/parameters/HRTwitchDown", True),
        ]

    def test_no_interval_omits_rr(self, table):
        bundle = build_status_bundle(table, HeartRateStatus(bpm=60), True, False)
        addresses = [address for address, _ in bundle_messages(bundle)]
        assert "/avatar/parameters/RRInterval" not in addresses
        assert len(addresses) == 8

    def test_long_interval_saturates(self, table):
        status = HeartRateStatus(bpm=80, rr_intervals=(3000000.0,))
        messages = dict(bundle_messages(build_status_bundle(table, status, True, False)))
        assert messages["/avatar/parameters/RRInterval"] == INT32_MAX

    def test_zero_bpm_sends_zero_rr(self, table):
        status = HeartRateStatus(bpm=0, rr_intervals=(0.8,))
        messages = dict(bundle_messages(build_status_bundle(table, status, False, False)))
        assert messages["/avatar/parameters/RRInterval"] == 0
        assert messages["/avatar/parameters/HR"] == 0
        assert messages["/avatar/parameters/floatHR"] == pytest.approx(-1.0)

    def test_positive_float_range(self, table):
        status = HeartRateStatus(bpm=51)
        messages = dict(bundle_messages(build_status_bundle(table, status, True, False, True)))
        assert messages["/avatar/parameters/floatHR"] == pytest.approx(0.2, abs=1e-6)

    def test_unknown_battery_is_zero(self, table):
        messages = dict(bundle_messages(build_status_bundle(table, HeartRateStatus(bpm=60), True, False)))
        assert messages["/avatar/parameters/HRBattery"] == 0
        assert messages["/avatar/parameters/HRBatteryFloat"] == 0.0


class TestBeatBundle:

    def test_pulse_and_toggle(self, table):
        bundle = build_beat_bundle(table, pulse=True, toggle=False)
        assert bundle_messages(bundle) == [
            ("/avatar/parameters/isHRBeat", True),
            ("/avatar/parameters/HeartBeatToggle", False),
        ]


class TestBpmToFloat:

    def test_signed_range(self):
        assert bpm_to_float(0, False) == -1.0
        assert bpm_to_float(255, False) == pytest.approx(1.0)

    def test_positive_range(self):
        assert bpm_to_float(0, True) == 0.0
        assert bpm_to_float(255, True) == pytest.approx(1.0)

    def test_not_clamped(self):
        assert bpm_to_float(510, True) == pytest.approx(2.0)


class TestMessageStatistics:

    def test_increment_and_merge(self, capsys):
        stats = MessageStatistics()
        stats.increment('status_bundles')
        stats.increment('status_bundles', 2)
        other = MessageStatistics()
        other.increment('beat_bundles')
        stats.merge(other)

        assert stats.get('status_bundles') == 3
        assert stats.get('beat_bundles') == 1
        assert stats.get('missing') == 0

        stats.print_stats("TEST")
        output = capsys.readouterr().out
        assert "Status Bundles: 3" in output
        assert "Beat Bundles: 1" in output
