"""
IronHeart OSC Infrastructure - address table, bundle encoding, UDP sender.

Every send is one OSC bundle with the "immediately" timetag. The status
bundle carries the full parameter set; the beat bundle carries only the
pulse/toggle pair.

Classes:
    - OscAddressTable: Validated address for every avatar parameter
    - OscSender: UDP client bound to a configurable local interface
    - MessageStatistics: Counter set printed on shutdown

Functions:
    - format_prefix(prefix): Normalize the configured address prefix
    - format_address(prefix, param): Join prefix and parameter suffix
    - is_valid_address(address): Check OSC address syntax
    - bpm_to_float(bpm, only_positive): Normalize bpm for float parameters
    - clamp_int32(value): Saturate to the OSC int range
    - build_status_bundle(...): Full parameter bundle
    - build_beat_bundle(...): Pulse/toggle bundle

Normalization (slashes collapsed, one trailing slash stripped):
    >>> format_prefix("avatar///parameters/")
    '/avatar/parameters'
    >>> format_address("/avatar/parameters", "HR")
    '/avatar/parameters/HR'
"""

import re
from dataclasses import dataclass, fields
from typing import Optional

from pythonosc import osc_bundle, osc_bundle_builder, osc_message_builder, udp_client

from ironheart.config import OscSettings
from ironheart.errors import OscAddressError
from ironheart.status import HeartRateStatus


# Each part is one or more characters OSC reserves for pattern matching
OSC_ADDRESS_PATTERN = re.compile(r'^/$|^(/[^\s#*,/?\[\]{}]+)+$')
REPEATED_SLASHES = re.compile(r'/{2,}')

# Float bpm is scaled against the byte range avatar parameters use
BPM_FLOAT_SCALE = 255.0

# Int parameters travel as OSC int32
INT32_MIN = -2 ** 31
INT32_MAX = 2 ** 31 - 1


# ============================================================================
# ADDRESSES
# ============================================================================

def _normalize(address: str) -> str:
    address = REPEATED_SLASHES.sub('/', address)
    if len(address) > 1 and address.endswith('/'):
        address = address[:-1]
    return address


def is_valid_address(address: str) -> bool:
    """Check that a string is a well-formed OSC address.

    Examples:
        >>> is_valid_address("/avatar/parameters/HR")
        True
        >>> is_valid_address("/avatar/[param]")
        False
    """
    return bool(OSC_ADDRESS_PATTERN.match(address))


def format_prefix(prefix: str) -> str:
    """Normalize an address prefix.

    Args:
        prefix: Configured prefix, leading slash optional

    Returns:
        Prefix with a single leading slash and no trailing slash ("/" if empty)

    Raises:
        OscAddressError: If the result isn't a valid OSC address
    """
    formatted = _normalize("/" + prefix)
    if not is_valid_address(formatted):
        raise OscAddressError("address_prefix", prefix)
    return formatted


def format_address(prefix: str, param: str, param_name: str = "parameter") -> str:
    """Join a prefix and a parameter suffix into a full address.

    Args:
        prefix: Address prefix (normalized or not)
        param: Parameter suffix, e.g. "HR"
        param_name: Config key, used in error messages

    Raises:
        OscAddressError: If the suffix is empty or the result is invalid
    """
    if not param.strip('/'):
        raise OscAddressError(param_name, param)
    formatted = _normalize(prefix + "/" + param)
    if not formatted.startswith('/'):
        formatted = _normalize("/" + formatted)
    if not is_valid_address(formatted):
        raise OscAddressError(param_name, param)
    return formatted


@dataclass(frozen=True)
class OscAddressTable:
    """Full OSC address for each avatar parameter."""
    connected: str
    hiding_disconnect: str
    battery_int: str
    battery_float: str
    beat_toggle: str
    beat_pulse: str
    bpm_int: str
    bpm_float: str
    latest_rr_int: str
    twitch_up: str
    twitch_down: str

    @classmethod
    def build(cls, settings: OscSettings) -> "OscAddressTable":
        """Build and validate every address from the OSC settings.

        Raises:
            OscAddressError: On the first invalid prefix or suffix
        """
        prefix = format_prefix(settings.address_prefix)
        addresses = {}
        for table_field in fields(cls):
            param_name = f"param_{_SETTINGS_KEYS[table_field.name]}"
            suffix = getattr(settings, param_name)
            addresses[table_field.name] = format_address(prefix, suffix, param_name)
        return cls(**addresses)


# Table field -> OscSettings "param_*" key
_SETTINGS_KEYS = {
    'connected': 'hrm_connected',
    'hiding_disconnect': 'hiding_disconnect',
    'battery_int': 'hrm_battery_int',
    'battery_float': 'hrm_battery_float',
    'beat_toggle': 'beat_toggle',
    'beat_pulse': 'beat_pulse',
    'bpm_int': 'bpm_int',
    'bpm_float': 'bpm_float',
    'latest_rr_int': 'latest_rr_int',
    'twitch_up': 'rr_twitch_up',
    'twitch_down': 'rr_twitch_down',
}


# ============================================================================
# BUNDLES
# ============================================================================

def bpm_to_float(bpm: int, only_positive: bool) -> float:
    """Scale bpm to the float parameter range.

    0..1 when only_positive, otherwise -1..1. Not clamped, bpm above 255
    goes past the top of the range.
    """
    scaled = bpm / BPM_FLOAT_SCALE
    if only_positive:
        return scaled
    return scaled * 2.0 - 1.0


def clamp_int32(value: int) -> int:
    """Saturate an integer to the OSC int32 range.

    >>> clamp_int32(3000000000)
    2147483647
    """
    return max(INT32_MIN, min(INT32_MAX, value))


def _message(address: str, value, arg_type: Optional[str] = None):
    builder = osc_message_builder.OscMessageBuilder(address=address)
    builder.add_arg(value, arg_type)
    return builder.build()


def build_status_bundle(table: OscAddressTable, status: HeartRateStatus,
                        connected: bool, hiding_disconnect: bool,
                        only_positive_float_bpm: bool = False) -> osc_bundle.OscBundle:
    """Encode the full parameter set for one status.

    Args:
        table: Validated addresses
        status: Status to encode
        connected: Value for the connected flag
        hiding_disconnect: Value for the hiding-disconnect flag
        only_positive_float_bpm: Float bpm range selector

    Returns:
        Bundle in order: latest RR (ms, omitted when the status has no
        interval, 0 when bpm is 0), bpm int, bpm float, connected,
        hiding disconnect, battery int, battery float, twitch up, twitch down
    """
    bundle = osc_bundle_builder.OscBundleBuilder(osc_bundle_builder.IMMEDIATELY)

    if status.bpm == 0:
        bundle.add_content(_message(table.latest_rr_int, 0, osc_message_builder.OscMessageBuilder.ARG_TYPE_INT))
    elif status.latest_rr is not None:
        rr_ms = clamp_int32(int(status.latest_rr * 1000))
        bundle.add_content(_message(table.latest_rr_int, rr_ms, osc_message_builder.OscMessageBuilder.ARG_TYPE_INT))

    battery = int(status.battery)
    contents = [
        (table.bpm_int, status.bpm, osc_message_builder.OscMessageBuilder.ARG_TYPE_INT),
        (table.bpm_float, bpm_to_float(status.bpm, only_positive_float_bpm),
         osc_message_builder.OscMessageBuilder.ARG_TYPE_FLOAT),
        (table.connected, bool(connected), None),
        (table.hiding_disconnect, bool(hiding_disconnect), None),
        (table.battery_int, battery, osc_message_builder.OscMessageBuilder.ARG_TYPE_INT),
        (table.battery_float, battery / 100.0, osc_message_builder.OscMessageBuilder.ARG_TYPE_FLOAT),
        (table.twitch_up, bool(status.twitch_up), None),
        (table.twitch_down, bool(status.twitch_down), None),
    ]
    for address, value, arg_type in contents:
        bundle.add_content(_message(address, value, arg_type))

    return bundle.build()


def build_beat_bundle(table: OscAddressTable, pulse: bool, toggle: bool) -> osc_bundle.OscBundle:
    """Encode one heartbeat edge: (pulse, toggle)."""
    bundle = osc_bundle_builder.OscBundleBuilder(osc_bundle_builder.IMMEDIATELY)
    bundle.add_content(_message(table.beat_pulse, bool(pulse)))
    bundle.add_content(_message(table.beat_toggle, bool(toggle)))
    return bundle.build()


# ============================================================================
# UDP SENDER
# ============================================================================

class OscSender(udp_client.UDPClient):
    """UDP client bound to a chosen local interface.

    Extends pythonosc's UDPClient so packets leave from host_ip (an
    ephemeral port is picked by the OS). Owned by the OSC actor only.

    Args:
        host_ip: Local address to bind ("0.0.0.0" for any)
        target_ip: Receiver address
        port: Receiver UDP port

    Raises:
        OSError: If the local bind fails
    """

    def __init__(self, host_ip: str, target_ip: str, port: int):
        super().__init__(target_ip, port)
        self._sock.bind((host_ip, 0))

    @property
    def local_address(self):
        return self._sock.getsockname()

    def close(self):
        """Close the UDP socket."""
        if hasattr(self, '_sock') and self._sock:
            self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ============================================================================
# MESSAGE STATISTICS
# ============================================================================

class MessageStatistics:
    """Named counters with formatted output on shutdown.

    Only ever touched from the event loop thread, so no locking.

    Examples:
        >>> stats = MessageStatistics()
        >>> stats.increment('status_bundles')
        >>> stats.get('status_bundles')
        1
    """

    def __init__(self):
        self.counters = {}

    def increment(self, counter_name: str, amount: int = 1) -> None:
        self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    def get(self, counter_name: str) -> int:
        return self.counters.get(counter_name, 0)

    def merge(self, other: "MessageStatistics") -> None:
        for name, count in other.counters.items():
            self.increment(name, count)

    def print_stats(self, title: str = "STATISTICS") -> None:
        """Print counters in sorted order between separator lines.

        Output format:
            ============================================================
            TITLE
            ============================================================
            Counter Name: value
            ============================================================
        """
        print("\n" + "=" * 60)
        print(title)
        print("=" * 60)
        for name in sorted(self.counters):
            display_name = name.replace('_', ' ').title()
            print(f"{display_name}: {self.counters[name]}")
        print("=" * 60)
