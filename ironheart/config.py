"""
Configuration loading and validation.

Settings come from a YAML file merged over built-in defaults. Every section
is optional; missing keys keep their defaults. Unknown keys and out-of-range
values raise ConfigError so a typo never silently falls back to a default.

Example ironheart.yaml:

    osc:
      target_ip: 127.0.0.1
      port: 9000
      hide_disconnections: true
    websocket:
      enabled: true
      port: 5566
    logging:
      level: DEBUG
      file: logs/ironheart.log
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ironheart.errors import ConfigError


PORT_MIN = 1
PORT_MAX = 65535

DEFAULT_CONFIG_PATH = "ironheart.yaml"


@dataclass
class OscSettings:
    enabled: bool = True
    host_ip: str = "0.0.0.0"
    target_ip: str = "127.0.0.1"
    port: int = 9000
    pulse_length_ms: int = 100
    only_positive_float_bpm: bool = False
    hide_disconnections: bool = False
    max_hide_disconnection_sec: int = 60
    twitch_rr_threshold_ms: int = 50
    address_prefix: str = "/avatar/parameters/"
    param_hrm_connected: str = "isHRConnected"
    param_hiding_disconnect: str = "isHRReconnecting"
    param_hrm_battery_int: str = "HRBattery"
    param_hrm_battery_float: str = "HRBatteryFloat"
    param_beat_toggle: str = "HeartBeatToggle"
    param_beat_pulse: str = "isHRBeat"
    param_bpm_int: str = "HR"
    param_bpm_float: str = "floatHR"
    param_latest_rr_int: str = "RRInterval"
    param_rr_twitch_up: str = "HRTwitchUp"
    param_rr_twitch_down: str = "HRTwitchDown"

    @property
    def twitch_threshold_s(self) -> float:
        return self.twitch_rr_threshold_ms / 1000.0


@dataclass
class BleSettings:
    saved_address: str = ""
    saved_name: str = ""
    rr_ignore_after_empty: int = 0
    no_packet_timeout_sec: float = 30.0
    max_discovery_attempts: int = 3
    scan_timeout_sec: float = 10.0


@dataclass
class WebSocketSettings:
    enabled: bool = False
    port: int = 5566
    no_packet_timeout_sec: float = 30.0


@dataclass
class DummySettings:
    enabled: bool = False
    low_bpm: int = 50
    high_bpm: int = 120
    bpm_speed: float = 1.5
    loops_before_dc: int = 2


@dataclass
class MiscSettings:
    write_bpm_to_file: bool = False
    write_rr_to_file: bool = False
    bpm_file_path: str = "bpm.txt"
    log_sessions_to_csv: bool = False
    log_sessions_csv_path: str = "session_logs"
    bus_capacity: int = 50


@dataclass
class LoggingSettings:
    level: str = "INFO"
    file: str = ""
    file_level: str = "DEBUG"
    max_bytes: int = 10485760
    backup_count: int = 5


@dataclass
class Settings:
    osc: OscSettings = field(default_factory=OscSettings)
    ble: BleSettings = field(default_factory=BleSettings)
    websocket: WebSocketSettings = field(default_factory=WebSocketSettings)
    dummy: DummySettings = field(default_factory=DummySettings)
    misc: MiscSettings = field(default_factory=MiscSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def load_config(path: Optional[Union[str, Path]] = None, required: bool = False) -> Settings:
    """Load and validate settings from a YAML file.

    Args:
        path: Path to YAML file (default: ironheart.yaml in the working directory)
        required: Raise if the file doesn't exist instead of using defaults

    Returns:
        Validated Settings

    Raises:
        FileNotFoundError: If required and the file doesn't exist
        yaml.YAMLError: If YAML syntax is invalid
        ConfigError: If the configuration is invalid
    """
    config_path = Path(path or DEFAULT_CONFIG_PATH)

    if not config_path.exists():
        if required:
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}\n"
                f"See ironheart.example.yaml for a template."
            )
        settings = Settings()
        validate_config(settings)
        return settings

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)

    return settings_from_dict(data or {})


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    """Build validated Settings from a (partial) nested dict."""
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping, got {type(data).__name__}")

    sections = {f.name: f for f in fields(Settings)}
    unknown = set(data) - set(sections)
    if unknown:
        raise ConfigError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    built = {}
    for name, section_field in sections.items():
        section_cls = section_field.default_factory
        built[name] = _build_section(section_cls, data.get(name) or {}, name)

    settings = Settings(**built)
    validate_config(settings)
    return settings


def _build_section(section_cls, values: Dict[str, Any], section_name: str):
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{section_name}' must be a mapping")

    defaults = section_cls()
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(
            f"Unknown key(s) in '{section_name}': {', '.join(sorted(unknown))}"
        )

    kwargs = {}
    for key, value in values.items():
        expected = type(getattr(defaults, key))
        kwargs[key] = _coerce(value, expected, f"{section_name}.{key}")
    return section_cls(**kwargs)


def _coerce(value: Any, expected: type, name: str) -> Any:
    # YAML gives us bool/int/float/str; only widen int -> float
    if expected is bool:
        if not isinstance(value, bool):
            raise ConfigError(f"{name} must be true or false, got {value!r}")
        return value
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{name} must be an integer, got {value!r}")
        return value
    if expected is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{name} must be a number, got {value!r}")
        return float(value)
    if expected is str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ConfigError(f"{name} must be a string, got {value!r}")
        return value
    return value


def validate_port(port: int, name: str = "port") -> None:
    """Validate UDP/TCP port number is in valid range.

    Raises:
        ConfigError: If port is outside range 1-65535
    """
    if port < PORT_MIN or port > PORT_MAX:
        raise ConfigError(f"{name} must be in range {PORT_MIN}-{PORT_MAX}, got {port}")


def validate_config(settings: Settings) -> None:
    """Validate value ranges across all sections.

    Raises:
        ConfigError: If any validation fails
    """
    osc = settings.osc
    validate_port(osc.port, "osc.port")
    if osc.pulse_length_ms <= 0:
        raise ConfigError(f"osc.pulse_length_ms must be greater than 0, got {osc.pulse_length_ms}")
    if osc.max_hide_disconnection_sec < 0:
        raise ConfigError("osc.max_hide_disconnection_sec can't be negative")
    if osc.twitch_rr_threshold_ms < 0:
        raise ConfigError("osc.twitch_rr_threshold_ms can't be negative")

    ble = settings.ble
    if ble.rr_ignore_after_empty < 0:
        raise ConfigError("ble.rr_ignore_after_empty can't be negative")
    if ble.no_packet_timeout_sec <= 0:
        raise ConfigError("ble.no_packet_timeout_sec must be greater than 0")
    if ble.max_discovery_attempts < 1:
        raise ConfigError("ble.max_discovery_attempts must be at least 1")
    if ble.scan_timeout_sec <= 0:
        raise ConfigError("ble.scan_timeout_sec must be greater than 0")

    websocket = settings.websocket
    validate_port(websocket.port, "websocket.port")
    if websocket.no_packet_timeout_sec <= 0:
        raise ConfigError("websocket.no_packet_timeout_sec must be greater than 0")

    dummy = settings.dummy
    if dummy.low_bpm < 1:
        raise ConfigError(f"dummy.low_bpm must be at least 1, got {dummy.low_bpm}")
    if dummy.high_bpm <= dummy.low_bpm:
        raise ConfigError(
            f"dummy.high_bpm ({dummy.high_bpm}) must be greater than dummy.low_bpm ({dummy.low_bpm})"
        )
    if dummy.bpm_speed <= 0:
        raise ConfigError(f"dummy.bpm_speed must be greater than 0, got {dummy.bpm_speed}")
    if dummy.loops_before_dc < 0:
        raise ConfigError("dummy.loops_before_dc can't be negative")

    if settings.misc.bus_capacity < 1:
        raise ConfigError("misc.bus_capacity must be at least 1")

    log = settings.logging
    for name, level in (("logging.level", log.level), ("logging.file_level", log.file_level)):
        if level.upper() not in LOG_LEVELS:
            raise ConfigError(f"{name} must be one of {', '.join(LOG_LEVELS)}, got {level!r}")
