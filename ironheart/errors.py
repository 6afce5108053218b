"""Error types shared by every ironheart actor.

Two families live here:

- Exceptions (``IronHeartError`` and subclasses) raised by library code,
  mostly at configuration time.
- ``ClassifiedError``, the bus message an actor publishes when something
  goes wrong at runtime. Its ``Severity`` tells consumers whether the
  actor is retrying on its own (INTERMITTENT), is waiting on an
  acknowledgment (USER_MUST_DISMISS), or has stopped (FATAL).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class IronHeartError(Exception):
    """Base class for ironheart exceptions."""


class ConfigError(IronHeartError, ValueError):
    """Invalid configuration value. Always fatal for the actor that reads it."""


class OscAddressError(ConfigError):
    """An OSC prefix or parameter suffix doesn't form a valid OSC address."""

    def __init__(self, param_name: str, value: str):
        self.param_name = param_name
        self.value = value
        super().__init__(f'Invalid OSC address for {param_name}: "{value}"')


class MeasurementError(IronHeartError, ValueError):
    """A Heart Rate Measurement payload couldn't be decoded."""


class Severity(Enum):
    INTERMITTENT = "intermittent"
    USER_MUST_DISMISS = "user_must_dismiss"
    FATAL = "fatal"


@dataclass(frozen=True)
class ClassifiedError:
    """Runtime error published on the bus.

    Attributes:
        severity: How the publishing actor is reacting to the error
        message: Short human-readable summary
        detail: Optional underlying error text (exception message)
        source: Name of the actor that published it
    """
    severity: Severity
    message: str
    detail: Optional[str] = None
    source: str = ""

    @classmethod
    def intermittent(cls, message: str, source: str = "") -> "ClassifiedError":
        return cls(Severity.INTERMITTENT, message, source=source)

    @classmethod
    def must_dismiss(cls, message: str, source: str = "") -> "ClassifiedError":
        return cls(Severity.USER_MUST_DISMISS, message, source=source)

    @classmethod
    def fatal(cls, message: str, error: Optional[BaseException] = None,
              source: str = "") -> "ClassifiedError":
        detail = str(error) if error is not None else None
        return cls(Severity.FATAL, message, detail=detail, source=source)

    @property
    def is_fatal(self) -> bool:
        return self.severity is Severity.FATAL

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message
