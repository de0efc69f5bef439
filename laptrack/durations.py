"""Conversion between lap durations in seconds and clock strings.

Two clock layouts are supported and selected with an explicit ``fmt``
argument:

``MM:SS.mmm``
    Minutes are unbounded (``"75:00.000"`` is valid).
``HH:MM:SS.mmm``
    Hours are unbounded, minutes run 00-59.

All arithmetic happens in integer milliseconds so that a value rounded to
millisecond precision survives ``decode_duration(encode_duration(s)) == s``.
"""

from __future__ import annotations

import math
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Union

from .errors import FormatError, InvalidInputError

CLOCK_FORMAT = "MM:SS.mmm"
HOUR_CLOCK_FORMAT = "HH:MM:SS.mmm"

NO_TIME_RECORDED = "no time recorded"

MS_PER_SECOND = 1000
SECONDS_PER_MINUTE = 60
MINUTES_PER_HOUR = 60

_PATTERNS: Dict[str, "re.Pattern[str]"] = {
    CLOCK_FORMAT: re.compile(r"([0-9]+):([0-9]{2})\.([0-9]{3})"),
    HOUR_CLOCK_FORMAT: re.compile(r"([0-9]+):([0-9]{2}):([0-9]{2})\.([0-9]{3})"),
}

_ZERO = {
    CLOCK_FORMAT: "00:00.000",
    HOUR_CLOCK_FORMAT: "00:00:00.000",
}

Number = Union[int, float, Decimal]


def _check_format(fmt: str) -> None:
    if not isinstance(fmt, str) or fmt not in _PATTERNS:
        raise FormatError(f"Unknown duration format: {fmt!r}")


def to_millis(seconds: Number) -> int:
    """Return ``seconds`` as whole milliseconds, rounding half up.

    The float is rounded from its shortest decimal representation, so
    ``83.4567`` becomes ``83457`` rather than whatever the binary value
    happens to round to.
    """
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float, Decimal)):
        raise InvalidInputError(f"Duration must be a number, got {seconds!r}")
    if not math.isfinite(seconds):
        raise InvalidInputError(f"Duration must be finite, got {seconds!r}")
    if seconds < 0:
        raise InvalidInputError(f"Duration must be non-negative, got {seconds!r}")
    value = Decimal(str(seconds)) * MS_PER_SECOND
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def encode_duration(seconds: Optional[Number], fmt: str = CLOCK_FORMAT) -> str:
    """Format ``seconds`` as a zero padded clock string.

    ``None`` yields the zero clock for ``fmt`` rather than raising.
    """
    _check_format(fmt)
    if seconds is None:
        return _ZERO[fmt]
    total_ms = to_millis(seconds)
    total_s, millis = divmod(total_ms, MS_PER_SECOND)
    minutes, secs = divmod(total_s, SECONDS_PER_MINUTE)
    if fmt == HOUR_CLOCK_FORMAT:
        hours, minutes = divmod(minutes, MINUTES_PER_HOUR)
        return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"
    return f"{minutes:02d}:{secs:02d}.{millis:03d}"


def decode_duration(text: str, fmt: str = CLOCK_FORMAT) -> float:
    """Parse a clock string produced by :func:`encode_duration`.

    Raises:
        FormatError: if ``text`` does not match ``fmt`` or a component is
            out of range.
    """
    _check_format(fmt)
    if not isinstance(text, str):
        raise FormatError(f"Expected a {fmt} string, got {text!r}")
    match = _PATTERNS[fmt].fullmatch(text.strip())
    if match is None:
        raise FormatError(f"{text!r} does not match {fmt}")

    parts = [int(p) for p in match.groups()]
    if fmt == HOUR_CLOCK_FORMAT:
        hours, minutes, secs, millis = parts
        if minutes >= MINUTES_PER_HOUR:
            raise FormatError(f"Minutes out of range in {text!r}")
        minutes += hours * MINUTES_PER_HOUR
    else:
        minutes, secs, millis = parts
    if secs >= SECONDS_PER_MINUTE:
        raise FormatError(f"Seconds out of range in {text!r}")

    total_ms = (minutes * SECONDS_PER_MINUTE + secs) * MS_PER_SECOND + millis
    return total_ms / MS_PER_SECOND


def _field(value, name: str) -> int:
    """Return a non-negative integer form field; blank means zero."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise FormatError(f"{name} must be a whole number")
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return 0
        if not value.isascii() or not value.isdigit():
            raise FormatError(f"{name} must be a whole number, got {value!r}")
        return int(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise FormatError(f"{name} must be a whole number, got {value!r}")
        value = int(value)
    if not isinstance(value, int):
        raise FormatError(f"{name} must be a whole number, got {value!r}")
    if value < 0:
        raise FormatError(f"{name} must not be negative")
    return value


def compose_duration(minutes, seconds, milliseconds, hours=None) -> float:
    """Build a duration from separate numeric form fields.

    Minutes are unbounded unless ``hours`` is supplied, in which case they
    must fall within the hour.
    """
    h = _field(hours, "hours")
    m = _field(minutes, "minutes")
    s = _field(seconds, "seconds")
    ms = _field(milliseconds, "milliseconds")
    if hours is not None and m >= MINUTES_PER_HOUR:
        raise FormatError("minutes must be between 0 and 59")
    if s >= SECONDS_PER_MINUTE:
        raise FormatError("seconds must be between 0 and 59")
    if ms >= MS_PER_SECOND:
        raise FormatError("milliseconds must be between 0 and 999")
    total_ms = ((h * MINUTES_PER_HOUR + m) * SECONDS_PER_MINUTE + s) * MS_PER_SECOND + ms
    return total_ms / MS_PER_SECOND


def display_duration(seconds: Optional[Number], fmt: str = CLOCK_FORMAT) -> str:
    """Like :func:`encode_duration` but shows a sentinel for missing times."""
    if seconds is None:
        return NO_TIME_RECORDED
    return encode_duration(seconds, fmt)


__all__ = [
    "CLOCK_FORMAT",
    "HOUR_CLOCK_FORMAT",
    "NO_TIME_RECORDED",
    "compose_duration",
    "decode_duration",
    "display_duration",
    "encode_duration",
    "to_millis",
]
