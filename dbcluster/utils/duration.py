"""
Duration parsing for user facing fields such as ``automaticFailoverDelay: 10s``.
"""
import re
from datetime import timedelta
from typing import Any

_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}

_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_duration(value: Any) -> Any:
    """
    Accept "1h30m", "10s" or "250ms" in addition to what pydantic parses.

    Numbers and ISO 8601 strings are passed through untouched for pydantic to
    handle; only the compact unit form is converted here.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text or text.startswith("P"):
        return value
    if text.isdigit():
        return timedelta(seconds=int(text))

    total = timedelta(0)
    position = 0
    for match in _PART_RE.finditer(text):
        if match.start() != position:
            raise ValueError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total

