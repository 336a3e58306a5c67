from __future__ import annotations

import datetime as dt
import re
from typing import Optional, Tuple

_DURATION_PATTERN = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[smhdw])\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
}
_ABSOLUTE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
)
AT_WINDOW = dt.timedelta(minutes=5)


def now_local() -> dt.datetime:
    return dt.datetime.now().astimezone()


def _parse_aware(text: str) -> Optional[dt.datetime]:
    # Embedded offsets ("Z", "+02:00") win over the local zone.
    if "T" not in text and " " not in text:
        return None
    candidate = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = dt.datetime.fromisoformat(candidate)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else None


def parse_time_value(raw: str, now: Optional[dt.datetime] = None) -> dt.datetime:
    """
    Parse a relative duration ("30m", "2h", "10d") counted back from now, a
    timestamp with an offset ("2026-02-04T17:13:00Z", "2026-02-04 17:13:00+02:00"),
    or an absolute local timestamp ("2026-02-04 17:13").

    Returns a timezone-aware datetime. Raises ValueError for anything else.
    """
    text = (raw or "").strip()
    if not text:
        raise ValueError("empty time value")
    reference = now or now_local()

    match = _DURATION_PATTERN.match(text)
    if match:
        seconds = float(match.group("num")) * _DURATION_UNITS[match.group("unit").lower()]
        return reference - dt.timedelta(seconds=seconds)

    aware = _parse_aware(text)
    if aware is not None:
        return aware

    for fmt in _ABSOLUTE_FORMATS:
        try:
            parsed = dt.datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.astimezone()
    raise ValueError(f"invalid time value {text!r} (use a duration like 1h or a timestamp like 2006-01-02 15:04)")


def around(at: str, now: Optional[dt.datetime] = None) -> Tuple[dt.datetime, dt.datetime]:
    center = parse_time_value(at, now)
    return center - AT_WINDOW, center + AT_WINDOW


def resolve_range(
    since: Optional[str] = None,
    until: Optional[str] = None,
    at: Optional[str] = None,
    now: Optional[dt.datetime] = None,
    default_since: str = "1h",
) -> Tuple[dt.datetime, dt.datetime]:
    """
    Turn since/until or a single `at` point into a (start, end) pair.

    `at` cannot be combined with an explicit since or until.
    """
    reference = now or now_local()
    if at:
        if since or until:
            raise ValueError("cannot use --at together with --since/--until")
        return around(at, reference)
    start = parse_time_value(since or default_since, reference)
    end = parse_time_value(until, reference) if until else reference
    if end <= start:
        raise ValueError("time range end must be after its start")
    return start, end


def to_epoch_ms(value: dt.datetime) -> int:
    return int(round(value.timestamp() * 1000))


def from_epoch_ms(value: int) -> dt.datetime:
    return dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)
