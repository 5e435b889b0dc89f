"""UTC timestamps in RFC 3339 form."""

from __future__ import annotations

from datetime import datetime, timezone


def _format_rfc3339(moment: datetime) -> str:
    """Format an aware datetime as RFC 3339 in UTC with a trailing ``Z``.

    Fractional seconds are written only when non-zero, without trailing zeros.
    """
    if moment.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    utc = moment.astimezone(timezone.utc)
    text = utc.strftime("%Y-%m-%dT%H:%M:%S")
    if utc.microsecond:
        text += "." + f"{utc.microsecond:06d}".rstrip("0")
    return text + "Z"


def now_rfc3339() -> str:
    """Return the current UTC time as an RFC 3339 string."""
    return _format_rfc3339(datetime.now(timezone.utc))