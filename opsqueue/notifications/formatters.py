"""
Formatting functions exposed to notification templates.

Every function is total: a value that cannot be parsed comes back unchanged,
so one malformed field never aborts an otherwise renderable template.
"""

import re
from datetime import date, datetime, tzinfo
from decimal import Decimal
from typing import Any

from jinja2 import Undefined

# tstzrange as PostgreSQL prints it, with or without quoted bounds:
# ["2025-03-15 14:00:00+00","2025-03-15 16:00:00+00")
TIME_RANGE_RE = re.compile(r'^\s*[\[(]"?([^",]+?)"?\s*,\s*"?([^",)\]]+?)"?\s*[)\]]\s*$')
SHORT_OFFSET_RE = re.compile(r"([+-]\d{2})$")
NON_DIGIT_RE = re.compile(r"\D")


def _is_blank(value: Any) -> bool:
    return value is None or isinstance(value, Undefined)


def _parse_timestamp(value: str) -> datetime | None:
    """Parse an offset-qualified timestamp; naive values are rejected."""
    text = value.strip()
    # PostgreSQL prints whole-hour offsets as +00 / -05
    text = SHORT_OFFSET_RE.sub(r"\1:00", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def _format_day(moment: datetime | date) -> str:
    return f"{moment:%b} {moment.day}, {moment.year}"


def _format_clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    return f"{hour}:{moment:%M} {'AM' if moment.hour < 12 else 'PM'} {moment.tzname()}"


def _format_moment(moment: datetime) -> str:
    return f"{_format_day(moment)} {_format_clock(moment)}"


class Formatters:
    """Template functions bound to a display timezone."""

    def __init__(self, timezone: tzinfo):
        self.timezone = timezone

    def as_mapping(self) -> dict[str, Any]:
        return {
            "format_time_slot": self.format_time_slot,
            "format_datetime": self.format_datetime,
            "format_date": self.format_date,
            "format_money": self.format_money,
            "format_phone": self.format_phone,
        }

    def format_time_slot(self, value: Any) -> str:
        """
        Format a timestamp range in the display timezone.

        Same day:      "Mar 15, 2025 9:00 AM EST - 11:00 AM EST"
        Different day: "Mar 15, 2025 2:00 PM EST - Mar 17, 2025 11:00 AM EST"
        """
        if _is_blank(value):
            return ""
        if not isinstance(value, str):
            return str(value)

        match = TIME_RANGE_RE.match(value)
        if not match:
            return value

        start = _parse_timestamp(match.group(1))
        end = _parse_timestamp(match.group(2))
        if start is None or end is None:
            return value

        start = start.astimezone(self.timezone)
        end = end.astimezone(self.timezone)

        if start.date() == end.date():
            return f"{_format_day(start)} {_format_clock(start)} - {_format_clock(end)}"
        return f"{_format_moment(start)} - {_format_moment(end)}"

    def format_datetime(self, value: Any) -> str:
        """ISO-8601 instant to "Mar 15, 2025 2:00 PM EST" in the display timezone."""
        if _is_blank(value):
            return ""
        if not isinstance(value, str):
            return str(value)

        parsed = _parse_timestamp(value)
        if parsed is None:
            return value
        return _format_moment(parsed.astimezone(self.timezone))

    def format_date(self, value: Any) -> str:
        """Plain "2025-03-15" to "Mar 15, 2025"."""
        if _is_blank(value):
            return ""
        if not isinstance(value, str):
            return str(value)

        try:
            parsed = date.fromisoformat(value.strip())
        except ValueError:
            return value
        return _format_day(parsed)

    def format_money(self, value: Any) -> str:
        """Pass pre-formatted money strings through; format numbers as $1234.56."""
        if _is_blank(value):
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return f"${value:.2f}"
        return str(value)

    def format_phone(self, value: Any) -> str:
        """Ten digits become "(555) 123-4567"; anything else is returned as is."""
        if _is_blank(value):
            return ""
        text = str(value)
        digits = NON_DIGIT_RE.sub("", text)
        if len(digits) != 10:
            return text
        return f"({digits[0:3]}) {digits[3:6]}-{digits[6:10]}"
