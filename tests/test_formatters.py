from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from conftest import EST
from opsqueue.notifications.formatters import Formatters


@pytest.fixture
def fmt() -> Formatters:
    return Formatters(EST)


class TestFormatTimeSlot:
    def test_same_day_range(self, fmt):
        value = '["2025-03-15 14:00:00+00","2025-03-15 16:00:00+00")'
        assert fmt.format_time_slot(value) == "Mar 15, 2025 9:00 AM EST - 11:00 AM EST"

    def test_unquoted_bounds(self, fmt):
        value = "[2025-03-15 14:00:00+00,2025-03-15 16:00:00+00)"
        assert fmt.format_time_slot(value) == "Mar 15, 2025 9:00 AM EST - 11:00 AM EST"

    def test_multi_day_range(self, fmt):
        value = '["2025-03-15 19:00:00+00","2025-03-17 16:00:00+00")'
        assert (
            fmt.format_time_slot(value)
            == "Mar 15, 2025 2:00 PM EST - Mar 17, 2025 11:00 AM EST"
        )

    def test_day_boundary_is_in_display_timezone(self, fmt):
        # 03:00 UTC on the 16th is still the 15th at UTC-5
        value = '["2025-03-16 01:00:00+00","2025-03-16 03:00:00+00")'
        assert fmt.format_time_slot(value) == "Mar 15, 2025 8:00 PM EST - 10:00 PM EST"

    def test_named_timezone_follows_daylight_saving(self):
        fmt = Formatters(ZoneInfo("America/New_York"))
        value = '["2025-03-15 14:00:00+00","2025-03-15 16:00:00+00")'
        assert fmt.format_time_slot(value) == "Mar 15, 2025 10:00 AM EDT - 12:00 PM EDT"

    @pytest.mark.parametrize(
        "value",
        [
            "not a range",
            "[garbage,stuff)",
            '["2025-03-15 14:00:00+00")',
            "[2025-03-15 14:00:00,2025-03-15 16:00:00)",
        ],
    )
    def test_malformed_returned_unchanged(self, fmt, value):
        assert fmt.format_time_slot(value) == value

    def test_missing_value_is_empty(self, fmt):
        assert fmt.format_time_slot(None) == ""


class TestFormatDatetime:
    def test_utc_instant(self, fmt):
        assert fmt.format_datetime("2025-03-15T19:00:00Z") == "Mar 15, 2025 2:00 PM EST"

    def test_postgres_style_offset(self, fmt):
        assert fmt.format_datetime("2025-03-15 19:30:00+00") == "Mar 15, 2025 2:30 PM EST"

    def test_unparseable_returned_unchanged(self, fmt):
        assert fmt.format_datetime("tomorrow-ish") == "tomorrow-ish"


class TestFormatDate:
    def test_plain_date(self, fmt):
        assert fmt.format_date("2025-03-05") == "Mar 5, 2025"

    def test_unparseable_returned_unchanged(self, fmt):
        assert fmt.format_date("03/05/2025") == "03/05/2025"


class TestFormatMoney:
    def test_preformatted_string_passes_through(self, fmt):
        assert fmt.format_money("$1,250.00") == "$1,250.00"

    def test_numbers(self, fmt):
        assert fmt.format_money(1234.5) == "$1234.50"
        assert fmt.format_money(75) == "$75.00"
        assert fmt.format_money(Decimal("19.99")) == "$19.99"
        assert fmt.format_money(1250000) == "$1250000.00"

    def test_missing_value_is_empty(self, fmt):
        assert fmt.format_money(None) == ""


class TestFormatPhone:
    @pytest.mark.parametrize(
        "value",
        ["5551234567", "555-123-4567", "(555) 123 4567", "555.123.4567"],
    )
    def test_ten_digits(self, fmt, value):
        assert fmt.format_phone(value) == "(555) 123-4567"

    @pytest.mark.parametrize("value", ["12345", "+1 555 123 4567", "call me"])
    def test_other_lengths_unchanged(self, fmt, value):
        assert fmt.format_phone(value) == value

    def test_missing_value_is_empty(self, fmt):
        assert fmt.format_phone(None) == ""
