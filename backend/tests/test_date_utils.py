# tests/test_date_utils.py — Due-date parsing and labels
from datetime import date, datetime, timezone

import pytest

from date_utils import (
    parse_due_date, days_until, format_due_date, due_date_class, is_overdue, is_due_today,
)

TODAY = date(2025, 10, 10)


class TestParse:
    def test_date_only_is_midnight_utc(self):
        assert parse_due_date("2025-10-25") == datetime(2025, 10, 25, tzinfo=timezone.utc)

    def test_trailing_z(self):
        assert parse_due_date("2025-10-25T08:30:00Z").hour == 8

    def test_empty(self):
        assert parse_due_date(None) is None
        assert parse_due_date("") is None

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_due_date("next tuesday")


class TestLabels:
    @pytest.mark.parametrize("due,label", [
        (date(2025, 10, 10), "Today"),
        (date(2025, 10, 11), "Tomorrow"),
        (date(2025, 10, 9), "Yesterday"),
        (date(2025, 10, 5), "Overdue (5 days)"),
        (date(2025, 10, 15), "5 days left"),
        (date(2025, 10, 25), "25 Oct"),
        (None, "No due date"),
    ])
    def test_format_due_date(self, due, label):
        assert format_due_date(due, today=TODAY) == label

    def test_due_date_class(self):
        assert due_date_class(date(2025, 10, 9), today=TODAY) == "overdue"
        assert due_date_class(date(2025, 10, 10), today=TODAY) == "today"
        assert due_date_class(date(2025, 10, 12), today=TODAY) == ""
        assert due_date_class(None, today=TODAY) == ""

    def test_predicates(self):
        assert days_until("2025-10-12", today=TODAY) == 2
        assert is_overdue("2025-10-01", today=TODAY)
        assert not is_overdue(None, today=TODAY)
        assert is_due_today(datetime(2025, 10, 10, 23, 0, tzinfo=timezone.utc), today=TODAY)
