# date_utils.py — Due-date display helpers shared by the board and dashboard views
from datetime import date, datetime, timezone
from typing import Optional, Union

DateLike = Union[date, datetime, str, None]

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def parse_due_date(value: DateLike) -> Optional[datetime]:
    """Parse an ISO date or datetime into an aware UTC datetime.

    Date-only values ("2025-10-25") become midnight UTC. A trailing "Z" is
    accepted. Raises ValueError for anything else.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_date(value: DateLike) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_due_date(value).date()


def _today(today: Optional[date]) -> date:
    return today or datetime.now(timezone.utc).date()


def days_until(value: DateLike, today: Optional[date] = None) -> Optional[int]:
    due = _as_date(value)
    if due is None:
        return None
    return (due - _today(today)).days


def format_due_date(value: DateLike, today: Optional[date] = None) -> str:
    """Human label for a due date relative to today.

    >>> format_due_date(date(2025, 10, 25), today=date(2025, 10, 10))
    '25 Oct'
    """
    due = _as_date(value)
    if due is None:
        return "No due date"

    diff = (due - _today(today)).days
    if diff == 0:
        return "Today"
    if diff == 1:
        return "Tomorrow"
    if diff == -1:
        return "Yesterday"
    if diff < -1:
        return f"Overdue ({abs(diff)} days)"
    if diff <= 7:
        return f"{diff} days left"
    return f"{due.day} {_MONTHS[due.month - 1]}"


def due_date_class(value: DateLike, today: Optional[date] = None) -> str:
    """CSS-style state for a due date: "overdue", "today" or empty."""
    diff = days_until(value, today)
    if diff is None:
        return ""
    if diff < 0:
        return "overdue"
    if diff == 0:
        return "today"
    return ""


def is_overdue(value: DateLike, today: Optional[date] = None) -> bool:
    diff = days_until(value, today)
    return diff is not None and diff < 0


def is_due_today(value: DateLike, today: Optional[date] = None) -> bool:
    return days_until(value, today) == 0
