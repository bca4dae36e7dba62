# reminders.py — Due-date reminder scanner and scheduled task reminders
# A background loop wakes every REMINDER_POLL_SECONDS, finds tasks whose due
# time falls into one of the fixed windows (just overdue, ~15 min, ~1 hour,
# ~1 day) and writes a reminder notification for each recipient. Every
# (task, bucket) pair fires at most once per scanner session; the de-dupe
# set lives in memory only, so a restart re-arms every bucket.

import os
import math
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import kv_store
import preferences
from kv_store import DatabaseKeyValueStore, KeyValueStore
from models import (
    BoardColumn, Notification, NotificationType, Task, TaskAssignee, as_utc,
)
from preferences import ScheduledReminder, TaskReminders

logger = logging.getLogger("kanban.reminders")

REMINDER_POLL_SECONDS = int(os.getenv("REMINDER_POLL_SECONDS", "60"))

# Publisher for live pushes: (user_id, message) -> None
Publisher = Callable[[str, dict], Awaitable[None]]


class ReminderBucket(str, Enum):
    OVERDUE = "overdue"
    FIFTEEN_MINUTES = "15min"
    ONE_HOUR = "1hour"
    ONE_DAY = "1day"
    LATER = "later"


# (lowest, highest) rounded minutes until due, inclusive
FIRE_WINDOWS = (
    (14, 16),
    (59, 61),
    (1439, 1441),
)

OVERDUE_GRACE = timedelta(minutes=1)
LOOKAHEAD = timedelta(minutes=FIRE_WINDOWS[-1][1] + 1)

REMINDER_OFFSETS: Dict[str, timedelta] = {
    "15min": timedelta(minutes=15),
    "30min": timedelta(minutes=30),
    "1hour": timedelta(hours=1),
    "2hours": timedelta(hours=2),
    "1day": timedelta(days=1),
    "2days": timedelta(days=2),
    "1week": timedelta(weeks=1),
}

OFFSET_LABELS = {
    "15min": "15 minutes before",
    "30min": "30 minutes before",
    "1hour": "1 hour before",
    "2hours": "2 hours before",
    "1day": "1 day before",
    "2days": "2 days before",
    "1week": "1 week before",
}


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def minutes_until(due: datetime, now: datetime) -> int:
    return _round_half_up((as_utc(due) - as_utc(now)).total_seconds() / 60)


def classify_bucket(diff_minutes: int) -> ReminderBucket:
    if diff_minutes < 0:
        return ReminderBucket.OVERDUE
    if diff_minutes < 30:
        return ReminderBucket.FIFTEEN_MINUTES
    if diff_minutes < 90:
        return ReminderBucket.ONE_HOUR
    if diff_minutes < 1500:
        return ReminderBucket.ONE_DAY
    return ReminderBucket.LATER


def bucket_for(due: datetime, now: datetime) -> ReminderBucket:
    # Anything past due is overdue, even when it rounds to zero minutes
    if as_utc(due) < as_utc(now):
        return ReminderBucket.OVERDUE
    return classify_bucket(minutes_until(due, now))


def in_fire_window(due: datetime, now: datetime) -> bool:
    diff = as_utc(due) - as_utc(now)
    if diff < timedelta(0):
        return diff > -OVERDUE_GRACE
    mins = minutes_until(due, now)
    return any(low <= mins <= high for low, high in FIRE_WINDOWS)


def due_date_message(due: datetime, now: datetime) -> str:
    diff = as_utc(due) - as_utc(now)
    if diff < timedelta(0):
        return "This task is overdue!"
    hours = _round_half_up(diff.total_seconds() / 3600)
    if hours < 1:
        return "Due within the next hour!"
    if hours < 24:
        return f"Due in {hours} hours"
    return f"Due in {_round_half_up(hours / 24)} days"


def calculate_reminder_time(due: datetime, offset: str) -> datetime:
    if offset not in REMINDER_OFFSETS:
        raise ValueError(f"Unknown reminder offset '{offset}'")
    return as_utc(due) - REMINDER_OFFSETS[offset]


# ============================================================
# SCANNER
# ============================================================

@dataclass
class DueTask:
    id: str
    title: str
    due_date: Optional[datetime]
    column_title: Optional[str] = None
    board_id: Optional[str] = None
    recipients: List[str] = field(default_factory=list)

    @property
    def is_done(self) -> bool:
        return (self.column_title or "").strip().lower() == "done"


@dataclass
class ReminderEvent:
    task_id: str
    bucket: ReminderBucket
    title: str
    body: str
    tag: str
    data: dict
    recipients: List[str]
    board_id: Optional[str] = None
    require_interaction: bool = True

    def as_message(self) -> dict:
        return {
            "type": "reminder",
            "title": self.title,
            "body": self.body,
            "tag": self.tag,
            "data": self.data,
            "require_interaction": self.require_interaction,
        }


class DueDateReminderScanner:
    """Decides which tasks need a due-date reminder right now"""

    def __init__(self):
        self._notified: Set[str] = set()

    @staticmethod
    def key(task_id: str, bucket: ReminderBucket) -> str:
        return f"{task_id}-{bucket.value}"

    @property
    def notified(self) -> Set[str]:
        return set(self._notified)

    def scan(
        self, tasks: Iterable[DueTask], now: Optional[datetime] = None, record: bool = True,
    ) -> List[ReminderEvent]:
        """Events due now. With record=False the caller must call record() once they are stored."""
        now = now or datetime.now(timezone.utc)
        events = []
        for task in tasks:
            if task.due_date is None or task.is_done:
                continue
            if not in_fire_window(task.due_date, now):
                continue
            bucket = bucket_for(task.due_date, now)
            key = self.key(task.id, bucket)
            if key in self._notified:
                continue
            if not task.recipients:
                continue
            events.append(ReminderEvent(
                task_id=task.id,
                bucket=bucket,
                title=f"Due Soon: {task.title}",
                body=due_date_message(task.due_date, now),
                tag=f"due-date-{task.id}",
                data={"task_id": task.id, "url": f"/board?task={task.id}"},
                recipients=list(task.recipients),
                board_id=task.board_id,
            ))
        if record:
            self.record(events)
        return events

    def record(self, events: Iterable[ReminderEvent]) -> None:
        for event in events:
            self._notified.add(self.key(event.task_id, event.bucket))

    def stop(self) -> None:
        self._notified.clear()


# ============================================================
# SCHEDULED REMINDERS
# ============================================================

def schedule_reminder(reminders: TaskReminders, task_id: str, task_title: str, reminder_at: datetime) -> ScheduledReminder:
    entry = ScheduledReminder(task_title=task_title, reminder_at=as_utc(reminder_at))
    reminders.reminders[task_id] = entry
    return entry


def cancel_reminder(reminders: TaskReminders, task_id: str) -> bool:
    return reminders.reminders.pop(task_id, None) is not None


def pop_due_reminders(reminders: TaskReminders, now: datetime) -> List[Tuple[str, ScheduledReminder]]:
    due = [
        (task_id, entry) for task_id, entry in reminders.reminders.items()
        if as_utc(entry.reminder_at) <= as_utc(now)
    ]
    for task_id, _ in due:
        del reminders.reminders[task_id]
    return due


# ============================================================
# BACKGROUND SERVICE
# ============================================================

class ReminderService:
    """Runs the scanner against the database on a fixed interval"""

    def __init__(
        self,
        scanner: Optional[DueDateReminderScanner] = None,
        poll_seconds: int = REMINDER_POLL_SECONDS,
        publisher: Optional[Publisher] = None,
    ):
        self.scanner = scanner or DueDateReminderScanner()
        self.poll_seconds = poll_seconds
        self.publisher = publisher
        self._task: Optional[asyncio.Task] = None

    async def _load_due_tasks(self, db: AsyncSession, now: datetime) -> List[DueTask]:
        stmt = (
            select(Task, BoardColumn.title)
            .outerjoin(BoardColumn, BoardColumn.id == Task.column_id)
            .where(
                Task.deleted_at.is_(None),
                Task.is_archived.is_(False),
                Task.due_date.isnot(None),
                Task.due_date > now - OVERDUE_GRACE,
                Task.due_date <= now + LOOKAHEAD,
            )
        )
        rows = (await db.execute(stmt)).all()
        if not rows:
            return []

        task_ids = [task.id for task, _ in rows]
        assignee_rows = await db.execute(
            select(TaskAssignee.task_id, TaskAssignee.user_id).where(TaskAssignee.task_id.in_(task_ids))
        )
        assignees: Dict[str, List[str]] = {}
        for task_id, user_id in assignee_rows.all():
            assignees.setdefault(task_id, []).append(user_id)

        due_tasks = []
        for task, column_title in rows:
            recipients = [task.user_id]
            recipients += [uid for uid in assignees.get(task.id, []) if uid != task.user_id]
            due_tasks.append(DueTask(
                id=task.id,
                title=task.title,
                due_date=task.due_date,
                column_title=column_title,
                board_id=task.board_id,
                recipients=recipients,
            ))
        return due_tasks

    @staticmethod
    async def _wants_reminders(store: KeyValueStore, user_id: str, cache: Dict[str, bool]) -> bool:
        if user_id not in cache:
            settings = await preferences.load(store, user_id, kv_store.NOTIFICATION_SETTINGS)
            cache[user_id] = settings.push_notifications and settings.due_date_reminders
        return cache[user_id]

    async def _deliver(self, db: AsyncSession, user_id: str, notification: Notification, message: dict) -> None:
        db.add(notification)
        if self.publisher is not None:
            try:
                await self.publisher(user_id, message)
            except Exception as e:
                logger.warning(f"Live reminder push to {user_id[:8]} failed: {e}")

    async def run_once(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """One scan pass. Returns the number of notifications written."""
        now = now or datetime.now(timezone.utc)
        store = DatabaseKeyValueStore(db)
        wants: Dict[str, bool] = {}

        tasks = await self._load_due_tasks(db, now)
        for task in tasks:
            task.recipients = [uid for uid in task.recipients if await self._wants_reminders(store, uid, wants)]

        created = 0
        events = self.scanner.scan(tasks, now, record=False)
        for event in events:
            for user_id in event.recipients:
                notification = Notification(
                    user_id=user_id,
                    type=NotificationType.REMINDER,
                    title=event.title,
                    message=event.body,
                    task_id=event.task_id,
                    board_id=event.board_id,
                    data={**event.data, "tag": event.tag, "bucket": event.bucket.value,
                          "require_interaction": event.require_interaction},
                )
                await self._deliver(db, user_id, notification, event.as_message())
                created += 1
            logger.info(f"Reminder {event.bucket.value} fired for task {event.task_id[:8]}")

        created += await self._fire_scheduled(db, store, now)
        await db.commit()
        self.scanner.record(events)
        return created

    async def _fire_scheduled(self, db: AsyncSession, store: KeyValueStore, now: datetime) -> int:
        created = 0
        for owner_id, raw in await store.items(kv_store.TASK_REMINDERS):
            reminders = TaskReminders.model_validate(raw or {})
            due = pop_due_reminders(reminders, now)
            if not due:
                continue
            for task_id, entry in due:
                body = f'"{entry.task_title}" is coming due!'
                notification = Notification(
                    user_id=owner_id,
                    type=NotificationType.REMINDER,
                    title="Task Reminder",
                    message=body,
                    task_id=task_id,
                    data={"tag": f"reminder-{task_id}", "url": f"/board?task={task_id}"},
                )
                await self._deliver(db, owner_id, notification, {
                    "type": "reminder", "title": "Task Reminder", "body": body,
                    "tag": f"reminder-{task_id}", "data": {"task_id": task_id},
                })
                created += 1
            await preferences.save(store, owner_id, kv_store.TASK_REMINDERS, reminders)
        return created

    async def _loop(self, session_factory) -> None:
        logger.info(f"Reminder scanner started (every {self.poll_seconds}s)")
        while True:
            try:
                async with session_factory() as db:
                    await self.run_once(db)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reminder scan failed")
            await asyncio.sleep(self.poll_seconds)

    def start(self, session_factory) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(session_factory))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.scanner.stop()
        logger.info("Reminder scanner stopped")
