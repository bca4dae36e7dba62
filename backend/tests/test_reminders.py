# tests/test_reminders.py — Due-date reminder scanner and the background service
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

import kv_store
import preferences
from kv_store import DatabaseKeyValueStore
from models import Board, BoardColumn, Notification, NotificationType, Task, TaskPriority
from preferences import TaskReminders
from reminders import (
    DueDateReminderScanner, DueTask, ReminderBucket, ReminderService,
    bucket_for, calculate_reminder_time, classify_bucket, due_date_message,
    in_fire_window, pop_due_reminders, schedule_reminder,
)

NOW = datetime(2025, 10, 10, 12, 0, tzinfo=timezone.utc)


def _due(minutes: float, title: str = "Report", column: str = "To Do") -> DueTask:
    return DueTask(
        id=f"task-{title}", title=title, due_date=NOW + timedelta(minutes=minutes),
        column_title=column, recipients=["user-1"],
    )


class TestBuckets:
    @pytest.mark.parametrize("minutes,bucket", [
        (-5, ReminderBucket.OVERDUE),
        (0, ReminderBucket.FIFTEEN_MINUTES),
        (20, ReminderBucket.FIFTEEN_MINUTES),
        (60, ReminderBucket.ONE_HOUR),
        (1440, ReminderBucket.ONE_DAY),
        (3000, ReminderBucket.LATER),
    ])
    def test_classify(self, minutes, bucket):
        assert classify_bucket(minutes) == bucket

    def test_just_past_due_is_overdue(self):
        assert bucket_for(NOW - timedelta(seconds=10), NOW) == ReminderBucket.OVERDUE

    def test_fire_windows(self):
        assert in_fire_window(NOW + timedelta(minutes=15), NOW)
        assert in_fire_window(NOW + timedelta(minutes=60), NOW)
        assert in_fire_window(NOW + timedelta(days=1), NOW)
        assert in_fire_window(NOW - timedelta(seconds=30), NOW)
        assert not in_fire_window(NOW + timedelta(minutes=20), NOW)
        assert not in_fire_window(NOW - timedelta(minutes=2), NOW)

    def test_messages(self):
        assert due_date_message(NOW - timedelta(minutes=1), NOW) == "This task is overdue!"
        assert due_date_message(NOW + timedelta(minutes=15), NOW) == "Due within the next hour!"
        assert due_date_message(NOW + timedelta(hours=5), NOW) == "Due in 5 hours"
        assert due_date_message(NOW + timedelta(days=2), NOW) == "Due in 2 days"

    def test_offsets(self):
        assert calculate_reminder_time(NOW, "2hours") == NOW - timedelta(hours=2)
        with pytest.raises(ValueError):
            calculate_reminder_time(NOW, "fortnight")


class TestScanner:
    def test_fires_once_per_bucket(self):
        scanner = DueDateReminderScanner()
        task = _due(15)
        events = scanner.scan([task], NOW)
        assert len(events) == 1
        assert events[0].bucket == ReminderBucket.FIFTEEN_MINUTES
        assert events[0].title == "Due Soon: Report"
        assert scanner.scan([task], NOW + timedelta(seconds=30)) == []

    def test_twenty_minutes_out_is_quiet(self):
        assert DueDateReminderScanner().scan([_due(20)], NOW) == []

    def test_two_minutes_overdue_is_past_grace(self):
        assert DueDateReminderScanner().scan([_due(-2)], NOW) == []

    def test_done_tasks_are_skipped(self):
        assert DueDateReminderScanner().scan([_due(15, column="Done")], NOW) == []

    def test_each_bucket_fires_separately(self):
        scanner = DueDateReminderScanner()
        task = _due(60)
        assert scanner.scan([task], NOW)[0].bucket == ReminderBucket.ONE_HOUR
        later = scanner.scan([task], NOW + timedelta(minutes=45))
        assert later[0].bucket == ReminderBucket.FIFTEEN_MINUTES
        assert scanner.notified == {"task-Report-1hour", "task-Report-15min"}

    def test_unrecorded_scan_repeats_until_recorded(self):
        scanner = DueDateReminderScanner()
        task = _due(15)
        events = scanner.scan([task], NOW, record=False)
        assert len(scanner.scan([task], NOW, record=False)) == 1
        scanner.record(events)
        assert scanner.scan([task], NOW) == []

    def test_stop_rearms(self):
        scanner = DueDateReminderScanner()
        task = _due(15)
        scanner.scan([task], NOW)
        scanner.stop()
        assert len(scanner.scan([task], NOW)) == 1


class TestScheduledReminders:
    def test_pop_due(self):
        reminders = TaskReminders()
        schedule_reminder(reminders, "t1", "Early", NOW - timedelta(minutes=1))
        schedule_reminder(reminders, "t2", "Late", NOW + timedelta(hours=1))
        due = pop_due_reminders(reminders, NOW)
        assert [task_id for task_id, _ in due] == ["t1"]
        assert list(reminders.reminders) == ["t2"]


@pytest.mark.asyncio
class TestReminderService:
    async def _board_with_task(self, db_session, user, due_date):
        board = Board(owner_id=user.id, title="Board")
        db_session.add(board)
        await db_session.flush()
        column = BoardColumn(board_id=board.id, title="To Do", position=0)
        db_session.add(column)
        await db_session.flush()
        task = Task(
            board_id=board.id, column_id=column.id, user_id=user.id, title="Pay rent",
            priority=TaskPriority.HIGH, due_date=due_date,
        )
        db_session.add(task)
        await db_session.commit()
        return task

    async def _reminders(self, db_session, user):
        stmt = select(Notification).where(
            Notification.user_id == user.id, Notification.type == NotificationType.REMINDER,
        )
        return (await db_session.execute(stmt)).scalars().all()

    async def test_run_once_writes_and_pushes(self, db_session, test_user):
        now = datetime.now(timezone.utc)
        task = await self._board_with_task(db_session, test_user, now + timedelta(minutes=15))
        pushed = []

        async def publisher(user_id, message):
            pushed.append((user_id, message))

        service = ReminderService(publisher=publisher)
        assert await service.run_once(db_session, now) == 1
        assert await service.run_once(db_session, now) == 0

        notes = await self._reminders(db_session, test_user)
        assert len(notes) == 1
        assert notes[0].task_id == task.id
        assert notes[0].data["bucket"] == "15min"
        assert pushed[0][0] == test_user.id
        assert pushed[0][1]["type"] == "reminder"

    async def test_respects_disabled_reminders(self, db_session, test_user):
        now = datetime.now(timezone.utc)
        await self._board_with_task(db_session, test_user, now + timedelta(minutes=15))
        store = DatabaseKeyValueStore(db_session)
        settings = await preferences.load(store, test_user.id, kv_store.NOTIFICATION_SETTINGS)
        settings.due_date_reminders = False
        await preferences.save(store, test_user.id, kv_store.NOTIFICATION_SETTINGS, settings)

        assert await ReminderService().run_once(db_session, now) == 0

    async def test_fires_scheduled_reminders(self, db_session, test_user):
        now = datetime.now(timezone.utc)
        task = await self._board_with_task(db_session, test_user, None)
        store = DatabaseKeyValueStore(db_session)
        reminders = TaskReminders()
        schedule_reminder(reminders, task.id, task.title, now - timedelta(seconds=5))
        await preferences.save(store, test_user.id, kv_store.TASK_REMINDERS, reminders)

        assert await ReminderService().run_once(db_session, now) == 1
        notes = await self._reminders(db_session, test_user)
        assert notes[0].title == "Task Reminder"

        left = await preferences.load(store, test_user.id, kv_store.TASK_REMINDERS)
        assert left.reminders == {}

    async def test_publisher_failure_is_not_fatal(self, db_session, test_user):
        now = datetime.now(timezone.utc)
        await self._board_with_task(db_session, test_user, now + timedelta(minutes=60))

        async def broken(user_id, message):
            raise RuntimeError("socket closed")

        assert await ReminderService(publisher=broken).run_once(db_session, now) == 1

    async def test_failed_commit_fires_again(self, db_session, test_user, monkeypatch):
        now = datetime.now(timezone.utc)
        user_id = test_user.id
        await self._board_with_task(db_session, test_user, now + timedelta(minutes=15))
        service = ReminderService()
        real_commit = db_session.commit

        async def failing_commit():
            raise RuntimeError("disk full")

        monkeypatch.setattr(db_session, "commit", failing_commit)
        with pytest.raises(RuntimeError):
            await service.run_once(db_session, now)
        assert service.scanner.notified == set()

        await db_session.rollback()
        monkeypatch.setattr(db_session, "commit", real_commit)
        assert await service.run_once(db_session, now) == 1
        assert service.scanner.notified != set()

        stmt = select(Notification).where(Notification.user_id == user_id)
        assert len((await db_session.execute(stmt)).scalars().all()) == 1
