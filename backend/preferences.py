# preferences.py — Typed per-user feature state stored through kv_store
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, field_validator

import kv_store
from kv_store import KeyValueStore

VIEWS = (
    "dashboard", "board", "my-tasks", "calendar", "projects", "labels",
    "starred", "archive", "team", "reports", "notifications", "settings",
    "shortcuts", "help", "gantt", "workload", "timeline", "templates",
    "activity", "automation", "custom-fields", "watching",
)

NOTE_COLORS = ("#fef3c7", "#fce7f3", "#dbeafe", "#d1fae5", "#e9d5ff", "#fed7aa")

LONG_BREAK_EVERY = 4


class ViewPreference(BaseModel):
    view: str = "board"

    @field_validator("view")
    @classmethod
    def validate_view(cls, v: str) -> str:
        if v not in VIEWS:
            raise ValueError(f"Unknown view '{v}'")
        return v


class QuickNote(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str = Field(..., min_length=1, max_length=5000)
    color: str = NOTE_COLORS[0]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QuickNotes(BaseModel):
    notes: List[QuickNote] = Field(default_factory=list)

    def add(self, content: str, color: Optional[str] = None) -> QuickNote:
        """Newest notes go first."""
        note = QuickNote(content=content, color=color or NOTE_COLORS[0])
        self.notes.insert(0, note)
        return note

    def update(self, note_id: str, content: Optional[str] = None, color: Optional[str] = None) -> Optional[QuickNote]:
        for note in self.notes:
            if note.id == note_id:
                if content is not None:
                    note.content = content
                if color is not None:
                    note.color = color
                return note
        return None

    def remove(self, note_id: str) -> bool:
        before = len(self.notes)
        self.notes = [n for n in self.notes if n.id != note_id]
        return len(self.notes) != before


class PomodoroTimes(BaseModel):
    """Interval lengths in seconds"""
    work: int = Field(default=25 * 60, ge=60, le=180 * 60)
    short_break: int = Field(default=5 * 60, ge=60, le=60 * 60)
    long_break: int = Field(default=15 * 60, ge=60, le=120 * 60)


PomodoroMode = Literal["work", "short_break", "long_break"]


class PomodoroState(BaseModel):
    mode: PomodoroMode = "work"
    sessions: int = Field(default=0, ge=0)
    sound_enabled: bool = True
    custom_times: PomodoroTimes = Field(default_factory=PomodoroTimes)

    def duration(self, mode: Optional[str] = None) -> int:
        return getattr(self.custom_times, mode or self.mode)

    def complete_interval(self) -> "PomodoroState":
        """Advance after the current countdown reaches zero.

        A finished work interval counts a session and is followed by a long
        break every fourth session, otherwise a short break. Any break is
        followed by work.
        """
        if self.mode == "work":
            self.sessions += 1
            self.mode = "long_break" if self.sessions % LONG_BREAK_EVERY == 0 else "short_break"
        else:
            self.mode = "work"
        return self

    def reset(self) -> "PomodoroState":
        self.mode = "work"
        self.sessions = 0
        return self


class BoardBackground(BaseModel):
    type: Literal["color", "gradient", "image"] = "color"
    value: str = "#4f46e5"


_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class EmailDigestSettings(BaseModel):
    enabled: bool = False
    frequency: Literal["daily", "weekly", "never"] = "daily"
    time: str = "09:00"
    include_completed: bool = True
    include_overdue: bool = True
    include_upcoming: bool = True
    include_new_tasks: bool = False
    email: str = ""

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not _TIME_RE.match(v):
            raise ValueError("time must be HH:MM")
        return v


class NotificationSettings(BaseModel):
    push_notifications: bool = True
    email_notifications: bool = True
    due_date_reminders: bool = True


class ScheduledReminder(BaseModel):
    task_title: str
    reminder_at: datetime


class TaskReminders(BaseModel):
    reminders: Dict[str, ScheduledReminder] = Field(default_factory=dict)


FEATURE_MODELS: Dict[str, Type[BaseModel]] = {
    kv_store.CURRENT_VIEW: ViewPreference,
    kv_store.QUICK_NOTES: QuickNotes,
    kv_store.POMODORO: PomodoroState,
    kv_store.BOARD_BACKGROUND: BoardBackground,
    kv_store.EMAIL_DIGEST: EmailDigestSettings,
    kv_store.TASK_REMINDERS: TaskReminders,
    kv_store.NOTIFICATION_SETTINGS: NotificationSettings,
}


async def load(store: KeyValueStore, owner_id: str, feature: str) -> BaseModel:
    """Stored document for a feature, or the feature's defaults"""
    model = FEATURE_MODELS[feature]
    raw = await store.get(owner_id, feature)
    if raw is None:
        return model()
    return model.model_validate(raw)


async def save(store: KeyValueStore, owner_id: str, feature: str, value: BaseModel) -> BaseModel:
    await store.set(owner_id, feature, value.model_dump(mode="json"))
    return value
