# routers/settings.py — User settings and per-feature state (view, notes, pomodoro, reminders)
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import access
import kv_store
import preferences
from auth import get_current_user, CurrentUser
from database import get_db_session
from kv_store import DatabaseKeyValueStore
from models import UserSettings, as_utc
from preferences import NOTE_COLORS, PomodoroTimes
from reminders import OFFSET_LABELS, calculate_reminder_time, cancel_reminder, schedule_reminder
from task_service import to_iso

router = APIRouter(prefix="/api/v1", tags=["Settings"])


# ============================================================
# SCHEMAS
# ============================================================

class SettingsUpdate(BaseModel):
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    weekly_digest: Optional[bool] = None
    compact_mode: Optional[bool] = None
    show_completed_tasks: Optional[bool] = None


class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    color: Optional[str] = None


class NoteUpdate(BaseModel):
    content: Optional[str] = Field(None, min_length=1, max_length=5000)
    color: Optional[str] = None


class PomodoroSettings(BaseModel):
    sound_enabled: Optional[bool] = None
    custom_times: Optional[PomodoroTimes] = None


class ReminderRequest(BaseModel):
    offset: Optional[str] = None
    reminder_at: Optional[datetime] = None


# ============================================================
# HELPERS
# ============================================================

def _settings_dict(s: UserSettings) -> dict:
    return {
        "email_notifications": bool(s.email_notifications),
        "push_notifications": bool(s.push_notifications),
        "weekly_digest": bool(s.weekly_digest),
        "compact_mode": bool(s.compact_mode),
        "show_completed_tasks": bool(s.show_completed_tasks),
        "updated_at": to_iso(s.updated_at),
    }


async def _user_settings(user_id: str, db: AsyncSession) -> UserSettings:
    settings = (await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))).scalar_one_or_none()
    if settings is None:
        settings = UserSettings(user_id=user_id)
        db.add(settings)
        await db.flush()
    return settings


def _check_feature(feature: str) -> None:
    if feature not in preferences.FEATURE_MODELS:
        raise HTTPException(status_code=404, detail=f"Unknown feature '{feature}'")


def _check_color(color: Optional[str]) -> None:
    if color is not None and color not in NOTE_COLORS:
        raise HTTPException(status_code=400, detail=f"Note color must be one of {', '.join(NOTE_COLORS)}")


# ============================================================
# USER SETTINGS
# ============================================================

@router.get("/settings")
async def get_settings(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    settings = await _user_settings(user.id, db)
    await db.commit()
    return _settings_dict(settings)


@router.put("/settings")
async def update_settings(
    data: SettingsUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update settings. Notification toggles are mirrored into the reminder preferences."""
    settings = await _user_settings(user.id, db)
    for field, value in data.model_dump(exclude_none=True).items():
        setattr(settings, field, value)
    await db.flush()

    if data.push_notifications is not None or data.email_notifications is not None:
        store = DatabaseKeyValueStore(db)
        notify = await preferences.load(store, user.id, kv_store.NOTIFICATION_SETTINGS)
        notify.push_notifications = bool(settings.push_notifications)
        notify.email_notifications = bool(settings.email_notifications)
        await preferences.save(store, user.id, kv_store.NOTIFICATION_SETTINGS, notify)

    await db.commit()
    await db.refresh(settings)
    return _settings_dict(settings)


# ============================================================
# FEATURE STATE
# ============================================================

@router.get("/preferences/{feature}")
async def get_preference(
    feature: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    _check_feature(feature)
    value = await preferences.load(DatabaseKeyValueStore(db), user.id, feature)
    return {"feature": feature, "value": value.model_dump(mode="json")}


@router.put("/preferences/{feature}")
async def put_preference(
    feature: str,
    value: Dict[str, Any] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Replace the stored document for a feature"""
    _check_feature(feature)
    try:
        doc = preferences.FEATURE_MODELS[feature].model_validate(value)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
        )
    await preferences.save(DatabaseKeyValueStore(db), user.id, feature, doc)
    return {"feature": feature, "value": doc.model_dump(mode="json")}


@router.delete("/preferences/{feature}")
async def reset_preference(
    feature: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    _check_feature(feature)
    removed = await DatabaseKeyValueStore(db).delete(user.id, feature)
    return {"feature": feature, "reset": removed}


# ============================================================
# QUICK NOTES
# ============================================================

@router.get("/quick-notes")
async def list_quick_notes(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    notes = await preferences.load(DatabaseKeyValueStore(db), user.id, kv_store.QUICK_NOTES)
    return notes.model_dump(mode="json")["notes"]


@router.post("/quick-notes", status_code=201)
async def add_quick_note(
    data: NoteCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    _check_color(data.color)
    store = DatabaseKeyValueStore(db)
    notes = await preferences.load(store, user.id, kv_store.QUICK_NOTES)
    note = notes.add(data.content, data.color)
    await preferences.save(store, user.id, kv_store.QUICK_NOTES, notes)
    return note.model_dump(mode="json")


@router.patch("/quick-notes/{note_id}")
async def update_quick_note(
    note_id: str,
    data: NoteUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    _check_color(data.color)
    store = DatabaseKeyValueStore(db)
    notes = await preferences.load(store, user.id, kv_store.QUICK_NOTES)
    note = notes.update(note_id, data.content, data.color)
    if note is None:
        raise HTTPException(status_code=404, detail="Note not found")
    await preferences.save(store, user.id, kv_store.QUICK_NOTES, notes)
    return note.model_dump(mode="json")


@router.delete("/quick-notes/{note_id}")
async def delete_quick_note(
    note_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    store = DatabaseKeyValueStore(db)
    notes = await preferences.load(store, user.id, kv_store.QUICK_NOTES)
    if not notes.remove(note_id):
        raise HTTPException(status_code=404, detail="Note not found")
    await preferences.save(store, user.id, kv_store.QUICK_NOTES, notes)
    return {"status": "deleted", "note_id": note_id}


# ============================================================
# POMODORO
# ============================================================

def _pomodoro_out(state) -> dict:
    return {**state.model_dump(mode="json"), "duration": state.duration()}


@router.get("/pomodoro")
async def get_pomodoro(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    state = await preferences.load(DatabaseKeyValueStore(db), user.id, kv_store.POMODORO)
    return _pomodoro_out(state)


@router.post("/pomodoro/complete")
async def complete_pomodoro_interval(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """The running countdown reached zero; advance to the next interval"""
    store = DatabaseKeyValueStore(db)
    state = await preferences.load(store, user.id, kv_store.POMODORO)
    state.complete_interval()
    await preferences.save(store, user.id, kv_store.POMODORO, state)
    return _pomodoro_out(state)


@router.post("/pomodoro/reset")
async def reset_pomodoro(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    store = DatabaseKeyValueStore(db)
    state = await preferences.load(store, user.id, kv_store.POMODORO)
    state.reset()
    await preferences.save(store, user.id, kv_store.POMODORO, state)
    return _pomodoro_out(state)


@router.put("/pomodoro/settings")
async def update_pomodoro_settings(
    data: PomodoroSettings,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    store = DatabaseKeyValueStore(db)
    state = await preferences.load(store, user.id, kv_store.POMODORO)
    if data.sound_enabled is not None:
        state.sound_enabled = data.sound_enabled
    if data.custom_times is not None:
        state.custom_times = data.custom_times
    await preferences.save(store, user.id, kv_store.POMODORO, state)
    return _pomodoro_out(state)


# ============================================================
# SCHEDULED TASK REMINDERS
# ============================================================

@router.get("/reminders")
async def list_reminders(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    reminders = await preferences.load(DatabaseKeyValueStore(db), user.id, kv_store.TASK_REMINDERS)
    return {
        "offsets": OFFSET_LABELS,
        "reminders": [
            {"task_id": task_id, **entry.model_dump(mode="json")}
            for task_id, entry in sorted(reminders.reminders.items(), key=lambda kv: kv[1].reminder_at)
        ],
    }


@router.post("/tasks/{task_id}/reminder", status_code=201)
async def set_task_reminder(
    task_id: str,
    data: ReminderRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Schedule a one-off reminder, either an offset before the due date or an explicit time"""
    task = await access.get_task(task_id, user, db)
    if data.offset:
        if task.due_date is None:
            raise HTTPException(status_code=400, detail="Task has no due date")
        try:
            reminder_at = calculate_reminder_time(task.due_date, data.offset)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    elif data.reminder_at is not None:
        reminder_at = data.reminder_at if data.reminder_at.tzinfo else data.reminder_at.replace(tzinfo=timezone.utc)
    else:
        raise HTTPException(status_code=400, detail="offset or reminder_at is required")

    if as_utc(reminder_at) <= datetime.now(timezone.utc):
        raise HTTPException(status_code=400, detail="Reminder time is in the past")

    store = DatabaseKeyValueStore(db)
    reminders = await preferences.load(store, user.id, kv_store.TASK_REMINDERS)
    entry = schedule_reminder(reminders, task.id, task.title, reminder_at)
    await preferences.save(store, user.id, kv_store.TASK_REMINDERS, reminders)
    return {"task_id": task.id, **entry.model_dump(mode="json")}


@router.delete("/tasks/{task_id}/reminder")
async def cancel_task_reminder(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    store = DatabaseKeyValueStore(db)
    reminders = await preferences.load(store, user.id, kv_store.TASK_REMINDERS)
    if not cancel_reminder(reminders, task_id):
        raise HTTPException(status_code=404, detail="No reminder set for this task")
    await preferences.save(store, user.id, kv_store.TASK_REMINDERS, reminders)
    return {"status": "cancelled", "task_id": task_id}
