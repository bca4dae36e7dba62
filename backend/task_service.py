# task_service.py — Task save sequence and task read models
# Saving a task touches up to eight tables: the task row, tags, subtasks,
# labels, assignees, attachments, custom-field values and the cover image.
# All steps share one transaction; the first failing step raises
# TaskSaveError naming the step and everything is rolled back.

import re
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Sequence, Set
from urllib.parse import urlparse

from pydantic import BaseModel, Field
from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import CurrentUser
from date_utils import parse_due_date, format_due_date, due_date_class
from models import (
    Board, BoardColumn, CustomField, CustomFieldType, CustomFieldValue, Label,
    Notification, NotificationType, Profile, StarredTask, Subtask, Tag,
    Task, TaskAssignee, TaskAttachment, TaskComment, TaskHistory, TaskLabel,
    TaskPriority, utcnow,
)

logger = logging.getLogger("kanban.tasks")

SAVE_STEPS = (
    "task", "tags", "subtasks", "labels", "assignees",
    "attachments", "custom_fields", "cover_image",
)


class TaskSaveError(Exception):
    """A save step failed; nothing from the save was persisted"""

    def __init__(self, step: str, message: str, status_code: int = 422):
        super().__init__(message)
        self.step = step
        self.message = message
        self.status_code = status_code


# ============================================================
# SCHEMAS
# ============================================================

class SubtaskIn(BaseModel):
    id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=500)
    is_completed: bool = False


class AttachmentIn(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1)
    file_type: Optional[str] = None
    file_size: int = Field(default=0, ge=0)


class TaskSave(BaseModel):
    """Full task form state"""
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"
    due_date: Optional[str] = None
    column_id: Optional[str] = None
    project_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    subtasks: List[SubtaskIn] = Field(default_factory=list)
    label_ids: List[str] = Field(default_factory=list)
    # None keeps the current assignees unless the project changes
    assignee_ids: Optional[List[str]] = None
    attachments: List[AttachmentIn] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    cover_image: Optional[str] = None


class TaskDraft(BaseModel):
    """In-progress form state before a save"""
    title: str = ""
    description: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"
    due_date: Optional[str] = None
    column_id: Optional[str] = None
    project_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    subtasks: List[SubtaskIn] = Field(default_factory=list)
    label_ids: List[str] = Field(default_factory=list)
    assignee_ids: List[str] = Field(default_factory=list)
    attachments: List[AttachmentIn] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    cover_image: Optional[str] = None

    def select_project(self, project_id: Optional[str]) -> None:
        """Assignees are scoped to project membership, so a new project drops them"""
        self.project_id = project_id or None
        self.assignee_ids = []

    def toggle_assignee(self, user_id: str) -> None:
        if user_id in self.assignee_ids:
            self.assignee_ids.remove(user_id)
        else:
            self.assignee_ids.append(user_id)

    def add_tag(self, tag: str) -> None:
        self.tags = normalize_tags(self.tags + [tag])

    def to_payload(self) -> TaskSave:
        return TaskSave.model_validate(self.model_dump())


class SubtaskOut(BaseModel):
    id: str
    title: str
    is_completed: bool
    position: int


class LabelOut(BaseModel):
    id: str
    name: str
    color: str


class AssigneeOut(BaseModel):
    id: str
    full_name: str
    email: str
    avatar_url: Optional[str] = None


class AttachmentOut(BaseModel):
    id: str
    file_name: str
    file_url: str
    file_type: Optional[str] = None
    file_size: int = 0
    created_at: Optional[str] = None


class TaskOut(BaseModel):
    id: str
    board_id: str
    column_id: Optional[str] = None
    column_title: Optional[str] = None
    user_id: str
    project_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    priority: str
    due_date: Optional[str] = None
    due_label: str
    due_state: str
    position: int = 0
    is_archived: bool = False
    cover_image: Optional[str] = None
    tags: List[str] = []
    subtasks: List[SubtaskOut] = []
    labels: List[LabelOut] = []
    assignees: List[AssigneeOut] = []
    attachments: List[AttachmentOut] = []
    custom_fields: Dict[str, Any] = {}
    comment_count: int = 0
    is_starred: bool = False
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def to_iso(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def enum_value(v) -> str:
    return v.value if hasattr(v, "value") else v


def normalize_tags(tags: Sequence[str]) -> List[str]:
    """Lower-case, strip and de-duplicate, keeping first-seen order"""
    seen = []
    for tag in tags:
        name = (tag or "").strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


def apply_column_state(task: Task, column: BoardColumn) -> None:
    """Stamp started/completed times when a task enters a column"""
    now = utcnow()
    if column.title.strip().lower() == "in progress" and not task.started_at:
        task.started_at = now
    if column.is_done and not task.completed_at:
        task.completed_at = now


async def record_history(
    db: AsyncSession, task_id: str, user_id: str, action: str,
    field_name: str = None, old_value: str = None, new_value: str = None,
    extra: dict = None,
):
    db.add(TaskHistory(
        task_id=task_id,
        user_id=user_id,
        action=action,
        field_name=field_name,
        old_value=old_value,
        new_value=new_value,
        extra_data=extra or {},
    ))


_SLUG_RE = re.compile(r"\s+")


def slugify(label: str) -> str:
    return _SLUG_RE.sub("-", label.strip().lower())


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def validate_field_value(field: CustomField, value: Any) -> Any:
    """Check a value against its field type and return the stored form.

    Raises ValueError with a user-facing message.
    """
    field_type = CustomFieldType(enum_value(field.field_type))
    option_values = [o.get("value") for o in (field.options or [])]

    if field_type == CustomFieldType.TEXT:
        if not isinstance(value, str):
            raise ValueError(f"'{field.name}' must be text")
        return value
    if field_type == CustomFieldType.NUMBER:
        if isinstance(value, bool):
            raise ValueError(f"'{field.name}' must be a number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"'{field.name}' must be a number")
        return int(number) if number.is_integer() else number
    if field_type == CustomFieldType.DATE:
        try:
            return parse_due_date(value).date().isoformat()
        except (TypeError, ValueError, AttributeError):
            raise ValueError(f"'{field.name}' must be an ISO date")
    if field_type == CustomFieldType.CHECKBOX:
        if not isinstance(value, bool):
            raise ValueError(f"'{field.name}' must be true or false")
        return value
    if field_type == CustomFieldType.URL:
        parsed = urlparse(str(value))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"'{field.name}' must be an http(s) URL")
        return str(value)
    if field_type == CustomFieldType.SELECT:
        if value not in option_values:
            raise ValueError(f"'{value}' is not an option of '{field.name}'")
        return value
    if field_type == CustomFieldType.MULTISELECT:
        if not isinstance(value, list) or any(v not in option_values for v in value):
            raise ValueError(f"'{field.name}' must be a list of its options")
        return list(dict.fromkeys(value))
    raise ValueError(f"Unsupported field type {field_type}")


# ============================================================
# SAVE STEPS
# ============================================================

async def _resolve_column(db: AsyncSession, board: Board, column_id: Optional[str]) -> BoardColumn:
    if column_id:
        stmt = select(BoardColumn).where(BoardColumn.id == column_id, BoardColumn.board_id == board.id)
        column = (await db.execute(stmt)).scalar_one_or_none()
        if not column:
            raise TaskSaveError("task", "Column not found on this board")
        return column
    stmt = (
        select(BoardColumn)
        .where(BoardColumn.board_id == board.id)
        .order_by(BoardColumn.position.asc())
        .limit(1)
    )
    column = (await db.execute(stmt)).scalar_one_or_none()
    if not column:
        raise TaskSaveError("task", "Board has no columns")
    return column


async def _write_task_row(db, user: CurrentUser, board: Board, data: TaskSave, task: Optional[Task]):
    try:
        due_date = parse_due_date(data.due_date)
    except ValueError:
        raise TaskSaveError("task", f"Invalid due date '{data.due_date}'")

    if data.project_id:
        project_ids = await access.accessible_project_ids(user.id, db)
        if data.project_id not in project_ids:
            raise TaskSaveError("task", "Project not found")

    if task is None:
        column = await _resolve_column(db, board, data.column_id)
        count_stmt = select(func.count(Task.id)).where(
            Task.column_id == column.id, Task.deleted_at.is_(None)
        )
        position = (await db.execute(count_stmt)).scalar() or 0
        task = Task(
            board_id=board.id,
            column_id=column.id,
            user_id=user.id,
            project_id=data.project_id,
            title=data.title,
            description=data.description,
            priority=TaskPriority(data.priority),
            due_date=due_date,
            position=position,
            is_archived=False,
        )
        apply_column_state(task, column)
        db.add(task)
        await db.flush()
        await record_history(db, task.id, user.id, "created", extra={"title": task.title})
        return task, False

    changes = []
    if data.title != task.title:
        changes.append(("title", task.title, data.title))
        task.title = data.title
    if data.description != task.description:
        changes.append(("description", "...", "..."))
        task.description = data.description
    old_priority = enum_value(task.priority)
    if data.priority != old_priority:
        changes.append(("priority", old_priority, data.priority))
        task.priority = TaskPriority(data.priority)
    old_due = parse_due_date(task.due_date)
    if due_date != old_due:
        changes.append(("due_date", to_iso(old_due), to_iso(due_date)))
        task.due_date = due_date
    if data.column_id and data.column_id != task.column_id:
        column = await _resolve_column(db, board, data.column_id)
        changes.append(("column_id", task.column_id, column.id))
        task.column_id = column.id
        apply_column_state(task, column)
    project_changed = (data.project_id or None) != task.project_id
    if project_changed:
        changes.append(("project_id", task.project_id, data.project_id))
        task.project_id = data.project_id or None

    for field_name, old, new in changes:
        await record_history(db, task.id, user.id, "updated", field_name=field_name,
                             old_value=old, new_value=new)
    return task, project_changed


async def _replace_tags(db: AsyncSession, task: Task, tags: List[str]) -> None:
    await db.execute(delete(Tag).where(Tag.task_id == task.id))
    for name in normalize_tags(tags):
        db.add(Tag(task_id=task.id, name=name))


async def _sync_subtasks(db: AsyncSession, task: Task, subtasks: List[SubtaskIn]) -> None:
    result = await db.execute(select(Subtask).where(Subtask.task_id == task.id))
    existing = {s.id: s for s in result.scalars().all()}
    keep: Set[str] = set()
    for index, item in enumerate(subtasks):
        current = existing.get(item.id) if item.id else None
        if current is not None:
            current.title = item.title
            current.is_completed = item.is_completed
            current.position = index
            keep.add(current.id)
        else:
            db.add(Subtask(task_id=task.id, title=item.title, is_completed=item.is_completed, position=index))
    removed = [sid for sid in existing if sid not in keep]
    if removed:
        await db.execute(delete(Subtask).where(Subtask.id.in_(removed)))


async def _replace_labels(db: AsyncSession, user: CurrentUser, task: Task, label_ids: List[str]) -> None:
    wanted = list(dict.fromkeys(label_ids))
    if wanted:
        stmt = select(Label.id).where(Label.id.in_(wanted), Label.owner_id.in_([user.id, task.user_id]))
        found = {row[0] for row in (await db.execute(stmt)).all()}
        missing = [lid for lid in wanted if lid not in found]
        if missing:
            raise TaskSaveError("labels", f"Label not found: {missing[0]}")
    await db.execute(delete(TaskLabel).where(TaskLabel.task_id == task.id))
    for label_id in wanted:
        db.add(TaskLabel(task_id=task.id, label_id=label_id))


async def allowed_assignee_ids(db: AsyncSession, task: Task) -> Set[str]:
    if task.project_id:
        return await access.project_member_ids(task.project_id, db)
    return await access.team_member_ids(task.user_id, db)


async def _replace_assignees(
    db: AsyncSession, user: CurrentUser, task: Task,
    assignee_ids: Optional[List[str]], project_changed: bool,
) -> List[str]:
    """Returns the newly added assignee ids"""
    result = await db.execute(select(TaskAssignee.user_id).where(TaskAssignee.task_id == task.id))
    previous = {row[0] for row in result.all()}

    if assignee_ids is None:
        if not project_changed:
            return []
        wanted: List[str] = []
    else:
        wanted = list(dict.fromkeys(assignee_ids))

    if wanted:
        allowed = await allowed_assignee_ids(db, task)
        outsiders = [uid for uid in wanted if uid not in allowed]
        if outsiders:
            scope = "project" if task.project_id else "team"
            raise TaskSaveError("assignees", f"User {outsiders[0]} is not a member of this task's {scope}")

    await db.execute(delete(TaskAssignee).where(TaskAssignee.task_id == task.id))
    for uid in wanted:
        db.add(TaskAssignee(task_id=task.id, user_id=uid))

    if set(wanted) != previous:
        await record_history(db, task.id, user.id, "assigned", field_name="assignees",
                             old_value=",".join(sorted(previous)), new_value=",".join(sorted(wanted)))
    return [uid for uid in wanted if uid not in previous]


async def _add_attachments(db: AsyncSession, user: CurrentUser, task: Task, attachments: List[AttachmentIn]) -> None:
    for item in attachments:
        db.add(TaskAttachment(
            task_id=task.id,
            uploaded_by=user.id,
            file_name=item.file_name,
            file_url=item.file_url,
            file_type=item.file_type,
            file_size=item.file_size,
        ))


async def set_custom_field_values(db: AsyncSession, task: Task, values: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and upsert values; empty values clear. Returns the final value map."""
    fields_result = await db.execute(select(CustomField).where(CustomField.board_id == task.board_id))
    fields = {f.id: f for f in fields_result.scalars().all()}
    rows_result = await db.execute(select(CustomFieldValue).where(CustomFieldValue.task_id == task.id))
    rows = {r.field_id: r for r in rows_result.scalars().all()}

    for field_id, raw in values.items():
        field = fields.get(field_id)
        if field is None:
            raise TaskSaveError("custom_fields", f"Unknown custom field {field_id}")
        if _is_empty(raw):
            if field_id in rows:
                await db.delete(rows.pop(field_id))
            continue
        try:
            value = validate_field_value(field, raw)
        except ValueError as e:
            raise TaskSaveError("custom_fields", str(e))
        if field_id in rows:
            rows[field_id].value = value
        else:
            rows[field_id] = CustomFieldValue(task_id=task.id, field_id=field_id, value=value)
            db.add(rows[field_id])

    for field in fields.values():
        if field.is_required and (field.id not in rows or _is_empty(rows[field.id].value)):
            raise TaskSaveError("custom_fields", f"'{field.name}' is required")
    return {fid: row.value for fid, row in rows.items()}


async def _notify_assignees(db: AsyncSession, user: CurrentUser, task: Task, new_ids: List[str]) -> None:
    for uid in new_ids:
        if uid == user.id:
            continue
        db.add(Notification(
            user_id=uid,
            type=NotificationType.TASK,
            title="New Task Assignment",
            message=f'{user.display_name} assigned you to "{task.title}"',
            task_id=task.id,
            board_id=task.board_id,
            data={"url": f"/board?task={task.id}"},
        ))


async def save_task(
    db: AsyncSession,
    user: CurrentUser,
    board: Board,
    data: TaskSave,
    task: Optional[Task] = None,
) -> Task:
    """Create (``task`` is None) or update a task with all its collections"""
    step = "task"
    try:
        task, project_changed = await _write_task_row(db, user, board, data, task)

        step = "tags"
        await _replace_tags(db, task, data.tags)

        step = "subtasks"
        await _sync_subtasks(db, task, data.subtasks)

        step = "labels"
        await _replace_labels(db, user, task, data.label_ids)

        step = "assignees"
        new_assignees = await _replace_assignees(db, user, task, data.assignee_ids, project_changed)

        step = "attachments"
        await _add_attachments(db, user, task, data.attachments)

        step = "custom_fields"
        await db.flush()
        await set_custom_field_values(db, task, data.custom_fields)

        step = "cover_image"
        task.cover_image = data.cover_image

        await _notify_assignees(db, user, task, new_assignees)
        await db.commit()
    except TaskSaveError as e:
        await db.rollback()
        logger.info(f"Task save rejected at step '{e.step}': {e.message}")
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Task save failed at step '{step}': {e}", exc_info=True)
        raise TaskSaveError(step, "Could not save task", status_code=500) from e

    await db.refresh(task)
    return task


# ============================================================
# READ MODEL
# ============================================================

async def tasks_to_out(db: AsyncSession, tasks: Sequence[Task], viewer_id: Optional[str] = None) -> List[TaskOut]:
    """Serialize tasks with their collections using one query per table"""
    if not tasks:
        return []
    ids = [t.id for t in tasks]

    col_ids = {t.column_id for t in tasks if t.column_id}
    col_titles = {}
    if col_ids:
        result = await db.execute(select(BoardColumn.id, BoardColumn.title).where(BoardColumn.id.in_(col_ids)))
        col_titles = dict(result.all())

    tags: Dict[str, List[str]] = {}
    for task_id, name in (await db.execute(
        select(Tag.task_id, Tag.name).where(Tag.task_id.in_(ids)).order_by(Tag.name)
    )).all():
        tags.setdefault(task_id, []).append(name)

    subtasks: Dict[str, List[SubtaskOut]] = {}
    for s in (await db.execute(
        select(Subtask).where(Subtask.task_id.in_(ids)).order_by(Subtask.position)
    )).scalars().all():
        subtasks.setdefault(s.task_id, []).append(
            SubtaskOut(id=s.id, title=s.title, is_completed=bool(s.is_completed), position=s.position or 0)
        )

    labels: Dict[str, List[LabelOut]] = {}
    for task_id, label in (await db.execute(
        select(TaskLabel.task_id, Label).join(Label, Label.id == TaskLabel.label_id).where(TaskLabel.task_id.in_(ids))
    )).all():
        labels.setdefault(task_id, []).append(LabelOut(id=label.id, name=label.name, color=label.color))

    assignees: Dict[str, List[AssigneeOut]] = {}
    for task_id, profile in (await db.execute(
        select(TaskAssignee.task_id, Profile).join(Profile, Profile.id == TaskAssignee.user_id)
        .where(TaskAssignee.task_id.in_(ids))
    )).all():
        assignees.setdefault(task_id, []).append(AssigneeOut(
            id=profile.id, full_name=profile.full_name or "", email=profile.email, avatar_url=profile.avatar_url,
        ))

    attachments: Dict[str, List[AttachmentOut]] = {}
    for a in (await db.execute(
        select(TaskAttachment).where(TaskAttachment.task_id.in_(ids)).order_by(TaskAttachment.created_at)
    )).scalars().all():
        attachments.setdefault(a.task_id, []).append(AttachmentOut(
            id=a.id, file_name=a.file_name, file_url=a.file_url, file_type=a.file_type,
            file_size=a.file_size or 0, created_at=to_iso(a.created_at),
        ))

    field_values: Dict[str, Dict[str, Any]] = {}
    for v in (await db.execute(
        select(CustomFieldValue).where(CustomFieldValue.task_id.in_(ids))
    )).scalars().all():
        field_values.setdefault(v.task_id, {})[v.field_id] = v.value

    comment_counts = dict((await db.execute(
        select(TaskComment.task_id, func.count(TaskComment.id))
        .where(TaskComment.task_id.in_(ids), TaskComment.deleted_at.is_(None))
        .group_by(TaskComment.task_id)
    )).all())

    starred: Set[str] = set()
    if viewer_id:
        starred = {row[0] for row in (await db.execute(
            select(StarredTask.task_id).where(StarredTask.user_id == viewer_id, StarredTask.task_id.in_(ids))
        )).all()}

    return [
        TaskOut(
            id=t.id,
            board_id=t.board_id,
            column_id=t.column_id,
            column_title=col_titles.get(t.column_id),
            user_id=t.user_id,
            project_id=t.project_id,
            title=t.title,
            description=t.description,
            priority=enum_value(t.priority),
            due_date=to_iso(t.due_date),
            due_label=format_due_date(t.due_date),
            due_state=due_date_class(t.due_date),
            position=t.position or 0,
            is_archived=bool(t.is_archived),
            cover_image=t.cover_image,
            tags=tags.get(t.id, []),
            subtasks=subtasks.get(t.id, []),
            labels=labels.get(t.id, []),
            assignees=assignees.get(t.id, []),
            attachments=attachments.get(t.id, []),
            custom_fields=field_values.get(t.id, {}),
            comment_count=comment_counts.get(t.id, 0),
            is_starred=t.id in starred,
            started_at=to_iso(t.started_at),
            completed_at=to_iso(t.completed_at),
            created_at=to_iso(t.created_at),
            updated_at=to_iso(t.updated_at),
        )
        for t in tasks
    ]


async def task_to_out(db: AsyncSession, task: Task, viewer_id: Optional[str] = None) -> TaskOut:
    return (await tasks_to_out(db, [task], viewer_id))[0]
