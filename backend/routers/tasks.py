# routers/tasks.py — Task lifecycle, comments, history and starred tasks
import logging
from typing import Optional, List, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, or_, delete
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import get_current_user, CurrentUser
from database import get_db_session
from date_utils import parse_due_date
from models import (
    Board, BoardColumn, Notification, NotificationType, Profile, StarredTask, Subtask,
    Task, TaskComment, TaskHistory, TaskPriority, utcnow,
)
from routers.websocket_router import publish_board_event
from task_service import (
    TaskSave, TaskOut, save_task, tasks_to_out, task_to_out,
    apply_column_state, record_history, to_iso, enum_value,
)

router = APIRouter(prefix="/api/v1", tags=["Tasks"])
logger = logging.getLogger("kanban.tasks")


# ============================================================
# SCHEMAS
# ============================================================

class QuickEdit(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    priority: Optional[Literal["low", "medium", "high"]] = None
    due_date: Optional[str] = None
    clear_due_date: bool = False


class TaskMove(BaseModel):
    column_id: str
    position: Optional[int] = None


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)
    image_url: Optional[str] = None


class CommentUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


class CommentOut(BaseModel):
    id: str
    author_id: str
    author_name: str
    content: str
    image_url: Optional[str] = None
    created_at: Optional[str] = None
    edited_at: Optional[str] = None


class HistoryOut(BaseModel):
    id: str
    user_id: str
    user_name: str
    action: str
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    created_at: Optional[str] = None


class TaskDetailOut(TaskOut):
    comments: List[CommentOut] = []
    history: List[HistoryOut] = []


# ============================================================
# HELPERS
# ============================================================

async def _load_board(board_id: str, db: AsyncSession) -> Board:
    board = (await db.execute(select(Board).where(Board.id == board_id))).scalar_one_or_none()
    if not board:
        raise HTTPException(status_code=404, detail="Board not found")
    return board


async def _names(db: AsyncSession, user_ids) -> dict:
    ids = {uid for uid in user_ids if uid}
    if not ids:
        return {}
    rows = (await db.execute(select(Profile.id, Profile.full_name, Profile.email).where(Profile.id.in_(ids)))).all()
    return {pid: (name or email.split("@")[0]) for pid, name, email in rows}


async def _comments_out(db: AsyncSession, task_id: str) -> List[CommentOut]:
    stmt = (
        select(TaskComment)
        .where(TaskComment.task_id == task_id, TaskComment.deleted_at.is_(None))
        .order_by(TaskComment.created_at.asc())
    )
    comments = (await db.execute(stmt)).scalars().all()
    names = await _names(db, [c.author_id for c in comments])
    return [
        CommentOut(
            id=c.id, author_id=c.author_id, author_name=names.get(c.author_id, "Unknown"),
            content=c.content, image_url=c.image_url,
            created_at=to_iso(c.created_at), edited_at=to_iso(c.edited_at),
        )
        for c in comments
    ]


async def _history_out(db: AsyncSession, task_id: str, limit: int = 100) -> List[HistoryOut]:
    stmt = (
        select(TaskHistory)
        .where(TaskHistory.task_id == task_id)
        .order_by(TaskHistory.created_at.desc())
        .limit(limit)
    )
    entries = (await db.execute(stmt)).scalars().all()
    names = await _names(db, [h.user_id for h in entries])
    return [
        HistoryOut(
            id=h.id, user_id=h.user_id, user_name=names.get(h.user_id, "Unknown"),
            action=h.action, field_name=h.field_name, old_value=h.old_value,
            new_value=h.new_value, created_at=to_iso(h.created_at),
        )
        for h in entries
    ]


async def _move_to_column(db: AsyncSession, task: Task, column, user: CurrentUser, action: str) -> None:
    old_title = "Unknown"
    if task.column_id:
        old_title = (await db.execute(
            select(BoardColumn.title).where(BoardColumn.id == task.column_id)
        )).scalar() or "Unknown"
    pos_stmt = select(func.max(Task.position)).where(Task.column_id == column.id, Task.deleted_at.is_(None))
    max_pos = (await db.execute(pos_stmt)).scalar()
    task.column_id = column.id
    task.position = 0 if max_pos is None else max_pos + 1
    apply_column_state(task, column)
    await record_history(db, task.id, user.id, action, field_name="column",
                         old_value=old_title, new_value=column.title)


# ============================================================
# TASK ENDPOINTS
# ============================================================

@router.get("/boards/{board_id}/tasks", response_model=List[TaskOut])
async def list_tasks(
    board_id: str,
    column_id: Optional[str] = None,
    project_id: Optional[str] = None,
    priority: Optional[Literal["low", "medium", "high"]] = None,
    search: Optional[str] = Query(None, max_length=200),
    include_archived: bool = False,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List tasks on a board with optional filters"""
    await access.get_board(board_id, user.id, db)

    stmt = select(Task).where(Task.board_id == board_id, Task.deleted_at.is_(None))
    if not include_archived:
        stmt = stmt.where(Task.is_archived.is_(False))
    if column_id:
        stmt = stmt.where(Task.column_id == column_id)
    if project_id:
        stmt = stmt.where(Task.project_id == project_id)
    if priority:
        stmt = stmt.where(Task.priority == TaskPriority(priority))
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))
    stmt = stmt.order_by(Task.column_id, Task.position.asc())

    tasks = (await db.execute(stmt)).scalars().all()
    return await tasks_to_out(db, tasks, user.id)


@router.post("/boards/{board_id}/tasks", response_model=TaskOut, status_code=201)
async def create_task(
    board_id: str,
    data: TaskSave,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task with its tags, subtasks, labels, assignees, attachments and field values"""
    board = await access.get_board(board_id, user.id, db)
    task = await save_task(db, user, board, data)
    out = await task_to_out(db, task, user.id)
    await publish_board_event(board.id, "task.created", out.model_dump(), user.id)
    return out


@router.get("/tasks/{task_id}", response_model=TaskDetailOut)
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await access.get_task(task_id, user, db)
    out = await task_to_out(db, task, user.id)
    return TaskDetailOut(
        **out.model_dump(),
        comments=await _comments_out(db, task.id),
        history=await _history_out(db, task.id),
    )


@router.put("/tasks/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskSave,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Save the full task form"""
    task = await access.get_task(task_id, user, db, write=True)
    board = await _load_board(task.board_id, db)
    task = await save_task(db, user, board, data, task=task)
    out = await task_to_out(db, task, user.id)
    await publish_board_event(board.id, "task.saved", out.model_dump(), user.id)
    return out


@router.patch("/tasks/{task_id}", response_model=TaskOut)
async def quick_edit_task(
    task_id: str,
    data: QuickEdit,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Inline edit of title, priority and due date"""
    task = await access.get_task(task_id, user, db, write=True)
    changes = []

    if data.title is not None and data.title != task.title:
        changes.append(("title", task.title, data.title))
        task.title = data.title
    if data.priority is not None:
        old = enum_value(task.priority)
        if old != data.priority:
            changes.append(("priority", old, data.priority))
            task.priority = TaskPriority(data.priority)
    if data.clear_due_date or data.due_date is not None:
        try:
            due = None if data.clear_due_date else parse_due_date(data.due_date)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid due date '{data.due_date}'")
        old_due = parse_due_date(task.due_date)
        if due != old_due:
            changes.append(("due_date", to_iso(old_due), to_iso(due)))
            task.due_date = due

    for field_name, old, new in changes:
        await record_history(db, task.id, user.id, "updated", field_name=field_name, old_value=old, new_value=new)

    await db.commit()
    await db.refresh(task)
    out = await task_to_out(db, task, user.id)
    if changes:
        await publish_board_event(task.board_id, "task.updated", out.model_dump(), user.id)
    return out


@router.post("/tasks/{task_id}/move", response_model=TaskOut)
async def move_task(
    task_id: str,
    data: TaskMove,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Move a task to another column on the same board"""
    task = await access.get_task(task_id, user, db, write=True)
    target = await access.get_column(task.board_id, data.column_id, db)

    if target.wip_limit and target.id != task.column_id:
        count_stmt = select(func.count(Task.id)).where(
            Task.column_id == target.id, Task.deleted_at.is_(None), Task.is_archived.is_(False)
        )
        current = (await db.execute(count_stmt)).scalar() or 0
        if current >= target.wip_limit:
            raise HTTPException(
                status_code=409,
                detail=f"Column '{target.title}' has reached its WIP limit of {target.wip_limit}",
            )

    await _move_to_column(db, task, target, user, "moved")
    if data.position is not None:
        task.position = data.position
    # Leaving the Archive column un-archives the task
    task.is_archived = target.is_archive

    await db.commit()
    await db.refresh(task)
    out = await task_to_out(db, task, user.id)
    await publish_board_event(task.board_id, "task.moved", out.model_dump(), user.id)
    return out


@router.post("/tasks/{task_id}/archive", response_model=TaskOut)
async def archive_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await access.get_task(task_id, user, db, write=True)
    archive_col = await access.find_column_by_title(task.board_id, "archive", db)
    if archive_col is not None and archive_col.id != task.column_id:
        await _move_to_column(db, task, archive_col, user, "archived")
    else:
        await record_history(db, task.id, user.id, "archived")
    task.is_archived = True

    await db.commit()
    await db.refresh(task)
    out = await task_to_out(db, task, user.id)
    await publish_board_event(task.board_id, "task.archived", out.model_dump(), user.id)
    return out


@router.post("/tasks/{task_id}/restore", response_model=TaskOut)
async def restore_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Bring a task back from the archive (or the trash) into To Do"""
    task = await access.get_task(task_id, user, db, write=True, include_deleted=True)
    todo_col = await access.find_column_by_title(task.board_id, "to do", db)
    if todo_col is None:
        stmt = (
            select(BoardColumn)
            .where(BoardColumn.board_id == task.board_id)
            .order_by(BoardColumn.position)
            .limit(1)
        )
        todo_col = (await db.execute(stmt)).scalar_one_or_none()
    if todo_col is not None and todo_col.id != task.column_id:
        await _move_to_column(db, task, todo_col, user, "restored")
    else:
        await record_history(db, task.id, user.id, "restored")
    task.is_archived = False
    task.deleted_at = None

    await db.commit()
    await db.refresh(task)
    out = await task_to_out(db, task, user.id)
    await publish_board_event(task.board_id, "task.restored", out.model_dump(), user.id)
    return out


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-delete a task"""
    task = await access.get_task(task_id, user, db, write=True)
    task.deleted_at = utcnow()
    await record_history(db, task.id, user.id, "deleted")
    await db.commit()
    await publish_board_event(task.board_id, "task.deleted", {"task_id": task_id}, user.id)
    return {"status": "deleted", "task_id": task_id}


@router.post("/tasks/{task_id}/subtasks/{subtask_id}/toggle")
async def toggle_subtask(
    task_id: str,
    subtask_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await access.get_task(task_id, user, db, write=True)
    stmt = select(Subtask).where(Subtask.id == subtask_id, Subtask.task_id == task.id)
    subtask = (await db.execute(stmt)).scalar_one_or_none()
    if not subtask:
        raise HTTPException(status_code=404, detail="Subtask not found")
    subtask.is_completed = not subtask.is_completed
    await db.commit()
    await publish_board_event(task.board_id, "task.updated", {"task_id": task.id}, user.id)
    return {"id": subtask.id, "is_completed": subtask.is_completed}


# ============================================================
# COMMENTS & HISTORY
# ============================================================

@router.get("/tasks/{task_id}/comments", response_model=List[CommentOut])
async def list_comments(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await access.get_task(task_id, user, db)
    return await _comments_out(db, task.id)


@router.post("/tasks/{task_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    task_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await access.get_task(task_id, user, db)
    comment = TaskComment(task_id=task.id, author_id=user.id, content=data.content, image_url=data.image_url)
    db.add(comment)
    await record_history(db, task.id, user.id, "commented")
    if task.user_id != user.id:
        db.add(Notification(
            user_id=task.user_id,
            type=NotificationType.COMMENT,
            title="New Comment",
            message=f'{user.display_name} commented on "{task.title}"',
            task_id=task.id,
            board_id=task.board_id,
            data={"url": f"/board?task={task.id}"},
        ))
    await db.commit()
    await db.refresh(comment)
    await publish_board_event(task.board_id, "task.commented", {"task_id": task.id}, user.id)
    return CommentOut(
        id=comment.id, author_id=user.id, author_name=user.display_name, content=comment.content,
        image_url=comment.image_url, created_at=to_iso(comment.created_at),
    )


async def _own_comment(task_id: str, comment_id: str, user: CurrentUser, db: AsyncSession) -> TaskComment:
    await access.get_task(task_id, user, db)
    stmt = select(TaskComment).where(
        TaskComment.id == comment_id, TaskComment.task_id == task_id, TaskComment.deleted_at.is_(None)
    )
    comment = (await db.execute(stmt)).scalar_one_or_none()
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    if comment.author_id != user.id:
        raise HTTPException(status_code=403, detail="Can only change your own comments")
    return comment


@router.patch("/tasks/{task_id}/comments/{comment_id}", response_model=CommentOut)
async def edit_comment(
    task_id: str,
    comment_id: str,
    data: CommentUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    comment = await _own_comment(task_id, comment_id, user, db)
    comment.content = data.content
    comment.edited_at = utcnow()
    await db.commit()
    await db.refresh(comment)
    return CommentOut(
        id=comment.id, author_id=comment.author_id, author_name=user.display_name,
        content=comment.content, image_url=comment.image_url,
        created_at=to_iso(comment.created_at), edited_at=to_iso(comment.edited_at),
    )


@router.delete("/tasks/{task_id}/comments/{comment_id}")
async def delete_comment(
    task_id: str,
    comment_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    comment = await _own_comment(task_id, comment_id, user, db)
    comment.deleted_at = utcnow()
    await db.commit()
    return {"status": "deleted", "comment_id": comment_id}


@router.get("/tasks/{task_id}/history", response_model=List[HistoryOut])
async def get_task_history(
    task_id: str,
    limit: int = Query(100, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await access.get_task(task_id, user, db)
    return await _history_out(db, task.id, limit)


# ============================================================
# STARRED
# ============================================================

@router.get("/starred", response_model=List[TaskOut])
async def list_starred(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = (
        select(Task)
        .join(StarredTask, StarredTask.task_id == Task.id)
        .where(StarredTask.user_id == user.id, Task.deleted_at.is_(None))
        .order_by(StarredTask.created_at.desc())
    )
    tasks = (await db.execute(stmt)).scalars().all()
    return await tasks_to_out(db, tasks, user.id)


@router.post("/tasks/{task_id}/star")
async def toggle_star(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Star or unstar a task for the current user"""
    task = await access.get_task(task_id, user, db)
    stmt = select(StarredTask.id).where(StarredTask.user_id == user.id, StarredTask.task_id == task.id)
    existing = (await db.execute(stmt)).scalar_one_or_none()
    if existing:
        await db.execute(delete(StarredTask).where(StarredTask.id == existing))
        starred = False
    else:
        db.add(StarredTask(user_id=user.id, task_id=task.id))
        starred = True
    await db.commit()
    return {"task_id": task.id, "starred": starred}
