# routers/dashboard.py — Dashboard, board statistics, workload and calendar
import calendar as cal
from datetime import date, datetime, timezone
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import get_current_user, CurrentUser
from database import get_db_session
from date_utils import is_due_today, is_overdue
from models import Board, BoardColumn, Profile, Task, TaskAssignee, TaskPriority, as_utc, utcnow
from task_service import to_iso, enum_value

router = APIRouter(prefix="/api/v1", tags=["Dashboard"])

# Workload scale: this many open assignments is 100% capacity
FULL_CAPACITY_TASKS = 5
RECENT_LIMIT = 5
UPCOMING_LIMIT = 4


# ============================================================
# HELPERS
# ============================================================

async def _owned_tasks(db: AsyncSession, user_id: str, board_id: Optional[str] = None):
    """(task, column_title) rows for live tasks on the user's boards"""
    if board_id:
        await access.get_board(board_id, user_id, db)
    stmt = (
        select(Task, BoardColumn.title)
        .join(Board, Board.id == Task.board_id)
        .outerjoin(BoardColumn, BoardColumn.id == Task.column_id)
        .where(Board.owner_id == user_id, Board.deleted_at.is_(None), Task.deleted_at.is_(None))
    )
    if board_id:
        stmt = stmt.where(Task.board_id == board_id)
    return (await db.execute(stmt)).all()


def _status(column_title: Optional[str]) -> str:
    return (column_title or "").strip().lower()


def _brief(task: Task, column_title: Optional[str]) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "priority": enum_value(task.priority),
        "due_date": to_iso(task.due_date),
        "column_title": column_title,
        "board_id": task.board_id,
        "created_at": to_iso(task.created_at),
    }


# ============================================================
# DASHBOARD
# ============================================================

@router.get("/dashboard")
async def get_dashboard(
    board_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Headline numbers for the user's boards (or a single board)"""
    rows = await _owned_tasks(db, user.id, board_id)
    total = len(rows)

    by_column: Dict[str, int] = {}
    by_priority = {p.value: 0 for p in TaskPriority}
    due_today, overdue, open_with_due = [], [], []
    for task, column_title in rows:
        by_column[column_title or "Unknown"] = by_column.get(column_title or "Unknown", 0) + 1
        by_priority[enum_value(task.priority)] = by_priority.get(enum_value(task.priority), 0) + 1
        status = _status(column_title)
        finished = status in ("done", "archive")
        if is_due_today(task.due_date):
            due_today.append(_brief(task, column_title))
        if not finished and is_overdue(task.due_date):
            overdue.append(_brief(task, column_title))
        if not finished and task.due_date is not None:
            open_with_due.append((task, column_title))

    done = sum(1 for _, title in rows if _status(title) == "done")
    archived = sum(1 for _, title in rows if _status(title) == "archive")

    recent = sorted(rows, key=lambda r: as_utc(r[0].created_at), reverse=True)[:RECENT_LIMIT]
    upcoming = sorted(open_with_due, key=lambda r: as_utc(r[0].due_date))[:UPCOMING_LIMIT]

    return {
        "total_tasks": total,
        "by_column": by_column,
        "by_priority": by_priority,
        "done": done,
        "archived": archived,
        "due_today": due_today,
        "overdue": overdue,
        "completion_rate": round((done + archived) / total * 100) if total else 0,
        "productivity": round(done / total * 100) if total else 0,
        "recent": [_brief(t, c) for t, c in recent],
        "upcoming": [_brief(t, c) for t, c in upcoming],
    }


@router.get("/boards/{board_id}/stats")
async def get_board_stats(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get board statistics and metrics"""
    await access.get_board(board_id, user.id, db)

    # Total tasks
    total_stmt = select(func.count(Task.id)).where(Task.board_id == board_id, Task.deleted_at.is_(None))
    total = (await db.execute(total_stmt)).scalar() or 0

    # Tasks by column
    col_stmt = (
        select(BoardColumn.title, func.count(Task.id))
        .outerjoin(Task, and_(Task.column_id == BoardColumn.id, Task.deleted_at.is_(None)))
        .where(BoardColumn.board_id == board_id)
        .group_by(BoardColumn.id, BoardColumn.title, BoardColumn.position)
        .order_by(BoardColumn.position)
    )
    by_column = {title: count for title, count in (await db.execute(col_stmt)).all()}

    # Tasks by priority
    pri_stmt = (
        select(Task.priority, func.count(Task.id))
        .where(Task.board_id == board_id, Task.deleted_at.is_(None))
        .group_by(Task.priority)
    )
    by_priority = {enum_value(p): c for p, c in (await db.execute(pri_stmt)).all()}

    # Completed tasks
    done_stmt = select(func.count(Task.id)).where(
        Task.board_id == board_id, Task.completed_at.isnot(None), Task.deleted_at.is_(None)
    )
    completed = (await db.execute(done_stmt)).scalar() or 0

    # Overdue tasks
    overdue_stmt = select(func.count(Task.id)).where(
        Task.board_id == board_id,
        Task.due_date < utcnow(),
        Task.completed_at.is_(None),
        Task.is_archived.is_(False),
        Task.deleted_at.is_(None),
    )
    overdue = (await db.execute(overdue_stmt)).scalar() or 0

    return {
        "total_tasks": total,
        "completed_tasks": completed,
        "overdue_tasks": overdue,
        "completion_rate": round((completed / total * 100) if total > 0 else 0, 1),
        "by_column": by_column,
        "by_priority": by_priority,
    }


# ============================================================
# REPORTS
# ============================================================

@router.get("/reports/workload")
async def get_workload(
    board_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Assignment load per assignee across the user's boards"""
    rows = await _owned_tasks(db, user.id, board_id)
    column_of = {task.id: _status(title) for task, title in rows}
    tasks = {task.id: task for task, _ in rows}
    if not tasks:
        return {"members": [], "summary": {"total": 0, "completed": 0, "overloaded": 0, "at_capacity": 0, "under_capacity": 0}}

    stmt = (
        select(TaskAssignee.task_id, Profile)
        .join(Profile, Profile.id == TaskAssignee.user_id)
        .where(TaskAssignee.task_id.in_(list(tasks)))
    )
    members: Dict[str, dict] = {}
    for task_id, profile in (await db.execute(stmt)).all():
        m = members.setdefault(profile.id, {
            "id": profile.id,
            "name": profile.full_name or profile.email.split("@")[0],
            "avatar_url": profile.avatar_url,
            "total_tasks": 0, "completed_tasks": 0, "in_progress_tasks": 0, "high_priority_tasks": 0,
        })
        m["total_tasks"] += 1
        if column_of[task_id] == "done":
            m["completed_tasks"] += 1
        elif column_of[task_id] == "in progress":
            m["in_progress_tasks"] += 1
        if enum_value(tasks[task_id].priority) == "high":
            m["high_priority_tasks"] += 1

    out: List[dict] = []
    for m in members.values():
        load = round(m["total_tasks"] / FULL_CAPACITY_TASKS * 100)
        m["capacity"] = min(100, load)
        if load > 100:
            m["status"] = "overloaded"
        elif load >= 80:
            m["status"] = "at_capacity"
        else:
            m["status"] = "under_capacity"
        out.append(m)
    out.sort(key=lambda m: m["total_tasks"], reverse=True)

    return {
        "members": out,
        "summary": {
            "total": sum(m["total_tasks"] for m in out),
            "completed": sum(m["completed_tasks"] for m in out),
            "overloaded": sum(1 for m in out if m["status"] == "overloaded"),
            "at_capacity": sum(1 for m in out if m["status"] == "at_capacity"),
            "under_capacity": sum(1 for m in out if m["status"] == "under_capacity"),
        },
    }


@router.get("/calendar")
async def get_calendar(
    year: Optional[int] = Query(None, ge=1970, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    board_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Tasks grouped by due day for one month"""
    today = datetime.now(timezone.utc).date()
    year = year or today.year
    month = month or today.month
    first = date(year, month, 1)
    last = date(year, month, cal.monthrange(year, month)[1])

    days: Dict[str, list] = {}
    for task, column_title in await _owned_tasks(db, user.id, board_id):
        if task.due_date is None or task.is_archived:
            continue
        day = as_utc(task.due_date).date()
        if first <= day <= last:
            days.setdefault(day.isoformat(), []).append(_brief(task, column_title))

    return {
        "year": year,
        "month": month,
        "days": {k: days[k] for k in sorted(days)},
    }
