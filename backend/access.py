# access.py — Ownership and membership lookups shared by the routers
from typing import List, Optional, Set

from fastapi import HTTPException
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from models import (
    Board, BoardColumn, Project, ProjectMember, Task, TaskAssignee, TeamMember,
)


async def get_board(board_id: str, user_id: str, db: AsyncSession) -> Board:
    stmt = select(Board).where(
        Board.id == board_id,
        Board.owner_id == user_id,
        Board.deleted_at.is_(None),
    )
    result = await db.execute(stmt)
    board = result.scalar_one_or_none()
    if not board:
        raise HTTPException(status_code=404, detail="Board not found")
    return board


async def get_column(board_id: str, column_id: str, db: AsyncSession) -> BoardColumn:
    stmt = select(BoardColumn).where(BoardColumn.id == column_id, BoardColumn.board_id == board_id)
    result = await db.execute(stmt)
    col = result.scalar_one_or_none()
    if not col:
        raise HTTPException(status_code=404, detail="Column not found")
    return col


async def find_column_by_title(board_id: str, title: str, db: AsyncSession) -> Optional[BoardColumn]:
    stmt = select(BoardColumn).where(BoardColumn.board_id == board_id).order_by(BoardColumn.position)
    result = await db.execute(stmt)
    for col in result.scalars().all():
        if col.title.strip().lower() == title.lower():
            return col
    return None


async def accessible_project_ids(user_id: str, db: AsyncSession) -> List[str]:
    """Projects the user owns or has been added to"""
    owned = select(Project.id).where(Project.owner_id == user_id)
    joined = select(ProjectMember.project_id).where(ProjectMember.user_id == user_id)
    result = await db.execute(select(Project.id).where(or_(Project.id.in_(owned), Project.id.in_(joined))))
    return [row[0] for row in result.all()]


async def get_project(project_id: str, user_id: str, db: AsyncSession, manage: bool = False) -> Project:
    """Fetch a visible project; ``manage`` restricts to the owner"""
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    if project.owner_id == user_id:
        return project
    if manage:
        raise HTTPException(status_code=403, detail="Only the project owner can do this")
    member = await db.execute(
        select(ProjectMember.id).where(
            ProjectMember.project_id == project_id, ProjectMember.user_id == user_id,
        )
    )
    if member.scalar_one_or_none() is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def project_member_ids(project_id: str, db: AsyncSession) -> Set[str]:
    """Owner plus members of a project"""
    owner = (await db.execute(select(Project.owner_id).where(Project.id == project_id))).scalar_one_or_none()
    result = await db.execute(select(ProjectMember.user_id).where(ProjectMember.project_id == project_id))
    ids = {row[0] for row in result.all()}
    if owner:
        ids.add(owner)
    return ids


async def team_member_ids(owner_id: str, db: AsyncSession) -> Set[str]:
    """Linked profiles of the team owned by ``owner_id``, including the owner"""
    result = await db.execute(
        select(TeamMember.auth_user_id).where(
            TeamMember.user_id == owner_id, TeamMember.auth_user_id.isnot(None),
        )
    )
    ids = {row[0] for row in result.all()}
    ids.add(owner_id)
    return ids


async def can_view_task(task: Task, user_id: str, db: AsyncSession) -> bool:
    if task.user_id == user_id:
        return True
    board_owner = (await db.execute(select(Board.owner_id).where(Board.id == task.board_id))).scalar_one_or_none()
    if board_owner == user_id:
        return True
    assigned = await db.execute(
        select(TaskAssignee.id).where(TaskAssignee.task_id == task.id, TaskAssignee.user_id == user_id)
    )
    if assigned.scalar_one_or_none() is not None:
        return True
    if task.project_id:
        return user_id in await project_member_ids(task.project_id, db)
    return False


async def can_edit_task(task: Task, user_id: str, db: AsyncSession) -> bool:
    """Only the task creator or the board owner may edit, move or delete"""
    if task.user_id == user_id:
        return True
    board_owner = (await db.execute(select(Board.owner_id).where(Board.id == task.board_id))).scalar_one_or_none()
    return board_owner == user_id


async def get_task(task_id: str, user: CurrentUser, db: AsyncSession, write: bool = False,
                   include_deleted: bool = False) -> Task:
    stmt = select(Task).where(Task.id == task_id)
    if not include_deleted:
        stmt = stmt.where(Task.deleted_at.is_(None))
    task = (await db.execute(stmt)).scalar_one_or_none()
    if not task or not await can_view_task(task, user.id, db):
        raise HTTPException(status_code=404, detail="Task not found")
    if write and not await can_edit_task(task, user.id, db):
        raise HTTPException(status_code=403, detail="Only the task owner can modify this task")
    return task
