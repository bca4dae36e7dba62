# routers/projects.py — Projects, starring and project membership
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, func, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import get_current_user, CurrentUser
from database import get_db_session
from models import MemberRole, Profile, Project, ProjectMember, Task, TaskAssignee, TeamInvitation
from task_service import to_iso, enum_value

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    color: str = Field(default="#6366f1", pattern=r"^#[0-9a-fA-F]{6}$")


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    color: Optional[str] = Field(None, pattern=r"^#[0-9a-fA-F]{6}$")


class MemberAdd(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    role: MemberRole = MemberRole.MEMBER


class MemberOut(BaseModel):
    id: str
    user_id: str
    full_name: str
    email: str
    avatar_url: Optional[str] = None
    role: str
    is_owner: bool = False


class ProjectOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    color: str
    owner_id: str
    is_starred: bool
    is_owner: bool
    task_count: int = 0
    member_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

async def _project_out(db: AsyncSession, project: Project, user_id: str) -> ProjectOut:
    task_count = (await db.execute(
        select(func.count(Task.id)).where(Task.project_id == project.id, Task.deleted_at.is_(None))
    )).scalar() or 0
    member_count = (await db.execute(
        select(func.count(ProjectMember.id)).where(ProjectMember.project_id == project.id)
    )).scalar() or 0
    return ProjectOut(
        id=project.id,
        name=project.name,
        description=project.description,
        color=project.color or "#6366f1",
        owner_id=project.owner_id,
        is_starred=bool(project.is_starred),
        is_owner=project.owner_id == user_id,
        task_count=task_count,
        member_count=member_count + 1,
        created_at=to_iso(project.created_at),
        updated_at=to_iso(project.updated_at),
    )


# ============================================================
# PROJECT ENDPOINTS
# ============================================================

@router.get("", response_model=List[ProjectOut])
async def list_projects(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Projects the user owns or is a member of, starred first"""
    ids = await access.accessible_project_ids(user.id, db)
    if not ids:
        return []
    stmt = (
        select(Project)
        .where(Project.id.in_(ids))
        .order_by(Project.is_starred.desc(), Project.created_at.desc())
    )
    projects = (await db.execute(stmt)).scalars().all()
    return [await _project_out(db, p, user.id) for p in projects]


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = Project(owner_id=user.id, name=data.name, description=data.description, color=data.color)
    db.add(project)
    await db.commit()
    await db.refresh(project)
    return await _project_out(db, project, user.id)


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await access.get_project(project_id, user.id, db)
    return await _project_out(db, project, user.id)


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await access.get_project(project_id, user.id, db, manage=True)
    if data.name is not None:
        project.name = data.name
    if data.description is not None:
        project.description = data.description
    if data.color is not None:
        project.color = data.color
    await db.commit()
    await db.refresh(project)
    return await _project_out(db, project, user.id)


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a project. Its tasks stay on their boards without a project."""
    project = await access.get_project(project_id, user.id, db, manage=True)
    await db.execute(update(Task).where(Task.project_id == project.id).values(project_id=None))
    await db.execute(update(TeamInvitation).where(TeamInvitation.project_id == project.id).values(project_id=None))
    await db.execute(delete(ProjectMember).where(ProjectMember.project_id == project.id))
    await db.execute(delete(Project).where(Project.id == project.id))
    await db.commit()
    return {"status": "deleted", "project_id": project_id}


@router.post("/{project_id}/star", response_model=ProjectOut)
async def toggle_project_star(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await access.get_project(project_id, user.id, db, manage=True)
    project.is_starred = not project.is_starred
    await db.commit()
    await db.refresh(project)
    return await _project_out(db, project, user.id)


# ============================================================
# MEMBERS
# ============================================================

@router.get("/{project_id}/members", response_model=List[MemberOut])
async def list_members(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await access.get_project(project_id, user.id, db)
    owner = (await db.execute(select(Profile).where(Profile.id == project.owner_id))).scalar_one()
    out = [MemberOut(
        id=project.id, user_id=owner.id, full_name=owner.full_name or "", email=owner.email,
        avatar_url=owner.avatar_url, role=MemberRole.ADMIN.value, is_owner=True,
    )]
    stmt = (
        select(ProjectMember, Profile)
        .join(Profile, Profile.id == ProjectMember.user_id)
        .where(ProjectMember.project_id == project.id)
        .order_by(ProjectMember.created_at)
    )
    for member, profile in (await db.execute(stmt)).all():
        out.append(MemberOut(
            id=member.id, user_id=profile.id, full_name=profile.full_name or "", email=profile.email,
            avatar_url=profile.avatar_url, role=enum_value(member.role),
        ))
    return out


@router.post("/{project_id}/members", response_model=MemberOut, status_code=201)
async def add_member(
    project_id: str,
    data: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add an existing profile (by id or email) to the project"""
    project = await access.get_project(project_id, user.id, db, manage=True)
    if data.user_id:
        stmt = select(Profile).where(Profile.id == data.user_id)
    elif data.email:
        stmt = select(Profile).where(func.lower(Profile.email) == data.email.strip().lower())
    else:
        raise HTTPException(status_code=400, detail="user_id or email is required")
    profile = (await db.execute(stmt)).scalar_one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    if profile.id == project.owner_id:
        raise HTTPException(status_code=409, detail="The owner is already part of the project")

    existing = await db.execute(
        select(ProjectMember.id).where(ProjectMember.project_id == project.id, ProjectMember.user_id == profile.id)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="User is already a member")

    member = ProjectMember(project_id=project.id, user_id=profile.id, role=data.role, invited_by=user.id)
    db.add(member)
    await db.commit()
    await db.refresh(member)
    return MemberOut(
        id=member.id, user_id=profile.id, full_name=profile.full_name or "", email=profile.email,
        avatar_url=profile.avatar_url, role=enum_value(member.role),
    )


@router.delete("/{project_id}/members/{user_id}")
async def remove_member(
    project_id: str,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a member; members may remove themselves. Their assignments on project tasks are dropped."""
    project = await access.get_project(project_id, user.id, db, manage=user_id != user.id)
    stmt = select(ProjectMember).where(ProjectMember.project_id == project.id, ProjectMember.user_id == user_id)
    member = (await db.execute(stmt)).scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")

    project_tasks = select(Task.id).where(Task.project_id == project.id)
    await db.execute(
        delete(TaskAssignee).where(TaskAssignee.user_id == user_id, TaskAssignee.task_id.in_(project_tasks))
    )
    await db.delete(member)
    await db.commit()
    return {"status": "removed", "project_id": project.id, "user_id": user_id}
