# routers/labels.py — User-owned labels
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from models import Label, Task, TaskLabel

router = APIRouter(prefix="/api/v1/labels", tags=["Labels"])

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


class LabelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field(default="#6366f1", pattern=HEX_COLOR)


class LabelUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)


class LabelOut(BaseModel):
    id: str
    name: str
    color: str
    task_count: int = 0


async def _get_label(label_id: str, user_id: str, db: AsyncSession) -> Label:
    label = (await db.execute(
        select(Label).where(Label.id == label_id, Label.owner_id == user_id)
    )).scalar_one_or_none()
    if not label:
        raise HTTPException(status_code=404, detail="Label not found")
    return label


async def _task_count(db: AsyncSession, label_id: str) -> int:
    stmt = (
        select(func.count(TaskLabel.id))
        .join(Task, Task.id == TaskLabel.task_id)
        .where(TaskLabel.label_id == label_id, Task.deleted_at.is_(None))
    )
    return (await db.execute(stmt)).scalar() or 0


@router.get("", response_model=List[LabelOut])
async def list_labels(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Labels with the number of live tasks carrying each"""
    stmt = (
        select(Label, func.count(Task.id))
        .outerjoin(TaskLabel, TaskLabel.label_id == Label.id)
        .outerjoin(Task, (Task.id == TaskLabel.task_id) & Task.deleted_at.is_(None))
        .where(Label.owner_id == user.id)
        .group_by(Label.id)
        .order_by(Label.name)
    )
    return [
        LabelOut(id=label.id, name=label.name, color=label.color, task_count=count or 0)
        for label, count in (await db.execute(stmt)).all()
    ]


@router.post("", response_model=LabelOut, status_code=201)
async def create_label(
    data: LabelCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    label = Label(owner_id=user.id, name=data.name.strip(), color=data.color)
    db.add(label)
    await db.commit()
    await db.refresh(label)
    return LabelOut(id=label.id, name=label.name, color=label.color)


@router.patch("/{label_id}", response_model=LabelOut)
async def update_label(
    label_id: str,
    data: LabelUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    label = await _get_label(label_id, user.id, db)
    if data.name is not None:
        label.name = data.name.strip()
    if data.color is not None:
        label.color = data.color
    await db.commit()
    await db.refresh(label)
    return LabelOut(id=label.id, name=label.name, color=label.color, task_count=await _task_count(db, label.id))


@router.delete("/{label_id}")
async def delete_label(
    label_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    label = await _get_label(label_id, user.id, db)
    await db.execute(delete(TaskLabel).where(TaskLabel.label_id == label.id))
    await db.delete(label)
    await db.commit()
    return {"status": "deleted", "label_id": label_id}
