# routers/custom_fields.py — Board custom fields, templates and per-task values
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import get_current_user, CurrentUser
from database import get_db_session
from models import Board, CustomField, CustomFieldType, CustomFieldValue
from task_service import TaskSaveError, set_custom_field_values, slugify, to_iso, enum_value

router = APIRouter(prefix="/api/v1", tags=["Custom Fields"])

CHOICE_TYPES = (CustomFieldType.SELECT, CustomFieldType.MULTISELECT)

FIELD_TEMPLATES = [
    {
        "name": "Payment Status",
        "field_type": "select",
        "options": [
            {"value": "unpaid", "label": "Unpaid"},
            {"value": "pending", "label": "Pending"},
            {"value": "paid", "label": "Paid"},
        ],
        "is_required": False,
    },
    {
        "name": "Priority Level",
        "field_type": "select",
        "options": [
            {"value": "low", "label": "Low"},
            {"value": "medium", "label": "Medium"},
            {"value": "high", "label": "High"},
            {"value": "urgent", "label": "Urgent"},
        ],
        "is_required": False,
    },
    {"name": "Estimated Hours", "field_type": "number", "options": [], "is_required": False},
    {"name": "Client Name", "field_type": "text", "options": [], "is_required": False},
    {"name": "Document Link", "field_type": "url", "options": [], "is_required": False},
    {"name": "Start Date", "field_type": "date", "options": [], "is_required": False},
    {"name": "Approved", "field_type": "checkbox", "options": [], "is_required": False},
    {
        "name": "Task Type",
        "field_type": "select",
        "options": [
            {"value": "bug", "label": "Bug"},
            {"value": "feature", "label": "Feature"},
            {"value": "improvement", "label": "Improvement"},
            {"value": "documentation", "label": "Documentation"},
        ],
        "is_required": False,
    },
]


# ============================================================
# SCHEMAS
# ============================================================

class FieldOption(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    value: Optional[str] = None

    @model_validator(mode="after")
    def default_value(self):
        if not self.value:
            self.value = slugify(self.label)
        return self


class FieldCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    field_type: CustomFieldType
    options: List[FieldOption] = Field(default_factory=list)
    is_required: bool = False

    @model_validator(mode="after")
    def options_for_choices(self):
        if self.field_type in CHOICE_TYPES and not self.options:
            raise ValueError("Select fields need at least one option")
        return self


class FieldUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    options: Optional[List[FieldOption]] = None
    is_required: Optional[bool] = None
    position: Optional[int] = None


class TemplateRequest(BaseModel):
    name: str


class FieldOut(BaseModel):
    id: str
    board_id: str
    name: str
    field_type: str
    options: List[Dict[str, Any]] = []
    is_required: bool = False
    position: int = 0
    created_at: Optional[str] = None


class FieldValuesUpdate(BaseModel):
    values: Dict[str, Any]


# ============================================================
# HELPERS
# ============================================================

def _field_out(f: CustomField) -> FieldOut:
    return FieldOut(
        id=f.id, board_id=f.board_id, name=f.name, field_type=enum_value(f.field_type),
        options=f.options or [], is_required=bool(f.is_required), position=f.position or 0,
        created_at=to_iso(f.created_at),
    )


async def _get_field(field_id: str, user: CurrentUser, db: AsyncSession) -> CustomField:
    stmt = (
        select(CustomField)
        .join(Board, Board.id == CustomField.board_id)
        .where(CustomField.id == field_id, Board.owner_id == user.id, Board.deleted_at.is_(None))
    )
    field = (await db.execute(stmt)).scalar_one_or_none()
    if not field:
        raise HTTPException(status_code=404, detail="Custom field not found")
    return field


async def _add_field(db: AsyncSession, board_id: str, name: str, field_type: CustomFieldType,
                     options: List[dict], is_required: bool) -> CustomField:
    names = (await db.execute(select(CustomField.name).where(CustomField.board_id == board_id))).scalars().all()
    if any(n.lower() == name.lower() for n in names):
        raise HTTPException(status_code=409, detail=f'Field "{name}" already exists')
    field = CustomField(
        board_id=board_id, name=name, field_type=field_type, options=options,
        is_required=is_required, position=len(names),
    )
    db.add(field)
    await db.commit()
    await db.refresh(field)
    return field


# ============================================================
# FIELD ENDPOINTS
# ============================================================

@router.get("/custom-fields/templates")
async def list_templates():
    """Ready-made field definitions"""
    return FIELD_TEMPLATES


@router.get("/boards/{board_id}/custom-fields", response_model=List[FieldOut])
async def list_fields(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(board_id, user.id, db)
    stmt = select(CustomField).where(CustomField.board_id == board_id).order_by(CustomField.position)
    return [_field_out(f) for f in (await db.execute(stmt)).scalars().all()]


@router.post("/boards/{board_id}/custom-fields", response_model=FieldOut, status_code=201)
async def create_field(
    board_id: str,
    data: FieldCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(board_id, user.id, db)
    options = [o.model_dump() for o in data.options] if data.field_type in CHOICE_TYPES else []
    field = await _add_field(db, board_id, data.name.strip(), data.field_type, options, data.is_required)
    return _field_out(field)


@router.post("/boards/{board_id}/custom-fields/from-template", response_model=FieldOut, status_code=201)
async def add_field_from_template(
    board_id: str,
    data: TemplateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(board_id, user.id, db)
    template = next((t for t in FIELD_TEMPLATES if t["name"].lower() == data.name.strip().lower()), None)
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found")
    field = await _add_field(
        db, board_id, template["name"], CustomFieldType(template["field_type"]),
        [dict(o) for o in template["options"]], template["is_required"],
    )
    return _field_out(field)


@router.patch("/custom-fields/{field_id}", response_model=FieldOut)
async def update_field(
    field_id: str,
    data: FieldUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    field = await _get_field(field_id, user, db)
    if data.name is not None and data.name.strip().lower() != field.name.lower():
        clash = await db.execute(
            select(CustomField.id).where(
                CustomField.board_id == field.board_id,
                func.lower(CustomField.name) == data.name.strip().lower(),
            )
        )
        if clash.scalars().first():
            raise HTTPException(status_code=409, detail=f'Field "{data.name}" already exists')
        field.name = data.name.strip()
    if data.options is not None:
        if CustomFieldType(enum_value(field.field_type)) in CHOICE_TYPES and not data.options:
            raise HTTPException(status_code=400, detail="Select fields need at least one option")
        field.options = [o.model_dump() for o in data.options]
    if data.is_required is not None:
        field.is_required = data.is_required
    if data.position is not None:
        field.position = data.position
    await db.commit()
    await db.refresh(field)
    return _field_out(field)


@router.delete("/custom-fields/{field_id}")
async def delete_field(
    field_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a field and every stored value for it"""
    field = await _get_field(field_id, user, db)
    await db.execute(delete(CustomFieldValue).where(CustomFieldValue.field_id == field.id))
    await db.delete(field)
    await db.commit()
    return {"status": "deleted", "field_id": field_id}


# ============================================================
# TASK VALUES
# ============================================================

@router.get("/tasks/{task_id}/custom-fields")
async def get_task_field_values(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Every board field with this task's value (None when unset)"""
    task = await access.get_task(task_id, user, db)
    fields = (await db.execute(
        select(CustomField).where(CustomField.board_id == task.board_id).order_by(CustomField.position)
    )).scalars().all()
    values = dict((await db.execute(
        select(CustomFieldValue.field_id, CustomFieldValue.value).where(CustomFieldValue.task_id == task.id)
    )).all())
    return [{**_field_out(f).model_dump(), "value": values.get(f.id)} for f in fields]


@router.put("/tasks/{task_id}/custom-fields")
async def set_task_field_values(
    task_id: str,
    data: FieldValuesUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await access.get_task(task_id, user, db, write=True)
    try:
        values = await set_custom_field_values(db, task, data.values)
    except TaskSaveError:
        await db.rollback()
        raise
    await db.commit()
    return {"task_id": task.id, "values": values}
