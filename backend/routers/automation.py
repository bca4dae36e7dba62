# routers/automation.py — Board automation rules (stored and toggled)
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import get_current_user, CurrentUser
from database import get_db_session
from models import ActionType, AutomationRule, Board, TriggerType
from task_service import to_iso, enum_value

router = APIRouter(prefix="/api/v1/automation", tags=["Automation"])


class RuleCreate(BaseModel):
    board_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: bool = True
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    action_type: ActionType
    action_config: Dict[str, Any] = Field(default_factory=dict)


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    action_type: Optional[ActionType] = None
    action_config: Optional[Dict[str, Any]] = None


class RuleOut(BaseModel):
    id: str
    board_id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    trigger_type: str
    trigger_config: Dict[str, Any] = {}
    action_type: str
    action_config: Dict[str, Any] = {}
    created_by: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _rule_out(rule: AutomationRule) -> RuleOut:
    return RuleOut(
        id=rule.id,
        board_id=rule.board_id,
        name=rule.name,
        description=rule.description,
        is_active=bool(rule.is_active),
        trigger_type=enum_value(rule.trigger_type),
        trigger_config=rule.trigger_config or {},
        action_type=enum_value(rule.action_type),
        action_config=rule.action_config or {},
        created_by=rule.created_by,
        created_at=to_iso(rule.created_at),
        updated_at=to_iso(rule.updated_at),
    )


async def _get_rule(rule_id: str, user: CurrentUser, db: AsyncSession) -> AutomationRule:
    stmt = (
        select(AutomationRule)
        .join(Board, Board.id == AutomationRule.board_id)
        .where(AutomationRule.id == rule_id, Board.owner_id == user.id, Board.deleted_at.is_(None))
    )
    rule = (await db.execute(stmt)).scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Automation rule not found")
    return rule


@router.get("/rules", response_model=List[RuleOut])
async def list_rules(
    board_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(board_id, user.id, db)
    stmt = (
        select(AutomationRule)
        .where(AutomationRule.board_id == board_id)
        .order_by(AutomationRule.created_at.desc())
    )
    return [_rule_out(r) for r in (await db.execute(stmt)).scalars().all()]


@router.post("/rules", response_model=RuleOut, status_code=201)
async def create_rule(
    data: RuleCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(data.board_id, user.id, db)
    rule = AutomationRule(
        board_id=data.board_id,
        name=data.name,
        description=data.description,
        is_active=data.is_active,
        trigger_type=data.trigger_type,
        trigger_config=data.trigger_config,
        action_type=data.action_type,
        action_config=data.action_config,
        created_by=user.id,
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return _rule_out(rule)


@router.get("/rules/{rule_id}", response_model=RuleOut)
async def get_rule(
    rule_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return _rule_out(await _get_rule(rule_id, user, db))


@router.patch("/rules/{rule_id}", response_model=RuleOut)
async def update_rule(
    rule_id: str,
    data: RuleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    rule = await _get_rule(rule_id, user, db)
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is None and field in ("name", "trigger_type", "action_type"):
            continue
        setattr(rule, field, value)
    await db.commit()
    await db.refresh(rule)
    return _rule_out(rule)


@router.post("/rules/{rule_id}/toggle", response_model=RuleOut)
async def toggle_rule(
    rule_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Flip is_active without touching the rule's configuration"""
    rule = await _get_rule(rule_id, user, db)
    await db.execute(
        update(AutomationRule)
        .where(AutomationRule.id == rule.id)
        .values(is_active=not rule.is_active)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(rule)
    return _rule_out(rule)


@router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    rule = await _get_rule(rule_id, user, db)
    await db.delete(rule)
    await db.commit()
    return {"status": "deleted", "rule_id": rule_id}
