# routers/team.py — Team members and invitations
import logging
import secrets
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import get_current_user, CurrentUser
from database import get_db_session
from models import (
    InvitationStatus, MemberRole, MemberStatus, Notification, NotificationType,
    Profile, Project, ProjectMember, TeamInvitation, TeamMember, utcnow,
)
from task_service import to_iso, enum_value

router = APIRouter(prefix="/api/v1", tags=["Team"])
logger = logging.getLogger("kanban.team")


# ============================================================
# SCHEMAS
# ============================================================

class MemberCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    role: MemberRole = MemberRole.MEMBER
    avatar_url: Optional[str] = None


class MemberUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    role: Optional[MemberRole] = None
    status: Optional[MemberStatus] = None
    avatar_url: Optional[str] = None


class TeamMemberOut(BaseModel):
    id: str
    team_owner_id: str
    name: str
    email: str
    role: str
    status: str
    avatar_url: Optional[str] = None
    auth_user_id: Optional[str] = None
    created_at: Optional[str] = None


class InvitationCreate(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(None, max_length=200)
    role: MemberRole = MemberRole.MEMBER
    project_id: Optional[str] = None


class InvitationOut(BaseModel):
    id: str
    team_owner_id: str
    inviter_name: Optional[str] = None
    email: str
    name: Optional[str] = None
    role: str
    status: str
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    invited_at: Optional[str] = None
    responded_at: Optional[str] = None
    invitation_token: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _member_out(m: TeamMember) -> TeamMemberOut:
    return TeamMemberOut(
        id=m.id, team_owner_id=m.user_id, name=m.name, email=m.email,
        role=enum_value(m.role), status=enum_value(m.status), avatar_url=m.avatar_url,
        auth_user_id=m.auth_user_id, created_at=to_iso(m.created_at),
    )


async def _invitation_out(db: AsyncSession, inv: TeamInvitation, include_token: bool = False) -> InvitationOut:
    inviter = (await db.execute(
        select(Profile.full_name, Profile.email).where(Profile.id == inv.team_owner_id)
    )).first()
    project_name = None
    if inv.project_id:
        project_name = (await db.execute(select(Project.name).where(Project.id == inv.project_id))).scalar()
    return InvitationOut(
        id=inv.id,
        team_owner_id=inv.team_owner_id,
        inviter_name=(inviter[0] or inviter[1].split("@")[0]) if inviter else None,
        email=inv.email,
        name=inv.name,
        role=enum_value(inv.role),
        status=enum_value(inv.status),
        project_id=inv.project_id,
        project_name=project_name,
        invited_at=to_iso(inv.invited_at),
        responded_at=to_iso(inv.responded_at),
        invitation_token=inv.invitation_token if include_token else None,
    )


async def _get_team_member(member_id: str, owner_id: str, db: AsyncSession) -> TeamMember:
    member = (await db.execute(
        select(TeamMember).where(TeamMember.id == member_id, TeamMember.user_id == owner_id)
    )).scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=404, detail="Team member not found")
    return member


async def _find_member_by_email(owner_id: str, email: str, db: AsyncSession) -> Optional[TeamMember]:
    stmt = select(TeamMember).where(TeamMember.user_id == owner_id, func.lower(TeamMember.email) == email.lower())
    return (await db.execute(stmt)).scalars().first()


async def _claim(db: AsyncSession, inv: TeamInvitation, new_status: InvitationStatus) -> None:
    """Move a pending invitation to ``new_status``; a concurrent or repeated response gets 409"""
    result = await db.execute(
        update(TeamInvitation)
        .where(TeamInvitation.id == inv.id, TeamInvitation.status == InvitationStatus.PENDING)
        .values(status=new_status, responded_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Invitation is no longer pending")


async def _accept(db: AsyncSession, inv: TeamInvitation, user: CurrentUser) -> dict:
    await _claim(db, inv, InvitationStatus.ACCEPTED)

    member = await _find_member_by_email(inv.team_owner_id, inv.email, db)
    if member is None:
        member = TeamMember(
            user_id=inv.team_owner_id,
            name=inv.name or user.display_name,
            email=inv.email,
            role=inv.role,
            status=MemberStatus.ONLINE,
            auth_user_id=user.id,
        )
        db.add(member)
    else:
        member.auth_user_id = user.id
        member.status = MemberStatus.ONLINE

    joined_project = False
    if inv.project_id and inv.project_id not in await access.accessible_project_ids(user.id, db):
        db.add(ProjectMember(
            project_id=inv.project_id, user_id=user.id, role=inv.role, invited_by=inv.team_owner_id,
        ))
        joined_project = True

    db.add(Notification(
        user_id=inv.team_owner_id,
        type=NotificationType.SYSTEM,
        title="Invitation Accepted",
        message=f"{user.display_name} joined your team",
        data={"invitation_id": inv.id},
    ))
    await db.commit()
    logger.info(f"Invitation {inv.id[:8]} accepted by {user.id[:8]}")
    return {
        "status": "accepted",
        "invitation_id": inv.id,
        "team_member_id": member.id,
        "project_id": inv.project_id,
        "joined_project": joined_project,
    }


async def _invitation_for_me(invitation_id: str, user: CurrentUser, db: AsyncSession) -> TeamInvitation:
    inv = (await db.execute(select(TeamInvitation).where(TeamInvitation.id == invitation_id))).scalar_one_or_none()
    if not inv or inv.email.lower() != user.email.lower():
        raise HTTPException(status_code=404, detail="Invitation not found")
    return inv


# ============================================================
# TEAM MEMBERS
# ============================================================

@router.get("/team/members", response_model=List[TeamMemberOut])
async def list_team_members(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(TeamMember).where(TeamMember.user_id == user.id).order_by(TeamMember.created_at)
    return [_member_out(m) for m in (await db.execute(stmt)).scalars().all()]


@router.get("/team/memberships", response_model=List[TeamMemberOut])
async def list_my_memberships(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Teams the current user has been linked into"""
    stmt = select(TeamMember).where(TeamMember.auth_user_id == user.id).order_by(TeamMember.created_at)
    return [_member_out(m) for m in (await db.execute(stmt)).scalars().all()]


@router.post("/team/members", response_model=TeamMemberOut, status_code=201)
async def create_team_member(
    data: MemberCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    email = data.email.lower()
    if await _find_member_by_email(user.id, email, db):
        raise HTTPException(status_code=409, detail="A team member with this email already exists")

    linked = (await db.execute(
        select(Profile.id).where(func.lower(Profile.email) == email)
    )).scalar_one_or_none()
    member = TeamMember(
        user_id=user.id, name=data.name, email=email, role=data.role,
        status=MemberStatus.OFFLINE, avatar_url=data.avatar_url, auth_user_id=linked,
    )
    db.add(member)
    await db.commit()
    await db.refresh(member)
    return _member_out(member)


@router.patch("/team/members/{member_id}", response_model=TeamMemberOut)
async def update_team_member(
    member_id: str,
    data: MemberUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    member = await _get_team_member(member_id, user.id, db)
    if data.name is not None:
        member.name = data.name
    if data.role is not None:
        member.role = data.role
    if data.status is not None:
        member.status = data.status
    if data.avatar_url is not None:
        member.avatar_url = data.avatar_url or None
    await db.commit()
    await db.refresh(member)
    return _member_out(member)


@router.delete("/team/members/{member_id}")
async def delete_team_member(
    member_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    member = await _get_team_member(member_id, user.id, db)
    await db.delete(member)
    await db.commit()
    return {"status": "deleted", "member_id": member_id}


# ============================================================
# INVITATIONS
# ============================================================

@router.post("/invitations", response_model=InvitationOut, status_code=201)
async def create_invitation(
    data: InvitationCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Invite someone by email, optionally straight into one of your projects"""
    email = data.email.lower()
    if email == user.email.lower():
        raise HTTPException(status_code=400, detail="You cannot invite yourself")
    if data.project_id:
        await access.get_project(data.project_id, user.id, db, manage=True)

    pending = await db.execute(
        select(TeamInvitation.id).where(
            TeamInvitation.team_owner_id == user.id,
            func.lower(TeamInvitation.email) == email,
            TeamInvitation.status == InvitationStatus.PENDING,
        )
    )
    if pending.scalars().first():
        raise HTTPException(status_code=409, detail="An invitation is already pending for this email")

    existing = await _find_member_by_email(user.id, email, db)
    if existing is not None and existing.auth_user_id and not data.project_id:
        raise HTTPException(status_code=409, detail="Already a member of your team")

    inv = TeamInvitation(
        team_owner_id=user.id,
        email=email,
        name=data.name,
        role=data.role,
        status=InvitationStatus.PENDING,
        invitation_token=secrets.token_urlsafe(32),
        project_id=data.project_id,
    )
    db.add(inv)

    invitee = (await db.execute(
        select(Profile.id).where(func.lower(Profile.email) == email)
    )).scalar_one_or_none()
    if invitee:
        db.add(Notification(
            user_id=invitee,
            type=NotificationType.SYSTEM,
            title="Team Invitation",
            message=f"{user.display_name} invited you to join their team",
            data={"url": f"/invite?token={inv.invitation_token}"},
        ))

    await db.commit()
    await db.refresh(inv)
    logger.info(f"Invitation {inv.id[:8]} sent by {user.id[:8]}")
    return await _invitation_out(db, inv, include_token=True)


@router.get("/invitations", response_model=List[InvitationOut])
async def list_sent_invitations(
    status: Optional[InvitationStatus] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(TeamInvitation).where(TeamInvitation.team_owner_id == user.id)
    if status:
        stmt = stmt.where(TeamInvitation.status == status)
    stmt = stmt.order_by(TeamInvitation.invited_at.desc())
    return [await _invitation_out(db, inv, include_token=True) for inv in (await db.execute(stmt)).scalars().all()]


@router.get("/invitations/pending", response_model=List[InvitationOut])
async def list_pending_for_me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Pending invitations addressed to the current user's email"""
    stmt = (
        select(TeamInvitation)
        .where(
            func.lower(TeamInvitation.email) == user.email.lower(),
            TeamInvitation.status == InvitationStatus.PENDING,
        )
        .order_by(TeamInvitation.invited_at.desc())
    )
    return [await _invitation_out(db, inv) for inv in (await db.execute(stmt)).scalars().all()]


@router.get("/invitations/lookup", response_model=InvitationOut)
async def lookup_invitation(
    token: str = Query(..., min_length=8),
    db: AsyncSession = Depends(get_db_session),
):
    """Public preview of a pending invitation, keyed by its token"""
    stmt = select(TeamInvitation).where(
        TeamInvitation.invitation_token == token,
        TeamInvitation.status == InvitationStatus.PENDING,
    )
    inv = (await db.execute(stmt)).scalar_one_or_none()
    if not inv:
        raise HTTPException(status_code=404, detail="Invitation not found or already accepted")
    return await _invitation_out(db, inv)


@router.post("/invitations/accept")
async def accept_invitation_by_token(
    token: str = Query(..., min_length=8),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = (await db.execute(
        select(TeamInvitation).where(TeamInvitation.invitation_token == token)
    )).scalar_one_or_none()
    if not inv:
        raise HTTPException(status_code=404, detail="Invitation not found")
    if inv.team_owner_id == user.id:
        raise HTTPException(status_code=400, detail="You cannot accept your own invitation")
    return await _accept(db, inv, user)


@router.post("/invitations/{invitation_id}/accept")
async def accept_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = await _invitation_for_me(invitation_id, user, db)
    return await _accept(db, inv, user)


@router.post("/invitations/{invitation_id}/decline")
async def decline_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = await _invitation_for_me(invitation_id, user, db)
    await _claim(db, inv, InvitationStatus.DECLINED)
    await db.commit()
    return {"status": "declined", "invitation_id": inv.id}


@router.delete("/invitations/{invitation_id}")
async def revoke_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = (await db.execute(
        select(TeamInvitation).where(
            TeamInvitation.id == invitation_id, TeamInvitation.team_owner_id == user.id,
        )
    )).scalar_one_or_none()
    if not inv:
        raise HTTPException(status_code=404, detail="Invitation not found")
    await db.delete(inv)
    await db.commit()
    return {"status": "deleted", "invitation_id": invitation_id}
