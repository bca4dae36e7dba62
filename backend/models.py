# models.py — Database models for the Kanban service
# - UUID string primary keys everywhere
# - Soft deletes on profiles, boards, tasks and comments
# - Join tables for tags, labels, assignees, starred tasks and project members
# - JSON columns for free-form automation config and custom-field values

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================
# ENUMS
# ============================================================

class TaskPriority(str, PyEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MemberRole(str, PyEnum):
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class MemberStatus(str, PyEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"


class InvitationStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class NotificationType(str, PyEnum):
    TASK = "task"
    SYSTEM = "system"
    MENTION = "mention"
    REMINDER = "reminder"
    COMMENT = "comment"


class TriggerType(str, PyEnum):
    TASK_CREATED = "task_created"
    TASK_MOVED = "task_moved"
    TASK_COMPLETED = "task_completed"
    DUE_DATE_APPROACHING = "due_date_approaching"
    PRIORITY_CHANGED = "priority_changed"


class ActionType(str, PyEnum):
    MOVE_TO_COLUMN = "move_to_column"
    ASSIGN_USER = "assign_user"
    ADD_LABEL = "add_label"
    SET_PRIORITY = "set_priority"
    SEND_NOTIFICATION = "send_notification"


class CustomFieldType(str, PyEnum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"
    MULTISELECT = "multiselect"
    CHECKBOX = "checkbox"
    URL = "url"


# ============================================================
# PROFILES
# ============================================================

class Profile(Base):
    """Signed-up user. Created at registration or lazily on first login."""
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=False, default="")
    avatar_url = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    boards = relationship("Board", back_populates="owner")
    settings = relationship("UserSettings", back_populates="user", uselist=False)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False)
    email_notifications = Column(Boolean, default=True)
    push_notifications = Column(Boolean, default=True)
    weekly_digest = Column(Boolean, default=False)
    compact_mode = Column(Boolean, default=False)
    show_completed_tasks = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("Profile", back_populates="settings")


class FeatureState(Base):
    """Per-user JSON document keyed by feature name (view, quick notes, pomodoro...)"""
    __tablename__ = "feature_state"

    id = Column(String, primary_key=True, default=new_uuid)
    owner_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    feature = Column(String, nullable=False)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "feature", name="uq_feature_state_owner_feature"),
    )


# ============================================================
# KANBAN BOARD
# ============================================================

class Board(Base):
    """Top-level container of columns and tasks"""
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    owner_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_default = Column(Boolean, default=False)
    background = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    owner = relationship("Profile", back_populates="boards")
    columns = relationship(
        "BoardColumn", back_populates="board",
        order_by="BoardColumn.position", cascade="all, delete-orphan",
    )
    tasks = relationship("Task", back_populates="board")

    __table_args__ = (
        Index("idx_board_owner_default", "owner_id", "is_default"),
    )


class BoardColumn(Base):
    """Ordered bucket of tasks within a board"""
    __tablename__ = "columns"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    color = Column(String, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    wip_limit = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="columns")

    __table_args__ = (
        Index("idx_col_board_pos", "board_id", "position"),
    )

    @property
    def is_done(self) -> bool:
        return (self.title or "").strip().lower() == "done"

    @property
    def is_archive(self) -> bool:
        return (self.title or "").strip().lower() == "archive"


class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    owner_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String, default="#6366f1")
    is_starred = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship("ProjectMember", back_populates="project", cascade="all, delete-orphan")


class ProjectMember(Base):
    __tablename__ = "project_members"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(MemberRole), default=MemberRole.MEMBER, nullable=False)
    invited_by = Column(String, ForeignKey("profiles.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    project = relationship("Project", back_populates="members")
    user = relationship("Profile", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )


class Task(Base):
    """Individual task card on a board"""
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    column_id = Column(String, ForeignKey("columns.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    position = Column(Integer, default=0)  # Order within column
    is_archived = Column(Boolean, default=False, nullable=False)
    cover_image = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    board = relationship("Board", back_populates="tasks")
    column = relationship("BoardColumn")
    creator = relationship("Profile", foreign_keys=[user_id])
    project = relationship("Project")
    tags = relationship("Tag", back_populates="task", cascade="all, delete-orphan")
    subtasks = relationship(
        "Subtask", back_populates="task",
        order_by="Subtask.position", cascade="all, delete-orphan",
    )
    label_links = relationship("TaskLabel", back_populates="task", cascade="all, delete-orphan")
    assignees = relationship("TaskAssignee", back_populates="task", cascade="all, delete-orphan")
    attachments = relationship("TaskAttachment", back_populates="task", cascade="all, delete-orphan")
    field_values = relationship("CustomFieldValue", back_populates="task", cascade="all, delete-orphan")
    comments = relationship("TaskComment", back_populates="task", order_by="TaskComment.created_at")
    history = relationship("TaskHistory", back_populates="task", order_by="TaskHistory.created_at.desc()")

    __table_args__ = (
        Index("idx_task_board_col", "board_id", "column_id"),
        Index("idx_task_due", "due_date", "is_archived"),
    )


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)

    task = relationship("Task", back_populates="tags")

    __table_args__ = (
        UniqueConstraint("task_id", "name", name="uq_tag_task_name"),
    )


class Subtask(Base):
    __tablename__ = "subtasks"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    is_completed = Column(Boolean, default=False)
    position = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="subtasks")


class Label(Base):
    """User-owned label, attachable to any of the owner's tasks"""
    __tablename__ = "labels"

    id = Column(String, primary_key=True, default=new_uuid)
    owner_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, default="#6366f1")
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TaskLabel(Base):
    __tablename__ = "task_labels"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    label_id = Column(String, ForeignKey("labels.id", ondelete="CASCADE"), nullable=False, index=True)

    task = relationship("Task", back_populates="label_links")
    label = relationship("Label")

    __table_args__ = (
        UniqueConstraint("task_id", "label_id", name="uq_task_label"),
    )


class TaskAssignee(Base):
    __tablename__ = "task_assignees"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="assignees")
    user = relationship("Profile")

    __table_args__ = (
        UniqueConstraint("task_id", "user_id", name="uq_task_assignee"),
    )


class TaskAttachment(Base):
    __tablename__ = "task_attachments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    uploaded_by = Column(String, ForeignKey("profiles.id"), nullable=False)
    file_name = Column(String, nullable=False)
    file_url = Column(String, nullable=False)
    file_type = Column(String, nullable=True)
    file_size = Column(BigInteger, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="attachments")


class TaskComment(Base):
    __tablename__ = "task_comments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String, ForeignKey("profiles.id"), nullable=False)
    content = Column(Text, nullable=False)
    image_url = Column(String, nullable=True)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    task = relationship("Task", back_populates="comments")
    author = relationship("Profile")


class TaskHistory(Base):
    """Activity trail for a task"""
    __tablename__ = "task_history"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False)
    action = Column(String, nullable=False)  # "created", "updated", "moved", "archived", "commented", ...
    field_name = Column(String, nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    extra_data = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="history")
    user = relationship("Profile")

    __table_args__ = (
        Index("idx_history_task_time", "task_id", "created_at"),
    )


class StarredTask(Base):
    __tablename__ = "starred_tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "task_id", name="uq_starred_user_task"),
    )


# ============================================================
# TEAM
# ============================================================

class TeamMember(Base):
    """A member of the team owned by ``user_id``; linked to a profile once they sign in"""
    __tablename__ = "team_members"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, index=True)
    role = Column(SQLEnum(MemberRole), default=MemberRole.MEMBER, nullable=False)
    status = Column(SQLEnum(MemberStatus), default=MemberStatus.OFFLINE, nullable=False)
    avatar_url = Column(String, nullable=True)
    auth_user_id = Column(String, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class TeamInvitation(Base):
    __tablename__ = "team_invitations"

    id = Column(String, primary_key=True, default=new_uuid)
    team_owner_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(SQLEnum(MemberRole), default=MemberRole.MEMBER, nullable=False)
    status = Column(SQLEnum(InvitationStatus), default=InvitationStatus.PENDING, nullable=False, index=True)
    invitation_token = Column(String, unique=True, nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    invited_at = Column(DateTime(timezone=True), default=utcnow)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    team_owner = relationship("Profile", foreign_keys=[team_owner_id])
    project = relationship("Project")


# ============================================================
# AUTOMATION & CUSTOM FIELDS
# ============================================================

class AutomationRule(Base):
    """Stored trigger/action pair scoped to a board"""
    __tablename__ = "automation_rules"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    trigger_type = Column(SQLEnum(TriggerType), nullable=False)
    trigger_config = Column(JSON, nullable=False, default=dict)
    action_type = Column(SQLEnum(ActionType), nullable=False)
    action_config = Column(JSON, nullable=False, default=dict)
    created_by = Column(String, ForeignKey("profiles.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CustomField(Base):
    __tablename__ = "custom_fields"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    field_type = Column(SQLEnum(CustomFieldType), nullable=False)
    options = Column(JSON, nullable=False, default=list)  # [{"value": ..., "label": ...}]
    is_required = Column(Boolean, default=False)
    position = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_custom_field_board_pos", "board_id", "position"),
    )


class CustomFieldValue(Base):
    __tablename__ = "custom_field_values"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    field_id = Column(String, ForeignKey("custom_fields.id", ondelete="CASCADE"), nullable=False, index=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    task = relationship("Task", back_populates="field_values")
    field = relationship("CustomField")

    __table_args__ = (
        UniqueConstraint("task_id", "field_id", name="uq_field_value_task_field"),
    )


# ============================================================
# NOTIFICATIONS
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLEnum(NotificationType), default=NotificationType.SYSTEM, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False, default="")
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True)
    board_id = Column(String, ForeignKey("boards.id", ondelete="SET NULL"), nullable=True)
    data = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_notification_user_read", "user_id", "is_read"),
    )
