# routers/boards.py — Boards, columns, and board export/import
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

import access
from auth import get_current_user, CurrentUser
from database import get_db_session
from export_utils import ExportOptions, export_to_json, export_to_csv, export_filename, parse_import_data
from models import Board, BoardColumn, Project, Task, utcnow
from routers.websocket_router import publish_board_event
from task_service import TaskSave, TaskSaveError, save_task, tasks_to_out, to_iso

router = APIRouter(prefix="/api/v1/boards", tags=["Boards"])
logger = logging.getLogger("kanban.boards")

DEFAULT_BOARD_TITLE = "My Kanban Board"

DEFAULT_COLUMNS = [
    {"title": "To Do", "color": "#e94560"},
    {"title": "In Progress", "color": "#ffc107"},
    {"title": "Review", "color": "#00bcd4"},
    {"title": "Done", "color": "#4caf50"},
    {"title": "Archive", "color": "#6c757d"},
]


# ============================================================
# SCHEMAS
# ============================================================

class BoardCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    use_default_columns: bool = True


class BoardUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    background: Optional[str] = None


class ColumnCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = None
    position: Optional[int] = None
    wip_limit: Optional[int] = Field(None, ge=1)


class ColumnUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = None
    position: Optional[int] = None
    wip_limit: Optional[int] = Field(None, ge=0)  # 0 clears the limit


class ColumnOut(BaseModel):
    id: str
    title: str
    color: Optional[str] = None
    position: int
    wip_limit: Optional[int] = None
    task_count: int = 0


class BoardOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    owner_id: str
    is_default: bool
    background: Optional[str] = None
    columns: List[ColumnOut] = []
    task_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ImportRequest(BaseModel):
    content: str = Field(..., min_length=1)


# ============================================================
# HELPERS
# ============================================================

def _add_default_columns(db: AsyncSession, board: Board) -> None:
    for position, col_def in enumerate(DEFAULT_COLUMNS):
        db.add(BoardColumn(board_id=board.id, title=col_def["title"], color=col_def["color"], position=position))


async def _column_counts(db: AsyncSession, board_id: str) -> dict:
    stmt = (
        select(Task.column_id, func.count(Task.id))
        .where(Task.board_id == board_id, Task.deleted_at.is_(None))
        .group_by(Task.column_id)
    )
    return dict((await db.execute(stmt)).all())


async def _columns(db: AsyncSession, board_id: str) -> List[BoardColumn]:
    stmt = select(BoardColumn).where(BoardColumn.board_id == board_id).order_by(BoardColumn.position)
    return list((await db.execute(stmt)).scalars().all())


def _column_out(col: BoardColumn, count: int = 0) -> ColumnOut:
    return ColumnOut(
        id=col.id, title=col.title, color=col.color,
        position=col.position or 0, wip_limit=col.wip_limit, task_count=count,
    )


async def _board_to_out(db: AsyncSession, board: Board) -> BoardOut:
    counts = await _column_counts(db, board.id)
    cols = await _columns(db, board.id)
    return BoardOut(
        id=board.id,
        title=board.title,
        description=board.description,
        owner_id=board.owner_id,
        is_default=bool(board.is_default),
        background=board.background,
        columns=[_column_out(c, counts.get(c.id, 0)) for c in cols],
        task_count=sum(counts.values()),
        created_at=to_iso(board.created_at),
        updated_at=to_iso(board.updated_at),
    )


# ============================================================
# BOARD ENDPOINTS
# ============================================================

@router.get("", response_model=List[BoardOut])
async def list_boards(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = (
        select(Board)
        .where(Board.owner_id == user.id, Board.deleted_at.is_(None))
        .order_by(Board.is_default.desc(), Board.created_at.asc())
    )
    boards = (await db.execute(stmt)).scalars().all()
    return [await _board_to_out(db, b) for b in boards]


@router.get("/default", response_model=BoardOut)
async def get_default_board(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Return the user's default board, creating it with the standard columns on first use"""
    stmt = (
        select(Board)
        .where(Board.owner_id == user.id, Board.deleted_at.is_(None))
        .order_by(Board.is_default.desc(), Board.created_at.asc())
        .limit(1)
    )
    board = (await db.execute(stmt)).scalar_one_or_none()
    if board is None:
        board = Board(owner_id=user.id, title=DEFAULT_BOARD_TITLE, is_default=True)
        db.add(board)
        await db.flush()
        _add_default_columns(db, board)
        await db.commit()
        await db.refresh(board)
        logger.info(f"Created default board {board.id[:8]} for {user.id[:8]}")
    return await _board_to_out(db, board)


@router.post("", response_model=BoardOut, status_code=201)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board = Board(owner_id=user.id, title=data.title, description=data.description, is_default=False)
    db.add(board)
    await db.flush()
    if data.use_default_columns:
        _add_default_columns(db, board)
    await db.commit()
    await db.refresh(board)
    return await _board_to_out(db, board)


@router.get("/{board_id}", response_model=BoardOut)
async def get_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board = await access.get_board(board_id, user.id, db)
    return await _board_to_out(db, board)


@router.patch("/{board_id}", response_model=BoardOut)
async def update_board(
    board_id: str,
    data: BoardUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board = await access.get_board(board_id, user.id, db)
    if data.title is not None:
        board.title = data.title
    if data.description is not None:
        board.description = data.description
    if data.background is not None:
        board.background = data.background or None
    await db.commit()
    await db.refresh(board)
    await publish_board_event(board.id, "board.updated", {"title": board.title}, user.id)
    return await _board_to_out(db, board)


@router.delete("/{board_id}")
async def delete_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-delete a board"""
    board = await access.get_board(board_id, user.id, db)
    board.deleted_at = utcnow()
    await db.commit()
    return {"status": "deleted", "board_id": board_id}


# ============================================================
# COLUMN ENDPOINTS
# ============================================================

@router.post("/{board_id}/columns", response_model=ColumnOut, status_code=201)
async def create_column(
    board_id: str,
    data: ColumnCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(board_id, user.id, db)

    if data.position is None:
        max_stmt = select(func.max(BoardColumn.position)).where(BoardColumn.board_id == board_id)
        current_max = (await db.execute(max_stmt)).scalar()
        position = 0 if current_max is None else current_max + 1
    else:
        position = data.position
        # Shift columns at or after the insert point
        await db.execute(
            update(BoardColumn)
            .where(BoardColumn.board_id == board_id, BoardColumn.position >= position)
            .values(position=BoardColumn.position + 1)
        )

    col = BoardColumn(
        board_id=board_id, title=data.title, color=data.color,
        position=position, wip_limit=data.wip_limit,
    )
    db.add(col)
    await db.commit()
    await db.refresh(col)
    await publish_board_event(board_id, "column.created", {"column_id": col.id}, user.id)
    return _column_out(col)


@router.patch("/{board_id}/columns/{column_id}", response_model=ColumnOut)
async def update_column(
    board_id: str,
    column_id: str,
    data: ColumnUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(board_id, user.id, db)
    col = await access.get_column(board_id, column_id, db)

    if data.title is not None:
        col.title = data.title
    if data.color is not None:
        col.color = data.color
    if data.position is not None:
        col.position = data.position
    if data.wip_limit is not None:
        col.wip_limit = data.wip_limit or None

    await db.commit()
    await db.refresh(col)
    counts = await _column_counts(db, board_id)
    await publish_board_event(board_id, "column.updated", {"column_id": col.id}, user.id)
    return _column_out(col, counts.get(col.id, 0))


@router.delete("/{board_id}/columns/{column_id}")
async def delete_column(
    board_id: str,
    column_id: str,
    move_tasks_to: Optional[str] = Query(None, description="Column that receives the deleted column's tasks"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await access.get_board(board_id, user.id, db)
    col = await access.get_column(board_id, column_id, db)

    count_stmt = select(func.count(Task.id)).where(Task.column_id == column_id, Task.deleted_at.is_(None))
    task_count = (await db.execute(count_stmt)).scalar() or 0

    moved = 0
    if task_count:
        if not move_tasks_to:
            raise HTTPException(
                status_code=409,
                detail=f"Column '{col.title}' still has {task_count} task(s); pass move_tasks_to",
            )
        if move_tasks_to == column_id:
            raise HTTPException(status_code=400, detail="Cannot move tasks into the column being deleted")
        target = await access.get_column(board_id, move_tasks_to, db)
        result = await db.execute(
            update(Task).where(Task.column_id == column_id).values(column_id=target.id)
        )
        moved = result.rowcount or 0

    await db.delete(col)
    await db.commit()
    await publish_board_event(board_id, "column.deleted", {"column_id": column_id, "moved": moved}, user.id)
    return {"status": "deleted", "column_id": column_id, "moved_tasks": moved}


# ============================================================
# EXPORT / IMPORT
# ============================================================

async def _export_rows(db: AsyncSession, board: Board, user: CurrentUser) -> List[dict]:
    stmt = select(Task).where(Task.board_id == board.id, Task.deleted_at.is_(None)).order_by(Task.position)
    tasks = (await db.execute(stmt)).scalars().all()
    outs = await tasks_to_out(db, tasks, user.id)

    project_ids = {t.project_id for t in outs if t.project_id}
    names = {}
    if project_ids:
        names = dict((await db.execute(
            select(Project.id, Project.name).where(Project.id.in_(project_ids))
        )).all())

    rows = []
    for out in outs:
        row = out.model_dump()
        row["project_name"] = names.get(out.project_id)
        rows.append(row)
    return rows


@router.get("/{board_id}/export")
async def export_board(
    board_id: str,
    format: str = Query("json", pattern="^(json|csv)$"),
    include_archived: bool = False,
    column_id: Optional[str] = None,
    project_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Download the board as JSON or CSV"""
    board = await access.get_board(board_id, user.id, db)
    options = ExportOptions(
        format=format, include_archived=include_archived, column_id=column_id,
        project_id=project_id, date_from=date_from, date_to=date_to,
    )
    cols = await _columns(db, board.id)
    col_dicts = [{"id": c.id, "title": c.title, "color": c.color, "wip_limit": c.wip_limit} for c in cols]
    rows = await _export_rows(db, board, user)

    if options.format == "csv":
        body = export_to_csv(col_dicts, rows, options)
        media_type = "text/csv"
    else:
        body = export_to_json(
            {"id": board.id, "title": board.title, "description": board.description},
            col_dicts, rows, options,
        )
        media_type = "application/json"

    column_title = next((c.title for c in cols if c.id == column_id), None)
    filename = export_filename(options, column_title)
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{board_id}/import")
async def import_board(
    board_id: str,
    data: ImportRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create tasks from an export file, a Trello export, or a CSV with a title column"""
    board = await access.get_board(board_id, user.id, db)
    parsed = parse_import_data(data.content)
    if not parsed or not parsed.get("tasks"):
        raise HTTPException(status_code=400, detail="Unrecognised import format")

    cols = await _columns(db, board.id)
    by_title = {c.title.strip().lower(): c.id for c in cols}
    by_id = {c.id for c in cols}
    # Exports carry their own column ids; map them back through the exported titles
    source_titles = {
        c["id"]: c.get("title") for c in parsed.get("columns") or [] if isinstance(c, dict) and isinstance(c.get("id"), str)
    }
    imported, skipped = 0, []

    for item in parsed["tasks"]:
        title = str(item.get("title") or "").strip()
        if not title:
            continue
        source_id = item.get("column_id") if isinstance(item.get("column_id"), str) else None
        column_id = source_id if source_id in by_id else None
        column_title = item.get("column_title") or source_titles.get(source_id)
        if column_id is None and column_title:
            column_id = by_title.get(str(column_title).strip().lower())
        priority = str(item.get("priority") or "medium").lower()
        tags = item.get("tags") if isinstance(item.get("tags"), list) else []
        try:
            payload = TaskSave(
                title=title[:500],
                description=item.get("description") or None,
                priority=priority if priority in ("low", "medium", "high") else "medium",
                due_date=item.get("due_date") or None,
                column_id=column_id,
                tags=[t for t in tags if isinstance(t, str)],
            )
        except ValidationError as e:
            skipped.append({"title": title, "step": "task", "detail": e.errors()[0]["msg"]})
            continue
        try:
            await save_task(db, user, board, payload)
        except TaskSaveError as e:
            skipped.append({"title": title, "step": e.step, "detail": e.message})
            # The failed row rolled the session back, which expires the board
            board = await access.get_board(board_id, user.id, db)
            continue
        imported += 1

    logger.info(f"Imported {imported} task(s) into board {board_id[:8]}, skipped {len(skipped)}")
    if imported:
        await publish_board_event(board_id, "board.imported", {"imported": imported}, user.id)
    return {"imported": imported, "skipped": skipped}
