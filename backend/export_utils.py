# export_utils.py — Board export (JSON/CSV) and import parsing
import io
import csv
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

EXPORT_VERSION = "2.0"

CSV_HEADERS = [
    "Title",
    "Description",
    "Priority",
    "Status",
    "Due Date",
    "Project",
    "Labels",
    "Tags",
    "Subtasks Completed",
    "Created At",
    "Is Archived",
]


class ExportOptions(BaseModel):
    format: Literal["json", "csv"] = "json"
    include_archived: bool = False
    column_id: Optional[str] = None
    project_id: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None


def filter_tasks(tasks: List[Dict[str, Any]], options: ExportOptions) -> List[Dict[str, Any]]:
    """Tasks are plain dicts with ISO ``created_at`` strings"""
    out = tasks
    if not options.include_archived:
        out = [t for t in out if not t.get("is_archived")]
    if options.column_id:
        out = [t for t in out if t.get("column_id") == options.column_id]
    if options.project_id:
        out = [t for t in out if t.get("project_id") == options.project_id]
    if options.date_from:
        out = [t for t in out if (t.get("created_at") or "") >= options.date_from]
    if options.date_to:
        out = [t for t in out if (t.get("created_at") or "") <= options.date_to]
    return out


def _date_only(value: Optional[str]) -> str:
    if not value:
        return ""
    return str(value)[:10]


def export_to_json(board: Dict[str, Any], columns: List[Dict[str, Any]], tasks: List[Dict[str, Any]],
                   options: ExportOptions) -> str:
    data = {
        "board": {
            "id": board["id"],
            "title": board["title"],
            "description": board.get("description"),
        },
        "columns": [
            {"id": c["id"], "title": c["title"], "color": c.get("color"), "wip_limit": c.get("wip_limit")}
            for c in columns
        ],
        "tasks": [
            {
                "id": t["id"],
                "title": t["title"],
                "description": t.get("description"),
                "priority": t.get("priority"),
                "due_date": t.get("due_date"),
                "column_id": t.get("column_id"),
                "is_archived": bool(t.get("is_archived")),
                "tags": list(t.get("tags") or []),
                "labels": [label["name"] for label in t.get("labels") or []],
                "project": t.get("project_name"),
                "subtasks": [
                    {"title": s["title"], "is_completed": bool(s.get("is_completed"))}
                    for s in t.get("subtasks") or []
                ],
                "created_at": t.get("created_at"),
            }
            for t in filter_tasks(tasks, options)
        ],
        "exportedAt": datetime.now(timezone.utc).isoformat(),
        "version": EXPORT_VERSION,
    }
    return json.dumps(data, indent=2)


def export_to_csv(columns: List[Dict[str, Any]], tasks: List[Dict[str, Any]], options: ExportOptions) -> str:
    titles = {c["id"]: c["title"] for c in columns}
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for t in filter_tasks(tasks, options):
        subtasks = t.get("subtasks") or []
        done = sum(1 for s in subtasks if s.get("is_completed"))
        writer.writerow([
            t["title"],
            t.get("description") or "",
            t.get("priority") or "",
            titles.get(t.get("column_id"), "Unknown"),
            _date_only(t.get("due_date")),
            t.get("project_name") or "",
            "; ".join(label["name"] for label in t.get("labels") or []),
            "; ".join(t.get("tags") or []),
            f"{done}/{len(subtasks)}",
            _date_only(t.get("created_at")),
            "Yes" if t.get("is_archived") else "No",
        ])
    return buf.getvalue().rstrip("\n")


def export_filename(options: ExportOptions, column_title: Optional[str] = None) -> str:
    date = datetime.now(timezone.utc).date().isoformat()
    suffix = f"-{column_title or 'filtered'}" if options.column_id else ""
    return f"kanban-export{suffix}-{date}.{options.format}"


# ============================================================
# IMPORT
# ============================================================

def _parse_csv(content: str) -> Optional[Dict[str, Any]]:
    reader = csv.reader(io.StringIO(content))
    rows = [r for r in reader if r]
    if not rows:
        return None
    headers = [h.strip().lower() for h in rows[0]]
    if not any("title" in h for h in headers):
        return None

    tasks = []
    for values in rows[1:]:
        task: Dict[str, Any] = {}
        for i, h in enumerate(headers):
            value = values[i] if i < len(values) else ""
            if "title" in h or "name" in h:
                task["title"] = value
            elif "description" in h or "desc" in h:
                task["description"] = value
            elif "priority" in h:
                task["priority"] = value.lower() or "medium"
            elif "status" in h or "column" in h:
                task["column_title"] = value
            elif "due" in h:
                task["due_date"] = value
        if task.get("title"):
            tasks.append(task)
    return {"tasks": tasks}


def _dicts(items: Any) -> List[Dict[str, Any]]:
    return [i for i in items if isinstance(i, dict)] if isinstance(items, list) else []


def _list_name(card: Dict[str, Any]) -> Optional[str]:
    lst = card.get("list")
    return lst.get("name") if isinstance(lst, dict) else None


def parse_import_data(content: str) -> Optional[Dict[str, Any]]:
    """Recognise our own JSON export, a Trello board export, or a CSV with a title column.

    Returns {"tasks": [...], "columns": [...]} or None when nothing matches.
    """
    try:
        data = json.loads(content)
    except ValueError:
        if "," in content and "\n" in content:
            return _parse_csv(content)
        return None

    if not isinstance(data, dict):
        return None
    if isinstance(data.get("tasks"), list):
        return {"tasks": _dicts(data["tasks"]), "columns": data.get("columns")}
    if isinstance(data.get("cards"), list):
        lists = {lst.get("id"): lst.get("name") for lst in _dicts(data.get("lists"))}
        return {
            "tasks": [
                {
                    "title": card.get("name"),
                    "description": card.get("desc"),
                    "due_date": card.get("due"),
                    "labels": [label.get("name") for label in _dicts(card.get("labels"))],
                    "column_title": _list_name(card) or lists.get(card.get("idList")) or "To Do",
                }
                for card in _dicts(data["cards"])
                if card.get("name")
            ]
        }
    return None
