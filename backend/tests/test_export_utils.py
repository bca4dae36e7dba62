# tests/test_export_utils.py — Export formatting and import parsing
import json

from export_utils import (
    CSV_HEADERS, EXPORT_VERSION, ExportOptions,
    export_filename, export_to_csv, export_to_json, filter_tasks, parse_import_data,
)

COLUMNS = [
    {"id": "c1", "title": "To Do", "color": "#64748b", "wip_limit": None},
    {"id": "c2", "title": "Done", "color": "#22c55e", "wip_limit": None},
]

TASKS = [
    {
        "id": "t1", "title": "Write report", "description": "Quarterly", "priority": "high",
        "column_id": "c1", "due_date": "2025-10-25T00:00:00+00:00", "created_at": "2025-10-01T09:00:00+00:00",
        "tags": ["work"], "labels": [{"name": "Finance"}],
        "subtasks": [{"title": "Draft", "is_completed": True}, {"title": "Review", "is_completed": False}],
        "project_id": "p1", "project_name": "Ops", "is_archived": False,
    },
    {
        "id": "t2", "title": "Old chore", "priority": "low", "column_id": "c2",
        "created_at": "2025-09-01T09:00:00+00:00", "is_archived": True,
    },
]


class TestFilter:
    def test_archived_excluded_by_default(self):
        assert [t["id"] for t in filter_tasks(TASKS, ExportOptions())] == ["t1"]
        assert len(filter_tasks(TASKS, ExportOptions(include_archived=True))) == 2

    def test_date_range_and_project(self):
        opts = ExportOptions(include_archived=True, date_from="2025-09-15")
        assert [t["id"] for t in filter_tasks(TASKS, opts)] == ["t1"]
        opts = ExportOptions(include_archived=True, project_id="p1")
        assert [t["id"] for t in filter_tasks(TASKS, opts)] == ["t1"]


class TestExport:
    def test_json(self):
        board = {"id": "b1", "title": "Home", "description": None}
        data = json.loads(export_to_json(board, COLUMNS, TASKS, ExportOptions()))
        assert data["version"] == EXPORT_VERSION
        assert data["board"]["title"] == "Home"
        task = data["tasks"][0]
        assert task["labels"] == ["Finance"]
        assert task["project"] == "Ops"
        assert len(data["tasks"]) == 1

    def test_csv(self):
        lines = export_to_csv(COLUMNS, TASKS, ExportOptions(include_archived=True)).split("\n")
        assert lines[0] == ",".join(CSV_HEADERS)
        assert lines[1].startswith("Write report,Quarterly,high,To Do,2025-10-25,Ops,Finance,work,1/2,2025-10-01,No")
        assert lines[2].endswith(",Yes")

    def test_filename(self):
        assert export_filename(ExportOptions()).startswith("kanban-export-")
        name = export_filename(ExportOptions(format="csv", column_id="c1"), "To Do")
        assert name.startswith("kanban-export-To Do-")
        assert name.endswith(".csv")


class TestImport:
    def test_own_export(self):
        parsed = parse_import_data(json.dumps({"tasks": [{"title": "A"}], "columns": COLUMNS}))
        assert parsed["tasks"] == [{"title": "A"}]
        assert parsed["columns"] == COLUMNS

    def test_trello(self):
        payload = {
            "lists": [{"id": "l1", "name": "Doing"}],
            "cards": [
                {"name": "Card one", "desc": "d", "idList": "l1", "labels": [{"name": "Bug"}]},
                {"name": "Card two", "list": {"name": "Backlog"}},
                {"desc": "nameless"},
            ],
        }
        tasks = parse_import_data(json.dumps(payload))["tasks"]
        assert [t["column_title"] for t in tasks] == ["Doing", "Backlog"]
        assert tasks[0]["labels"] == ["Bug"]

    def test_csv(self):
        content = "Title,Description,Priority,Status,Due Date\nShip it,,HIGH,Done,2025-11-01\n,skip,,,\n"
        tasks = parse_import_data(content)["tasks"]
        assert tasks == [{
            "title": "Ship it", "description": "", "priority": "high",
            "column_title": "Done", "due_date": "2025-11-01",
        }]

    def test_non_object_rows_are_dropped(self):
        assert parse_import_data(json.dumps({"tasks": ["x", 1, None]}))["tasks"] == []
        payload = {
            "lists": ["l1"],
            "cards": ["junk", {"name": "Kept", "labels": ["Bug", {"name": "UI"}], "list": "Doing"}],
        }
        tasks = parse_import_data(json.dumps(payload))["tasks"]
        assert [t["title"] for t in tasks] == ["Kept"]
        assert tasks[0]["labels"] == ["UI"]
        assert tasks[0]["column_title"] == "To Do"

    def test_unrecognised(self):
        assert parse_import_data("just some words") is None
        assert parse_import_data("[1, 2, 3]") is None
        assert parse_import_data(json.dumps({"foo": "bar"})) is None
