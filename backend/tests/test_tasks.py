# tests/test_tasks.py — Task lifecycle, comments, history and stars
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers, create_board, column_id


async def _task(client: AsyncClient, headers: dict, board: dict, **fields) -> dict:
    res = await client.post(f"/api/v1/boards/{board['id']}/tasks", json={"title": "Task", **fields}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


@pytest.mark.asyncio
class TestTaskCrud:
    async def test_title_only_create_gets_defaults(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board, title="Just a title")
        assert task["priority"] == "medium"
        assert task["column_title"] == "To Do"
        assert task["due_date"] is None
        assert task["due_state"] == ""
        assert task["tags"] == []
        assert task["is_archived"] is False

    async def test_create_with_collections(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(
            client, headers, board,
            title="Ship it",
            priority="high",
            due_date="2030-01-15T12:00:00Z",
            tags=["Backend", " backend ", "API"],
            subtasks=[{"title": "Write"}, {"title": "Review", "is_completed": True}],
            attachments=[{"file_name": "brief.pdf", "file_url": "https://files.example.com/brief.pdf"}],
        )
        assert task["priority"] == "high"
        assert sorted(task["tags"]) == ["api", "backend"]
        assert [s["title"] for s in task["subtasks"]] == ["Write", "Review"]
        assert task["attachments"][0]["file_name"] == "brief.pdf"
        assert task["due_date"].startswith("2030-01-15")

    async def test_list_filters(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        await _task(client, headers, board, title="Fix login bug", priority="high")
        await _task(client, headers, board, title="Write docs", priority="low")

        res = await client.get(f"/api/v1/boards/{board['id']}/tasks?priority=high", headers=headers)
        assert [t["title"] for t in res.json()] == ["Fix login bug"]
        res = await client.get(f"/api/v1/boards/{board['id']}/tasks?search=docs", headers=headers)
        assert [t["title"] for t in res.json()] == ["Write docs"]

    async def test_quick_edit(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board, due_date="2030-01-01")

        res = await client.patch(f"/api/v1/tasks/{task['id']}", json={
            "title": "Renamed", "priority": "low", "clear_due_date": True,
        }, headers=headers)
        assert res.status_code == 200
        body = res.json()
        assert body["title"] == "Renamed"
        assert body["priority"] == "low"
        assert body["due_date"] is None

        res = await client.patch(f"/api/v1/tasks/{task['id']}", json={"due_date": "someday"}, headers=headers)
        assert res.status_code == 400

    async def test_soft_delete_and_restore(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board, column_id=column_id(board, "Review"))

        assert (await client.delete(f"/api/v1/tasks/{task['id']}", headers=headers)).status_code == 200
        assert (await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)).status_code == 404

        res = await client.post(f"/api/v1/tasks/{task['id']}/restore", headers=headers)
        assert res.status_code == 200
        assert res.json()["column_title"] == "To Do"

    async def test_outsider_cannot_see_task(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board)
        res = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(other_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestMoveAndArchive:
    async def test_move_stamps_progress_times(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board)

        res = await client.post(f"/api/v1/tasks/{task['id']}/move", json={
            "column_id": column_id(board, "In Progress"),
        }, headers=headers)
        assert res.json()["started_at"] is not None
        assert res.json()["completed_at"] is None

        res = await client.post(f"/api/v1/tasks/{task['id']}/move", json={
            "column_id": column_id(board, "Done"),
        }, headers=headers)
        assert res.json()["column_title"] == "Done"
        assert res.json()["completed_at"] is not None

        history = (await client.get(f"/api/v1/tasks/{task['id']}/history", headers=headers)).json()
        assert [h["action"] for h in history].count("moved") == 2

    async def test_wip_limit_blocks_move(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        review = column_id(board, "Review")
        await client.patch(f"/api/v1/boards/{board['id']}/columns/{review}", json={"wip_limit": 1}, headers=headers)
        first = await _task(client, headers, board, title="First")
        second = await _task(client, headers, board, title="Second")

        res = await client.post(f"/api/v1/tasks/{first['id']}/move", json={"column_id": review}, headers=headers)
        assert res.status_code == 200
        res = await client.post(f"/api/v1/tasks/{second['id']}/move", json={"column_id": review}, headers=headers)
        assert res.status_code == 409
        # Re-dropping into the current column is not a new arrival
        res = await client.post(f"/api/v1/tasks/{first['id']}/move", json={"column_id": review}, headers=headers)
        assert res.status_code == 200

    async def test_archive_moves_to_archive_column(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board)

        res = await client.post(f"/api/v1/tasks/{task['id']}/archive", headers=headers)
        assert res.json()["is_archived"] is True
        assert res.json()["column_title"] == "Archive"

        active = (await client.get(f"/api/v1/boards/{board['id']}/tasks", headers=headers)).json()
        assert active == []
        everything = (await client.get(
            f"/api/v1/boards/{board['id']}/tasks?include_archived=true", headers=headers,
        )).json()
        assert len(everything) == 1

        res = await client.post(f"/api/v1/tasks/{task['id']}/restore", headers=headers)
        assert res.json()["is_archived"] is False
        assert res.json()["column_title"] == "To Do"

    async def test_moving_out_of_archive_unarchives(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board)
        await client.post(f"/api/v1/tasks/{task['id']}/archive", headers=headers)

        res = await client.post(f"/api/v1/tasks/{task['id']}/move", json={
            "column_id": column_id(board, "To Do"),
        }, headers=headers)
        assert res.status_code == 200
        assert res.json()["is_archived"] is False

        active = (await client.get(f"/api/v1/boards/{board['id']}/tasks", headers=headers)).json()
        assert [t["id"] for t in active] == [task["id"]]

        res = await client.post(f"/api/v1/tasks/{task['id']}/move", json={
            "column_id": column_id(board, "Archive"),
        }, headers=headers)
        assert res.json()["is_archived"] is True

    async def test_toggle_subtask(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board, subtasks=[{"title": "Step one"}])
        sub_id = task["subtasks"][0]["id"]
        res = await client.post(f"/api/v1/tasks/{task['id']}/subtasks/{sub_id}/toggle", headers=headers)
        assert res.json()["is_completed"] is True


@pytest.mark.asyncio
class TestCommentsAndStars:
    async def test_comment_flow(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board)

        res = await client.post(f"/api/v1/tasks/{task['id']}/comments", json={"content": "Looks good"}, headers=headers)
        assert res.status_code == 201
        comment = res.json()
        assert comment["author_name"] == "Test User"

        res = await client.patch(
            f"/api/v1/tasks/{task['id']}/comments/{comment['id']}", json={"content": "Edited"}, headers=headers,
        )
        assert res.json()["edited_at"] is not None

        detail = (await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)).json()
        assert detail["comment_count"] == 1
        assert detail["comments"][0]["content"] == "Edited"

        res = await client.delete(f"/api/v1/tasks/{task['id']}/comments/{comment['id']}", headers=headers)
        assert res.status_code == 200
        assert (await client.get(f"/api/v1/tasks/{task['id']}/comments", headers=headers)).json() == []

    async def test_star_toggles(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        task = await _task(client, headers, board)

        res = await client.post(f"/api/v1/tasks/{task['id']}/star", headers=headers)
        assert res.json()["starred"] is True
        starred = (await client.get("/api/v1/starred", headers=headers)).json()
        assert [t["id"] for t in starred] == [task["id"]]
        assert starred[0]["is_starred"] is True

        res = await client.post(f"/api/v1/tasks/{task['id']}/star", headers=headers)
        assert res.json()["starred"] is False
        assert (await client.get("/api/v1/starred", headers=headers)).json() == []
