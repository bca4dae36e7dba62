# tests/test_dashboard.py — Dashboard, board stats, workload and calendar
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers, create_board, column_id


def _day(offset: int) -> str:
    return (datetime.now(timezone.utc).date() + timedelta(days=offset)).isoformat()


async def _seed(client: AsyncClient, headers: dict) -> dict:
    """Three tasks: due today, finished yesterday, and overdue in progress"""
    board = await create_board(client, headers)
    url = f"/api/v1/boards/{board['id']}/tasks"
    await client.post(url, json={"title": "Today", "priority": "high", "due_date": _day(0)}, headers=headers)
    done = (await client.post(url, json={"title": "Shipped", "priority": "low", "due_date": _day(-1)}, headers=headers)).json()
    await client.post(f"/api/v1/tasks/{done['id']}/move", json={"column_id": column_id(board, "Done")}, headers=headers)
    await client.post(url, json={
        "title": "Late", "due_date": _day(-3), "column_id": column_id(board, "In Progress"),
    }, headers=headers)
    return board


@pytest.mark.asyncio
class TestDashboard:
    async def test_empty(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/dashboard", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["total_tasks"] == 0
        assert res.json()["completion_rate"] == 0

    async def test_counts(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        await _seed(client, headers)
        data = (await client.get("/api/v1/dashboard", headers=headers)).json()

        assert data["total_tasks"] == 3
        assert data["by_column"] == {"To Do": 1, "Done": 1, "In Progress": 1}
        assert data["by_priority"] == {"low": 1, "medium": 1, "high": 1}
        assert data["done"] == 1
        assert data["completion_rate"] == 33
        assert [t["title"] for t in data["due_today"]] == ["Today"]
        assert [t["title"] for t in data["overdue"]] == ["Late"]
        assert [t["title"] for t in data["upcoming"]] == ["Late", "Today"]

    async def test_board_stats(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await _seed(client, headers)
        stats = (await client.get(f"/api/v1/boards/{board['id']}/stats", headers=headers)).json()
        assert stats["total_tasks"] == 3
        assert stats["completed_tasks"] == 1
        # Midnight today is already past
        assert stats["overdue_tasks"] == 2
        assert stats["by_column"]["Review"] == 0

    async def test_other_users_board_is_hidden(self, client: AsyncClient, test_user, other_user):
        board = await create_board(client, get_auth_headers(test_user))
        res = await client.get(f"/api/v1/boards/{board['id']}/stats", headers=get_auth_headers(other_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestReports:
    async def test_workload(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        project = (await client.post("/api/v1/projects", json={"name": "Apollo"}, headers=headers)).json()
        await client.post(f"/api/v1/projects/{project['id']}/members", json={"user_id": other_user.id}, headers=headers)
        for i in range(6):
            res = await client.post(f"/api/v1/boards/{board['id']}/tasks", json={
                "title": f"Job {i}", "project_id": project["id"], "assignee_ids": [other_user.id],
            }, headers=headers)
            assert res.status_code == 201

        data = (await client.get("/api/v1/reports/workload", headers=headers)).json()
        member = data["members"][0]
        assert member["id"] == other_user.id
        assert member["total_tasks"] == 6
        assert member["capacity"] == 100
        assert member["status"] == "overloaded"
        assert data["summary"]["overloaded"] == 1

    async def test_calendar(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        await _seed(client, headers)
        today = datetime.now(timezone.utc).date()
        data = (await client.get(
            f"/api/v1/calendar?year={today.year}&month={today.month}", headers=headers,
        )).json()
        assert [t["title"] for t in data["days"][today.isoformat()]] == ["Today"]

    async def test_calendar_rejects_bad_month(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/calendar?month=13", headers=get_auth_headers(test_user))
        assert res.status_code == 422
