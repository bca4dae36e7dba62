# tests/test_automation.py — Automation rules
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers, create_board, column_id


async def _rule(client: AsyncClient, headers: dict, board: dict) -> dict:
    res = await client.post("/api/v1/automation/rules", json={
        "board_id": board["id"],
        "name": "Auto-complete",
        "trigger_type": "task_moved",
        "trigger_config": {"to_column": column_id(board, "Done")},
        "action_type": "set_priority",
        "action_config": {"priority": "low"},
    }, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


@pytest.mark.asyncio
class TestAutomationRules:
    async def test_create_and_list(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        rule = await _rule(client, headers, board)
        assert rule["is_active"] is True
        assert rule["created_by"] == test_user.id

        rules = (await client.get(f"/api/v1/automation/rules?board_id={board['id']}", headers=headers)).json()
        assert [r["id"] for r in rules] == [rule["id"]]

    async def test_unknown_trigger_rejected(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        res = await client.post("/api/v1/automation/rules", json={
            "board_id": board["id"], "name": "Bad",
            "trigger_type": "moon_phase", "action_type": "set_priority",
        }, headers=headers)
        assert res.status_code == 422

    async def test_toggle_round_trip(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        rule = await _rule(client, headers, board)

        off = (await client.post(f"/api/v1/automation/rules/{rule['id']}/toggle", headers=headers)).json()
        assert off["is_active"] is False
        assert off["action_config"] == {"priority": "low"}
        on = (await client.post(f"/api/v1/automation/rules/{rule['id']}/toggle", headers=headers)).json()
        assert on["is_active"] is True

    async def test_update_and_delete(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        rule = await _rule(client, headers, board)

        res = await client.patch(f"/api/v1/automation/rules/{rule['id']}", json={
            "name": "Renamed", "action_type": "send_notification", "action_config": {"message": "Done!"},
        }, headers=headers)
        assert res.json()["name"] == "Renamed"
        assert res.json()["action_type"] == "send_notification"
        assert res.json()["trigger_type"] == "task_moved"

        assert (await client.delete(f"/api/v1/automation/rules/{rule['id']}", headers=headers)).status_code == 200
        assert (await client.get(f"/api/v1/automation/rules/{rule['id']}", headers=headers)).status_code == 404

    async def test_rules_follow_board_ownership(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        rule = await _rule(client, headers, board)
        res = await client.get(f"/api/v1/automation/rules/{rule['id']}", headers=get_auth_headers(other_user))
        assert res.status_code == 404
