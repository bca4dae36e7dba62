# tests/test_team.py — Team members and invitations
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


async def _invite(client: AsyncClient, headers: dict, **fields) -> dict:
    res = await client.post("/api/v1/invitations", json={"email": "other@kanban.dev", **fields}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


@pytest.mark.asyncio
class TestTeamMembers:
    async def test_member_crud(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/api/v1/team/members", json={
            "name": "Sam", "email": "sam@kanban.dev", "role": "viewer",
        }, headers=headers)
        assert res.status_code == 201
        member = res.json()
        assert member["status"] == "offline"
        assert member["role"] == "viewer"

        res = await client.patch(f"/api/v1/team/members/{member['id']}", json={"status": "away"}, headers=headers)
        assert res.json()["status"] == "away"

        res = await client.delete(f"/api/v1/team/members/{member['id']}", headers=headers)
        assert res.status_code == 200
        assert (await client.get("/api/v1/team/members", headers=headers)).json() == []

    async def test_duplicate_member_email(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        await client.post("/api/v1/team/members", json={"name": "Sam", "email": "sam@kanban.dev"}, headers=headers)
        res = await client.post("/api/v1/team/members", json={"name": "Sam", "email": "SAM@kanban.dev"}, headers=headers)
        assert res.status_code == 409

    async def test_existing_profile_is_linked(self, client: AsyncClient, test_user, other_user):
        res = await client.post("/api/v1/team/members", json={
            "name": "Other", "email": "other@kanban.dev",
        }, headers=get_auth_headers(test_user))
        assert res.json()["auth_user_id"] == other_user.id


@pytest.mark.asyncio
class TestInvitations:
    async def test_cannot_invite_self(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/invitations", json={
            "email": "testuser@kanban.dev",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 400

    async def test_duplicate_pending_invitation(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        await _invite(client, headers)
        res = await client.post("/api/v1/invitations", json={"email": "other@kanban.dev"}, headers=headers)
        assert res.status_code == 409

    async def test_invitee_is_notified_and_sees_pending(self, client: AsyncClient, test_user, other_user):
        await _invite(client, get_auth_headers(test_user))
        other = get_auth_headers(other_user)
        notes = (await client.get("/api/v1/notifications", headers=other)).json()
        assert notes[0]["title"] == "Team Invitation"

        pending = (await client.get("/api/v1/invitations/pending", headers=other)).json()
        assert len(pending) == 1
        assert pending[0]["inviter_name"] == "Test User"
        assert pending[0]["invitation_token"] is None

    async def test_public_lookup(self, client: AsyncClient, test_user, other_user):
        inv = await _invite(client, get_auth_headers(test_user))
        res = await client.get(f"/api/v1/invitations/lookup?token={inv['invitation_token']}")
        assert res.status_code == 200
        assert res.json()["email"] == "other@kanban.dev"

    async def test_accept_by_token_joins_team_and_project(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        project = (await client.post("/api/v1/projects", json={"name": "Apollo"}, headers=headers)).json()
        inv = await _invite(client, headers, project_id=project["id"], name="Other")

        other = get_auth_headers(other_user)
        res = await client.post(f"/api/v1/invitations/accept?token={inv['invitation_token']}", headers=other)
        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "accepted"
        assert body["joined_project"] is True

        members = (await client.get("/api/v1/team/members", headers=headers)).json()
        assert members[0]["auth_user_id"] == other_user.id
        assert members[0]["status"] == "online"
        assert (await client.get(f"/api/v1/projects/{project['id']}", headers=other)).status_code == 200

        owner_notes = (await client.get("/api/v1/notifications", headers=headers)).json()
        assert owner_notes[0]["title"] == "Invitation Accepted"

        # The lookup only covers pending invitations
        res = await client.get(f"/api/v1/invitations/lookup?token={inv['invitation_token']}")
        assert res.status_code == 404

    async def test_second_accept_conflicts(self, client: AsyncClient, test_user, other_user):
        inv = await _invite(client, get_auth_headers(test_user))
        other = get_auth_headers(other_user)
        first = await client.post(f"/api/v1/invitations/{inv['id']}/accept", headers=other)
        second = await client.post(f"/api/v1/invitations/{inv['id']}/accept", headers=other)
        assert first.status_code == 200
        assert second.status_code == 409

    async def test_owner_cannot_accept_own_invitation(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        inv = await _invite(client, headers)
        res = await client.post(f"/api/v1/invitations/accept?token={inv['invitation_token']}", headers=headers)
        assert res.status_code == 400

    async def test_accept_by_id_requires_matching_email(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        inv = await _invite(client, headers, email="someone@kanban.dev")
        res = await client.post(f"/api/v1/invitations/{inv['id']}/accept", headers=get_auth_headers(other_user))
        assert res.status_code == 404

    async def test_decline(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        inv = await _invite(client, headers)
        res = await client.post(f"/api/v1/invitations/{inv['id']}/decline", headers=get_auth_headers(other_user))
        assert res.json()["status"] == "declined"

        sent = (await client.get("/api/v1/invitations?status=declined", headers=headers)).json()
        assert [i["id"] for i in sent] == [inv["id"]]

    async def test_revoke(self, client: AsyncClient, test_user, other_user):
        headers = get_auth_headers(test_user)
        inv = await _invite(client, headers)
        assert (await client.delete(f"/api/v1/invitations/{inv['id']}", headers=headers)).status_code == 200
        assert (await client.get("/api/v1/invitations", headers=headers)).json() == []
