# tests/test_custom_fields.py — Custom field definitions, templates and values
import pytest
from httpx import AsyncClient

from models import CustomField, CustomFieldType
from task_service import validate_field_value
from tests.conftest import get_auth_headers, create_board


def _field(field_type: CustomFieldType, options=None, name="Field") -> CustomField:
    return CustomField(name=name, field_type=field_type, options=options or [])


class TestFieldValidation:
    def test_number_accepts_numeric_strings(self):
        assert validate_field_value(_field(CustomFieldType.NUMBER), "4") == 4
        assert validate_field_value(_field(CustomFieldType.NUMBER), 2.5) == 2.5

    def test_number_rejects_bool_and_text(self):
        with pytest.raises(ValueError):
            validate_field_value(_field(CustomFieldType.NUMBER), True)
        with pytest.raises(ValueError):
            validate_field_value(_field(CustomFieldType.NUMBER), "four")

    def test_date_normalises(self):
        assert validate_field_value(_field(CustomFieldType.DATE), "2030-02-03T10:00:00Z") == "2030-02-03"

    def test_url_requires_http(self):
        assert validate_field_value(_field(CustomFieldType.URL), "https://example.com/doc")
        with pytest.raises(ValueError):
            validate_field_value(_field(CustomFieldType.URL), "ftp://example.com")

    def test_select_and_multiselect(self):
        options = [{"value": "paid", "label": "Paid"}, {"value": "unpaid", "label": "Unpaid"}]
        assert validate_field_value(_field(CustomFieldType.SELECT, options), "paid") == "paid"
        with pytest.raises(ValueError):
            validate_field_value(_field(CustomFieldType.SELECT, options), "maybe")
        multi = _field(CustomFieldType.MULTISELECT, options)
        assert validate_field_value(multi, ["paid", "paid", "unpaid"]) == ["paid", "unpaid"]

    def test_checkbox_needs_bool(self):
        with pytest.raises(ValueError):
            validate_field_value(_field(CustomFieldType.CHECKBOX), "yes")


@pytest.mark.asyncio
class TestFieldEndpoints:
    async def test_templates(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/custom-fields/templates")
        assert res.status_code == 200
        names = [t["name"] for t in res.json()]
        assert "Payment Status" in names
        assert len(names) == 8

    async def test_from_template_and_duplicate(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        url = f"/api/v1/boards/{board['id']}/custom-fields/from-template"

        res = await client.post(url, json={"name": "payment status"}, headers=headers)
        assert res.status_code == 201
        assert res.json()["field_type"] == "select"
        assert len(res.json()["options"]) == 3

        assert (await client.post(url, json={"name": "Payment Status"}, headers=headers)).status_code == 409
        assert (await client.post(url, json={"name": "Horoscope"}, headers=headers)).status_code == 404

    async def test_select_without_options_rejected(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        res = await client.post(f"/api/v1/boards/{board['id']}/custom-fields", json={
            "name": "Stage", "field_type": "select",
        }, headers=headers)
        assert res.status_code == 422

    async def test_option_value_defaults_to_slug(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        res = await client.post(f"/api/v1/boards/{board['id']}/custom-fields", json={
            "name": "Stage", "field_type": "select", "options": [{"label": "In Review"}],
        }, headers=headers)
        assert res.json()["options"] == [{"label": "In Review", "value": "in-review"}]

    async def test_task_values(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        hours = (await client.post(f"/api/v1/boards/{board['id']}/custom-fields", json={
            "name": "Hours", "field_type": "number",
        }, headers=headers)).json()
        task = (await client.post(f"/api/v1/boards/{board['id']}/tasks", json={
            "title": "Estimate me", "custom_fields": {hours["id"]: "3"},
        }, headers=headers)).json()
        assert task["custom_fields"] == {hours["id"]: 3}

        res = await client.put(f"/api/v1/tasks/{task['id']}/custom-fields", json={
            "values": {hours["id"]: "lots"},
        }, headers=headers)
        assert res.status_code == 422
        assert res.json()["step"] == "custom_fields"

        res = await client.put(f"/api/v1/tasks/{task['id']}/custom-fields", json={
            "values": {hours["id"]: None},
        }, headers=headers)
        assert res.json()["values"] == {}

        values = (await client.get(f"/api/v1/tasks/{task['id']}/custom-fields", headers=headers)).json()
        assert values[0]["name"] == "Hours"
        assert values[0]["value"] is None

    async def test_required_field_blocks_save(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        await client.post(f"/api/v1/boards/{board['id']}/custom-fields", json={
            "name": "Client", "field_type": "text", "is_required": True,
        }, headers=headers)
        res = await client.post(f"/api/v1/boards/{board['id']}/tasks", json={"title": "No client"}, headers=headers)
        assert res.status_code == 422
        assert res.json()["step"] == "custom_fields"

    async def test_delete_field(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        board = await create_board(client, headers)
        field = (await client.post(f"/api/v1/boards/{board['id']}/custom-fields", json={
            "name": "Temp", "field_type": "checkbox",
        }, headers=headers)).json()
        assert (await client.delete(f"/api/v1/custom-fields/{field['id']}", headers=headers)).status_code == 200
        assert (await client.get(f"/api/v1/boards/{board['id']}/custom-fields", headers=headers)).json() == []
