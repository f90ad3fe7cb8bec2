"""Tests for canvas endpoints and the write authorization chain."""

import pytest
from sqlalchemy.exc import IntegrityError

from agentplaybooks.canvas import parse_markdown_sections, sections_to_json
from agentplaybooks.persistence.models import CanvasRecord

from helpers import (
    CANVAS_KEY,
    EXPIRED_KEY,
    FOREIGN_KEY,
    MEMORY_KEY,
    OWNER_ID,
    PRIVATE_GUID,
    PRIVATE_ID,
    PUBLIC_GUID,
    STRANGER_ID,
    bearer,
    session_headers,
)

PLAN = "Overview text\n# Goals\nShip it\n## Risks\nNone yet"


def make_doc(playbook_id=PRIVATE_ID, slug="plan", content=PLAN):
    return CanvasRecord(
        id="doc-1",
        playbook_id=playbook_id,
        slug=slug,
        name="Plan",
        content=content,
        sections=sections_to_json(parse_markdown_sections(content)),
    )


@pytest.fixture
def echo_create(repo):
    async def create_canvas(doc):
        doc.id = "doc-new"
        return doc

    repo.create_canvas.side_effect = create_canvas
    return repo


class TestCanvasWriteAuthorization:
    url = f"/api/playbooks/{PRIVATE_GUID}/canvas"
    body = {"name": "Plan", "slug": "plan", "content": PLAN}

    def test_api_key_with_permission(self, client, echo_create):
        response = client.post(self.url, json=self.body, headers=bearer(CANVAS_KEY))

        assert response.status_code == 201
        data = response.json()
        assert data["slug"] == "plan"
        assert data["playbook_id"] == PRIVATE_ID
        assert [s["heading"] for s in data["sections"]] == ["Introduction", "Goals", "Risks"]
        echo_create.touch_api_key.assert_awaited_once_with("key-canvas")

    def test_api_key_addressing_playbook_by_id(self, client, echo_create):
        response = client.post(
            f"/api/playbooks/{PRIVATE_ID}/canvas", json=self.body, headers=bearer(CANVAS_KEY)
        )
        assert response.status_code == 201

    def test_api_key_addressing_playbook_by_uppercase_id(self, client, echo_create):
        response = client.post(
            f"/api/playbooks/{PRIVATE_ID.upper()}/canvas", json=self.body, headers=bearer(CANVAS_KEY)
        )
        assert response.status_code == 201
        assert response.json()["playbook_id"] == PRIVATE_ID

    def test_api_key_for_another_playbook(self, client, echo_create):
        response = client.post(self.url, json=self.body, headers=bearer(FOREIGN_KEY))

        assert response.status_code == 403
        assert response.json() == {"error": "API key does not match playbook"}
        echo_create.create_canvas.assert_not_awaited()

    def test_api_key_without_permission_falls_back_to_session(self, client, echo_create):
        response = client.post(self.url, json=self.body, headers=bearer(MEMORY_KEY))
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_expired_api_key(self, client, echo_create):
        response = client.post(self.url, json=self.body, headers=bearer(EXPIRED_KEY))
        assert response.status_code == 401

    def test_unknown_api_key(self, client, echo_create):
        response = client.post(self.url, json=self.body, headers=bearer("apb_live_" + "9" * 40))
        assert response.status_code == 401

    def test_unauthenticated(self, client, echo_create):
        response = client.post(self.url, json=self.body)
        assert response.status_code == 401

    def test_owner_session(self, client, echo_create):
        response = client.post(self.url, json=self.body, headers=session_headers(OWNER_ID))
        assert response.status_code == 201

    def test_non_owner_session(self, client, echo_create):
        response = client.post(self.url, json=self.body, headers=session_headers(STRANGER_ID))
        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden"}

    def test_missing_playbook_with_session(self, client, echo_create):
        response = client.post(
            "/api/playbooks/ffffffffffffffff/canvas",
            json=self.body,
            headers=session_headers(OWNER_ID),
        )
        assert response.status_code == 403


class TestCanvasEndpoints:
    def test_required_fields(self, client):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/canvas",
            json={"name": "Plan"},
            headers=bearer(CANVAS_KEY),
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Name, slug, and content are required"}

    def test_duplicate_slug(self, client, repo):
        repo.create_canvas.side_effect = IntegrityError("INSERT", {}, Exception("duplicate"))
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/canvas",
            json={"name": "Plan", "slug": "plan", "content": "# A"},
            headers=bearer(CANVAS_KEY),
        )
        assert response.status_code == 409
        assert response.json() == {"error": "Canvas document 'plan' already exists"}

    def test_list_public_playbook_anonymously(self, client, repo):
        repo.list_canvas.return_value = [make_doc(playbook_id="bbbb", slug="notes")]
        response = client.get(f"/api/playbooks/{PUBLIC_GUID}/canvas")

        assert response.status_code == 200
        docs = response.json()
        assert docs[0]["slug"] == "notes"
        assert "content" not in docs[0]

    def test_private_playbook_hidden_from_anonymous(self, client):
        response = client.get(f"/api/playbooks/{PRIVATE_GUID}/canvas")
        assert response.status_code == 404
        assert response.json() == {"error": "Playbook not found"}

    def test_private_playbook_hidden_from_stranger(self, client):
        response = client.get(
            f"/api/playbooks/{PRIVATE_GUID}/canvas", headers=session_headers(STRANGER_ID)
        )
        assert response.status_code == 404

    def test_get_document(self, client, repo):
        repo.get_canvas.return_value = make_doc()
        response = client.get(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/plan", headers=session_headers(OWNER_ID)
        )
        assert response.status_code == 200
        assert response.json()["content"] == PLAN
        repo.get_canvas.assert_awaited_with(PRIVATE_ID, "plan")

    def test_get_missing_document(self, client):
        response = client.get(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/nope", headers=session_headers(OWNER_ID)
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Canvas document not found"}

    def test_get_section(self, client, repo):
        repo.get_canvas.return_value = make_doc()
        response = client.get(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/plan/sections/s2",
            headers=session_headers(OWNER_ID),
        )
        assert response.status_code == 200
        assert response.json()["heading"] == "Goals"
        assert response.json()["content"] == "Ship it"

    def test_get_missing_section(self, client, repo):
        repo.get_canvas.return_value = make_doc()
        response = client.get(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/plan/sections/s9",
            headers=session_headers(OWNER_ID),
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Section not found"}

    def test_update_reparses_sections(self, client, repo):
        repo.update_canvas.return_value = make_doc(content="# Only\nbody")
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/plan",
            json={"content": "# Only\nbody"},
            headers=bearer(CANVAS_KEY),
        )
        assert response.status_code == 200

        playbook_id, slug, fields = repo.update_canvas.await_args.args
        assert (playbook_id, slug) == (PRIVATE_ID, "plan")
        assert fields["content"] == "# Only\nbody"
        assert [s["heading"] for s in fields["sections"]] == ["Only"]

    def test_update_name_only_keeps_sections(self, client, repo):
        repo.update_canvas.return_value = make_doc()
        client.put(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/plan",
            json={"name": "Renamed"},
            headers=bearer(CANVAS_KEY),
        )
        fields = repo.update_canvas.await_args.args[2]
        assert fields == {"name": "Renamed"}

    def test_update_missing_document(self, client, repo):
        repo.update_canvas.return_value = None
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/nope",
            json={"content": "x"},
            headers=bearer(CANVAS_KEY),
        )
        assert response.status_code == 404

    def test_delete(self, client, repo):
        response = client.delete(
            f"/api/playbooks/{PRIVATE_GUID}/canvas/plan", headers=bearer(CANVAS_KEY)
        )
        assert response.status_code == 200
        assert response.json() == {"success": True}
        repo.delete_canvas.assert_awaited_once_with(PRIVATE_ID, "plan")
