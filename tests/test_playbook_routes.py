"""Tests for playbook, persona, skill, MCP server and API key endpoints."""

from dataclasses import replace

import pytest
from sqlalchemy.exc import OperationalError

from agentplaybooks.persistence.models import (
    ApiKeyRecord,
    McpServerRecord,
    SkillRecord,
    UserApiKeyRecord,
)
from agentplaybooks.web.auth import hash_api_key

from helpers import (
    MEMORY_KEY,
    OWNER_ID,
    PRIVATE_GUID,
    PRIVATE_ID,
    PUBLIC_GUID,
    PUBLIC_ID,
    STRANGER_ID,
    USER_EXPIRED_KEY,
    USER_KEY,
    USER_READ_KEY,
    bearer,
    session_headers,
)

SEARCH_SKILL = SkillRecord(
    id="skill-1",
    playbook_id=PRIVATE_ID,
    name="Web Search",
    description="Search the web",
    definition={
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        }
    },
    content="Use a search engine and cite sources.",
)


@pytest.fixture
def owner_headers():
    return session_headers(OWNER_ID)


@pytest.fixture
def echo_writes(repo, private_playbook, public_playbook):
    """Make create/update calls hand back what they were given."""
    playbooks = {p.id: p for p in (private_playbook, public_playbook)}

    async def create_playbook(playbook):
        return replace(playbook, id="cccccccc-cccc-4ccc-8ccc-cccccccccccc")

    async def update_playbook(playbook_id, fields):
        return replace(playbooks[playbook_id], **fields)

    async def create_skill(skill):
        return replace(skill, id="skill-new")

    async def create_mcp_server(server):
        return replace(server, id="server-new")

    async def create_api_key(key):
        return replace(key, id="key-new")

    async def create_user_api_key(key):
        return replace(key, id="user-key-new")

    repo.create_playbook.side_effect = create_playbook
    repo.update_playbook.side_effect = update_playbook
    repo.create_skill.side_effect = create_skill
    repo.create_mcp_server.side_effect = create_mcp_server
    repo.create_api_key.side_effect = create_api_key
    repo.create_user_api_key.side_effect = create_user_api_key
    return repo


class TestPlaybooks:
    def test_list_requires_session(self, client):
        assert client.get("/api/playbooks").status_code == 401

    def test_list_own_playbooks(self, client, repo, private_playbook, owner_headers):
        repo.list_user_playbooks.return_value = [replace(private_playbook, skill_count=2, mcp_server_count=1)]
        response = client.get("/api/playbooks", headers=owner_headers)

        assert response.status_code == 200
        [item] = response.json()
        assert item["guid"] == PRIVATE_GUID
        assert item["skill_count"] == 2
        repo.list_user_playbooks.assert_awaited_once_with(OWNER_ID)

    def test_create(self, client, echo_writes, owner_headers):
        response = client.post(
            "/api/playbooks",
            json={"name": "New", "description": "d", "is_public": True},
            headers=owner_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "New"
        assert data["visibility"] == "public"
        assert data["is_public"] is True
        assert data["user_id"] == OWNER_ID
        assert len(data["guid"]) == 16

    def test_create_defaults_to_private(self, client, echo_writes, owner_headers):
        response = client.post("/api/playbooks", json={"name": "New"}, headers=owner_headers)
        assert response.json()["visibility"] == "private"

    def test_create_requires_name(self, client, echo_writes, owner_headers):
        response = client.post("/api/playbooks", json={"description": "x"}, headers=owner_headers)
        assert response.status_code == 400
        assert response.json() == {"error": "Name is required"}

    def test_create_rejects_bad_visibility(self, client, echo_writes, owner_headers):
        response = client.post(
            "/api/playbooks", json={"name": "x", "visibility": "secret"}, headers=owner_headers
        )
        assert response.status_code == 400
        assert "visibility must be one of" in response.json()["error"]

    def test_get_private_as_owner(self, client, repo, owner_headers):
        repo.list_skills.return_value = [SEARCH_SKILL]
        response = client.get(f"/api/playbooks/{PRIVATE_GUID}", headers=owner_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["persona"]["name"] == "Assistant"
        assert data["personas"] == [data["persona"]]
        assert [s["name"] for s in data["skills"]] == ["Web Search"]
        assert data["mcp_servers"] == []

    def test_get_by_uuid(self, client, owner_headers):
        response = client.get(f"/api/playbooks/{PRIVATE_ID.upper()}", headers=owner_headers)
        assert response.status_code == 200
        assert response.json()["guid"] == PRIVATE_GUID

    def test_get_private_hidden(self, client):
        response = client.get(f"/api/playbooks/{PRIVATE_GUID}", headers=session_headers(STRANGER_ID))
        assert response.status_code == 404

    def test_get_unlisted_anonymously(self, client, private_playbook):
        private_playbook.visibility = "unlisted"
        assert client.get(f"/api/playbooks/{PRIVATE_GUID}").status_code == 200

    def test_api_key_does_not_grant_reads(self, client):
        response = client.get(f"/api/playbooks/{PRIVATE_GUID}", headers=bearer(MEMORY_KEY))
        assert response.status_code == 404

    def test_openapi_format(self, client, repo):
        response = client.get(f"/api/playbooks/{PUBLIC_GUID}", params={"format": "openapi"})

        assert response.status_code == 200
        doc = response.json()
        assert doc["openapi"] == "3.1.0"
        assert doc["servers"] == [{"url": "https://playbooks.test/api"}]
        assert f"/playbooks/{PUBLIC_GUID}/memory/{{key}}" in doc["paths"]

    def test_mcp_format(self, client):
        doc = client.get(f"/api/playbooks/{PUBLIC_GUID}", params={"format": "mcp"}).json()
        assert doc["protocolVersion"] == "2024-11-05"
        assert doc["persona"] == {"name": "Helper", "systemPrompt": "You help people."}

    def test_anthropic_format(self, client):
        doc = client.get(f"/api/playbooks/{PUBLIC_GUID}", params={"format": "anthropic"}).json()
        assert doc["system_prompt"] == "## Helper\n\nYou help people."
        assert all("input_schema" in tool for tool in doc["tools"])

    def test_markdown_format(self, client):
        response = client.get(f"/api/playbooks/{PUBLIC_GUID}", params={"format": "markdown"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/markdown")
        assert response.text.startswith("# Public Helper")

    def test_update(self, client, echo_writes, owner_headers):
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}",
            json={"name": "Renamed", "is_public": True, "description": None},
            headers=owner_headers,
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["visibility"] == "public"
        echo_writes.update_playbook.assert_awaited_once_with(
            PRIVATE_ID, {"name": "Renamed", "description": None, "visibility": "public"}
        )

    def test_update_empty_name(self, client, echo_writes, owner_headers):
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}", json={"name": ""}, headers=owner_headers
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Name cannot be empty"}

    def test_update_needs_owner(self, client, echo_writes):
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}", json={"name": "x"}, headers=session_headers(STRANGER_ID)
        )
        assert response.status_code == 403

    def test_api_key_cannot_update_playbook(self, client, echo_writes):
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}", json={"name": "x"}, headers=bearer(MEMORY_KEY)
        )
        assert response.status_code == 401

    def test_delete(self, client, repo, owner_headers):
        response = client.delete(f"/api/playbooks/{PRIVATE_GUID}", headers=owner_headers)
        assert response.json() == {"success": True}
        repo.delete_playbook.assert_awaited_once_with(PRIVATE_ID)

    def test_public_listing(self, client, repo, public_playbook):
        repo.list_public_playbooks.return_value = [public_playbook]
        response = client.get("/api/public/playbooks", params={"search": "help", "sort": "name"})

        assert response.status_code == 200
        assert [p["guid"] for p in response.json()] == [PUBLIC_GUID]
        repo.list_public_playbooks.assert_awaited_once_with(search="help", sort_by="name", limit=50)

    def test_public_listing_rejects_unknown_sort(self, client):
        response = client.get("/api/public/playbooks", params={"sort": "stars"})
        assert response.status_code == 400


class TestPersonas:
    def test_list(self, client):
        personas = client.get(f"/api/playbooks/{PUBLIC_GUID}/personas").json()
        assert len(personas) == 1
        assert personas[0]["id"] == PUBLIC_ID
        assert personas[0]["name"] == "Helper"

    def test_create(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/personas",
            json={"name": "Researcher", "system_prompt": "Be thorough."},
            headers=owner_headers,
        )
        assert response.status_code == 201
        assert response.json()["name"] == "Researcher"
        assert response.json()["system_prompt"] == "Be thorough."

    def test_create_requires_fields(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/personas", json={"name": "x"}, headers=owner_headers
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Name and system_prompt are required"}

    def test_update(self, client, echo_writes, owner_headers):
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}/personas/{PRIVATE_ID}",
            json={"system_prompt": "New prompt"},
            headers=owner_headers,
        )
        assert response.status_code == 200
        echo_writes.update_playbook.assert_awaited_once_with(
            PRIVATE_ID, {"persona_system_prompt": "New prompt"}
        )

    def test_update_unknown_persona(self, client, echo_writes, owner_headers):
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}/personas/other",
            json={"name": "x"},
            headers=owner_headers,
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Persona not found"}

    def test_reset(self, client, echo_writes, owner_headers):
        response = client.delete(
            f"/api/playbooks/{PRIVATE_GUID}/personas/{PRIVATE_ID}", headers=owner_headers
        )
        assert response.json() == {"success": True}
        fields = echo_writes.update_playbook.await_args.args[1]
        assert fields["persona_name"] == "Assistant"


class TestSkills:
    def test_list(self, client, repo, owner_headers):
        repo.list_skills.return_value = [SEARCH_SKILL]
        skills = client.get(f"/api/playbooks/{PRIVATE_GUID}/skills", headers=owner_headers).json()
        assert [s["id"] for s in skills] == ["skill-1"]

    def test_get_missing(self, client, owner_headers):
        response = client.get(f"/api/playbooks/{PRIVATE_GUID}/skills/nope", headers=owner_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "Skill not found"}

    def test_create(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/skills",
            json={"name": "Summarize", "priority": 5, "content": "Be brief."},
            headers=owner_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["id"] == "skill-new"
        assert data["priority"] == 5
        assert data["definition"] == {}

    def test_create_rejects_bad_schema(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/skills",
            json={"name": "Bad", "definition": {"parameters": {"type": "array"}}},
            headers=owner_headers,
        )
        assert response.status_code == 400
        assert response.json() == {"error": "definition.parameters.type must be 'object'"}

    def test_update_missing(self, client, repo, owner_headers):
        repo.update_skill.return_value = None
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}/skills/nope", json={"priority": 1}, headers=owner_headers
        )
        assert response.status_code == 404

    def test_delete(self, client, repo, owner_headers):
        response = client.delete(f"/api/playbooks/{PRIVATE_GUID}/skills/skill-1", headers=owner_headers)
        assert response.json() == {"success": True}
        repo.delete_skill.assert_awaited_once_with(PRIVATE_ID, "skill-1")


class TestMcpServers:
    def test_create(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/mcp-servers",
            json={"name": "github", "tools": [{"name": "create_issue"}]},
            headers=owner_headers,
        )
        assert response.status_code == 201
        assert response.json()["tools"] == [{"name": "create_issue"}]

    def test_create_rejects_nameless_tool(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/mcp-servers",
            json={"name": "github", "tools": [{}]},
            headers=owner_headers,
        )
        assert response.status_code == 400

    def test_list(self, client, repo):
        repo.list_mcp_servers.return_value = [
            McpServerRecord(id="srv", playbook_id=PUBLIC_ID, name="github")
        ]
        servers = client.get(f"/api/playbooks/{PUBLIC_GUID}/mcp-servers").json()
        assert [s["name"] for s in servers] == ["github"]

    def test_update_missing(self, client, repo, owner_headers):
        repo.update_mcp_server.return_value = None
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}/mcp-servers/nope",
            json={"description": "x"},
            headers=owner_headers,
        )
        assert response.status_code == 404
        assert response.json() == {"error": "MCP server not found"}


class TestApiKeys:
    def test_create_returns_plain_key_once(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/api-keys",
            json={"name": "agent", "permissions": ["canvas:write"]},
            headers=owner_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["key"].startswith("apb_live_")
        assert data["key_prefix"] == data["key"][:12] + "..."
        assert data["permissions"] == ["canvas:write"]
        assert "Save this key now" in data["warning"]
        assert "key_hash" not in data

        stored: ApiKeyRecord = echo_writes.create_api_key.await_args.args[0]
        assert stored.key_hash == hash_api_key(data["key"])

    def test_create_without_body_uses_default_permissions(self, client, echo_writes, owner_headers):
        response = client.post(f"/api/playbooks/{PRIVATE_GUID}/api-keys", headers=owner_headers)
        assert response.status_code == 201
        assert response.json()["permissions"] == ["memory:read", "memory:write"]

    def test_create_rejects_unknown_permission(self, client, echo_writes, owner_headers):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/api-keys",
            json={"permissions": ["admin"]},
            headers=owner_headers,
        )
        assert response.status_code == 400

    def test_owner_only(self, client, echo_writes):
        response = client.get(
            f"/api/playbooks/{PRIVATE_GUID}/api-keys", headers=session_headers(STRANGER_ID)
        )
        assert response.status_code == 403

    def test_api_key_cannot_mint_keys(self, client, echo_writes):
        response = client.post(f"/api/playbooks/{PRIVATE_GUID}/api-keys", headers=bearer(MEMORY_KEY))
        assert response.status_code == 401

    def test_list(self, client, repo, api_keys, owner_headers):
        repo.list_api_keys.return_value = [api_keys[MEMORY_KEY]]
        keys = client.get(f"/api/playbooks/{PRIVATE_GUID}/api-keys", headers=owner_headers).json()
        assert [k["id"] for k in keys] == ["key-memory"]
        assert "key_hash" not in keys[0]

    def test_revoke(self, client, repo, owner_headers):
        response = client.delete(
            f"/api/playbooks/{PRIVATE_GUID}/api-keys/key-memory", headers=owner_headers
        )
        assert response.json() == {"success": True}
        repo.delete_api_key.assert_awaited_once_with(PRIVATE_ID, "key-memory")


class TestUserApiKeys:
    def test_create_returns_plain_key_once(self, client, echo_writes, owner_headers):
        response = client.post(
            "/api/user/api-keys", json={"name": "automation"}, headers=owner_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["id"] == "user-key-new"
        assert data["key"].startswith("apb_live_")
        assert data["permissions"] == ["playbooks:read", "playbooks:write", "memory:read", "memory:write"]
        assert "Save this key now" in data["warning"]
        assert "key_hash" not in data

        stored: UserApiKeyRecord = echo_writes.create_user_api_key.await_args.args[0]
        assert stored.user_id == OWNER_ID
        assert stored.key_hash == hash_api_key(data["key"])

    def test_create_rejects_playbook_only_permission(self, client, echo_writes, owner_headers):
        response = client.post(
            "/api/user/api-keys", json={"permissions": ["canvas:read"]}, headers=owner_headers
        )
        assert response.status_code == 400

    def test_user_key_cannot_mint_user_keys(self, client, echo_writes):
        response = client.post("/api/user/api-keys", headers=bearer(USER_KEY))
        assert response.status_code == 401
        echo_writes.create_user_api_key.assert_not_awaited()

    def test_list(self, client, repo, user_api_keys, owner_headers):
        repo.list_user_api_keys.return_value = [user_api_keys[USER_KEY]]
        keys = client.get("/api/user/api-keys", headers=owner_headers).json()

        assert [k["id"] for k in keys] == ["user-key"]
        assert "key_hash" not in keys[0]
        repo.list_user_api_keys.assert_awaited_once_with(OWNER_ID)

    def test_revoke(self, client, repo, owner_headers):
        response = client.delete("/api/user/api-keys/user-key", headers=owner_headers)
        assert response.json() == {"success": True}
        repo.delete_user_api_key.assert_awaited_once_with(OWNER_ID, "user-key")

    def test_key_lists_owner_playbooks(self, client, repo, private_playbook):
        repo.list_user_playbooks.return_value = [private_playbook]
        response = client.get("/api/playbooks", headers=bearer(USER_KEY))

        assert response.status_code == 200
        assert [p["guid"] for p in response.json()] == [PRIVATE_GUID]
        repo.list_user_playbooks.assert_awaited_once_with(OWNER_ID)
        repo.touch_user_api_key.assert_awaited_once_with("user-key")

    def test_key_creates_playbook_as_owner(self, client, echo_writes):
        response = client.post("/api/playbooks", json={"name": "Automated"}, headers=bearer(USER_KEY))

        assert response.status_code == 201
        assert response.json()["user_id"] == OWNER_ID

    def test_key_without_permission_is_rejected(self, client, echo_writes):
        response = client.post(
            "/api/playbooks", json={"name": "Automated"}, headers=bearer(USER_READ_KEY)
        )
        assert response.status_code == 401
        echo_writes.create_playbook.assert_not_awaited()

    def test_expired_key_is_rejected(self, client, repo):
        response = client.get("/api/playbooks", headers=bearer(USER_EXPIRED_KEY))
        assert response.status_code == 401
        repo.touch_user_api_key.assert_not_awaited()

    def test_key_updates_own_playbook(self, client, echo_writes):
        response = client.put(
            f"/api/playbooks/{PRIVATE_GUID}", json={"name": "Renamed"}, headers=bearer(USER_KEY)
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"

    def test_key_cannot_touch_other_users_playbook(self, client, echo_writes):
        response = client.delete(f"/api/playbooks/{PUBLIC_GUID}", headers=bearer(USER_KEY))
        assert response.status_code == 403
        echo_writes.delete_playbook.assert_not_awaited()

    def test_key_writes_memory_on_owned_playbook(self, client, repo):
        response = client.delete(
            f"/api/playbooks/{PRIVATE_GUID}/memory/notes", headers=bearer(USER_KEY)
        )
        assert response.json() == {"success": True}
        repo.delete_memory.assert_awaited_once_with(PRIVATE_ID, "notes")

    def test_key_needs_matching_permission_for_playbook_writes(self, client, echo_writes):
        response = client.post(
            f"/api/playbooks/{PRIVATE_GUID}/skills",
            json={"name": "Search", "description": "Find"},
            headers=bearer(USER_KEY),
        )
        assert response.status_code == 401
        echo_writes.create_skill.assert_not_awaited()

    def test_key_cannot_manage_playbook_keys(self, client, echo_writes):
        response = client.get(f"/api/playbooks/{PRIVATE_GUID}/api-keys", headers=bearer(USER_KEY))
        assert response.status_code == 401


class TestServiceEndpoints:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "timestamp" in response.json()

    def test_database_error_is_500(self, client, repo, owner_headers):
        repo.list_user_playbooks.side_effect = OperationalError(
            "SELECT", {}, Exception("connection refused")
        )
        response = client.get("/api/playbooks", headers=owner_headers)
        assert response.status_code == 500
        assert response.json() == {"error": "connection refused"}

    def test_unknown_route(self, client):
        response = client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.json() == {"error": "Not Found"}
