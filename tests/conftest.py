"""
Pytest configuration and fixtures for AgentPlaybooks tests.

Route tests run the FastAPI app against an AsyncMock repository, so no
database is needed. The lifespan is never entered (TestClient is not used
as a context manager); app.state is populated directly instead.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from agentplaybooks.config import AuthConfig, ServerConfig
from agentplaybooks.persistence.models import (
    ApiKeyRecord,
    PlaybookRecord,
    UserApiKeyRecord,
    UserRecord,
)
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.web.app import create_app
from agentplaybooks.web.auth import hash_api_key

from helpers import (
    CANVAS_KEY,
    CREATED,
    EXPIRED_KEY,
    FOREIGN_KEY,
    MEMORY_KEY,
    OWNER_ID,
    PRIVATE_GUID,
    PRIVATE_ID,
    PUBLIC_GUID,
    PUBLIC_ID,
    SESSION_SECRET,
    STRANGER_ID,
    USER_EXPIRED_KEY,
    USER_KEY,
    USER_READ_KEY,
)


@pytest.fixture
def owner():
    return UserRecord(id=OWNER_ID, email="owner@example.com", display_name="owner", created_at=CREATED)


@pytest.fixture
def stranger():
    return UserRecord(id=STRANGER_ID, email="stranger@example.com", created_at=CREATED)


@pytest.fixture
def private_playbook():
    return PlaybookRecord(
        id=PRIVATE_ID,
        user_id=OWNER_ID,
        guid=PRIVATE_GUID,
        name="Research Assistant",
        description="Private research notes",
        created_at=CREATED,
        updated_at=CREATED,
    )


@pytest.fixture
def public_playbook():
    return PlaybookRecord(
        id=PUBLIC_ID,
        user_id=STRANGER_ID,
        guid=PUBLIC_GUID,
        name="Public Helper",
        visibility="public",
        persona_name="Helper",
        persona_system_prompt="You help people.",
        created_at=CREATED,
        updated_at=CREATED,
    )


@pytest.fixture
def api_keys(private_playbook, public_playbook):
    """Plain key -> record, as the repository would resolve them."""
    return {
        CANVAS_KEY: ApiKeyRecord(
            id="key-canvas",
            playbook_id=private_playbook.id,
            playbook_guid=private_playbook.guid,
            key_hash=hash_api_key(CANVAS_KEY),
            key_prefix=CANVAS_KEY[:12] + "...",
            permissions=["canvas:write"],
        ),
        MEMORY_KEY: ApiKeyRecord(
            id="key-memory",
            playbook_id=private_playbook.id,
            playbook_guid=private_playbook.guid,
            key_hash=hash_api_key(MEMORY_KEY),
            key_prefix=MEMORY_KEY[:12] + "...",
            permissions=["memory:read", "memory:write"],
        ),
        FOREIGN_KEY: ApiKeyRecord(
            id="key-foreign",
            playbook_id=public_playbook.id,
            playbook_guid=public_playbook.guid,
            key_hash=hash_api_key(FOREIGN_KEY),
            key_prefix=FOREIGN_KEY[:12] + "...",
            permissions=["full"],
        ),
        EXPIRED_KEY: ApiKeyRecord(
            id="key-expired",
            playbook_id=private_playbook.id,
            playbook_guid=private_playbook.guid,
            key_hash=hash_api_key(EXPIRED_KEY),
            key_prefix=EXPIRED_KEY[:12] + "...",
            permissions=["full"],
            expires_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        ),
    }


@pytest.fixture
def user_api_keys(owner):
    """Plain key -> user-level key record, all owned by ``owner``."""

    def make(key_id, plain_key, permissions, expires_at=None):
        return UserApiKeyRecord(
            id=key_id,
            user_id=owner.id,
            key_hash=hash_api_key(plain_key),
            key_prefix=plain_key[:12] + "...",
            permissions=permissions,
            expires_at=expires_at,
        )

    return {
        USER_KEY: make(
            "user-key", USER_KEY, ["playbooks:read", "playbooks:write", "memory:read", "memory:write"]
        ),
        USER_READ_KEY: make("user-key-read", USER_READ_KEY, ["playbooks:read"]),
        USER_EXPIRED_KEY: make(
            "user-key-expired",
            USER_EXPIRED_KEY,
            ["full"],
            expires_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        ),
    }


@pytest.fixture
def repo(owner, stranger, private_playbook, public_playbook, api_keys, user_api_keys):
    """AsyncMock repository preloaded with two users, two playbooks and some keys."""
    repo = AsyncMock(spec=PostgresRepository)

    users = {u.id: u for u in (owner, stranger)}
    playbooks = {p.id: p for p in (private_playbook, public_playbook)}
    keys_by_hash = {record.key_hash: record for record in api_keys.values()}
    user_keys_by_hash = {record.key_hash: record for record in user_api_keys.values()}

    async def get_user(user_id):
        return users.get(user_id)

    async def get_playbook(playbook_id):
        return playbooks.get(playbook_id)

    async def get_playbook_by_guid(guid):
        return next((p for p in playbooks.values() if p.guid == guid), None)

    async def get_active_api_key_by_hash(key_hash):
        return keys_by_hash.get(key_hash)

    async def get_active_user_api_key_by_hash(key_hash):
        return user_keys_by_hash.get(key_hash)

    repo.get_user.side_effect = get_user
    repo.get_playbook.side_effect = get_playbook
    repo.get_playbook_by_guid.side_effect = get_playbook_by_guid
    repo.get_active_api_key_by_hash.side_effect = get_active_api_key_by_hash
    repo.get_active_user_api_key_by_hash.side_effect = get_active_user_api_key_by_hash
    repo.list_skills.return_value = []
    repo.list_mcp_servers.return_value = []
    repo.list_memories.return_value = []
    repo.list_canvas.return_value = []
    repo.get_memory.return_value = None
    repo.get_canvas.return_value = None
    repo.get_skill.return_value = None
    return repo


@pytest.fixture
def app(repo):
    app = create_app()
    app.state.repo = repo
    app.state.auth_config = AuthConfig(session_secret=SESSION_SECRET, cookie_secure=False)
    app.state.server_config = ServerConfig(base_url="https://playbooks.test")
    return app


@pytest.fixture
def client(app):
    return TestClient(app)
