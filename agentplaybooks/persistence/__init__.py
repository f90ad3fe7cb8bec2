"""Persistence layer -- PostgreSQL via SQLAlchemy Core + asyncpg."""

from .models import (
    ApiKeyRecord,
    CanvasRecord,
    McpServerRecord,
    MemoryRecord,
    PlaybookRecord,
    SkillRecord,
    UserApiKeyRecord,
    UserRecord,
)
from .postgres import PostgresRepository
from .tables import (
    api_keys,
    canvas,
    mcp_servers,
    memories,
    metadata,
    playbooks,
    skills,
    user_api_keys,
    users,
)

__all__ = [
    "ApiKeyRecord",
    "CanvasRecord",
    "McpServerRecord",
    "MemoryRecord",
    "PlaybookRecord",
    "SkillRecord",
    "UserApiKeyRecord",
    "UserRecord",
    "PostgresRepository",
    "api_keys",
    "canvas",
    "mcp_servers",
    "memories",
    "metadata",
    "playbooks",
    "skills",
    "user_api_keys",
    "users",
]
