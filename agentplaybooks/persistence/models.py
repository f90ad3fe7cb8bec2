"""Data models for playbook persistence."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

DEFAULT_PERSONA_NAME = "Assistant"
DEFAULT_PERSONA_PROMPT = "You are a helpful AI assistant."


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class UserRecord:
    """A registered user."""

    email: str
    display_name: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str | None = None

    def to_public_dict(self) -> dict[str, Any]:
        """Public-safe representation (no email)."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "created_at": _iso(self.created_at),
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.to_public_dict(), "email": self.email}


@dataclass
class PlaybookRecord:
    """A playbook and its embedded persona."""

    user_id: str
    guid: str
    name: str
    description: str | None = None
    visibility: str = "private"
    config: dict = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    persona_name: str | None = None
    persona_system_prompt: str | None = None
    persona_metadata: dict | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    # Populated by list queries (not stored in playbooks)
    skill_count: int | None = None
    mcp_server_count: int | None = None

    # Storage identity (set by repository)
    id: str | None = None

    @property
    def is_public(self) -> bool:
        return self.visibility == "public"

    @property
    def is_readable_by_anyone(self) -> bool:
        return self.visibility in ("public", "unlisted")

    def persona(self) -> dict[str, Any]:
        """The playbook's single persona, with defaults filled in."""
        return {
            "id": self.id,
            "playbook_id": self.id,
            "name": self.persona_name or DEFAULT_PERSONA_NAME,
            "system_prompt": self.persona_system_prompt or DEFAULT_PERSONA_PROMPT,
            "metadata": self.persona_metadata if self.persona_metadata is not None else {},
            "created_at": _iso(self.created_at),
        }

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "guid": self.guid,
            "name": self.name,
            "description": self.description,
            "visibility": self.visibility,
            "is_public": self.is_public,
            "config": self.config,
            "tags": self.tags,
            "persona_name": self.persona_name,
            "persona_system_prompt": self.persona_system_prompt,
            "persona_metadata": self.persona_metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if self.skill_count is not None or self.mcp_server_count is not None:
            data["persona_count"] = 1 if self.persona_name else 0
            data["skill_count"] = self.skill_count or 0
            data["mcp_server_count"] = self.mcp_server_count or 0
        return data


@dataclass
class SkillRecord:
    playbook_id: str
    name: str
    description: str | None = None
    definition: dict = field(default_factory=dict)
    examples: list[dict] = field(default_factory=list)
    content: str | None = None
    licence: str | None = None
    priority: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "name": self.name,
            "description": self.description,
            "definition": self.definition,
            "examples": self.examples,
            "content": self.content,
            "licence": self.licence,
            "priority": self.priority,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class McpServerRecord:
    playbook_id: str
    name: str
    description: str | None = None
    tools: list[dict] = field(default_factory=list)
    resources: list[dict] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "name": self.name,
            "description": self.description,
            "tools": self.tools,
            "resources": self.resources,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class MemoryRecord:
    """A key/value memory entry scoped to one playbook."""

    playbook_id: str
    key: str
    value: Any = None
    tags: list[str] = field(default_factory=list)
    description: str | None = None
    tier: str = "working_memory"
    priority: int = 50
    parent_key: str | None = None
    summary: str | None = None
    memory_type: str = "fact"
    status: str = "active"
    metadata: dict = field(default_factory=dict)
    updated_at: datetime | None = None
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        # playbook_id and id stay internal; agents address memories by key
        return {
            "key": self.key,
            "value": self.value,
            "tags": self.tags,
            "description": self.description,
            "tier": self.tier,
            "priority": self.priority,
            "parent_key": self.parent_key,
            "summary": self.summary,
            "memory_type": self.memory_type,
            "status": self.status,
            "metadata": self.metadata,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class CanvasRecord:
    """A markdown document plus its parsed sections."""

    playbook_id: str
    slug: str
    name: str
    content: str = ""
    sections: list[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    sort_order: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str | None = None

    def to_summary_dict(self) -> dict[str, Any]:
        """Listing shape: everything except the document body."""
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "sort_order": self.sort_order,
            "updated_at": _iso(self.updated_at),
            "metadata": self.metadata,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "slug": self.slug,
            "name": self.name,
            "content": self.content,
            "sections": self.sections,
            "metadata": self.metadata,
            "sort_order": self.sort_order,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ApiKeyRecord:
    """A hashed playbook API key. The plain key is never stored."""

    playbook_id: str
    key_hash: str
    key_prefix: str
    permissions: list[str] = field(default_factory=list)
    name: str | None = None
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None

    # Populated when the key is resolved for a request
    playbook_guid: str | None = None

    id: str | None = None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions or "full" in self.permissions

    def to_dict(self) -> dict[str, Any]:
        # key_hash never leaves the server
        return {
            "id": self.id,
            "key_prefix": self.key_prefix,
            "name": self.name,
            "permissions": self.permissions,
            "last_used_at": _iso(self.last_used_at),
            "expires_at": _iso(self.expires_at),
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


@dataclass
class UserApiKeyRecord:
    """A hashed user-level API key. It acts as its owner on every playbook they own."""

    user_id: str
    key_hash: str
    key_prefix: str
    permissions: list[str] = field(default_factory=list)
    name: str | None = None
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None

    id: str | None = None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions or "full" in self.permissions

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key_prefix": self.key_prefix,
            "name": self.name,
            "permissions": self.permissions,
            "last_used_at": _iso(self.last_used_at),
            "expires_at": _iso(self.expires_at),
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }
