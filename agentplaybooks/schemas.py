"""Request bodies and JSON-schema checks for playbook content.

Memories, skill definitions and MCP server descriptors are stored as free-form
JSON, so the shape rules live here rather than in the database. The pydantic
models are used directly as FastAPI request bodies; the plain ``validate_*``
functions are shared with the MCP tool handlers.
"""

import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

MEMORY_TIERS = ("core", "working_memory", "episodic", "archival")
MEMORY_TYPES = ("fact", "preference", "task", "observation", "summary")
MEMORY_STATUSES = ("active", "completed", "archived", "failed")

VISIBILITIES = ("public", "unlisted", "private")

API_KEY_PERMISSIONS = (
    "memory:read",
    "memory:write",
    "skills:write",
    "personas:write",
    "canvas:read",
    "canvas:write",
    "full",
)
DEFAULT_API_KEY_PERMISSIONS = ["memory:read", "memory:write"]

# User-level keys act as their owner, so they also carry playbook management scopes
USER_API_KEY_PERMISSIONS = (
    "playbooks:read",
    "playbooks:write",
    "personas:write",
    "skills:write",
    "memory:read",
    "memory:write",
    "canvas:write",
    "full",
)
DEFAULT_USER_API_KEY_PERMISSIONS = ["playbooks:read", "playbooks:write", "memory:read", "memory:write"]

EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Plain validators
# ---------------------------------------------------------------------------


def validate_tags(tags: Any) -> list[str]:
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        raise ValueError("Tags must be an array of strings")
    return tags


def validate_choice(value: Any, choices: tuple[str, ...], field: str) -> str:
    if value not in choices:
        raise ValueError(f"{field} must be one of: {', '.join(choices)}")
    return value


def validate_parameters_schema(schema: Any) -> dict[str, Any]:
    """Check that a skill's ``parameters`` is a usable JSON-schema object."""
    if not isinstance(schema, dict):
        raise ValueError("definition.parameters must be an object")

    schema_type = schema.get("type", "object")
    if schema_type != "object":
        raise ValueError("definition.parameters.type must be 'object'")

    properties = schema.get("properties", {})
    if not isinstance(properties, dict) or not all(
        isinstance(prop, dict) for prop in properties.values()
    ):
        raise ValueError("definition.parameters.properties must map names to schemas")

    required = schema.get("required", [])
    if not isinstance(required, list) or not all(isinstance(name, str) for name in required):
        raise ValueError("definition.parameters.required must be an array of strings")
    missing = [name for name in required if name not in properties]
    if missing:
        raise ValueError(f"Required parameters not defined in properties: {', '.join(missing)}")

    return schema


def validate_skill_definition(definition: Any) -> dict[str, Any]:
    if not isinstance(definition, dict):
        raise ValueError("definition must be an object")
    if "parameters" in definition:
        validate_parameters_schema(definition["parameters"])
    return definition


def validate_mcp_tools(tools: Any) -> list[dict[str, Any]]:
    if not isinstance(tools, list):
        raise ValueError("tools must be an array")
    for index, tool in enumerate(tools):
        if not isinstance(tool, dict):
            raise ValueError(f"tools[{index}] must be an object")
        name = tool.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"tools[{index}].name is required")
        if "inputSchema" in tool and not isinstance(tool["inputSchema"], dict):
            raise ValueError(f"tools[{index}].inputSchema must be an object")
    return tools


def validate_mcp_resources(resources: Any) -> list[dict[str, Any]]:
    if not isinstance(resources, list):
        raise ValueError("resources must be an array")
    for index, resource in enumerate(resources):
        if not isinstance(resource, dict):
            raise ValueError(f"resources[{index}] must be an object")
        for key in ("uri", "name"):
            if not isinstance(resource.get(key), str) or not resource[key]:
                raise ValueError(f"resources[{index}].{key} is required")
    return resources


def validate_permissions(permissions: Any, allowed: tuple[str, ...] = API_KEY_PERMISSIONS) -> list[str]:
    if not isinstance(permissions, list) or not permissions:
        raise ValueError("permissions must be a non-empty array")
    unknown = [p for p in permissions if p not in allowed]
    if unknown:
        raise ValueError(f"Unknown permissions: {', '.join(map(str, unknown))}")
    return permissions


# ---------------------------------------------------------------------------
# Tool schema helpers (exports and MCP)
# ---------------------------------------------------------------------------


def tool_name(name: str) -> str:
    """Turn a human skill name into a tool identifier ("Web Search" -> "web_search")."""
    return _WHITESPACE.sub("_", name.strip().lower())


def skill_input_schema(definition: dict[str, Any] | None) -> dict[str, Any]:
    """Return the skill's parameter schema, or an empty object schema."""
    parameters = (definition or {}).get("parameters")
    if isinstance(parameters, dict):
        return parameters
    return dict(EMPTY_OBJECT_SCHEMA, properties={})


def tool_input_schema(tool: dict[str, Any]) -> dict[str, Any]:
    """Normalize an MCP tool's inputSchema to ``{type, properties, required}``.

    ``required`` is carried over only when it is a list of names.
    """
    schema = tool.get("inputSchema") or {}
    normalized = {
        "type": schema.get("type") or "object",
        "properties": schema.get("properties") or {},
    }
    required = schema.get("required")
    if isinstance(required, list) and all(isinstance(name, str) for name in required):
        normalized["required"] = list(required)
    return normalized


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class PlaybookCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    visibility: Optional[str] = None
    is_public: Optional[bool] = None
    config: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None

    @field_validator("visibility")
    @classmethod
    def _visibility(cls, v):
        return v if v is None else validate_choice(v, VISIBILITIES, "visibility")

    def resolved_visibility(self) -> Optional[str]:
        """Explicit visibility wins; the legacy is_public flag maps onto it."""
        if self.visibility:
            return self.visibility
        if self.is_public is not None:
            return "public" if self.is_public else "private"
        return None


class PlaybookUpdate(PlaybookCreate):
    pass


class PersonaWrite(BaseModel):
    name: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class SkillWrite(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    definition: Optional[dict[str, Any]] = None
    examples: Optional[list[dict[str, Any]]] = None
    content: Optional[str] = None
    licence: Optional[str] = None
    priority: Optional[int] = None

    @field_validator("definition", mode="before")
    @classmethod
    def _definition(cls, v):
        return v if v is None else validate_skill_definition(v)


class McpServerWrite(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    tools: Optional[list[dict[str, Any]]] = None
    resources: Optional[list[dict[str, Any]]] = None

    @field_validator("tools", mode="before")
    @classmethod
    def _tools(cls, v):
        return v if v is None else validate_mcp_tools(v)

    @field_validator("resources", mode="before")
    @classmethod
    def _resources(cls, v):
        return v if v is None else validate_mcp_resources(v)


class MemoryWrite(BaseModel):
    """Body of a memory upsert. ``value`` may be any JSON, including null."""

    value: Any = None
    tags: Optional[list[str]] = None
    description: Optional[str] = None
    tier: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1, le=100)
    parent_key: Optional[str] = None
    summary: Optional[str] = None
    memory_type: Optional[str] = None
    status: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        return v if v is None else validate_tags(v)

    @field_validator("tier")
    @classmethod
    def _tier(cls, v):
        return v if v is None else validate_choice(v, MEMORY_TIERS, "tier")

    @field_validator("memory_type")
    @classmethod
    def _memory_type(cls, v):
        return v if v is None else validate_choice(v, MEMORY_TYPES, "memory_type")

    @field_validator("status")
    @classmethod
    def _status(cls, v):
        return v if v is None else validate_choice(v, MEMORY_STATUSES, "status")

    @property
    def has_value(self) -> bool:
        return "value" in self.model_fields_set


class CanvasWrite(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    content: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    sort_order: Optional[int] = None


class ApiKeyCreate(BaseModel):
    name: Optional[str] = None
    permissions: Optional[list[str]] = None
    expires_at: Optional[datetime] = None

    @field_validator("permissions", mode="before")
    @classmethod
    def _permissions(cls, v):
        return v if v is None else validate_permissions(v)


class UserApiKeyCreate(BaseModel):
    name: Optional[str] = None
    permissions: Optional[list[str]] = None
    expires_at: Optional[datetime] = None

    @field_validator("permissions", mode="before")
    @classmethod
    def _permissions(cls, v):
        return v if v is None else validate_permissions(v, USER_API_KEY_PERMISSIONS)


class ProfileUpdate(BaseModel):
    display_name: str = ""
