"""REST API endpoints for playbooks, personas, skills, MCP servers and API keys."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from agentplaybooks.persistence.models import (
    DEFAULT_PERSONA_NAME,
    DEFAULT_PERSONA_PROMPT,
    ApiKeyRecord,
    McpServerRecord,
    PlaybookRecord,
    SkillRecord,
    UserApiKeyRecord,
    UserRecord,
)
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.schemas import (
    DEFAULT_API_KEY_PERMISSIONS,
    DEFAULT_USER_API_KEY_PERMISSIONS,
    ApiKeyCreate,
    McpServerWrite,
    PersonaWrite,
    PlaybookCreate,
    PlaybookUpdate,
    SkillWrite,
    UserApiKeyCreate,
)

from .auth import generate_api_key, generate_guid, hash_api_key, key_prefix
from .deps import get_base_url, get_current_user, get_repo
from .formatters import (
    collect_playbook,
    format_as_anthropic,
    format_as_markdown,
    format_as_mcp,
    format_as_openapi,
)
from .guards import (
    managed_playbook,
    owned_playbook,
    playbook_writer,
    readable_playbook,
    user_from_session_or_key,
)

logger = logging.getLogger(__name__)

router = APIRouter()

KEY_WARNING = "Save this key now! It will not be shown again."


def _changes(body: BaseModel, nullable: tuple[str, ...] = ()) -> dict[str, Any]:
    """Fields the client actually sent. Nulls are dropped unless the column allows them."""
    return {
        name: value
        for name, value in body.model_dump(exclude_unset=True).items()
        if value is not None or name in nullable
    }


# === Playbooks ===


@router.get("/playbooks")
async def list_playbooks(
    user: UserRecord = Depends(user_from_session_or_key("playbooks:read")),
    repo: PostgresRepository = Depends(get_repo),
):
    """List the current user's playbooks with persona/skill/MCP counts."""
    playbooks = await repo.list_user_playbooks(user.id)
    return [p.to_dict() for p in playbooks]


@router.post("/playbooks", status_code=201)
async def create_playbook(
    body: PlaybookCreate,
    user: UserRecord = Depends(user_from_session_or_key("playbooks:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    if not body.name:
        raise HTTPException(400, "Name is required")

    playbook = await repo.create_playbook(
        PlaybookRecord(
            user_id=user.id,
            guid=generate_guid(),
            name=body.name,
            description=body.description or None,
            visibility=body.resolved_visibility() or "private",
            config=body.config or {},
            tags=body.tags or [],
        )
    )
    return playbook.to_dict()


@router.get("/playbooks/{guid}")
async def get_playbook(
    request: Request,
    format: str = Query(default="json"),
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    """Get a playbook with persona, skills and MCP servers.

    ``format`` selects the export shape: json (default), openapi, mcp,
    anthropic or markdown.
    """
    full = await collect_playbook(repo, playbook)

    if format == "openapi":
        return format_as_openapi(full, get_base_url(request))
    if format == "mcp":
        return format_as_mcp(full)
    if format == "anthropic":
        return format_as_anthropic(full)
    if format == "markdown":
        return PlainTextResponse(format_as_markdown(full), media_type="text/markdown")
    return full


@router.put("/playbooks/{guid}")
async def update_playbook(
    body: PlaybookUpdate,
    playbook: PlaybookRecord = Depends(managed_playbook("playbooks:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    fields = _changes(body, nullable=("description",))
    fields.pop("is_public", None)
    visibility = body.resolved_visibility()
    if visibility:
        fields["visibility"] = visibility
    if "name" in fields and not fields["name"]:
        raise HTTPException(400, "Name cannot be empty")

    updated = await repo.update_playbook(playbook.id, fields)
    if not updated:
        raise HTTPException(404, "Playbook not found")
    return updated.to_dict()


@router.delete("/playbooks/{guid}")
async def delete_playbook(
    playbook: PlaybookRecord = Depends(managed_playbook("playbooks:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    await repo.delete_playbook(playbook.id)
    return {"success": True}


@router.get("/public/playbooks")
async def list_public_playbooks(
    search: str | None = Query(default=None),
    sort: str = Query(default="updated", pattern="^(updated|newest|name)$"),
    limit: int = Query(default=50, ge=1, le=100),
    repo: PostgresRepository = Depends(get_repo),
):
    """Browse public playbooks."""
    playbooks = await repo.list_public_playbooks(search=search, sort_by=sort, limit=limit)
    return [p.to_dict() for p in playbooks]


# === Persona (one per playbook) ===


@router.get("/playbooks/{guid}/personas")
async def list_personas(playbook: PlaybookRecord = Depends(readable_playbook)):
    """The playbook persona, as a one-element list."""
    return [playbook.persona()]


@router.post("/playbooks/{guid}/personas", status_code=201)
async def create_persona(
    body: PersonaWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("personas:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    if not body.name or not body.system_prompt:
        raise HTTPException(400, "Name and system_prompt are required")

    updated = await repo.update_playbook(
        playbook.id,
        {
            "persona_name": body.name,
            "persona_system_prompt": body.system_prompt,
            "persona_metadata": body.metadata or {},
        },
    )
    if not updated:
        raise HTTPException(404, "Playbook not found")
    return updated.persona()


@router.put("/playbooks/{guid}/personas/{persona_id}")
async def update_persona(
    persona_id: str,
    body: PersonaWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("personas:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    # The persona shares its id with the playbook
    if persona_id != playbook.id:
        raise HTTPException(404, "Persona not found")

    fields = {f"persona_{name}": value for name, value in _changes(body).items()}
    updated = await repo.update_playbook(playbook.id, fields)
    if not updated:
        raise HTTPException(404, "Playbook not found")
    return updated.persona()


@router.delete("/playbooks/{guid}/personas/{persona_id}")
async def reset_persona(
    persona_id: str,
    playbook: PlaybookRecord = Depends(playbook_writer("personas:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    """Reset the persona to the default assistant."""
    if persona_id != playbook.id:
        raise HTTPException(404, "Persona not found")

    await repo.update_playbook(
        playbook.id,
        {
            "persona_name": DEFAULT_PERSONA_NAME,
            "persona_system_prompt": DEFAULT_PERSONA_PROMPT,
            "persona_metadata": {},
        },
    )
    return {"success": True}


# === Skills ===


@router.get("/playbooks/{guid}/skills")
async def list_skills(
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    skills = await repo.list_skills(playbook.id)
    return [s.to_dict() for s in skills]


@router.get("/playbooks/{guid}/skills/{skill_id}")
async def get_skill(
    skill_id: str,
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    """Get a skill by id or exact name."""
    skill = await repo.get_skill(playbook.id, skill_id)
    if not skill:
        raise HTTPException(404, "Skill not found")
    return skill.to_dict()


@router.post("/playbooks/{guid}/skills", status_code=201)
async def create_skill(
    body: SkillWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("skills:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    if not body.name:
        raise HTTPException(400, "Name is required")

    skill = await repo.create_skill(
        SkillRecord(
            playbook_id=playbook.id,
            name=body.name,
            description=body.description or None,
            definition=body.definition or {},
            examples=body.examples or [],
            content=body.content,
            licence=body.licence,
            priority=body.priority or 0,
        )
    )
    logger.info(f"Created skill {skill.name} in playbook {playbook.guid}")
    return skill.to_dict()


@router.put("/playbooks/{guid}/skills/{skill_id}")
async def update_skill(
    skill_id: str,
    body: SkillWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("skills:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    fields = _changes(body, nullable=("description", "content", "licence"))
    if "name" in fields and not fields["name"]:
        raise HTTPException(400, "Name cannot be empty")

    skill = await repo.update_skill(playbook.id, skill_id, fields)
    if not skill:
        raise HTTPException(404, "Skill not found")
    return skill.to_dict()


@router.delete("/playbooks/{guid}/skills/{skill_id}")
async def delete_skill(
    skill_id: str,
    playbook: PlaybookRecord = Depends(playbook_writer("skills:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    await repo.delete_skill(playbook.id, skill_id)
    return {"success": True}


# === MCP server descriptors ===


@router.get("/playbooks/{guid}/mcp-servers")
async def list_mcp_servers(
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    servers = await repo.list_mcp_servers(playbook.id)
    return [s.to_dict() for s in servers]


@router.post("/playbooks/{guid}/mcp-servers", status_code=201)
async def create_mcp_server(
    body: McpServerWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("skills:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    if not body.name:
        raise HTTPException(400, "Name is required")

    server = await repo.create_mcp_server(
        McpServerRecord(
            playbook_id=playbook.id,
            name=body.name,
            description=body.description or None,
            tools=body.tools or [],
            resources=body.resources or [],
        )
    )
    return server.to_dict()


@router.put("/playbooks/{guid}/mcp-servers/{server_id}")
async def update_mcp_server(
    server_id: str,
    body: McpServerWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("skills:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    fields = _changes(body, nullable=("description",))
    if "name" in fields and not fields["name"]:
        raise HTTPException(400, "Name cannot be empty")

    server = await repo.update_mcp_server(playbook.id, server_id, fields)
    if not server:
        raise HTTPException(404, "MCP server not found")
    return server.to_dict()


@router.delete("/playbooks/{guid}/mcp-servers/{server_id}")
async def delete_mcp_server(
    server_id: str,
    playbook: PlaybookRecord = Depends(playbook_writer("skills:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    await repo.delete_mcp_server(playbook.id, server_id)
    return {"success": True}


# === API keys (owner only) ===


@router.get("/playbooks/{guid}/api-keys")
async def list_api_keys(
    playbook: PlaybookRecord = Depends(owned_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    keys = await repo.list_api_keys(playbook.id)
    return [k.to_dict() for k in keys]


@router.post("/playbooks/{guid}/api-keys", status_code=201)
async def create_api_key(
    body: Optional[ApiKeyCreate] = None,
    playbook: PlaybookRecord = Depends(owned_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    """Create an API key. The plain key is returned once and never stored."""
    body = body or ApiKeyCreate()
    plain_key = generate_api_key()

    record = await repo.create_api_key(
        ApiKeyRecord(
            playbook_id=playbook.id,
            key_hash=hash_api_key(plain_key),
            key_prefix=key_prefix(plain_key),
            name=body.name or None,
            permissions=body.permissions or list(DEFAULT_API_KEY_PERMISSIONS),
            expires_at=body.expires_at,
        )
    )
    logger.info(f"Created API key {record.key_prefix} for playbook {playbook.guid}")
    return {**record.to_dict(), "key": plain_key, "warning": KEY_WARNING}


@router.delete("/playbooks/{guid}/api-keys/{key_id}")
async def revoke_api_key(
    key_id: str,
    playbook: PlaybookRecord = Depends(owned_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    await repo.delete_api_key(playbook.id, key_id)
    logger.info(f"Revoked API key {key_id} for playbook {playbook.guid}")
    return {"success": True}


# === User API keys (session only) ===


@router.get("/user/api-keys")
async def list_user_api_keys(
    user: UserRecord = Depends(get_current_user),
    repo: PostgresRepository = Depends(get_repo),
):
    keys = await repo.list_user_api_keys(user.id)
    return [k.to_dict() for k in keys]


@router.post("/user/api-keys", status_code=201)
async def create_user_api_key(
    body: Optional[UserApiKeyCreate] = None,
    user: UserRecord = Depends(get_current_user),
    repo: PostgresRepository = Depends(get_repo),
):
    """Create a key that acts as the current user on every playbook they own."""
    body = body or UserApiKeyCreate()
    plain_key = generate_api_key()

    record = await repo.create_user_api_key(
        UserApiKeyRecord(
            user_id=user.id,
            key_hash=hash_api_key(plain_key),
            key_prefix=key_prefix(plain_key),
            name=body.name or None,
            permissions=body.permissions or list(DEFAULT_USER_API_KEY_PERMISSIONS),
            expires_at=body.expires_at,
        )
    )
    logger.info(f"Created user API key {record.key_prefix} for user {user.id}")
    return {**record.to_dict(), "key": plain_key, "warning": KEY_WARNING}


@router.delete("/user/api-keys/{key_id}")
async def revoke_user_api_key(
    key_id: str,
    user: UserRecord = Depends(get_current_user),
    repo: PostgresRepository = Depends(get_repo),
):
    await repo.delete_user_api_key(user.id, key_id)
    logger.info(f"Revoked user API key {key_id} for user {user.id}")
    return {"success": True}


# === Health ===


@router.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
