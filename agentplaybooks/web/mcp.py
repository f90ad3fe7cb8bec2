"""MCP endpoint: a playbook served as a Model Context Protocol server.

``GET /api/mcp/{guid}`` returns the manifest. ``POST /api/mcp/{guid}`` speaks
JSON-RPC 2.0. Errors are always delivered in the JSON-RPC envelope with HTTP
200, except when the playbook itself cannot be seen on GET (404).
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from agentplaybooks.canvas import (
    find_section,
    parse_markdown_sections,
    sections_from_json,
    sections_to_json,
)
from agentplaybooks.persistence.models import CanvasRecord, PlaybookRecord, UserRecord
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.schemas import MemoryWrite

from .deps import get_optional_user, get_repo
from .formatters import (
    MCP_PROTOCOL_VERSION,
    collect_playbook,
    format_as_mcp,
    skill_tool_names,
)
from .guards import can_read, find_playbook, key_matches, validate_api_key
from .memory import memory_fields

logger = logging.getLogger(__name__)

mcp_router = APIRouter(prefix="/api/mcp", tags=["mcp"])

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
PLAYBOOK_NOT_FOUND = -32001
RESOURCE_NOT_FOUND = -32002
API_KEY_REQUIRED = -32003

WRITE_TOOL_PERMISSIONS = {
    "write_memory": "memory:write",
    "delete_memory": "memory:write",
    "write_canvas": "canvas:write",
}

GUIDE = """# Using this playbook

## Memory
Memories are JSON values stored under a key. Use `search_memory` to find
entries by text or tags and `read_memory` to fetch one. Writing requires an
API key with `memory:write` sent as `Authorization: Bearer apb_live_...`.

Tiers: `core` for durable facts, `working_memory` for the current task,
`episodic` for past events and `archival` for rarely needed history.

## Canvas
Canvas documents are markdown split into sections at every heading. Read a
whole document with `read_canvas`, or pass `section_id` (`s1`, `s2`, ...) to
read one section. `write_canvas` replaces the content and re-splits sections.
"""


class ToolError(Exception):
    """A tools/call failure reported to the client as a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def rpc_result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def text_content(payload: Any) -> dict[str, Any]:
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return {"content": [{"type": "text", "text": text}]}


async def accessible_playbook(
    request: Request, repo: PostgresRepository, guid: str, user: UserRecord | None
) -> PlaybookRecord | None:
    """Readable playbook, or a private one addressed with its own API key."""
    playbook = await find_playbook(repo, guid)
    if not playbook:
        return None
    if can_read(playbook, user):
        return playbook
    api_key = await validate_api_key(request, repo, None)
    if api_key and key_matches(api_key, playbook):
        return playbook
    return None


# === Manifest ===


@mcp_router.get("/{guid}")
async def get_manifest(
    guid: str,
    request: Request,
    repo: PostgresRepository = Depends(get_repo),
    user: UserRecord | None = Depends(get_optional_user),
):
    playbook = await accessible_playbook(request, repo, guid, user)
    if not playbook:
        raise HTTPException(404, "Playbook not found")

    full = await collect_playbook(repo, playbook)
    manifest = format_as_mcp(full)
    persona = manifest.pop("persona")
    manifest["serverInfo"]["description"] = playbook.description
    manifest["_playbook"] = {"guid": playbook.guid, "persona": persona}
    return manifest


# === JSON-RPC ===


@mcp_router.post("/{guid}")
async def handle_rpc(
    guid: str,
    request: Request,
    repo: PostgresRepository = Depends(get_repo),
    user: UserRecord | None = Depends(get_optional_user),
):
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(rpc_error(None, PARSE_ERROR, "Parse error"))

    if not isinstance(body, dict) or not isinstance(body.get("method"), str):
        return JSONResponse(rpc_error(None, INVALID_REQUEST, "Invalid Request"))

    request_id = body.get("id")
    method = body["method"]
    params = body.get("params") or {}

    # Notifications carry no id and get no response body
    if method.startswith("notifications/"):
        return Response(status_code=202)

    playbook = await accessible_playbook(request, repo, guid, user)
    if not playbook:
        return JSONResponse(rpc_error(request_id, PLAYBOOK_NOT_FOUND, "Playbook not found"))

    if method == "initialize":
        return rpc_result(
            request_id,
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "serverInfo": {"name": "AgentPlaybooks", "version": "1.0.0"},
                "capabilities": {"tools": {}, "resources": {}},
            },
        )

    if method == "tools/list":
        full = await collect_playbook(repo, playbook)
        return rpc_result(request_id, {"tools": format_as_mcp(full)["tools"]})

    if method == "resources/list":
        full = await collect_playbook(repo, playbook)
        return rpc_result(request_id, {"resources": format_as_mcp(full)["resources"]})

    if method == "resources/read":
        uri = params.get("uri") if isinstance(params, dict) else None
        if not isinstance(uri, str):
            return rpc_error(request_id, INVALID_PARAMS, "Missing resource uri")
        contents = await read_resource(repo, playbook, uri)
        if contents is None:
            return rpc_error(request_id, RESOURCE_NOT_FOUND, "Resource not found")
        return rpc_result(request_id, {"contents": [contents]})

    if method == "tools/call":
        if not isinstance(params, dict) or not isinstance(params.get("name"), str):
            return rpc_error(request_id, INVALID_PARAMS, "Missing tool name")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            return rpc_error(request_id, INVALID_PARAMS, "Tool arguments must be an object")
        try:
            result = await call_tool(request, repo, playbook, params["name"], arguments)
        except ToolError as e:
            return rpc_error(request_id, e.code, e.message)
        return rpc_result(request_id, result)

    return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")


# === Resources ===


async def read_resource(
    repo: PostgresRepository, playbook: PlaybookRecord, uri: str
) -> dict[str, Any] | None:
    """Contents for a ``playbook://{guid}/...`` uri, or None if unknown."""
    prefix = f"playbook://{playbook.guid}/"
    if not uri.startswith(prefix):
        return None
    path = uri[len(prefix) :]

    if path == "guide":
        return {"uri": uri, "mimeType": "text/markdown", "text": GUIDE}

    if path in ("persona", "personas"):
        payload: Any = [playbook.persona()]
    elif path == "memory":
        payload = [m.to_dict() for m in await repo.list_memories(playbook.id)]
    elif path == "skills":
        payload = [s.to_dict() for s in await repo.list_skills(playbook.id)]
    elif path == "canvas":
        payload = [doc.to_summary_dict() for doc in await repo.list_canvas(playbook.id)]
    elif path.startswith("canvas/"):
        doc = await repo.get_canvas(playbook.id, path[len("canvas/") :])
        if not doc:
            return None
        return {"uri": uri, "mimeType": "text/markdown", "text": doc.content}
    else:
        return None

    return {"uri": uri, "mimeType": "application/json", "text": json.dumps(payload, default=str)}


# === Tools ===


def _required(arguments: dict[str, Any], name: str) -> Any:
    value = arguments.get(name)
    if value is None or value == "":
        raise ToolError(INVALID_PARAMS, f"Missing required argument: {name}")
    return value


async def call_tool(
    request: Request,
    repo: PostgresRepository,
    playbook: PlaybookRecord,
    name: str,
    arguments: dict[str, Any],
) -> dict[str, Any]:
    """Execute a tools/call and return the MCP result object."""
    permission = WRITE_TOOL_PERMISSIONS.get(name)
    if permission:
        api_key = await validate_api_key(request, repo, permission)
        if not api_key or not key_matches(api_key, playbook):
            raise ToolError(
                API_KEY_REQUIRED,
                f"Tool '{name}' requires an API key for this playbook with {permission}",
            )

    if name == "get_persona":
        return text_content(playbook.persona())

    if name == "list_skills":
        skills = await repo.list_skills(playbook.id)
        return text_content([s.to_dict() for s in skills])

    if name == "get_skill":
        skill = await repo.get_skill(playbook.id, _required(arguments, "skill_id"))
        if not skill:
            raise ToolError(INVALID_PARAMS, "Skill not found")
        return text_content(skill.to_dict())

    if name == "read_memory":
        memory = await repo.get_memory(playbook.id, _required(arguments, "key"))
        if not memory:
            raise ToolError(INVALID_PARAMS, "Memory not found")
        return text_content(memory.to_dict())

    if name == "search_memory":
        tags = arguments.get("tags")
        if tags is not None and (
            not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
        ):
            raise ToolError(INVALID_PARAMS, "Tags must be an array of strings")
        memories = await repo.list_memories(
            playbook.id,
            search=arguments.get("search"),
            tags=tags,
            tier=arguments.get("tier"),
            memory_type=arguments.get("memory_type"),
            status=arguments.get("status"),
        )
        return text_content([m.to_dict() for m in memories])

    if name == "write_memory":
        key = _required(arguments, "key")
        if "value" not in arguments:
            raise ToolError(INVALID_PARAMS, "Missing required argument: value")
        fields = {k: v for k, v in arguments.items() if k != "key"}
        try:
            body = MemoryWrite.model_validate(fields)
        except ValidationError as e:
            message = e.errors()[0]["msg"].removeprefix("Value error, ")
            raise ToolError(INVALID_PARAMS, message)
        memory = await repo.upsert_memory(playbook.id, key, body.value, memory_fields(body))
        logger.info(f"MCP wrote memory {key} in playbook {playbook.guid}")
        return text_content(memory.to_dict())

    if name == "delete_memory":
        key = _required(arguments, "key")
        await repo.delete_memory(playbook.id, key)
        return text_content({"success": True, "key": key})

    if name == "list_canvas":
        docs = await repo.list_canvas(playbook.id)
        return text_content([doc.to_summary_dict() for doc in docs])

    if name == "read_canvas":
        doc = await repo.get_canvas(playbook.id, _required(arguments, "slug"))
        if not doc:
            raise ToolError(INVALID_PARAMS, "Canvas document not found")
        section_id = arguments.get("section_id")
        if section_id:
            section = find_section(sections_from_json(doc.sections), section_id)
            if not section:
                raise ToolError(INVALID_PARAMS, "Section not found")
            return text_content(section.to_dict())
        return text_content(doc.to_dict())

    if name == "write_canvas":
        return text_content(await _write_canvas(repo, playbook, arguments))

    return await _call_playbook_tool(repo, playbook, name)


async def _write_canvas(
    repo: PostgresRepository, playbook: PlaybookRecord, arguments: dict[str, Any]
) -> dict[str, Any]:
    slug = _required(arguments, "slug")
    content = arguments.get("content")
    if not isinstance(content, str):
        raise ToolError(INVALID_PARAMS, "Missing required argument: content")

    sections = sections_to_json(parse_markdown_sections(content))
    fields: dict[str, Any] = {"content": content, "sections": sections}
    if arguments.get("name"):
        fields["name"] = arguments["name"]

    doc = await repo.update_canvas(playbook.id, slug, fields)
    if not doc:
        doc = await repo.create_canvas(
            CanvasRecord(
                playbook_id=playbook.id,
                slug=slug,
                name=arguments.get("name") or slug,
                content=content,
                sections=sections,
            )
        )
    logger.info(f"MCP wrote canvas {slug} in playbook {playbook.guid}")
    return doc.to_dict()


async def _call_playbook_tool(
    repo: PostgresRepository, playbook: PlaybookRecord, name: str
) -> dict[str, Any]:
    """Skill tools return their instructions; MCP server tools are descriptors only."""
    skills = await repo.list_skills(playbook.id)
    for skill, tool_name in zip(skills, skill_tool_names([s.to_dict() for s in skills])):
        if tool_name == name:
            return text_content(skill.content or skill.description or skill.to_dict())

    for server in await repo.list_mcp_servers(playbook.id):
        if any(tool.get("name") == name for tool in server.tools):
            return {
                "content": [
                    {
                        "type": "text",
                        "text": f"Tool '{name}' is provided by MCP server '{server.name}' "
                        "and must be called on that server.",
                    }
                ],
                "isError": True,
            }

    raise ToolError(INVALID_PARAMS, f"Unknown tool: {name}")
