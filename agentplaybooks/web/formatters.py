"""Playbook export formats.

Every formatter takes the "full playbook" dict produced by
``collect_playbook``: the playbook row plus ``persona``, ``personas``,
``skills`` and ``mcp_servers``.
"""

from typing import Any

from agentplaybooks.persistence.models import PlaybookRecord
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.schemas import (
    MEMORY_STATUSES,
    MEMORY_TIERS,
    MEMORY_TYPES,
    skill_input_schema,
    tool_input_schema,
    tool_name,
)

MCP_PROTOCOL_VERSION = "2024-11-05"
EXPORT_FORMATS = ("json", "openapi", "mcp", "anthropic", "markdown")

# Built-in tools every playbook exposes over MCP
PLAYBOOK_TOOLS: list[dict[str, Any]] = [
    {
        "name": "get_persona",
        "description": "Get the playbook persona (name and system prompt)",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "list_skills",
        "description": "List the skills defined in this playbook",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "get_skill",
        "description": "Get one skill by id or name, including its definition and content",
        "inputSchema": {
            "type": "object",
            "properties": {"skill_id": {"type": "string", "description": "Skill id or name"}},
            "required": ["skill_id"],
        },
    },
    {
        "name": "read_memory",
        "description": "Read one memory entry by key",
        "inputSchema": {
            "type": "object",
            "properties": {"key": {"type": "string", "description": "Memory key"}},
            "required": ["key"],
        },
    },
    {
        "name": "search_memory",
        "description": "Search memories by text, tags, tier, type or status",
        "inputSchema": {
            "type": "object",
            "properties": {
                "search": {"type": "string", "description": "Matches key, description or summary"},
                "tags": {"type": "array", "items": {"type": "string"}},
                "tier": {"type": "string", "enum": list(MEMORY_TIERS)},
                "memory_type": {"type": "string", "enum": list(MEMORY_TYPES)},
                "status": {"type": "string", "enum": list(MEMORY_STATUSES)},
            },
        },
    },
    {
        "name": "write_memory",
        "description": "Create or update a memory entry. Requires an API key with memory:write",
        "inputSchema": {
            "type": "object",
            "properties": {
                "key": {"type": "string"},
                "value": {"description": "Any JSON value"},
                "tags": {"type": "array", "items": {"type": "string"}},
                "description": {"type": "string"},
                "tier": {"type": "string", "enum": list(MEMORY_TIERS)},
                "priority": {"type": "integer", "minimum": 1, "maximum": 100},
                "parent_key": {"type": "string"},
                "summary": {"type": "string"},
                "memory_type": {"type": "string", "enum": list(MEMORY_TYPES)},
                "status": {"type": "string", "enum": list(MEMORY_STATUSES)},
                "metadata": {"type": "object"},
            },
            "required": ["key", "value"],
        },
    },
    {
        "name": "delete_memory",
        "description": "Delete a memory entry. Requires an API key with memory:write",
        "inputSchema": {
            "type": "object",
            "properties": {"key": {"type": "string"}},
            "required": ["key"],
        },
    },
    {
        "name": "list_canvas",
        "description": "List the canvas documents of this playbook",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "read_canvas",
        "description": "Read a canvas document, or a single section of it",
        "inputSchema": {
            "type": "object",
            "properties": {
                "slug": {"type": "string"},
                "section_id": {"type": "string", "description": "Section id such as s2"},
            },
            "required": ["slug"],
        },
    },
    {
        "name": "write_canvas",
        "description": (
            "Create a canvas document or replace its content. "
            "Requires an API key with canvas:write"
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "slug": {"type": "string"},
                "name": {"type": "string", "description": "Required when creating"},
                "content": {"type": "string", "description": "Full markdown content"},
            },
            "required": ["slug", "content"],
        },
    },
]


async def collect_playbook(repo: PostgresRepository, playbook: PlaybookRecord) -> dict[str, Any]:
    """Load a playbook with its persona, skills and MCP servers."""
    skills = await repo.list_skills(playbook.id)
    mcp_servers = await repo.list_mcp_servers(playbook.id)
    persona = playbook.persona()
    return {
        **playbook.to_dict(),
        "persona": persona,
        "personas": [persona],
        "skills": [skill.to_dict() for skill in skills],
        "mcp_servers": [server.to_dict() for server in mcp_servers],
    }


def _persona_header(persona: dict | None) -> str:
    if persona and persona.get("name") and persona.get("system_prompt"):
        return f"## Persona: {persona['name']}\n\n{persona['system_prompt']}\n\n---\n\n"
    return ""


BUILTIN_TOOL_NAMES = frozenset(tool["name"] for tool in PLAYBOOK_TOOLS)


def skill_tool_names(skills: list[dict]) -> list[str]:
    """Unique tool names for ``skills``, in order.

    A name that clashes with a built-in tool gets a ``skill_`` prefix; a name
    already taken by an earlier skill gets a numeric suffix (``_2``, ``_3``).
    """
    taken = set(BUILTIN_TOOL_NAMES)
    names = []
    for skill in skills:
        base = tool_name(skill["name"])
        if base in BUILTIN_TOOL_NAMES:
            base = f"skill_{base}"
        name, n = base, 2
        while name in taken:
            name = f"{base}_{n}"
            n += 1
        taken.add(name)
        names.append(name)
    return names


def skill_tools(skills: list[dict]) -> list[dict[str, Any]]:
    """Skills as MCP-style tools (``name``, ``description``, ``inputSchema``)."""
    return [
        {
            "name": name,
            "description": skill.get("description") or skill["name"],
            "inputSchema": skill_input_schema(skill.get("definition")),
        }
        for skill, name in zip(skills, skill_tool_names(skills))
    ]


def playbook_resources(guid: str) -> list[dict[str, str]]:
    return [
        {
            "uri": f"playbook://{guid}/personas",
            "name": "Personas",
            "description": "AI personality and system prompt for this playbook",
            "mimeType": "application/json",
        },
        {
            "uri": f"playbook://{guid}/memory",
            "name": "Memory",
            "description": "Persistent memory storage (tiers: core, working, episodic, archival)",
            "mimeType": "application/json",
        },
        {
            "uri": f"playbook://{guid}/skills",
            "name": "Skills",
            "description": "Available capabilities and tasks",
            "mimeType": "application/json",
        },
        {
            "uri": f"playbook://{guid}/canvas",
            "name": "Canvas",
            "description": "Canvas documents available for section-level editing",
            "mimeType": "application/json",
        },
        {
            "uri": f"playbook://{guid}/guide",
            "name": "Usage Guide",
            "description": "How to use memory and canvas from an agent",
            "mimeType": "text/markdown",
        },
    ]


def _error_response(description: str) -> dict:
    return {
        "description": description,
        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Error"}}},
    }


def _json_response(description: str, schema: dict) -> dict:
    return {"description": description, "content": {"application/json": {"schema": schema}}}


def _ref(name: str) -> dict:
    return {"$ref": f"#/components/schemas/{name}"}


def _path_param(name: str, description: str) -> dict:
    return {
        "name": name,
        "in": "path",
        "required": True,
        "schema": {"type": "string"},
        "description": description,
    }


def format_as_openapi(playbook: dict[str, Any], base_url: str) -> dict[str, Any]:
    """OpenAPI 3.1 document describing this playbook's agent-facing endpoints."""
    guid = playbook["guid"]
    base = f"/playbooks/{guid}"
    persona = playbook.get("persona")
    security = [{"apiKey": []}]

    skill_schemas = {
        f"Skill_{name}": {
            **skill_input_schema(skill.get("definition")),
            "description": skill.get("description") or skill["name"],
        }
        for skill, name in zip(playbook["skills"], skill_tool_names(playbook["skills"]))
    }

    memory_filters = [
        {"name": "key", "description": "Get specific memory by key", "schema": {"type": "string"}},
        {"name": "search", "description": "Search keys, descriptions and summaries", "schema": {"type": "string"}},
        {"name": "tags", "description": "Filter by tags (comma-separated)", "schema": {"type": "string"}},
        {"name": "tier", "description": "Filter by memory tier", "schema": {"type": "string", "enum": list(MEMORY_TIERS)}},
        {"name": "memory_type", "description": "Filter by memory type", "schema": {"type": "string", "enum": list(MEMORY_TYPES)}},
        {"name": "status", "description": "Filter by status", "schema": {"type": "string", "enum": list(MEMORY_STATUSES)}},
    ]

    paths = {
        f"{base}/memory": {
            "get": {
                "summary": "Get or search memories",
                "operationId": "getMemories",
                "parameters": [{**param, "in": "query", "required": False} for param in memory_filters],
                "responses": {
                    "200": _json_response("Memory entries", {"type": "array", "items": _ref("MemoryEntry")}),
                    "404": _error_response("Playbook not found"),
                },
            },
        },
        f"{base}/memory/{{key}}": {
            "get": {
                "summary": "Get memory by key",
                "operationId": "getMemoryByKey",
                "parameters": [_path_param("key", "Memory key")],
                "responses": {
                    "200": _json_response("Memory entry", _ref("MemoryEntry")),
                    "404": _error_response("Memory not found"),
                },
            },
            "put": {
                "summary": "Write memory",
                "description": "Create or update a memory entry. Requires API key.",
                "operationId": "writeMemory",
                "parameters": [_path_param("key", "Memory key")],
                "requestBody": {"required": True, "content": {"application/json": {"schema": _ref("MemoryWrite")}}},
                "responses": {
                    "200": _json_response("Memory written", _ref("MemoryEntry")),
                    "401": _error_response("Unauthorized"),
                },
                "security": security,
            },
            "delete": {
                "summary": "Delete memory",
                "operationId": "deleteMemory",
                "parameters": [_path_param("key", "Memory key")],
                "responses": {
                    "200": _json_response("Memory deleted", _ref("Success")),
                    "401": _error_response("Unauthorized"),
                },
                "security": security,
            },
        },
        f"{base}/canvas": {
            "get": {
                "summary": "List canvas documents",
                "operationId": "listCanvasDocuments",
                "responses": {
                    "200": _json_response("Canvas documents", {"type": "array", "items": _ref("CanvasDocument")}),
                },
            },
            "post": {
                "summary": "Create canvas document",
                "operationId": "createCanvasDocument",
                "requestBody": {"required": True, "content": {"application/json": {"schema": _ref("CanvasWrite")}}},
                "responses": {
                    "201": _json_response("Canvas document created", _ref("CanvasDocument")),
                    "409": _error_response("Slug already exists"),
                },
                "security": security,
            },
        },
        f"{base}/canvas/{{slug}}": {
            "get": {
                "summary": "Read canvas document",
                "operationId": "readCanvasDocument",
                "parameters": [_path_param("slug", "Canvas document slug")],
                "responses": {
                    "200": _json_response("Canvas document", _ref("CanvasDocument")),
                    "404": _error_response("Canvas document not found"),
                },
            },
            "put": {
                "summary": "Update canvas document",
                "operationId": "updateCanvasDocument",
                "parameters": [_path_param("slug", "Canvas document slug")],
                "requestBody": {"required": True, "content": {"application/json": {"schema": _ref("CanvasWrite")}}},
                "responses": {"200": _json_response("Canvas document updated", _ref("CanvasDocument"))},
                "security": security,
            },
            "delete": {
                "summary": "Delete canvas document",
                "operationId": "deleteCanvasDocument",
                "parameters": [_path_param("slug", "Canvas document slug")],
                "responses": {"200": _json_response("Document deleted", _ref("Success"))},
                "security": security,
            },
        },
        f"{base}/canvas/{{slug}}/sections/{{sectionId}}": {
            "get": {
                "summary": "Read canvas section",
                "operationId": "readCanvasSection",
                "parameters": [
                    _path_param("slug", "Canvas document slug"),
                    _path_param("sectionId", "Section id such as s2"),
                ],
                "responses": {
                    "200": _json_response("Canvas section", _ref("CanvasSection")),
                    "404": _error_response("Section not found"),
                },
            },
        },
        f"{base}/skills": {
            "get": {
                "summary": "List skills",
                "operationId": "listSkills",
                "responses": {"200": _json_response("Skills", {"type": "array", "items": _ref("Skill")})},
            },
        },
        f"{base}/skills/{{skillId}}": {
            "get": {
                "summary": "Get skill",
                "operationId": "getSkill",
                "parameters": [_path_param("skillId", "Skill ID or name")],
                "responses": {
                    "200": _json_response("Skill details", _ref("Skill")),
                    "404": _error_response("Skill not found"),
                },
            },
        },
        f"{base}/personas": {
            "get": {
                "summary": "List personas",
                "description": "The playbook persona, returned as a one-element array.",
                "operationId": "listPersonas",
                "responses": {"200": _json_response("Personas", {"type": "array", "items": _ref("Persona")})},
            },
        },
    }

    schemas = {
        "MemoryEntry": {
            "type": "object",
            "properties": {
                "key": {"type": "string"},
                "value": {"description": "Stored value (any JSON)"},
                "tags": {"type": "array", "items": {"type": "string"}},
                "description": {"type": "string"},
                "tier": {"type": "string", "enum": list(MEMORY_TIERS)},
                "priority": {"type": "integer", "minimum": 1, "maximum": 100},
                "parent_key": {"type": "string"},
                "summary": {"type": "string"},
                "memory_type": {"type": "string", "enum": list(MEMORY_TYPES)},
                "status": {"type": "string", "enum": list(MEMORY_STATUSES)},
                "metadata": {"type": "object"},
                "updated_at": {"type": "string", "format": "date-time"},
            },
        },
        "MemoryWrite": {
            "type": "object",
            "properties": {
                "value": {"description": "Value to store (any JSON)"},
                "tags": {"type": "array", "items": {"type": "string"}},
                "description": {"type": "string"},
                "tier": {"type": "string", "enum": list(MEMORY_TIERS)},
                "priority": {"type": "integer", "minimum": 1, "maximum": 100},
                "parent_key": {"type": "string"},
                "summary": {"type": "string"},
                "memory_type": {"type": "string", "enum": list(MEMORY_TYPES)},
                "status": {"type": "string", "enum": list(MEMORY_STATUSES)},
                "metadata": {"type": "object"},
            },
            "required": ["value"],
        },
        "CanvasSection": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "heading": {"type": "string"},
                "level": {"type": "integer", "minimum": 1, "maximum": 6},
                "content": {"type": "string"},
                "locked_by": {"type": ["string", "null"]},
                "locked_at": {"type": ["string", "null"], "format": "date-time"},
            },
        },
        "CanvasDocument": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "format": "uuid"},
                "slug": {"type": "string"},
                "name": {"type": "string"},
                "content": {"type": "string"},
                "sections": {"type": "array", "items": _ref("CanvasSection")},
                "metadata": {"type": "object"},
                "sort_order": {"type": "integer"},
                "created_at": {"type": "string", "format": "date-time"},
                "updated_at": {"type": "string", "format": "date-time"},
            },
        },
        "CanvasWrite": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "slug": {"type": "string"},
                "content": {"type": "string"},
                "metadata": {"type": "object"},
                "sort_order": {"type": "integer"},
            },
            "required": ["name", "slug", "content"],
        },
        "Skill": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "format": "uuid"},
                "name": {"type": "string"},
                "description": {"type": "string"},
                "definition": {"type": "object", "properties": {"parameters": {"type": "object"}}},
                "examples": {"type": "array", "items": {"type": "object"}},
            },
        },
        "Persona": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "format": "uuid"},
                "name": {"type": "string"},
                "system_prompt": {"type": "string"},
                "metadata": {"type": "object"},
            },
        },
        "Success": {"type": "object", "properties": {"success": {"type": "boolean"}}},
        "Error": {"type": "object", "properties": {"error": {"type": "string"}}},
        **skill_schemas,
    }

    return {
        "openapi": "3.1.0",
        "info": {
            "title": playbook["name"],
            "description": _persona_header(persona)
            + (playbook.get("description") or f"API for {playbook['name']} playbook"),
            "version": "1.0.0",
        },
        "servers": [{"url": f"{base_url}/api"}],
        "paths": paths,
        "components": {
            "schemas": schemas,
            "securitySchemes": {
                "apiKey": {
                    "type": "http",
                    "scheme": "bearer",
                    "description": "API key starting with apb_live_",
                },
            },
        },
        "x-playbook": {
            "guid": guid,
            "persona": persona,
            "skills": [
                {
                    "type": "function",
                    "function": {
                        "name": tool["name"],
                        "description": tool["description"],
                        "parameters": tool["inputSchema"],
                    },
                }
                for tool in skill_tools(playbook["skills"])
            ],
            "mcp_servers": [
                {
                    "name": server["name"],
                    "description": server.get("description"),
                    "tools_count": len(server.get("tools") or []),
                }
                for server in playbook["mcp_servers"]
            ],
        },
    }


def format_as_mcp(playbook: dict[str, Any]) -> dict[str, Any]:
    """MCP server manifest: built-in tools, skill tools and MCP server descriptors."""
    tools = [
        {
            "name": tool["name"],
            "description": tool.get("description") or tool["name"],
            "inputSchema": tool_input_schema(tool),
        }
        for tool in PLAYBOOK_TOOLS
    ]
    tools.extend(skill_tools(playbook["skills"]))

    resources = playbook_resources(playbook["guid"])

    for server in playbook["mcp_servers"]:
        for tool in server.get("tools") or []:
            tools.append(
                {
                    "name": tool["name"],
                    "description": tool.get("description") or tool["name"],
                    "inputSchema": tool_input_schema(tool),
                }
            )
        for resource in server.get("resources") or []:
            resources.append(
                {
                    "uri": resource["uri"],
                    "name": resource["name"],
                    "description": resource.get("description") or resource["name"],
                    "mimeType": resource.get("mimeType") or "application/octet-stream",
                }
            )

    persona = playbook.get("persona")
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "serverInfo": {"name": playbook["name"], "version": "1.0.0"},
        "capabilities": {"tools": {}, "resources": {}},
        "tools": tools,
        "resources": resources,
        "persona": {"name": persona["name"], "systemPrompt": persona["system_prompt"]} if persona else None,
    }


def format_as_anthropic(playbook: dict[str, Any]) -> dict[str, Any]:
    """Tool bundle in the Anthropic Messages API shape (``input_schema``)."""
    persona = playbook.get("persona")
    tools = [
        {
            "name": tool["name"],
            "description": tool.get("description") or tool["name"],
            "input_schema": tool_input_schema(tool),
        }
        for tool in PLAYBOOK_TOOLS
    ]
    tools.extend(
        {"name": tool["name"], "description": tool["description"], "input_schema": tool["inputSchema"]}
        for tool in skill_tools(playbook["skills"])
    )

    system_prompt = None
    if persona and persona.get("name") and persona.get("system_prompt"):
        system_prompt = f"## {persona['name']}\n\n{persona['system_prompt']}"

    return {
        "playbook": {
            "name": playbook["name"],
            "description": playbook.get("description"),
            "guid": playbook["guid"],
        },
        "system_prompt": system_prompt,
        "tools": tools,
        "mcp_servers": [
            {
                "name": server["name"],
                "description": server.get("description"),
                "tools": server.get("tools") or [],
                "resources": server.get("resources") or [],
            }
            for server in playbook["mcp_servers"]
        ],
    }


def format_as_markdown(playbook: dict[str, Any]) -> str:
    guid = playbook["guid"]
    persona = playbook.get("persona")
    parts = [f"# {playbook['name']}\n\n"]

    if playbook.get("description"):
        parts.append(f"{playbook['description']}\n\n")
    parts.append(f"**GUID:** `{guid}`\n\n")

    if persona and persona.get("name") and persona.get("system_prompt"):
        parts.append(f"## Persona\n\n### {persona['name']}\n\n{persona['system_prompt']}\n\n")

    if playbook["skills"]:
        parts.append("## Skills\n\n")
        for skill in playbook["skills"]:
            parts.append(f"### {skill['name']}\n\n")
            if skill.get("description"):
                parts.append(f"{skill['description']}\n\n")
            if skill.get("licence"):
                parts.append(f"**Licence:** {skill['licence']}\n\n")
            if skill.get("content"):
                parts.append(f"**Content:**\n\n{skill['content']}\n\n")

    if playbook["mcp_servers"]:
        parts.append("## MCP Servers\n\n")
        for server in playbook["mcp_servers"]:
            parts.append(f"### {server['name']}\n\n")
            if server.get("description"):
                parts.append(f"{server['description']}\n\n")
            if server.get("tools"):
                names = ", ".join(tool["name"] for tool in server["tools"])
                parts.append(f"**Tools:** {names}\n\n")

    parts.append("## API Endpoints\n\n")
    parts.append(f"- **JSON:** `GET /api/playbooks/{guid}`\n")
    for fmt in EXPORT_FORMATS[1:]:
        parts.append(f"- **{fmt}:** `GET /api/playbooks/{guid}?format={fmt}`\n")
    parts.append(f"- **MCP server:** `GET /api/mcp/{guid}`\n")

    return "".join(parts)
