"""Async PostgreSQL repository using SQLAlchemy Core + asyncpg."""

import logging
from typing import Any

from sqlalchemy import asc, delete, desc, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine

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
from .tables import (
    api_keys,
    canvas,
    mcp_servers,
    memories,
    playbooks,
    skills,
    user_api_keys,
    users,
)

logger = logging.getLogger(__name__)

# Optional memory columns that are only written when the caller supplies them
MEMORY_OPTIONAL_FIELDS = (
    "tags",
    "description",
    "tier",
    "priority",
    "parent_key",
    "summary",
    "memory_type",
    "status",
    "metadata",
)


class PostgresRepository:
    """Async repository backed by PostgreSQL.

    All methods are async. Engine lifecycle is managed externally
    (created in FastAPI lifespan or CLI, passed to constructor).

    Lookups return None when no row matches; deletes return whether a
    row was removed. Database errors propagate to the caller.
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    # === Users ===

    async def upsert_user(self, email: str, display_name: str = "") -> UserRecord:
        """Insert a user by email, or touch the existing one. Returns the user."""
        stmt = (
            pg_insert(users)
            .values(email=email, display_name=display_name)
            .on_conflict_do_update(
                index_elements=[users.c.email],
                set_={"updated_at": func.now()},
            )
            .returning(users)
        )
        async with self._engine.begin() as conn:
            row = (await conn.execute(stmt)).mappings().one()
        return self._row_to_user(row)

    async def get_user(self, user_id: str) -> UserRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(users).where(users.c.id == user_id))
            row = result.mappings().first()
        return self._row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> UserRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(users).where(users.c.email == email))
            row = result.mappings().first()
        return self._row_to_user(row) if row else None

    async def update_user_display_name(self, user_id: str, display_name: str) -> UserRecord:
        """Update a user's display name. Raises if name is taken (unique index)."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(display_name=display_name, updated_at=func.now())
                .returning(users)
            )
            row = result.mappings().first()
        if not row:
            raise ValueError(f"User {user_id} not found")
        return self._row_to_user(row)

    # === Playbooks ===

    async def create_playbook(self, playbook: PlaybookRecord) -> PlaybookRecord:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                insert(playbooks)
                .values(
                    user_id=playbook.user_id,
                    guid=playbook.guid,
                    name=playbook.name,
                    description=playbook.description,
                    visibility=playbook.visibility,
                    config=playbook.config,
                    tags=playbook.tags,
                    persona_name=playbook.persona_name,
                    persona_system_prompt=playbook.persona_system_prompt,
                    persona_metadata=playbook.persona_metadata,
                )
                .returning(playbooks)
            )
            row = result.mappings().one()
        logger.info(f"Created playbook {row['guid']} for user {row['user_id']}")
        return self._row_to_playbook(row)

    async def get_playbook(self, playbook_id: str) -> PlaybookRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(playbooks).where(playbooks.c.id == playbook_id))
            row = result.mappings().first()
        return self._row_to_playbook(row) if row else None

    async def get_playbook_by_guid(self, guid: str) -> PlaybookRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(playbooks).where(playbooks.c.guid == guid))
            row = result.mappings().first()
        return self._row_to_playbook(row) if row else None

    def _playbooks_with_counts(self):
        skill_counts = (
            select(skills.c.playbook_id, func.count().label("skill_count"))
            .group_by(skills.c.playbook_id)
            .subquery()
        )
        mcp_counts = (
            select(mcp_servers.c.playbook_id, func.count().label("mcp_server_count"))
            .group_by(mcp_servers.c.playbook_id)
            .subquery()
        )
        return (
            select(
                playbooks,
                func.coalesce(skill_counts.c.skill_count, 0).label("skill_count"),
                func.coalesce(mcp_counts.c.mcp_server_count, 0).label("mcp_server_count"),
            )
            .outerjoin(skill_counts, playbooks.c.id == skill_counts.c.playbook_id)
            .outerjoin(mcp_counts, playbooks.c.id == mcp_counts.c.playbook_id)
        )

    async def list_user_playbooks(self, user_id: str) -> list[PlaybookRecord]:
        """List a user's playbooks with skill/MCP counts, most recently updated first."""
        query = (
            self._playbooks_with_counts()
            .where(playbooks.c.user_id == user_id)
            .order_by(desc(playbooks.c.updated_at))
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [self._row_to_playbook(row) for row in rows]

    async def list_public_playbooks(
        self,
        search: str | None = None,
        sort_by: str = "updated",
        limit: int = 50,
    ) -> list[PlaybookRecord]:
        """List public playbooks.

        Args:
            search: case-insensitive match on name or description
            sort_by: "updated" (default), "newest", or "name"
        """
        query = self._playbooks_with_counts().where(playbooks.c.visibility == "public").limit(limit)

        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(playbooks.c.name.ilike(pattern), playbooks.c.description.ilike(pattern))
            )

        if sort_by == "newest":
            query = query.order_by(desc(playbooks.c.created_at))
        elif sort_by == "name":
            query = query.order_by(asc(playbooks.c.name))
        else:
            query = query.order_by(desc(playbooks.c.updated_at))

        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [self._row_to_playbook(row) for row in rows]

    async def update_playbook(self, playbook_id: str, fields: dict[str, Any]) -> PlaybookRecord | None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(playbooks)
                .where(playbooks.c.id == playbook_id)
                .values(**fields, updated_at=func.now())
                .returning(playbooks)
            )
            row = result.mappings().first()
        return self._row_to_playbook(row) if row else None

    async def delete_playbook(self, playbook_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(delete(playbooks).where(playbooks.c.id == playbook_id))
        if result.rowcount:
            logger.info(f"Deleted playbook {playbook_id}")
        return bool(result.rowcount)

    # === Skills ===

    async def list_skills(self, playbook_id: str) -> list[SkillRecord]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(skills)
                .where(skills.c.playbook_id == playbook_id)
                .order_by(desc(skills.c.priority), asc(skills.c.name))
            )
            rows = result.mappings().all()
        return [self._row_to_skill(row) for row in rows]

    async def get_skill(self, playbook_id: str, id_or_name: str) -> SkillRecord | None:
        """Find a skill by id, falling back to an exact name match."""
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(skills)
                .where(
                    skills.c.playbook_id == playbook_id,
                    or_(skills.c.id == id_or_name, skills.c.name == id_or_name),
                )
                .order_by(desc(skills.c.id == id_or_name))
                .limit(1)
            )
            row = result.mappings().first()
        return self._row_to_skill(row) if row else None

    async def create_skill(self, skill: SkillRecord) -> SkillRecord:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                insert(skills)
                .values(
                    playbook_id=skill.playbook_id,
                    name=skill.name,
                    description=skill.description,
                    definition=skill.definition,
                    examples=skill.examples,
                    content=skill.content,
                    licence=skill.licence,
                    priority=skill.priority,
                )
                .returning(skills)
            )
            row = result.mappings().one()
        return self._row_to_skill(row)

    async def update_skill(
        self, playbook_id: str, skill_id: str, fields: dict[str, Any]
    ) -> SkillRecord | None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(skills)
                .where(skills.c.id == skill_id, skills.c.playbook_id == playbook_id)
                .values(**fields, updated_at=func.now())
                .returning(skills)
            )
            row = result.mappings().first()
        return self._row_to_skill(row) if row else None

    async def delete_skill(self, playbook_id: str, skill_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(skills).where(skills.c.id == skill_id, skills.c.playbook_id == playbook_id)
            )
        return bool(result.rowcount)

    # === MCP servers ===

    async def list_mcp_servers(self, playbook_id: str) -> list[McpServerRecord]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(mcp_servers)
                .where(mcp_servers.c.playbook_id == playbook_id)
                .order_by(asc(mcp_servers.c.created_at))
            )
            rows = result.mappings().all()
        return [self._row_to_mcp_server(row) for row in rows]

    async def create_mcp_server(self, server: McpServerRecord) -> McpServerRecord:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                insert(mcp_servers)
                .values(
                    playbook_id=server.playbook_id,
                    name=server.name,
                    description=server.description,
                    tools=server.tools,
                    resources=server.resources,
                )
                .returning(mcp_servers)
            )
            row = result.mappings().one()
        return self._row_to_mcp_server(row)

    async def update_mcp_server(
        self, playbook_id: str, server_id: str, fields: dict[str, Any]
    ) -> McpServerRecord | None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(mcp_servers)
                .where(mcp_servers.c.id == server_id, mcp_servers.c.playbook_id == playbook_id)
                .values(**fields, updated_at=func.now())
                .returning(mcp_servers)
            )
            row = result.mappings().first()
        return self._row_to_mcp_server(row) if row else None

    async def delete_mcp_server(self, playbook_id: str, server_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(mcp_servers).where(
                    mcp_servers.c.id == server_id, mcp_servers.c.playbook_id == playbook_id
                )
            )
        return bool(result.rowcount)

    # === Memories ===

    async def list_memories(
        self,
        playbook_id: str,
        search: str | None = None,
        tags: list[str] | None = None,
        tier: str | None = None,
        memory_type: str | None = None,
        status: str | None = None,
    ) -> list[MemoryRecord]:
        """List memories, most recently updated first.

        Args:
            search: case-insensitive match on key, description or summary
            tags: match memories carrying any of these tags
        """
        query = select(memories).where(memories.c.playbook_id == playbook_id)

        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    memories.c.key.ilike(pattern),
                    memories.c.description.ilike(pattern),
                    memories.c.summary.ilike(pattern),
                )
            )
        if tags:
            query = query.where(memories.c.tags.overlap(tags))
        if tier:
            query = query.where(memories.c.tier == tier)
        if memory_type:
            query = query.where(memories.c.memory_type == memory_type)
        if status:
            query = query.where(memories.c.status == status)

        query = query.order_by(desc(memories.c.updated_at))

        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [self._row_to_memory(row) for row in rows]

    async def get_memory(self, playbook_id: str, key: str) -> MemoryRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(memories).where(memories.c.playbook_id == playbook_id, memories.c.key == key)
            )
            row = result.mappings().first()
        return self._row_to_memory(row) if row else None

    async def upsert_memory(
        self, playbook_id: str, key: str, value: Any, fields: dict[str, Any] | None = None
    ) -> MemoryRecord:
        """Create or replace a memory's value.

        Optional columns in ``fields`` are written only when present, so an
        update that omits them keeps the stored tags, tier and so on.
        """
        extra = {k: v for k, v in (fields or {}).items() if k in MEMORY_OPTIONAL_FIELDS}
        stmt = pg_insert(memories).values(playbook_id=playbook_id, key=key, value=value, **extra)
        stmt = stmt.on_conflict_do_update(
            index_elements=[memories.c.playbook_id, memories.c.key],
            set_={"value": stmt.excluded.value, **extra, "updated_at": func.now()},
        ).returning(memories)

        async with self._engine.begin() as conn:
            row = (await conn.execute(stmt)).mappings().one()
        return self._row_to_memory(row)

    async def delete_memory(self, playbook_id: str, key: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(memories).where(memories.c.playbook_id == playbook_id, memories.c.key == key)
            )
        return bool(result.rowcount)

    # === Canvas ===

    async def list_canvas(self, playbook_id: str) -> list[CanvasRecord]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(canvas)
                .where(canvas.c.playbook_id == playbook_id)
                .order_by(asc(canvas.c.sort_order), asc(canvas.c.name))
            )
            rows = result.mappings().all()
        return [self._row_to_canvas(row) for row in rows]

    async def get_canvas(self, playbook_id: str, slug: str) -> CanvasRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(canvas).where(canvas.c.playbook_id == playbook_id, canvas.c.slug == slug)
            )
            row = result.mappings().first()
        return self._row_to_canvas(row) if row else None

    async def create_canvas(self, doc: CanvasRecord) -> CanvasRecord:
        """Insert a canvas document. Raises IntegrityError on a duplicate slug."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                insert(canvas)
                .values(
                    playbook_id=doc.playbook_id,
                    slug=doc.slug,
                    name=doc.name,
                    content=doc.content,
                    sections=doc.sections,
                    metadata=doc.metadata,
                    sort_order=doc.sort_order,
                )
                .returning(canvas)
            )
            row = result.mappings().one()
        return self._row_to_canvas(row)

    async def update_canvas(
        self, playbook_id: str, slug: str, fields: dict[str, Any]
    ) -> CanvasRecord | None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(canvas)
                .where(canvas.c.playbook_id == playbook_id, canvas.c.slug == slug)
                .values(**fields, updated_at=func.now())
                .returning(canvas)
            )
            row = result.mappings().first()
        return self._row_to_canvas(row) if row else None

    async def delete_canvas(self, playbook_id: str, slug: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(canvas).where(canvas.c.playbook_id == playbook_id, canvas.c.slug == slug)
            )
        return bool(result.rowcount)

    # === API keys ===

    async def create_api_key(self, key: ApiKeyRecord) -> ApiKeyRecord:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                insert(api_keys)
                .values(
                    playbook_id=key.playbook_id,
                    key_hash=key.key_hash,
                    key_prefix=key.key_prefix,
                    name=key.name,
                    permissions=key.permissions,
                    expires_at=key.expires_at,
                    is_active=key.is_active,
                )
                .returning(api_keys)
            )
            row = result.mappings().one()
        return self._row_to_api_key(row)

    async def list_api_keys(self, playbook_id: str) -> list[ApiKeyRecord]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(api_keys)
                .where(api_keys.c.playbook_id == playbook_id)
                .order_by(desc(api_keys.c.created_at))
            )
            rows = result.mappings().all()
        return [self._row_to_api_key(row) for row in rows]

    async def get_active_api_key_by_hash(self, key_hash: str) -> ApiKeyRecord | None:
        """Resolve an active key together with its playbook's guid."""
        query = (
            select(api_keys, playbooks.c.guid.label("playbook_guid"))
            .join(playbooks, api_keys.c.playbook_id == playbooks.c.id)
            .where(api_keys.c.key_hash == key_hash, api_keys.c.is_active.is_(True))
        )
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).mappings().first()
        return self._row_to_api_key(row) if row else None

    async def touch_api_key(self, key_id: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                update(api_keys).where(api_keys.c.id == key_id).values(last_used_at=func.now())
            )

    async def delete_api_key(self, playbook_id: str, key_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(api_keys).where(api_keys.c.id == key_id, api_keys.c.playbook_id == playbook_id)
            )
        return bool(result.rowcount)

    # === User API keys ===

    async def create_user_api_key(self, key: UserApiKeyRecord) -> UserApiKeyRecord:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                insert(user_api_keys)
                .values(
                    user_id=key.user_id,
                    key_hash=key.key_hash,
                    key_prefix=key.key_prefix,
                    name=key.name,
                    permissions=key.permissions,
                    expires_at=key.expires_at,
                    is_active=key.is_active,
                )
                .returning(user_api_keys)
            )
            row = result.mappings().one()
        return self._row_to_user_api_key(row)

    async def list_user_api_keys(self, user_id: str) -> list[UserApiKeyRecord]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(user_api_keys)
                .where(user_api_keys.c.user_id == user_id)
                .order_by(desc(user_api_keys.c.created_at))
            )
            rows = result.mappings().all()
        return [self._row_to_user_api_key(row) for row in rows]

    async def get_active_user_api_key_by_hash(self, key_hash: str) -> UserApiKeyRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(user_api_keys).where(
                    user_api_keys.c.key_hash == key_hash, user_api_keys.c.is_active.is_(True)
                )
            )
            row = result.mappings().first()
        return self._row_to_user_api_key(row) if row else None

    async def touch_user_api_key(self, key_id: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                update(user_api_keys)
                .where(user_api_keys.c.id == key_id)
                .values(last_used_at=func.now())
            )

    async def delete_user_api_key(self, user_id: str, key_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(user_api_keys).where(
                    user_api_keys.c.id == key_id, user_api_keys.c.user_id == user_id
                )
            )
        return bool(result.rowcount)

    # === Row mapping ===

    def _row_to_user(self, row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            email=row["email"],
            display_name=row["display_name"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_playbook(self, row) -> PlaybookRecord:
        return PlaybookRecord(
            id=row["id"],
            user_id=row["user_id"],
            guid=row["guid"],
            name=row["name"],
            description=row["description"],
            visibility=row["visibility"] or "private",
            config=row["config"] or {},
            tags=list(row["tags"] or []),
            persona_name=row["persona_name"],
            persona_system_prompt=row["persona_system_prompt"],
            persona_metadata=row["persona_metadata"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            skill_count=row.get("skill_count"),
            mcp_server_count=row.get("mcp_server_count"),
        )

    def _row_to_skill(self, row) -> SkillRecord:
        return SkillRecord(
            id=row["id"],
            playbook_id=row["playbook_id"],
            name=row["name"],
            description=row["description"],
            definition=row["definition"] or {},
            examples=row["examples"] or [],
            content=row["content"],
            licence=row["licence"],
            priority=row["priority"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_mcp_server(self, row) -> McpServerRecord:
        return McpServerRecord(
            id=row["id"],
            playbook_id=row["playbook_id"],
            name=row["name"],
            description=row["description"],
            tools=row["tools"] or [],
            resources=row["resources"] or [],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_memory(self, row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            playbook_id=row["playbook_id"],
            key=row["key"],
            value=row["value"],
            tags=list(row["tags"] or []),
            description=row["description"],
            tier=row["tier"],
            priority=row["priority"],
            parent_key=row["parent_key"],
            summary=row["summary"],
            memory_type=row["memory_type"],
            status=row["status"],
            metadata=row["metadata"] or {},
            updated_at=row["updated_at"],
        )

    def _row_to_canvas(self, row) -> CanvasRecord:
        return CanvasRecord(
            id=row["id"],
            playbook_id=row["playbook_id"],
            slug=row["slug"],
            name=row["name"],
            content=row["content"] or "",
            sections=row["sections"] or [],
            metadata=row["metadata"] or {},
            sort_order=row["sort_order"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_api_key(self, row) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=row["id"],
            playbook_id=row["playbook_id"],
            key_hash=row["key_hash"],
            key_prefix=row["key_prefix"],
            name=row["name"],
            permissions=list(row["permissions"] or []),
            last_used_at=row["last_used_at"],
            expires_at=row["expires_at"],
            is_active=row["is_active"],
            created_at=row["created_at"],
            playbook_guid=row.get("playbook_guid"),
        )

    def _row_to_user_api_key(self, row) -> UserApiKeyRecord:
        return UserApiKeyRecord(
            id=row["id"],
            user_id=row["user_id"],
            key_hash=row["key_hash"],
            key_prefix=row["key_prefix"],
            name=row["name"],
            permissions=list(row["permissions"] or []),
            last_used_at=row["last_used_at"],
            expires_at=row["expires_at"],
            is_active=row["is_active"],
            created_at=row["created_at"],
        )
