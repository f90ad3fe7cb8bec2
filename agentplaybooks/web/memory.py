"""Memory endpoints: a per-playbook key/value store for agents."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from agentplaybooks.persistence.models import PlaybookRecord
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.schemas import MemoryWrite

from .deps import get_repo
from .guards import playbook_writer, readable_playbook

logger = logging.getLogger(__name__)

memory_router = APIRouter(tags=["memory"])

# Optional columns that may be cleared by sending null
NULLABLE_MEMORY_FIELDS = ("description", "parent_key", "summary")


def parse_tags(tags: str | None) -> list[str]:
    """Split a comma separated tag filter, ignoring blanks."""
    if not tags:
        return []
    return [tag.strip() for tag in tags.split(",") if tag.strip()]


def memory_fields(body: MemoryWrite) -> dict:
    """Optional memory attributes present in the request body."""
    return {
        name: value
        for name, value in body.model_dump(exclude_unset=True, exclude={"value"}).items()
        if value is not None or name in NULLABLE_MEMORY_FIELDS
    }


@memory_router.get("/playbooks/{guid}/memory")
async def list_memories(
    key: str | None = Query(default=None),
    search: str | None = Query(default=None),
    tags: str | None = Query(default=None, description="Comma separated; any tag matches"),
    tier: str | None = Query(default=None),
    memory_type: str | None = Query(default=None),
    status: str | None = Query(default=None),
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    """List or search memories, most recently updated first.

    With ``key`` the single matching memory is returned instead of a list.
    """
    if key:
        memory = await repo.get_memory(playbook.id, key)
        if not memory:
            raise HTTPException(404, "Memory not found")
        return memory.to_dict()

    memories = await repo.list_memories(
        playbook.id,
        search=search,
        tags=parse_tags(tags),
        tier=tier,
        memory_type=memory_type,
        status=status,
    )
    return [m.to_dict() for m in memories]


@memory_router.get("/playbooks/{guid}/memory/{key}")
async def get_memory(
    key: str,
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    memory = await repo.get_memory(playbook.id, key)
    if not memory:
        raise HTTPException(404, "Memory not found")
    return memory.to_dict()


@memory_router.put("/playbooks/{guid}/memory/{key}")
async def write_memory(
    key: str,
    body: MemoryWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("memory:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    """Create or update a memory. Omitted optional fields keep their stored values."""
    if not body.has_value:
        raise HTTPException(400, "Value is required")

    memory = await repo.upsert_memory(playbook.id, key, body.value, memory_fields(body))
    logger.info(f"Wrote memory {key} in playbook {playbook.guid}")
    return memory.to_dict()


@memory_router.delete("/playbooks/{guid}/memory/{key}")
async def delete_memory(
    key: str,
    playbook: PlaybookRecord = Depends(playbook_writer("memory:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    await repo.delete_memory(playbook.id, key)
    logger.info(f"Deleted memory {key} in playbook {playbook.guid}")
    return {"success": True}
