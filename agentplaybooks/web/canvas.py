"""Canvas endpoints: markdown documents stored with their parsed sections."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError

from agentplaybooks.canvas import (
    find_section,
    parse_markdown_sections,
    sections_from_json,
    sections_to_json,
)
from agentplaybooks.persistence.models import CanvasRecord, PlaybookRecord
from agentplaybooks.persistence.postgres import PostgresRepository
from agentplaybooks.schemas import CanvasWrite

from .deps import get_repo
from .guards import playbook_writer, readable_playbook

logger = logging.getLogger(__name__)

canvas_router = APIRouter(tags=["canvas"])


@canvas_router.get("/playbooks/{guid}/canvas")
async def list_canvas(
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    """List documents (without bodies) in display order."""
    docs = await repo.list_canvas(playbook.id)
    return [doc.to_summary_dict() for doc in docs]


@canvas_router.post("/playbooks/{guid}/canvas", status_code=201)
async def create_canvas(
    body: CanvasWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("canvas:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    if not body.name or not body.slug or body.content is None:
        raise HTTPException(400, "Name, slug, and content are required")

    sections = parse_markdown_sections(body.content)
    try:
        doc = await repo.create_canvas(
            CanvasRecord(
                playbook_id=playbook.id,
                slug=body.slug,
                name=body.name,
                content=body.content,
                sections=sections_to_json(sections),
                metadata=body.metadata or {},
                sort_order=body.sort_order or 0,
            )
        )
    except IntegrityError:
        raise HTTPException(409, f"Canvas document '{body.slug}' already exists")

    logger.info(f"Created canvas {body.slug} ({len(sections)} sections) in playbook {playbook.guid}")
    return doc.to_dict()


@canvas_router.get("/playbooks/{guid}/canvas/{slug}")
async def get_canvas(
    slug: str,
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    doc = await repo.get_canvas(playbook.id, slug)
    if not doc:
        raise HTTPException(404, "Canvas document not found")
    return doc.to_dict()


@canvas_router.get("/playbooks/{guid}/canvas/{slug}/sections/{section_id}")
async def get_canvas_section(
    slug: str,
    section_id: str,
    playbook: PlaybookRecord = Depends(readable_playbook),
    repo: PostgresRepository = Depends(get_repo),
):
    doc = await repo.get_canvas(playbook.id, slug)
    if not doc:
        raise HTTPException(404, "Canvas document not found")

    section = find_section(sections_from_json(doc.sections), section_id)
    if not section:
        raise HTTPException(404, "Section not found")
    return section.to_dict()


@canvas_router.put("/playbooks/{guid}/canvas/{slug}")
async def update_canvas(
    slug: str,
    body: CanvasWrite,
    playbook: PlaybookRecord = Depends(playbook_writer("canvas:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    """Partially update a document. New content re-splits its sections."""
    fields = {
        name: value
        for name, value in body.model_dump(exclude_unset=True, exclude={"slug"}).items()
        if value is not None
    }
    if "name" in fields and not fields["name"]:
        raise HTTPException(400, "Name cannot be empty")
    if "content" in fields:
        fields["sections"] = sections_to_json(parse_markdown_sections(fields["content"]))

    doc = await repo.update_canvas(playbook.id, slug, fields)
    if not doc:
        raise HTTPException(404, "Canvas document not found")
    return doc.to_dict()


@canvas_router.delete("/playbooks/{guid}/canvas/{slug}")
async def delete_canvas(
    slug: str,
    playbook: PlaybookRecord = Depends(playbook_writer("canvas:write")),
    repo: PostgresRepository = Depends(get_repo),
):
    await repo.delete_canvas(playbook.id, slug)
    logger.info(f"Deleted canvas {slug} in playbook {playbook.guid}")
    return {"success": True}
