"""Split markdown canvas documents into flat, addressable sections.

A section starts at every ATX heading (``#`` to ``######``) and runs until
the next heading. Heading levels are recorded but never nested: the result
is always a flat list in document order, with synthetic ids ``s1``, ``s2``...

Text before the first heading becomes an "Introduction" section, and a
document with no headings at all becomes a single "Content" section.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+)$")

INTRODUCTION_HEADING = "Introduction"
CONTENT_HEADING = "Content"


@dataclass
class CanvasSection:
    """One heading-delimited slice of a canvas document."""

    id: str
    heading: str
    level: int
    content: str
    # Lock fields are stored with each section but nothing enforces them yet
    locked_by: str | None = None
    locked_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "heading": self.heading,
            "level": self.level,
            "content": self.content,
            "locked_by": self.locked_by,
            "locked_at": self.locked_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanvasSection":
        return cls(
            id=data["id"],
            heading=data["heading"],
            level=int(data["level"]),
            content=data.get("content", ""),
            locked_by=data.get("locked_by"),
            locked_at=data.get("locked_at"),
        )


def parse_markdown_sections(content: str) -> list[CanvasSection]:
    """Split markdown into an ordered list of sections.

    Args:
        content: Raw markdown text.

    Returns:
        Sections in document order. Empty or blank input yields ``[]``.
    """
    if not content or not content.strip():
        return []

    lines = content.replace("\r\n", "\n").split("\n")

    # (heading, level, body lines) for every section seen so far
    pending: list[tuple[str, int, list[str]]] = []
    preamble: list[str] = []

    for line in lines:
        match = HEADING_PATTERN.match(line)
        if match:
            pending.append((match.group(2), len(match.group(1)), []))
        elif pending:
            pending[-1][2].append(line)
        else:
            preamble.append(line)

    if not pending:
        return [CanvasSection(id="s1", heading=CONTENT_HEADING, level=1, content=content.strip())]

    intro = "\n".join(preamble).strip()
    if intro:
        pending.insert(0, (INTRODUCTION_HEADING, 1, [intro]))

    return [
        CanvasSection(
            id=f"s{index}",
            heading=heading,
            level=level,
            content="\n".join(body).strip(),
        )
        for index, (heading, level, body) in enumerate(pending, start=1)
    ]


def render_markdown_sections(sections: Iterable[CanvasSection]) -> str:
    """Reassemble sections into markdown.

    Parsing the result reproduces the same headings, levels and contents.
    """
    blocks = []
    for section in sections:
        block = f"{'#' * section.level} {section.heading}"
        if section.content:
            block += f"\n\n{section.content}"
        blocks.append(block)
    return "\n\n".join(blocks) + "\n" if blocks else ""


def find_section(sections: Iterable[CanvasSection], section_id: str) -> CanvasSection | None:
    """Return the section with the given synthetic id, if present."""
    for section in sections:
        if section.id == section_id:
            return section
    return None


def sections_to_json(sections: Iterable[CanvasSection]) -> list[dict[str, Any]]:
    """Serialize sections for storage in the canvas.sections JSON column."""
    return [section.to_dict() for section in sections]


def sections_from_json(data: list[dict[str, Any]] | None) -> list[CanvasSection]:
    return [CanvasSection.from_dict(item) for item in data or []]
