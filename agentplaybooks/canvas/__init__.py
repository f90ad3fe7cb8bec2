"""Canvas documents: markdown split into independently addressable sections."""

from .sections import (
    CanvasSection,
    find_section,
    parse_markdown_sections,
    render_markdown_sections,
    sections_from_json,
    sections_to_json,
)

__all__ = [
    "CanvasSection",
    "find_section",
    "parse_markdown_sections",
    "render_markdown_sections",
    "sections_from_json",
    "sections_to_json",
]
