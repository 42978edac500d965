"""
Overlap checks on page-normalized rectangles.

All coordinates are fractions of the rendered page box, so rectangles from
different zoom levels compare directly.
"""

from collections.abc import Iterable

from app.features.annotation.domain.models import Highlight, Position


def rectangles_overlap(a: Position, b: Position) -> bool:
    """Axis-aligned bounding-box test; touching edges count as overlapping."""
    return not (
        a.x > b.x + b.width
        or a.x + a.width < b.x
        or a.y > b.y + b.height
        or a.y + a.height < b.y
    )


def find_overlapping(
    highlights: Iterable[Highlight], position: Position, page_number: int
) -> Highlight | None:
    """Return the first highlight on page_number whose box overlaps position."""
    for highlight in highlights:
        if highlight.page_number != page_number:
            continue
        if rectangles_overlap(position, highlight.position):
            return highlight
    return None
