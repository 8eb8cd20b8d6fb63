"""Column width allocation for the editor canvas and for print/export layout."""

from __future__ import annotations

import math
from typing import Sequence

from gridtpl.contracts.template import Column

MIN_SCREEN_WIDTH = 150

PDF_USER_UNITS_PER_INCH = 72
PAGE_MARGINS = 72  # left + right, in PDF user units

# Usable content width per (page size, orientation): page width minus margins.
CONTENT_WIDTHS: dict[tuple[str, str], int] = {
    ("A4", "PORTRAIT"): 595 - PAGE_MARGINS,
    ("A4", "LANDSCAPE"): 842 - PAGE_MARGINS,
    ("LETTER", "PORTRAIT"): 612 - PAGE_MARGINS,
    ("LETTER", "LANDSCAPE"): 792 - PAGE_MARGINS,
}
DEFAULT_PAGE = ("A4", "PORTRAIT")


def screen_widths(columns: Sequence[Column], container_width: int) -> list[int]:
    """Pixel widths for the editor canvas.

    Explicit column widths are kept as-is; whatever room is left in the
    container is split evenly among the remaining columns. A share that
    would be zero or negative falls back to ``MIN_SCREEN_WIDTH``.
    """
    if not columns:
        return []
    explicit = [col.format.width or None for col in columns]
    auto_count = sum(1 for w in explicit if w is None)
    if auto_count == len(columns):
        share = container_width // len(columns)
        return [share if share > 0 else MIN_SCREEN_WIDTH] * len(columns)

    remaining = max(0, container_width - sum(w for w in explicit if w is not None))
    share = remaining // auto_count if auto_count else 0
    if share <= 0:
        share = MIN_SCREEN_WIDTH
    return [w if w is not None else share for w in explicit]


def available_width(page_size: str = "A4", orientation: str = "portrait") -> int:
    key = (str(page_size).upper(), str(orientation).upper())
    return CONTENT_WIDTHS.get(key, CONTENT_WIDTHS[DEFAULT_PAGE])


def relative_widths(columns: Sequence[Column]) -> list[float]:
    """Raw relative weights, as handed to a PDF table writer."""
    weights: list[float] = []
    for col in columns:
        rw = col.format.relative_width
        weights.append(rw if rw and rw > 0 else 1)
    return weights


def export_widths(
    columns: Sequence[Column],
    page_size: str = "A4",
    orientation: str = "portrait",
) -> list[int]:
    """Layout-unit widths proportional to each column's relative width."""
    weights = relative_widths(columns)
    if not weights:
        return []
    total = sum(weights)
    usable = available_width(page_size, orientation)
    return [math.floor(w / total * usable) for w in weights]
