"""Named page sizes and orientation helpers."""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple


class PageRect(NamedTuple):
    """Page dimensions in PDF points."""

    width: float
    height: float

    def rotated(self) -> "PageRect":
        """Return the rectangle with width and height swapped."""
        return PageRect(self.height, self.width)


class PageSize(str, Enum):
    A0 = "A0"
    A1 = "A1"
    A2 = "A2"
    A3 = "A3"
    A4 = "A4"
    A5 = "A5"
    A6 = "A6"
    A7 = "A7"
    A8 = "A8"
    A9 = "A9"
    A10 = "A10"
    B0 = "B0"
    B1 = "B1"
    B2 = "B2"
    B3 = "B3"
    B4 = "B4"
    B5 = "B5"
    B6 = "B6"
    B7 = "B7"
    B8 = "B8"
    B9 = "B9"
    B10 = "B10"
    LETTER = "LETTER"
    LEGAL = "LEGAL"
    POSTCARD = "POSTCARD"


PAGE_SIZES = {
    PageSize.A0: PageRect(2384, 3370),
    PageSize.A1: PageRect(1684, 2384),
    PageSize.A2: PageRect(1191, 1684),
    PageSize.A3: PageRect(842, 1191),
    PageSize.A4: PageRect(595, 842),
    PageSize.A5: PageRect(420, 595),
    PageSize.A6: PageRect(297, 420),
    PageSize.A7: PageRect(210, 297),
    PageSize.A8: PageRect(148, 210),
    PageSize.A9: PageRect(105, 148),
    PageSize.A10: PageRect(74, 105),
    PageSize.B0: PageRect(2834, 4008),
    PageSize.B1: PageRect(2004, 2834),
    PageSize.B2: PageRect(1417, 2004),
    PageSize.B3: PageRect(1000, 1417),
    PageSize.B4: PageRect(708, 1000),
    PageSize.B5: PageRect(498, 708),
    PageSize.B6: PageRect(354, 498),
    PageSize.B7: PageRect(249, 354),
    PageSize.B8: PageRect(175, 249),
    PageSize.B9: PageRect(124, 175),
    PageSize.B10: PageRect(88, 124),
    PageSize.LETTER: PageRect(612, 792),
    PageSize.LEGAL: PageRect(612, 1008),
    PageSize.POSTCARD: PageRect(283, 416),
}

DEFAULT_PAGE_SIZE = PageSize.A4


def parse_page_size(value: PageSize | str | None) -> PageSize | None:
    """Return the matching ``PageSize`` or None for unknown identifiers."""
    if value is None or isinstance(value, PageSize):
        return value
    try:
        return PageSize(str(value).strip().upper())
    except ValueError:
        return None


def resolve_page_size(
    page_size: PageSize | str | None, is_landscape: bool = False
) -> PageRect | None:
    """
    Map a page-size identifier and orientation flag to a rectangle.

    Unknown identifiers resolve to None, which callers treat as
    "no page-size override" rather than an error.
    """
    size = parse_page_size(page_size)
    if size is None:
        return None
    rect = PAGE_SIZES[size]
    return rect.rotated() if is_landscape else rect


def resolve_page_size_or_default(
    page_size: PageSize | str | None, is_landscape: bool = False
) -> PageRect:
    """Resolve a page size, falling back to A4 for unknown identifiers."""
    return resolve_page_size(page_size, is_landscape) or resolve_page_size(
        DEFAULT_PAGE_SIZE, is_landscape
    )


def is_landscape(rect: PageRect) -> bool:
    return rect.width > rect.height
