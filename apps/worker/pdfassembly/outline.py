"""
Outline (bookmark tree) model and the merged-outline builder.

Each merged source document contributes to the final outline according to its
hierarchy mode. Contributions are assembled in document order, and a synthetic
document node whose title equals the title of the node emitted right before it
is folded into that node.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

GOTO_ACTION = "GoTo"
DEFAULT_FIT = "/XYZ"
DEFAULT_COLOR = (0.0, 0.0, 0.0)


class HierarchyMode(str, Enum):
    """How much of a source document's outline survives the merge."""

    NONE = "none"
    DESCENDANTS_ONLY = "descendants_only"
    THIS_ONLY = "this_only"
    WHOLE_HIERARCHY = "whole_hierarchy"

    @classmethod
    def parse(cls, value: Any) -> "HierarchyMode":
        """
        Parse a hierarchy mode from its value, its CamelCase name or its code.

        Accepts ``"whole_hierarchy"``, ``"WholeHierarchy"`` and ``3`` alike.

        Raises:
            InvalidInputError: If the value names no known mode.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return _MODE_CODES[value]
            except KeyError:
                raise InvalidInputError(f"Unknown hierarchy mode: {value}") from None
        text = str(value).strip()
        if text.isdigit():
            return cls.parse(int(text))
        key = text.replace("_", "").replace("-", "").lower()
        for mode in cls:
            if mode.value.replace("_", "") == key:
                return mode
        raise InvalidInputError(f"Unknown hierarchy mode: {value}")


_MODE_CODES = {
    0: HierarchyMode.NONE,
    1: HierarchyMode.DESCENDANTS_ONLY,
    2: HierarchyMode.THIS_ONLY,
    3: HierarchyMode.WHOLE_HIERARCHY,
}


@dataclass
class Bookmark:
    """A node of the outline tree; page numbers are 1-based."""

    title: str
    page: Optional[int] = None
    kids: Optional[List["Bookmark"]] = None
    color: Optional[Tuple[float, float, float]] = None
    is_open: Optional[bool] = None
    bold: bool = False
    italic: bool = False
    action: Optional[str] = GOTO_ACTION
    fit_type: str = DEFAULT_FIT
    fit_args: Tuple[Optional[float], ...] = ()
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_destination(self) -> bool:
        return self.action == GOTO_ACTION and self.page is not None


@dataclass(frozen=True)
class NamedDestination:
    """A named jump target; ``page`` is 1-based."""

    page: int
    fit_type: str = DEFAULT_FIT
    fit_args: Tuple[Optional[float], ...] = ()


@dataclass
class MergedDocumentInfo:
    """Per-source record produced by the merge copy pass."""

    title: str
    start_page: int
    bookmarks: List[Bookmark]
    hierarchy_mode: HierarchyMode
    bookmark_styles: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class NoOutline:
    """The document leaves no trace in the merged outline."""


@dataclass(frozen=True)
class ThisOnly:
    """A single node for the document; its own outline is dropped."""

    node: Bookmark


@dataclass(frozen=True)
class DescendantsOnly:
    """The document's own outline entries, spliced into the top level."""

    children: List[Bookmark]


@dataclass(frozen=True)
class WholeHierarchy:
    """A node for the document whose kids are the document's own outline."""

    node: Bookmark


OutlineContribution = Union[NoOutline, ThisOnly, DescendantsOnly, WholeHierarchy]


def _parse_color(value: Any) -> Tuple[float, float, float]:
    parts = value.split() if isinstance(value, str) else value
    try:
        red, green, blue = (float(part) for part in parts)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Invalid bookmark color: {value!r}") from None
    return (red, green, blue)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "1", "yes"}:
        return True
    if text in {"false", "0", "no"}:
        return False
    raise InvalidInputError(f"Invalid bookmark open state: {value!r}")


def _parse_page(value: Any) -> Tuple[int, str, Tuple[Optional[float], ...]]:
    """Parse ``3``, ``"3"`` or ``"3 /XYZ 0 800 0"`` into page, fit and args."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value, DEFAULT_FIT, ()
    tokens = str(value).split()
    try:
        page = int(tokens[0])
        args = tuple(
            None if token == "null" else float(token) for token in tokens[2:]
        )
    except (IndexError, ValueError):
        raise InvalidInputError(f"Invalid bookmark page: {value!r}") from None
    fit_type = tokens[1] if len(tokens) > 1 else DEFAULT_FIT
    return page, fit_type, args


def apply_bookmark_styles(
    bookmark: Bookmark, styles: Optional[Mapping[str, Any]]
) -> Bookmark:
    """
    Apply per-document attribute overrides to a synthetic bookmark.

    A non-null value sets or replaces the attribute; a null value removes it.
    ``Title``, ``Color``, ``Open``, ``Style``, ``Action`` and ``Page`` map to
    typed fields, any other key is kept verbatim in ``extra``.

    Raises:
        InvalidInputError: If a value cannot be parsed or the title is removed.
    """
    for key, value in (styles or {}).items():
        if key == "Title":
            if value is None:
                raise InvalidInputError("Bookmark title cannot be removed")
            bookmark.title = str(value)
        elif key == "Color":
            bookmark.color = None if value is None else _parse_color(value)
        elif key == "Open":
            bookmark.is_open = None if value is None else _parse_bool(value)
        elif key == "Style":
            style = "" if value is None else str(value).lower()
            bookmark.bold = "bold" in style
            bookmark.italic = "italic" in style
        elif key == "Action":
            bookmark.action = None if value is None else str(value)
        elif key == "Page":
            if value is None:
                bookmark.page = None
            else:
                bookmark.page, bookmark.fit_type, bookmark.fit_args = _parse_page(value)
        elif value is None:
            bookmark.extra.pop(key, None)
        else:
            bookmark.extra[key] = value
    return bookmark


def create_document_bookmark(
    title: str, start_page: int, styles: Optional[Mapping[str, Any]] = None
) -> Bookmark:
    """Create the synthetic node standing for a whole source document."""
    bookmark = Bookmark(
        title=title,
        page=start_page,
        color=DEFAULT_COLOR,
        is_open=True,
        action=GOTO_ACTION,
        fit_type=DEFAULT_FIT,
    )
    return apply_bookmark_styles(bookmark, styles)


def build_contribution(info: MergedDocumentInfo) -> OutlineContribution:
    """Decide what a merged document adds to the merged outline."""
    mode = info.hierarchy_mode
    if mode is HierarchyMode.NONE:
        return NoOutline()
    if mode is HierarchyMode.DESCENDANTS_ONLY:
        return DescendantsOnly(list(info.bookmarks))
    node = create_document_bookmark(info.title, info.start_page, info.bookmark_styles)
    if mode is HierarchyMode.THIS_ONLY:
        return ThisOnly(node)
    if mode is HierarchyMode.WHOLE_HIERARCHY:
        node.kids = list(info.bookmarks)
        return WholeHierarchy(node)
    raise InvalidInputError(f"Cannot handle outline hierarchy mode {mode!r}")


def merge_adjacent(previous: Optional[Bookmark], current: Optional[Bookmark]) -> bool:
    """
    Fold ``current`` into ``previous`` when both carry the same title.

    The current node's kids are appended to the previous node's kids, and the
    caller drops the current node. Titles compare ordinally.

    Returns:
        bool: True if the nodes were merged.
    """
    if previous is None or current is None:
        return False
    if previous.title != current.title:
        return False
    if current.kids is not None:
        if previous.kids is None:
            previous.kids = []
        previous.kids.extend(current.kids)
        current.kids = None
    return True


def assemble_outline(documents: Sequence[MergedDocumentInfo]) -> List[Bookmark]:
    """Build the merged outline from per-document records, in document order."""
    outline: List[Bookmark] = []
    last_emitted: Optional[Bookmark] = None
    for info in documents:
        contribution = build_contribution(info)
        node: Optional[Bookmark] = None
        if isinstance(contribution, DescendantsOnly):
            outline.extend(contribution.children)
        elif isinstance(contribution, (ThisOnly, WholeHierarchy)):
            node = contribution.node
        if merge_adjacent(last_emitted, node):
            logger.debug("Merged outline entry %r into its predecessor", info.title)
            continue
        if node is not None:
            outline.append(node)
            last_emitted = node
    return outline


def shift_bookmarks(bookmarks: List[Bookmark], offset: int) -> List[Bookmark]:
    """Shift every page reference in the tree by ``offset``, in place."""
    if offset:
        for bookmark in bookmarks:
            if bookmark.page is not None:
                bookmark.page += offset
            if bookmark.kids:
                shift_bookmarks(bookmark.kids, offset)
    return bookmarks


def shift_destinations(
    destinations: Mapping[str, NamedDestination], offset: int
) -> Dict[str, NamedDestination]:
    """Return the destinations with every page moved by ``offset``."""
    return {
        name: replace(destination, page=destination.page + offset)
        for name, destination in destinations.items()
    }


def count_bookmarks(bookmarks: Sequence[Bookmark]) -> int:
    """Count the nodes of an outline tree."""
    return sum(1 + count_bookmarks(bookmark.kids or ()) for bookmark in bookmarks)
