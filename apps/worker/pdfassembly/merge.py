"""
Merge engine: concatenates source documents and reconciles their outlines.

A merge runs in two passes. The copy pass walks the sources in order, inserts a
blank page in front of a source that must start on an odd page, shifts the
source's own outline and named destinations to their position in the output
and copies the pages. The outline pass then assembles the merged outline from
the per-document records and the result is finalized through the PDF engine.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pypdf import PdfWriter

from .errors import EmptyResultError, InvalidInputError
from .geometry import PageRect
from .outline import (
    HierarchyMode,
    MergedDocumentInfo,
    NamedDestination,
    assemble_outline,
    count_bookmarks,
    shift_bookmarks,
    shift_destinations,
)
from .pdf_engine import (
    add_blank_page,
    copy_page,
    finalize_document,
    open_document,
)
from .scratch import scratch_directory

logger = logging.getLogger(__name__)

ContentTransform = Callable[[bytes], bytes]


@dataclass(frozen=True)
class SourceDocument:
    """One input of a merge, with its outline options."""

    content: bytes
    title: str = ""
    hierarchy_mode: HierarchyMode = HierarchyMode.NONE
    start_on_odd_page: bool = False
    bookmark_styles: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "hierarchy_mode", HierarchyMode.parse(self.hierarchy_mode))
        if self.bookmark_styles is not None:
            object.__setattr__(
                self, "bookmark_styles", MappingProxyType(dict(self.bookmark_styles))
            )


@dataclass(frozen=True)
class MergeResult:
    content: bytes
    page_count: int


@dataclass
class _MergeRunState:
    """Mutable state of a single merge call."""

    page_offset: int = 0
    total_pages: int = 0
    last_page_rect: Optional[PageRect] = None
    last_page_rotation: int = 0
    destinations: Dict[str, NamedDestination] = field(default_factory=dict)
    documents: List[MergedDocumentInfo] = field(default_factory=list)

    def needs_blank_page(self, source: SourceDocument, page_count: int) -> bool:
        return (
            source.start_on_odd_page
            and page_count > 0
            and self.total_pages % 2 == 1
            and self.last_page_rect is not None
        )


def _eligible_sources(sources: Optional[Sequence[Optional[SourceDocument]]]) -> List[SourceDocument]:
    if not sources:
        raise InvalidInputError("No source documents to merge")
    eligible = [source for source in sources if source is not None and source.content]
    if not eligible:
        raise EmptyResultError("All source documents are empty")
    return eligible


def _count_pages(content: bytes) -> int:
    with open_document(content) as document:
        return document.page_count


def _copy_source(
    stack: ExitStack,
    writer: PdfWriter,
    state: _MergeRunState,
    source: SourceDocument,
) -> None:
    document = stack.enter_context(open_document(source.content))
    page_count = document.page_count
    bookmarks = document.native_outline()
    destinations = document.named_destinations()

    start_page = state.page_offset + 1
    if state.needs_blank_page(source, page_count):
        add_blank_page(writer, state.last_page_rect, state.last_page_rotation)
        state.page_offset += 1
        state.total_pages += 1
        start_page += 1
        logger.debug("Inserted blank page before %r at page %d", source.title, state.total_pages)

    shift_bookmarks(bookmarks, state.page_offset)
    state.destinations.update(shift_destinations(destinations, state.page_offset))

    for index in range(page_count):
        copy_page(document, index, writer)
    if page_count:
        state.last_page_rect = document.page_rect(page_count - 1)
        state.last_page_rotation = document.page_rotation(page_count - 1)
    state.page_offset += page_count
    state.total_pages += page_count
    logger.debug(
        "Copied %d page(s) of %r starting at page %d", page_count, source.title, start_page
    )

    state.documents.append(
        MergedDocumentInfo(
            title=source.title,
            start_page=start_page,
            bookmarks=bookmarks,
            hierarchy_mode=source.hierarchy_mode,
            bookmark_styles=source.bookmark_styles,
        )
    )


def merge_documents(
    sources: Sequence[Optional[SourceDocument]],
    transform: Optional[ContentTransform] = None,
    scratch_parent: Path | None = None,
) -> MergeResult:
    """
    Merge source documents into one PDF with a reconciled outline.

    Parameters:
        sources (Sequence[SourceDocument | None]): Documents in output order.
            ``None`` entries and entries without content are skipped.
        transform (Callable[[bytes], bytes] | None): Applied to the content of
            every remaining source before merging.
        scratch_parent (Path | None): Directory under which the scratch
            directory for the result is created.

    Returns:
        MergeResult: The merged bytes and their page count.

    Raises:
        InvalidInputError: If no sources were given.
        EmptyResultError: If every source is empty or the result has no pages.
        UnreadableDocumentError: If a source is not a readable PDF.
        EncryptedDocumentError: If a source is encrypted.
    """
    eligible = _eligible_sources(sources)
    if transform is not None:
        eligible = [
            replace(source, content=transform(source.content)) for source in eligible
        ]

    if len(eligible) == 1:
        only = eligible[0]
        return MergeResult(content=only.content, page_count=_count_pages(only.content))

    state = _MergeRunState()
    with ExitStack() as stack:
        scratch = stack.enter_context(scratch_directory(scratch_parent))
        writer = PdfWriter()
        for source in eligible:
            _copy_source(stack, writer, state, source)

        if state.total_pages == 0:
            raise EmptyResultError("The merged document has no pages")

        outline = assemble_outline(state.documents)
        logger.debug(
            "Merged %d document(s) into %d page(s), %d outline entries",
            len(eligible),
            state.total_pages,
            count_bookmarks(outline),
        )
        content = finalize_document(writer, outline, state.destinations, scratch / "merged.pdf")
    return MergeResult(content=content, page_count=state.total_pages)
