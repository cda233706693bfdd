"""
pypdf adapter implementing the document capabilities the assembly core needs.

Source documents are opened through ``open_document``, a context manager that
validates the bytes, rejects encrypted input and closes the underlying stream
on exit. Outlines and named destinations are converted to the typed
``Bookmark`` and ``NamedDestination`` models on the way in, and written back
through ``finalize_document`` on the way out.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from pypdf import PageObject, PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from pypdf.generic import (
    BooleanObject,
    Destination,
    Fit,
    FloatObject,
    NameObject,
    NumberObject,
    TextStringObject,
)

from .errors import EncryptedDocumentError, ResourceError, UnreadableDocumentError
from .geometry import PageRect
from .outline import Bookmark, NamedDestination
from .scratch import read_scratch_file

logger = logging.getLogger(__name__)

_FIT_ARG_KEYS = {
    "/XYZ": ("/Left", "/Top", "/Zoom"),
    "/Fit": (),
    "/FitB": (),
    "/FitH": ("/Top",),
    "/FitBH": ("/Top",),
    "/FitV": ("/Left",),
    "/FitBV": ("/Left",),
    "/FitR": ("/Left", "/Bottom", "/Right", "/Top"),
}

# Outline item /F flags.
_ITALIC_FLAG = 1
_BOLD_FLAG = 2


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fit_args(destination: Mapping) -> Tuple[Optional[float], ...]:
    keys = _FIT_ARG_KEYS.get(str(destination.get("/Type", "/XYZ")), ())
    return tuple(_as_float(destination.get(key)) for key in keys)


class SourceHandle:
    """An opened, unencrypted source document."""

    def __init__(self, reader: PdfReader) -> None:
        self.reader = reader

    @property
    def page_count(self) -> int:
        try:
            return len(self.reader.pages)
        except PyPdfError as error:
            raise UnreadableDocumentError("PDF page tree is unreadable.") from error

    @property
    def version(self) -> str:
        """Return the version from the file header, e.g. ``"1.7"``."""
        return self.reader.pdf_header.replace("%PDF-", "").strip()

    def page(self, index: int) -> PageObject:
        return self.reader.pages[index]

    def page_rect(self, index: int) -> PageRect:
        """Return the unrotated media box size of a page."""
        box = self.reader.pages[index].mediabox
        return PageRect(float(box.width), float(box.height))

    def page_rotation(self, index: int) -> int:
        return int(self.reader.pages[index].rotation or 0) % 360

    def page_rect_with_rotation(self, index: int) -> PageRect:
        """Return the page size as displayed, honoring ``/Rotate``."""
        rect = self.page_rect(index)
        return rect.rotated() if self.page_rotation(index) in (90, 270) else rect

    def _page_index(self, destination: Any) -> Optional[int]:
        try:
            index = self.reader.get_destination_page_number(destination)
        except (PyPdfError, KeyError, ValueError, TypeError, AttributeError):
            return None
        if index is None or index < 0:
            return None
        return index

    def _to_bookmark(self, item: Destination) -> Bookmark:
        index = self._page_index(item)
        color = item.get("/C")
        flags = int(item.get("/F", 0) or 0)
        count = item.get("/Count")
        bookmark = Bookmark(
            title=str(item.get("/Title", "")),
            page=None if index is None else index + 1,
            color=tuple(float(c) for c in color) if color and len(color) == 3 else None,
            is_open=None if count is None else int(count) > 0,
            bold=bool(flags & _BOLD_FLAG),
            italic=bool(flags & _ITALIC_FLAG),
            action="GoTo" if index is not None else None,
            fit_type=str(item.get("/Type", "/XYZ")),
            fit_args=_fit_args(item),
        )
        return bookmark

    def _convert_outline(self, items: Sequence[Any]) -> List[Bookmark]:
        bookmarks: List[Bookmark] = []
        for item in items:
            if isinstance(item, list):
                children = self._convert_outline(item)
                if bookmarks:
                    parent = bookmarks[-1]
                    parent.kids = (parent.kids or []) + children
                else:
                    bookmarks.extend(children)
                continue
            bookmarks.append(self._to_bookmark(item))
        return bookmarks

    def native_outline(self) -> List[Bookmark]:
        """Return the document's own outline tree, possibly empty."""
        try:
            items = self.reader.outline
        except PyPdfError as error:
            logger.warning("Ignoring unreadable outline: %s", error)
            return []
        return self._convert_outline(items)

    def named_destinations(self) -> Dict[str, NamedDestination]:
        """Return the resolvable named destinations of the document."""
        try:
            items = self.reader.named_destinations
        except PyPdfError as error:
            logger.warning("Ignoring unreadable named destinations: %s", error)
            return {}
        destinations: Dict[str, NamedDestination] = {}
        for name, destination in items.items():
            index = self._page_index(destination)
            if index is None:
                logger.debug("Skipping unresolvable named destination %r", name)
                continue
            destinations[str(name)] = NamedDestination(
                page=index + 1,
                fit_type=str(destination.get("/Type", "/XYZ")),
                fit_args=_fit_args(destination),
            )
        return destinations


@contextmanager
def open_document(content: bytes) -> Iterator[SourceHandle]:
    """
    Open PDF bytes for reading.

    Raises:
        UnreadableDocumentError: If the bytes are not a readable PDF.
        EncryptedDocumentError: If the document is encrypted.
    """
    stream = BytesIO(content)
    try:
        try:
            reader = PdfReader(stream)
        except PyPdfError as error:
            raise UnreadableDocumentError("PDF appears to be corrupted or unreadable.") from error
        if reader.is_encrypted:
            raise EncryptedDocumentError("Cannot process encrypted PDF.")
        yield SourceHandle(reader)
    finally:
        stream.close()


def copy_page(source: SourceHandle, index: int, writer: PdfWriter) -> PageObject:
    """Import page ``index`` of ``source`` at the end of ``writer``."""
    return writer.add_page(source.page(index))


def add_blank_page(writer: PdfWriter, rect: PageRect, rotation: int = 0) -> PageObject:
    page = writer.add_blank_page(width=rect.width, height=rect.height)
    if rotation:
        page.rotation = rotation
    return page


def _fit(fit_type: str, args: Sequence[Optional[float]]) -> Fit:
    padded = list(args) + [None] * (4 - len(args))
    if fit_type == "/Fit":
        return Fit.fit()
    if fit_type == "/FitB":
        return Fit.fit_box()
    if fit_type == "/FitH":
        return Fit.fit_horizontally(padded[0])
    if fit_type == "/FitBH":
        return Fit.fit_box_horizontally(padded[0])
    if fit_type == "/FitV":
        return Fit.fit_vertically(padded[0])
    if fit_type == "/FitBV":
        return Fit.fit_box_vertically(padded[0])
    if fit_type == "/FitR" and None not in padded:
        return Fit.fit_rectangle(*padded)
    if fit_type == "/XYZ":
        return Fit.xyz(padded[0], padded[1], padded[2])
    return Fit.fit()


def _pdf_value(value: Any):
    if isinstance(value, bool):
        return BooleanObject(value)
    if isinstance(value, int):
        return NumberObject(value)
    if isinstance(value, float):
        return FloatObject(value)
    text = str(value)
    if text.startswith("/"):
        return NameObject(text)
    return TextStringObject(text)


def _write_outline(writer: PdfWriter, bookmarks: Sequence[Bookmark], parent=None) -> None:
    total_pages = len(writer.pages)
    for bookmark in bookmarks:
        page_index = None
        if bookmark.has_destination and 1 <= bookmark.page <= total_pages:
            page_index = bookmark.page - 1
        item = writer.add_outline_item(
            bookmark.title,
            page_index,
            parent=parent,
            color=bookmark.color,
            bold=bookmark.bold,
            italic=bookmark.italic,
            fit=_fit(bookmark.fit_type, bookmark.fit_args),
            is_open=bool(bookmark.is_open),
        )
        if bookmark.extra:
            entry = item.get_object()
            for key, value in bookmark.extra.items():
                entry[NameObject("/" + key.lstrip("/"))] = _pdf_value(value)
        if bookmark.kids:
            _write_outline(writer, bookmark.kids, item)


def _write_named_destinations(
    writer: PdfWriter, destinations: Mapping[str, NamedDestination]
) -> None:
    total_pages = len(writer.pages)
    for name, destination in destinations.items():
        if not 1 <= destination.page <= total_pages:
            logger.debug("Dropping named destination %r outside the document", name)
            continue
        page_ref = writer.pages[destination.page - 1].indirect_reference
        writer.add_named_destination_object(
            Destination(name, page_ref, _fit(destination.fit_type, destination.fit_args))
        )


def finalize_document(
    writer: PdfWriter,
    outline: Sequence[Bookmark],
    destinations: Mapping[str, NamedDestination],
    target: Path,
) -> bytes:
    """
    Attach the outline and named destinations, write the document and
    return its bytes.

    Raises:
        ResourceError: If the target file cannot be written or read back.
    """
    _write_outline(writer, outline)
    _write_named_destinations(writer, destinations)
    if outline:
        writer.page_mode = "/UseOutlines"
    try:
        with target.open("wb") as handle:
            writer.write(handle)
    except OSError as error:
        raise ResourceError(f"Unable to write merged document: {error}") from error
    return read_scratch_file(target)


def write_document(writer: PdfWriter) -> bytes:
    """Serialize a writer to bytes in memory."""
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


_HEADER_PATTERN = re.compile(rb"%PDF-(\d+\.\d+)")


def header_version(content: bytes) -> str | None:
    """Read the PDF version from the file header without parsing the document."""
    match = _HEADER_PATTERN.search(content[:1024])
    return match.group(1).decode("ascii") if match else None
