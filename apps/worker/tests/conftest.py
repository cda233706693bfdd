from io import BytesIO
from typing import Callable, Dict, List, Sequence, Tuple

import pytest
from pypdf import PdfReader, PdfWriter

OutlineSpec = Sequence[Tuple[str, int, Sequence]]


def _add_outline(writer: PdfWriter, items: OutlineSpec, parent=None) -> None:
    for title, page_index, children in items:
        node = writer.add_outline_item(title, page_index, parent=parent)
        if children:
            _add_outline(writer, children, node)


def build_pdf(
    pages: int = 1,
    width: float = 300,
    height: float = 300,
    outline: OutlineSpec = (),
    named: Dict[str, int] | None = None,
    rotation: int = 0,
    password: str | None = None,
) -> bytes:
    """Create a PDF with blank pages and optional outline, destinations and encryption."""
    writer = PdfWriter()
    for _ in range(pages):
        page = writer.add_blank_page(width=width, height=height)
        if rotation:
            page.rotation = rotation
    _add_outline(writer, outline)
    for name, page_index in (named or {}).items():
        writer.add_named_destination(name, page_index)
    if password:
        writer.encrypt(password)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def outline_tree(reader: PdfReader) -> List[Tuple[str, int | None, list]]:
    """Return the outline as nested ``(title, 1-based page, kids)`` tuples."""

    def _walk(items) -> List[Tuple[str, int | None, list]]:
        nodes: List[Tuple[str, int | None, list]] = []
        for item in items:
            if isinstance(item, list):
                title, page, _ = nodes[-1]
                nodes[-1] = (title, page, _walk(item))
                continue
            index = reader.get_destination_page_number(item)
            page = None if index is None or index < 0 else index + 1
            nodes.append((str(item.title), page, []))
        return nodes

    return _walk(reader.outline)


@pytest.fixture
def make_pdf() -> Callable[..., bytes]:
    return build_pdf


@pytest.fixture
def read_outline() -> Callable[[bytes], List[Tuple[str, int | None, list]]]:
    return lambda content: outline_tree(PdfReader(BytesIO(content)))
