"""Text overlays and page numbers stamped onto existing PDF pages."""

from __future__ import annotations

import logging
from enum import Enum
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional, Tuple

from fpdf import FPDF
from pypdf import PageObject, PdfReader, PdfWriter, Transformation

from .errors import InvalidInputError
from .geometry import PageRect
from .pdf_engine import open_document, write_document

logger = logging.getLogger(__name__)

PageText = Callable[[int], Optional[str]]

CORE_FONT_ALIASES = {
    "helvetica": "helvetica",
    "arial": "helvetica",
    "times": "times",
    "times new roman": "times",
    "courier": "courier",
    "courier new": "courier",
    "symbol": "symbol",
    "zapfdingbats": "zapfdingbats",
}
FONT_SUFFIXES = (".ttf", ".otf")
SYSTEM_FONT_DIRS = (
    Path(__file__).resolve().parent / "assets",
    Path("/usr/share/fonts"),
    Path("/usr/local/share/fonts"),
    Path.home() / ".fonts",
)
# Box height relative to the font size; the box bottom sits slightly below the
# baseline anchor so descenders stay on white.
BOX_HEIGHT_RATIO = 1.25


class VerticalPlacement(str, Enum):
    TOP = "top"
    BOTTOM = "bottom"
    CENTER = "center"


class HorizontalPlacement(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    CENTER = "center"


def parse_placement(value, enum_type):
    """Parse a placement enum member from its value or name, case-insensitively."""
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).strip().lower())
    except ValueError:
        raise InvalidInputError(f"Invalid {enum_type.__name__}: {value!r}") from None


def overlay_anchor(
    vertical: VerticalPlacement,
    horizontal: HorizontalPlacement,
    margin: float,
    page: PageRect,
    text_width: float,
) -> Tuple[float, float]:
    """
    Compute the lower-left anchor of an overlay text box.

    Parameters:
        vertical (VerticalPlacement): Vertical placement on the page.
        horizontal (HorizontalPlacement): Horizontal placement on the page.
        margin (float): Distance from the page edge in points.
        page (PageRect): Page size as displayed (rotation applied).
        text_width (float): Measured width of the rendered text in points.

    Returns:
        tuple[float, float]: The (x, y) anchor in PDF points, origin bottom-left.
    """
    if vertical is VerticalPlacement.TOP:
        y = page.height - margin
    elif vertical is VerticalPlacement.BOTTOM:
        y = margin
    else:
        y = (page.height - margin) / 2

    if horizontal is HorizontalPlacement.LEFT:
        x = margin
    elif horizontal is HorizontalPlacement.RIGHT:
        x = page.width - margin - text_width
    else:
        x = (page.width - margin - text_width) / 2
    return x, y


@lru_cache(maxsize=64)
def resolve_font_path(font_name: str, font_dir: Path | None = None) -> Path | None:
    """
    Locate a TrueType/OpenType font file for ``font_name``.

    ``font_name`` may be a path to a font file or a file stem looked up in
    ``font_dir`` and then in the system font directories.

    Returns:
        Path | None: The font file if found, ``None`` otherwise.
    """
    candidate = Path(font_name).expanduser()
    if candidate.suffix.lower() in FONT_SUFFIXES and candidate.is_file():
        return candidate
    wanted = font_name.strip().lower().replace(" ", "")
    directories = ((font_dir,) if font_dir else ()) + SYSTEM_FONT_DIRS
    for directory in directories:
        if not directory.is_dir():
            continue
        for path in sorted(directory.rglob("*")):
            if path.suffix.lower() not in FONT_SUFFIXES:
                continue
            if path.stem.lower().replace(" ", "") == wanted:
                return path
    return None


def apply_font(
    pdf: FPDF, font_name: str, size: float, text: str, font_dir: Path | None = None
) -> None:
    """
    Select ``font_name`` at ``size`` on the given FPDF instance.

    TrueType fonts are embedded when a matching file is found. Otherwise the
    name must denote a core font (unknown names fall back to Helvetica), and
    the text must be Latin-1 encodable.

    Raises:
        InvalidInputError: If the text needs a Unicode font that is not available.
    """
    font_path = resolve_font_path(font_name, font_dir)
    if font_path:
        family = font_path.stem
        pdf.add_font(family, fname=str(font_path))
        pdf.set_font(family, size=size)
        return
    family = CORE_FONT_ALIASES.get(font_name.strip().lower())
    if family is None:
        logger.debug("Font %r not found, using Helvetica", font_name)
        family = "helvetica"
    try:
        text.encode("latin-1")
    except UnicodeEncodeError as error:
        raise InvalidInputError(
            f"Font {font_name!r} cannot render the text. Provide a TrueType font "
            "file or set PDFASSEMBLY_FONT_DIR."
        ) from error
    pdf.set_font(family, size=size)


def draw_text_box(pdf: FPDF, x: float, y: float, text: str, page_height: float) -> None:
    """Draw black text on an opaque white box whose baseline starts at (x, y)."""
    size = pdf.font_size
    pdf.set_fill_color(255, 255, 255)
    pdf.set_text_color(0, 0, 0)
    pdf.set_xy(x, page_height - y - size)
    pdf.cell(pdf.get_string_width(text), size * BOX_HEIGHT_RATIO, text, fill=True)


def _build_overlay_page(page: PageRect, draw_fn: Callable[[FPDF], None]) -> PageObject:
    """
    Create a single-page PDF overlay of the given size rendered by ``draw_fn``.

    The FPDF instance uses points as its unit and has no margins, cell padding
    or automatic page breaks.
    """
    pdf = FPDF(orientation="P", unit="pt", format=(page.width, page.height))
    pdf.set_margins(0, 0, 0)
    pdf.c_margin = 0
    pdf.set_auto_page_break(auto=False)
    pdf.add_page()
    draw_fn(pdf)
    overlay_reader = PdfReader(BytesIO(bytes(pdf.output())))
    return overlay_reader.pages[0]


def visual_to_user_space(
    page: PageRect, rotation: int, left: float = 0.0, bottom: float = 0.0
) -> Transformation:
    """
    Map coordinates of the displayed (rotated) page onto the page's own space.

    ``page`` is the unrotated media box size, ``left``/``bottom`` its origin.
    """
    width, height = page
    matrices = {
        0: (1, 0, 0, 1, 0, 0),
        90: (0, 1, -1, 0, width, 0),
        180: (-1, 0, 0, -1, width, height),
        270: (0, -1, 1, 0, 0, height),
    }
    ctm = matrices.get(rotation % 360, matrices[0])
    return Transformation(ctm).translate(left, bottom)


def stamp_overlays(
    content: bytes,
    page_text: PageText,
    vertical: VerticalPlacement,
    horizontal: HorizontalPlacement,
    font_name: str,
    font_size: float,
    margin: float,
    font_dir: Path | None = None,
) -> bytes:
    """
    Stamp a text box onto every page for which ``page_text`` returns text.

    ``page_text`` receives the zero-based page index. Pages without text are
    left untouched. The overlay is placed in the page's displayed orientation
    and the page keeps its rotation, outline and other content.

    Returns:
        bytes: The stamped document.
    """
    with open_document(content) as document:
        writer = PdfWriter(clone_from=document.reader)
        for index, page in enumerate(writer.pages):
            text = page_text(index)
            if not text:
                continue
            box = page.mediabox
            rect = document.page_rect(index)
            rotation = document.page_rotation(index)
            visual = document.page_rect_with_rotation(index)

            def _draw(pdf: FPDF, text: str = text, visual: PageRect = visual) -> None:
                apply_font(pdf, font_name, font_size, text, font_dir)
                x, y = overlay_anchor(
                    vertical, horizontal, margin, visual, pdf.get_string_width(text)
                )
                draw_text_box(pdf, x, y, text, visual.height)

            overlay = _build_overlay_page(visual, _draw)
            page.merge_transformed_page(
                overlay,
                visual_to_user_space(rect, rotation, float(box.left), float(box.bottom)),
            )
        return write_document(writer)


def page_number_text(
    index: int,
    pages_to_skip: int,
    first_number: int,
    total_page_count: int | None = None,
) -> str | None:
    """
    Return the page-number label for the zero-based page ``index``.

    Skipped pages get ``None``. With a total page count the label reads
    ``"number / total"`` where the total is shifted the same way as the
    numbers.
    """
    if index < pages_to_skip:
        return None
    number = index - pages_to_skip + first_number
    if total_page_count is None:
        return str(number)
    total = total_page_count - pages_to_skip + first_number - 1
    return f"{number} / {total}"


def add_page_numbers(
    content: bytes,
    pages_to_skip: int,
    first_number: int,
    total_page_count: int | None,
    font_name: str,
    font_size: float,
    margin: float,
    font_dir: Path | None = None,
) -> bytes:
    """Stamp page numbers at the bottom center of every numbered page."""
    return stamp_overlays(
        content,
        lambda index: page_number_text(index, pages_to_skip, first_number, total_page_count),
        VerticalPlacement.BOTTOM,
        HorizontalPlacement.CENTER,
        font_name,
        font_size,
        margin,
        font_dir,
    )
