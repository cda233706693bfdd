"""Document assembly operations shared by the worker and the command line."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import img2pdf
from fpdf import FPDF
from fpdf.enums import MethodReturnValue
from PIL import Image, ImageSequence, UnidentifiedImageError
from pypdf import PdfWriter, Transformation

from .config import OutputMode, PdfAVersion, Settings
from .errors import (
    ConversionError,
    EncryptedDocumentError,
    EmptyResultError,
    InvalidInputError,
    OperationTimeoutError,
)
from .geometry import PageRect, PageSize, is_landscape, resolve_page_size_or_default
from .merge import MergeResult, SourceDocument, merge_documents
from .overlay import (
    HorizontalPlacement,
    VerticalPlacement,
    add_page_numbers,
    apply_font,
    parse_placement,
    stamp_overlays,
)
from .pdf_engine import header_version, open_document, write_document
from .scratch import read_scratch_file, scratch_directory, write_scratch_file

logger = logging.getLogger(__name__)

RESIZE_MERGE_MARGIN = 10
DEFAULT_IMAGE_MARGIN = 36
CENTERED_TEXT_MARGIN = 36
LINE_HEIGHT_RATIO = 1.2

PDF_A_TIMEOUT_SEC = 120
PDF_A_VERSION_TIMEOUT_SEC = 10
PDF_A_MIN_VERSION = (10, 3, 1)


@dataclass(frozen=True)
class PdfAConversionResult:
    content: bytes
    page_count: int


@dataclass(frozen=True)
class PdfInfo:
    """Basic facts about a PDF, as reported by ``pdf_info``."""

    page_count: Optional[int]
    version: Optional[str]
    encrypted: bool
    configured_conformance: Optional[str]


def _require_content(content: bytes | None, name: str) -> bytes:
    if not content:
        raise InvalidInputError(f"{name} is empty")
    return content


def count_pages(content: bytes) -> int:
    """Return the number of pages of a PDF."""
    with open_document(_require_content(content, "PDF file")) as document:
        return document.page_count


def resize_pdf(content: bytes, page: PageRect, margin: float) -> bytes:
    """
    Place every page of a PDF onto a new page of the given size.

    Each page is scaled to fit inside the margins and anchored at the top-left
    corner of the content area. A page whose displayed orientation differs
    from the target orientation is turned by 90 degrees first: clockwise for
    landscape pages on a portrait target, counter-clockwise otherwise.

    Parameters:
        content (bytes): The source PDF.
        page (PageRect): Target page size in points.
        margin (float): Margin on every side in points.

    Returns:
        bytes: The resized PDF.

    Raises:
        InvalidInputError: If the margins leave no room for content.
        EmptyResultError: If the source has no pages.
    """
    _require_content(content, "PDF file")
    available_width = page.width - 2 * margin
    available_height = page.height - 2 * margin
    if available_width <= 0 or available_height <= 0:
        raise InvalidInputError(f"Margin {margin} leaves no room on the page")
    target_landscape = is_landscape(page)

    with open_document(content) as document:
        if document.page_count == 0:
            raise EmptyResultError("PDF has no pages to resize")
        writer = PdfWriter()
        for index in range(document.page_count):
            source = document.page(index)
            source.transfer_rotation_to_content()
            box = source.mediabox
            width, height = float(box.width), float(box.height)
            ctm = Transformation().translate(-float(box.left), -float(box.bottom))
            source_landscape = is_landscape(PageRect(width, height))
            if source_landscape and not target_landscape:
                ctm = ctm.rotate(-90).translate(0, width)
                width, height = height, width
            elif not source_landscape and target_landscape:
                ctm = ctm.rotate(90).translate(height, 0)
                width, height = height, width
            scale = min(available_width / width, available_height / height)
            ctm = ctm.scale(scale).translate(margin, page.height - margin - height * scale)
            target = writer.add_blank_page(width=page.width, height=page.height)
            target.merge_transformed_page(source, ctm)
        return write_document(writer)


def _flatten_frames(image: bytes) -> List[bytes]:
    """Re-encode every frame as an RGB PNG, dropping transparency onto white."""
    frames: List[bytes] = []
    with Image.open(BytesIO(image)) as source:
        for frame in ImageSequence.Iterator(source):
            rgba = frame.convert("RGBA")
            flattened = Image.new("RGB", rgba.size, (255, 255, 255))
            flattened.paste(rgba, mask=rgba.getchannel("A"))
            buffer = BytesIO()
            flattened.save(buffer, format="PNG", dpi=frame.info.get("dpi", (72, 72)))
            frames.append(buffer.getvalue())
    return frames


def image_to_pdf(image: bytes, page: PageRect, margin: float) -> bytes:
    """
    Convert an image into a PDF with one page per image frame.

    Landscape images get a landscape page. Images larger than the content area
    are shrunk to fit; smaller ones keep their size.

    Raises:
        InvalidInputError: If the data is not a supported image.
    """
    _require_content(image, "Image data")
    layout = img2pdf.get_layout_fun(
        pagesize=(page.width, page.height),
        border=(margin, margin),
        fit=img2pdf.FitMode.shrink,
        auto_orient=True,
    )
    try:
        try:
            pdf_bytes = img2pdf.convert(image, layout_fun=layout)
        except img2pdf.AlphaChannelError:
            logger.debug("Flattening image alpha channel before conversion")
            pdf_bytes = img2pdf.convert(*_flatten_frames(image), layout_fun=layout)
    except (img2pdf.ImageOpenError, UnidentifiedImageError) as error:
        raise InvalidInputError("Image data is not a supported image format.") from error
    except img2pdf.NegativeDimensionError as error:
        raise InvalidInputError(f"Margin {margin} leaves no room on the page") from error
    if pdf_bytes is None:
        raise InvalidInputError("Failed to render image to PDF")
    return pdf_bytes


def centered_text_pdf(
    lines: Sequence[str],
    font_name: str,
    font_size: float,
    page: PageRect,
    font_dir: Path | None = None,
) -> bytes:
    """Create a one-page PDF with ``lines`` centered horizontally and vertically."""
    if not lines:
        raise InvalidInputError("At least one line of text is required")
    if not font_name or not font_name.strip():
        raise InvalidInputError("Font name is required")
    text = "\n".join(lines)
    margin = CENTERED_TEXT_MARGIN
    width = page.width - 2 * margin
    line_height = font_size * LINE_HEIGHT_RATIO

    pdf = FPDF(orientation="P", unit="pt", format=(page.width, page.height))
    pdf.set_margins(margin, margin, margin)
    pdf.c_margin = 0
    pdf.set_auto_page_break(auto=False)
    pdf.add_page()
    apply_font(pdf, font_name, font_size, text, font_dir)
    rendered = pdf.multi_cell(
        width, line_height, text, align="C", dry_run=True, output=MethodReturnValue.LINES
    )
    block_height = len(rendered) * line_height
    top = margin + max(0.0, (page.height - 2 * margin - block_height) / 2)
    pdf.set_xy(margin, top)
    pdf.multi_cell(width, line_height, text, align="C")
    return bytes(pdf.output())


def _parse_version_tuple(raw: str) -> Tuple[int, int, int]:
    """Parse a version string into a comparable tuple."""
    token = raw.strip().split()[0] if raw.strip() else ""
    numbers: List[int] = []
    for part in (part for part in token.split(".") if part):
        if not part.isdigit():
            break
        numbers.append(int(part))
    if not numbers:
        raise ValueError("Unable to parse version")
    while len(numbers) < 3:
        numbers.append(0)
    return (numbers[0], numbers[1], numbers[2])


def _require_ghostscript() -> str:
    ghostscript = shutil.which("gs")
    if not ghostscript:
        raise ConversionError("Ghostscript is required for PDF/A conversion")
    version_result = subprocess.run(
        [ghostscript, "--version"],
        capture_output=True,
        text=True,
        check=False,
        timeout=PDF_A_VERSION_TIMEOUT_SEC,
    )
    if version_result.returncode != 0:
        raise ConversionError("Ghostscript version check failed")
    version_output = (version_result.stdout or version_result.stderr or "").strip()
    try:
        version = _parse_version_tuple(version_output)
    except ValueError as error:
        raise ConversionError("Ghostscript >= 10.03.1 is required for PDF/A conversion") from error
    if version < PDF_A_MIN_VERSION:
        raise ConversionError("Ghostscript >= 10.03.1 is required for PDF/A conversion")
    return ghostscript


def pdf_to_pdfa(
    content: bytes,
    version: PdfAVersion = PdfAVersion.PDFA_2B,
    scratch_parent: Path | None = None,
) -> bytes:
    """
    Convert a PDF into PDF/A using Ghostscript.

    Parameters:
        content (bytes): The source PDF.
        version (PdfAVersion): Target PDF/A part and conformance.
        scratch_parent (Path | None): Where to create the scratch directory.

    Returns:
        bytes: The converted document.

    Raises:
        EncryptedDocumentError: If the input PDF is encrypted.
        ConversionError: If Ghostscript is missing or fails the conversion.
        OperationTimeoutError: If Ghostscript does not finish in time.
    """
    count_pages(content)
    ghostscript = _require_ghostscript()

    with scratch_directory(scratch_parent) as scratch:
        input_path = write_scratch_file(scratch / "input.pdf", content)
        output_path = scratch / "output_pdfa.pdf"
        command = [
            ghostscript,
            "-dSAFER",
            f"-dPDFA={version.part}",
            "-dBATCH",
            "-dNOPAUSE",
            "-dNOOUTERSAVE",
            "-sDEVICE=pdfwrite",
            "-dPDFACompatibilityPolicy=1",
            "-sProcessColorModel=DeviceRGB",
            "-sColorConversionStrategy=RGB",
            f"-sOutputFile={output_path}",
            str(input_path),
        ]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=PDF_A_TIMEOUT_SEC,
            )
        except subprocess.TimeoutExpired as error:
            raise OperationTimeoutError("PDF/A conversion timed out") from error

        if result.returncode != 0:
            raise ConversionError(result.stderr or result.stdout or "PDF/A conversion failed")
        if not output_path.exists():
            raise ConversionError("PDF/A conversion produced no output")
        return read_scratch_file(output_path)


class AssemblyService:
    """
    Entry point for every assembly operation.

    In ``pdfa`` mode the documents produced by merge, resize, image conversion
    and centered text are converted to the configured PDF/A profile before
    they are returned.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()

    @property
    def pdfa_mode(self) -> bool:
        return self.settings.mode is OutputMode.PDFA

    def _finish(self, content: bytes) -> bytes:
        if not self.pdfa_mode:
            return content
        return self.convert_to_pdfa(content).content

    def _finish_merge(self, result: MergeResult) -> MergeResult:
        if not self.pdfa_mode:
            return result
        converted = self.convert_to_pdfa(result.content)
        return MergeResult(content=converted.content, page_count=converted.page_count)

    def merge(self, sources: Sequence[Optional[SourceDocument]]) -> MergeResult:
        result = merge_documents(sources, scratch_parent=self.settings.scratch_dir)
        logger.info("Merged %d source(s) into %d page(s)", len(sources), result.page_count)
        return self._finish_merge(result)

    def resize_merge(
        self,
        sources: Sequence[Optional[SourceDocument]],
        page_size: PageSize | str | None,
        is_landscape: bool = False,
    ) -> MergeResult:
        """Resize every source to ``page_size`` and merge the results."""
        page = resolve_page_size_or_default(page_size, is_landscape)
        result = merge_documents(
            sources,
            transform=lambda content: resize_pdf(content, page, RESIZE_MERGE_MARGIN),
            scratch_parent=self.settings.scratch_dir,
        )
        logger.info("Resize-merged %d source(s) into %d page(s)", len(sources), result.page_count)
        return self._finish_merge(result)

    def resize(
        self,
        content: bytes,
        page_size: PageSize | str | None,
        is_landscape: bool = False,
        margin: float = 0,
    ) -> bytes:
        page = resolve_page_size_or_default(page_size, is_landscape)
        return self._finish(resize_pdf(content, page, margin))

    def convert_image(
        self,
        image: bytes,
        page_size: PageSize | str | None = None,
        margin: float | None = None,
    ) -> bytes:
        page = resolve_page_size_or_default(page_size)
        margin = DEFAULT_IMAGE_MARGIN if margin is None else margin
        return self._finish(image_to_pdf(image, page, margin))

    def convert_images(
        self,
        images: Sequence[bytes],
        page_size: PageSize | str | None = None,
        margin: float | None = None,
    ) -> MergeResult:
        """Convert several images and concatenate the pages in input order."""
        page = resolve_page_size_or_default(page_size)
        margin = DEFAULT_IMAGE_MARGIN if margin is None else margin
        sources = [SourceDocument(content=image_to_pdf(image, page, margin)) for image in images]
        result = merge_documents(sources, scratch_parent=self.settings.scratch_dir)
        return self._finish_merge(result)

    def create_centered_text(
        self,
        lines: Sequence[str],
        font_name: str,
        font_size: float,
        page_size: PageSize | str | None = None,
        is_landscape: bool = False,
    ) -> bytes:
        page = resolve_page_size_or_default(page_size, is_landscape)
        return self._finish(
            centered_text_pdf(lines, font_name, font_size, page, self.settings.font_dir)
        )

    def page_count(self, content: bytes) -> int:
        return count_pages(content)

    def add_page_numbers(
        self,
        content: bytes,
        pages_to_skip: int,
        first_number: int,
        total_page_count: int | None,
        font_name: str,
        font_size: float,
        margin: float,
    ) -> bytes:
        return add_page_numbers(
            _require_content(content, "PDF file"),
            pages_to_skip,
            first_number,
            total_page_count,
            font_name,
            font_size,
            margin,
            self.settings.font_dir,
        )

    def add_overlay(
        self,
        content: bytes,
        text: str,
        vertical: VerticalPlacement | str,
        horizontal: HorizontalPlacement | str,
        font_name: str,
        font_size: float,
        margin: float,
    ) -> bytes:
        """Stamp the same text onto every page."""
        return stamp_overlays(
            _require_content(content, "PDF file"),
            lambda index: text,
            parse_placement(vertical, VerticalPlacement),
            parse_placement(horizontal, HorizontalPlacement),
            font_name,
            font_size,
            margin,
            self.settings.font_dir,
        )

    def convert_to_pdfa(self, content: bytes) -> PdfAConversionResult:
        converted = pdf_to_pdfa(
            content, self.settings.pdfa_version, self.settings.scratch_dir
        )
        return PdfAConversionResult(content=converted, page_count=count_pages(converted))

    def pdf_info(self, content: bytes) -> PdfInfo:
        _require_content(content, "PDF file")
        configured = (
            f"PDF/A-{self.settings.pdfa_version.value}" if self.pdfa_mode else None
        )
        try:
            with open_document(content) as document:
                return PdfInfo(
                    page_count=document.page_count,
                    version=document.version,
                    encrypted=False,
                    configured_conformance=configured,
                )
        except EncryptedDocumentError:
            return PdfInfo(
                page_count=None,
                version=header_version(content),
                encrypted=True,
                configured_conformance=configured,
            )
