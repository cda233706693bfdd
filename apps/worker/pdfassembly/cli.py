"""
One-shot command line front end for the assembly operations.

Every invocation runs a single command under a caller deadline and reports
the outcome through the process exit code:

    0  success
    10 timeout
    20 error while reading input file(s)
    21 error while writing the output file
    22 error while processing the data
    23 invalid or missing command line arguments

Input files are read and the output file is written on the calling thread.
Only the processing step runs under the deadline, and all of its scratch
storage lives in one directory the calling thread removes before returning,
so a timeout leaves neither temporary files nor a partial output behind.
"""

from __future__ import annotations

import argparse
import base64
import binascii
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence, TypeVar

from .config import OutputMode, PdfAVersion, Settings, configure_logging
from .errors import OperationTimeoutError, ResourceError
from .geometry import PageSize
from .merge import SourceDocument
from .outline import HierarchyMode
from .overlay import HorizontalPlacement, VerticalPlacement
from .scratch import scratch_directory
from .service import AssemblyService
from .timeouts import run_with_deadline

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_TIMEOUT = 10
EXIT_INPUT_FILE_ERROR = 20
EXIT_OUTPUT_FILE_ERROR = 21
EXIT_PROCESSING_ERROR = 22
EXIT_INVALID_ARGUMENTS = 23

T = TypeVar("T")


class CommandError(Exception):
    """A command failed; carries the process exit code to report."""

    def __init__(self, exit_code: int, message: str) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID_ARGUMENTS, f"{self.prog}: error: {message}\n")


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as error:
        raise CommandError(EXIT_INPUT_FILE_ERROR, f"Unable to read file {path}: {error}") from error


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise CommandError(EXIT_INPUT_FILE_ERROR, f"Unable to read file {path}: {error}") from error


def _write_bytes(path: Path, content: bytes) -> None:
    """Write the output file; an existing file is never overwritten."""
    try:
        with path.open("xb") as handle:
            handle.write(content)
    except FileExistsError as error:
        raise CommandError(
            EXIT_OUTPUT_FILE_ERROR, f"'{path}' already exists and will not be overwritten."
        ) from error
    except OSError as error:
        raise CommandError(EXIT_OUTPUT_FILE_ERROR, f"Unable to write file {path}: {error}") from error


def _process(args: argparse.Namespace, description: str, func: Callable[[], T]) -> T:
    """Run the processing step of a command under the caller deadline."""
    try:
        return run_with_deadline(func, args.timeout / 1000, name=args.command)
    except OperationTimeoutError:
        raise
    except Exception as error:  # noqa: BLE001
        raise CommandError(EXIT_PROCESSING_ERROR, f"Unable to {description}: {error}") from error


def _load_descriptor(path: Path) -> SourceDocument:
    """
    Read a JSON source descriptor.

    The descriptor carries ``title``, either ``path`` (relative paths resolve
    against the descriptor's directory) or base64 ``content``, and optionally
    ``hierarchy_mode``, ``start_on_odd_page`` and ``bookmark_styles``.
    """
    try:
        data = json.loads(_read_text(path))
    except json.JSONDecodeError as error:
        raise CommandError(EXIT_INPUT_FILE_ERROR, f"Invalid source descriptor {path}: {error}") from error
    if not isinstance(data, dict):
        raise CommandError(EXIT_INPUT_FILE_ERROR, f"Invalid source descriptor {path}")

    if data.get("path"):
        content = _read_bytes(path.parent / data["path"])
    elif data.get("content"):
        try:
            content = base64.b64decode(data["content"], validate=True)
        except (binascii.Error, TypeError, ValueError) as error:
            raise CommandError(
                EXIT_INPUT_FILE_ERROR, f"Invalid base64 content in {path}"
            ) from error
    else:
        content = b""

    try:
        return SourceDocument(
            content=content,
            title=str(data.get("title") or path.stem),
            hierarchy_mode=data.get("hierarchy_mode", HierarchyMode.NONE),
            start_on_odd_page=bool(data.get("start_on_odd_page", False)),
            bookmark_styles=data.get("bookmark_styles"),
        )
    except ValueError as error:
        raise CommandError(EXIT_INPUT_FILE_ERROR, f"Invalid source descriptor {path}: {error}") from error


def _load_sources(paths: Sequence[Path]) -> List[SourceDocument]:
    sources: List[SourceDocument] = []
    for path in paths:
        if path.suffix.lower() == ".json":
            sources.append(_load_descriptor(path))
        else:
            sources.append(
                SourceDocument(
                    content=_read_bytes(path),
                    title=path.stem,
                    hierarchy_mode=HierarchyMode.WHOLE_HIERARCHY,
                )
            )
    return sources


def _is_landscape(args: argparse.Namespace) -> bool:
    return args.orientation == "landscape"


def _cmd_convert_image(service: AssemblyService, args: argparse.Namespace) -> None:
    image = _read_bytes(args.input)
    result = _process(
        args,
        "convert image to PDF",
        lambda: service.convert_image(image, args.page_size, args.margin),
    )
    _write_bytes(args.output, result)


def _cmd_merge(service: AssemblyService, args: argparse.Namespace) -> None:
    sources = _load_sources(args.input)
    result = _process(args, "merge PDF files", lambda: service.merge(sources))
    _write_bytes(args.output, result.content)
    print(result.page_count)


def _cmd_resize_merge(service: AssemblyService, args: argparse.Namespace) -> None:
    sources = _load_sources(args.input)
    result = _process(
        args,
        "merge PDF files",
        lambda: service.resize_merge(sources, args.page_size, _is_landscape(args)),
    )
    _write_bytes(args.output, result.content)
    print(result.page_count)


def _cmd_resize(service: AssemblyService, args: argparse.Namespace) -> None:
    content = _read_bytes(args.input)
    result = _process(
        args,
        "resize PDF",
        lambda: service.resize(content, args.page_size, _is_landscape(args), args.margin or 0),
    )
    _write_bytes(args.output, result)


def _cmd_centered_text(service: AssemblyService, args: argparse.Namespace) -> None:
    lines = _read_text(args.input).splitlines()
    result = _process(
        args,
        "create PDF with centered text",
        lambda: service.create_centered_text(
            lines, args.font, args.font_size, args.page_size, _is_landscape(args)
        ),
    )
    _write_bytes(args.output, result)


def _cmd_page_count(service: AssemblyService, args: argparse.Namespace) -> None:
    content = _read_bytes(args.input)
    print(_process(args, "determine number of pages in PDF", lambda: service.page_count(content)))


def _cmd_add_page_numbers(service: AssemblyService, args: argparse.Namespace) -> None:
    content = _read_bytes(args.input)
    result = _process(
        args,
        "add page numbers to PDF",
        lambda: service.add_page_numbers(
            content,
            args.skip,
            args.first_number,
            args.total_pages,
            args.font,
            args.font_size,
            args.margin or 0,
        ),
    )
    _write_bytes(args.output, result)


def _cmd_add_overlay(service: AssemblyService, args: argparse.Namespace) -> None:
    content = _read_bytes(args.input)
    text = _read_text(args.overlay_text).rstrip("\r\n")
    result = _process(
        args,
        "add overlay to PDF",
        lambda: service.add_overlay(
            content,
            text,
            args.vertical,
            args.horizontal,
            args.font,
            args.font_size,
            args.margin or 0,
        ),
    )
    _write_bytes(args.output, result)


def _cmd_convert_to_pdfa(service: AssemblyService, args: argparse.Namespace) -> None:
    content = _read_bytes(args.input)
    result = _process(args, "convert to PDF/A", lambda: service.convert_to_pdfa(content))
    _write_bytes(args.output, result.content)
    print(result.page_count)


def _cmd_pdf_info(service: AssemblyService, args: argparse.Namespace) -> None:
    content = _read_bytes(args.input)
    info = _process(args, "read PDF information", lambda: service.pdf_info(content))
    payload: Dict[str, Any] = asdict(info)
    _write_bytes(args.output, (json.dumps(payload, indent=2) + "\n").encode("utf-8"))


def _add_input(parser: argparse.ArgumentParser, help_text: str = "Input file.") -> None:
    parser.add_argument("-i", "--input", required=True, type=Path, help=help_text)


def _add_output(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-o", "--output", required=True, type=Path, help="Output file (never overwritten)."
    )


def _add_page_size(parser: argparse.ArgumentParser, required: bool = True) -> None:
    parser.add_argument(
        "-p",
        "--page-size",
        required=required,
        type=str.upper,
        choices=[size.value for size in PageSize],
        help="Page size of the output file.",
    )


def _add_orientation(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--orientation",
        choices=["portrait", "landscape"],
        default="portrait",
        help="Page orientation of the output file.",
    )


def _add_font(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-f", "--font", required=True, help="Font name or TrueType file.")
    parser.add_argument("--font-size", required=True, type=float, help="Font size in points.")


def _add_margin(parser: argparse.ArgumentParser, help_text: str) -> None:
    parser.add_argument("--margin", type=float, default=None, help=help_text)


def build_arg_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(
        prog="pdfassembly",
        description="Merge, resize, stamp and convert PDF documents into PDF or PDF/A.",
        epilog=(
            "Return codes: 0 success, 10 timeout, 20 input file error, "
            "21 output file error, 22 processing error, 23 invalid arguments."
        ),
    )
    p.add_argument(
        "-m",
        "--mode",
        choices=[mode.value for mode in OutputMode],
        default=None,
        help="Resulting PDF standard (default: PDFASSEMBLY_MODE or pdf).",
    )
    p.add_argument(
        "-t", "--timeout", required=True, type=int, help="Timeout for the operation in milliseconds."
    )
    p.add_argument(
        "--pdfa-version",
        choices=[version.value for version in PdfAVersion],
        default=None,
        help="PDF/A version to produce (default: PDFASSEMBLY_PDFA_VERSION or 2b).",
    )
    commands = p.add_subparsers(dest="command", required=True, metavar="command")

    convert_image = commands.add_parser("convert-image", help="Convert an image to a PDF file.")
    _add_input(convert_image)
    _add_output(convert_image)
    _add_page_size(convert_image, required=False)
    _add_margin(convert_image, "Margin around the image in points (default 36).")
    convert_image.set_defaults(handler=_cmd_convert_image)

    sources_help = "PDF files or JSON source descriptors, merged in the given order."
    merge = commands.add_parser("merge", help="Merge PDF files into a single PDF file.")
    merge.add_argument("-i", "--input", required=True, type=Path, nargs="+", help=sources_help)
    _add_output(merge)
    merge.set_defaults(handler=_cmd_merge)

    resize_merge = commands.add_parser(
        "resize-merge", help="Resize PDF files to one page size and merge them."
    )
    resize_merge.add_argument(
        "-i", "--input", required=True, type=Path, nargs="+", help=sources_help
    )
    _add_output(resize_merge)
    _add_page_size(resize_merge)
    _add_orientation(resize_merge)
    resize_merge.set_defaults(handler=_cmd_resize_merge)

    resize = commands.add_parser("resize", help="Resize every page of a PDF file.")
    _add_input(resize)
    _add_output(resize)
    _add_page_size(resize)
    _add_orientation(resize)
    _add_margin(resize, "Margin around the page content in points (default 0).")
    resize.set_defaults(handler=_cmd_resize)

    centered_text = commands.add_parser(
        "centered-text", help="Create a PDF with the lines of a text file centered on a page."
    )
    _add_input(centered_text, "UTF-8 text file with the lines to render.")
    _add_output(centered_text)
    _add_font(centered_text)
    _add_page_size(centered_text)
    _add_orientation(centered_text)
    centered_text.set_defaults(handler=_cmd_centered_text)

    page_count = commands.add_parser("page-count", help="Print the number of pages of a PDF file.")
    _add_input(page_count)
    page_count.set_defaults(handler=_cmd_page_count)

    page_numbers = commands.add_parser("add-page-numbers", help="Add page numbers to a PDF file.")
    _add_input(page_numbers)
    _add_output(page_numbers)
    page_numbers.add_argument(
        "-s", "--skip", type=int, default=0, help="Pages to skip before numbering starts."
    )
    page_numbers.add_argument(
        "--first-number", type=int, default=1, help="The first page number to use."
    )
    page_numbers.add_argument(
        "--total-pages",
        type=int,
        default=None,
        help="Render numbers together with a page count, like '17 / 35'.",
    )
    _add_font(page_numbers)
    _add_margin(page_numbers, "Distance from the page edge in points (default 0).")
    page_numbers.set_defaults(handler=_cmd_add_page_numbers)

    overlay = commands.add_parser("add-overlay", help="Add a text overlay to every page.")
    _add_input(overlay)
    _add_output(overlay)
    overlay.add_argument(
        "--overlay-text", required=True, type=Path, help="UTF-8 file containing the overlay text."
    )
    overlay.add_argument(
        "--vertical",
        required=True,
        type=str.lower,
        choices=[placement.value for placement in VerticalPlacement],
    )
    overlay.add_argument(
        "--horizontal",
        required=True,
        type=str.lower,
        choices=[placement.value for placement in HorizontalPlacement],
    )
    _add_font(overlay)
    _add_margin(overlay, "Distance from the page edge in points (default 0).")
    overlay.set_defaults(handler=_cmd_add_overlay)

    pdfa = commands.add_parser("convert-to-pdfa", help="Convert a PDF file to PDF/A.")
    _add_input(pdfa)
    _add_output(pdfa)
    pdfa.set_defaults(handler=_cmd_convert_to_pdfa)

    info = commands.add_parser("pdf-info", help="Write information about a PDF file as JSON.")
    _add_input(info)
    _add_output(info)
    info.set_defaults(handler=_cmd_pdf_info)
    return p


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.mode:
        settings = replace(settings, mode=OutputMode(args.mode))
    if args.pdfa_version:
        settings = replace(settings, pdfa_version=PdfAVersion(args.pdfa_version))
    return settings


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    if args.timeout <= 0:
        print("pdfassembly: error: --timeout must be positive", file=sys.stderr)
        return EXIT_INVALID_ARGUMENTS

    settings = _settings_from_args(args)
    configure_logging(settings.log_level)
    try:
        with scratch_directory(settings.scratch_dir) as scratch:
            args.handler(AssemblyService(replace(settings, scratch_dir=scratch)), args)
    except OperationTimeoutError as error:
        logger.error("%s", error)
        return EXIT_TIMEOUT
    except CommandError as error:
        logger.error("%s", error)
        return error.exit_code
    except ResourceError as error:
        logger.error("%s", error)
        return EXIT_PROCESSING_ERROR
    return EXIT_SUCCESS


if __name__ == "__main__":
    raise SystemExit(main())
