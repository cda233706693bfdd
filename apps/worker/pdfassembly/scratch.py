"""Scoped temporary storage for a single operation."""

from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import ResourceError

logger = logging.getLogger(__name__)


@contextmanager
def scratch_directory(parent: Path | None = None) -> Iterator[Path]:
    """
    Create a private temporary directory and remove it on exit.

    Removal failures are logged and ignored so they never mask the error that
    is already propagating.

    Raises:
        ResourceError: If the directory cannot be created.
    """
    try:
        path = Path(tempfile.mkdtemp(prefix="pdfassembly_", dir=parent))
    except OSError as error:
        raise ResourceError(f"Unable to create scratch directory: {error}") from error
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
        except OSError as error:
            logger.warning("Failed to remove scratch directory %s: %s", path, error)


def write_scratch_file(path: Path, content: bytes) -> Path:
    """Write bytes to a scratch file, wrapping I/O failures."""
    try:
        path.write_bytes(content)
    except OSError as error:
        raise ResourceError(f"Unable to write scratch file {path.name}: {error}") from error
    return path


def read_scratch_file(path: Path) -> bytes:
    """Read a scratch file back, wrapping I/O failures."""
    try:
        return path.read_bytes()
    except OSError as error:
        raise ResourceError(f"Unable to read scratch file {path.name}: {error}") from error
