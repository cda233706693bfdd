"""Runtime settings read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

ENV_PREFIX = "PDFASSEMBLY_"


class OutputMode(str, Enum):
    """Which PDF standard the producing operations emit."""

    PDF = "pdf"
    PDFA = "pdfa"


class PdfAVersion(str, Enum):
    PDFA_1B = "1b"
    PDFA_2B = "2b"

    @property
    def part(self) -> int:
        """Return the PDF/A part number passed to Ghostscript."""
        return int(self.value[0])


def _env(name: str) -> str | None:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_enum(name: str, enum_type, default):
    value = _env(name)
    if value is None:
        return default
    try:
        return enum_type(value.lower())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Settings shared by the worker, the CLI and the assembly service."""

    mode: OutputMode = OutputMode.PDF
    pdfa_version: PdfAVersion = PdfAVersion.PDFA_2B
    font_dir: Path | None = None
    scratch_dir: Path | None = None
    job_timeout_sec: float = 300.0
    broker_url: str | None = None
    worker_id: str = "worker-local"
    worker_token: str | None = None
    poll_interval_sec: float = 5.0
    heartbeat_sec: float = 25.0
    worker_concurrency: int = 1
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``PDFASSEMBLY_*`` environment variables."""
        font_dir = _env("FONT_DIR")
        scratch_dir = _env("SCRATCH_DIR")
        return cls(
            mode=_env_enum("MODE", OutputMode, OutputMode.PDF),
            pdfa_version=_env_enum("PDFA_VERSION", PdfAVersion, PdfAVersion.PDFA_2B),
            font_dir=Path(font_dir) if font_dir else None,
            scratch_dir=Path(scratch_dir) if scratch_dir else None,
            job_timeout_sec=_env_float("JOB_TIMEOUT_SEC", 300.0),
            broker_url=_env("BROKER_URL"),
            worker_id=_env("WORKER_ID") or "worker-local",
            worker_token=_env("WORKER_TOKEN"),
            poll_interval_sec=_env_float("POLL_INTERVAL", 5.0),
            heartbeat_sec=_env_float("HEARTBEAT_SECONDS", 25.0),
            worker_concurrency=max(1, _env_int("WORKER_CONCURRENCY", 1)),
            log_level=(_env("LOG_LEVEL") or "INFO").upper(),
        )


def configure_logging(level: str) -> None:
    """Configure the root logger for the front ends."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
