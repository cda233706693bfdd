"""Caller-imposed deadlines for assembly operations."""

from __future__ import annotations

import logging
import threading
from typing import Callable, TypeVar

from .errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_deadline(func: Callable[[], T], timeout_sec: float | None, name: str = "operation") -> T:
    """
    Run ``func`` and return its result, or give up after ``timeout_sec``.

    The call runs on a daemon thread. When the deadline passes the caller gets
    ``OperationTimeoutError`` and no result; the abandoned call keeps unwinding
    in the background and releases its own scoped resources when it finishes.
    Exceptions raised by ``func`` are re-raised unchanged.
    """
    if timeout_sec is None or timeout_sec <= 0:
        return func()

    outcome: dict = {}

    def _target() -> None:
        try:
            outcome["value"] = func()
        except BaseException as error:  # noqa: BLE001 - re-raised in the caller
            outcome["error"] = error

    thread = threading.Thread(target=_target, name=f"pdfassembly-{name}", daemon=True)
    thread.start()
    thread.join(timeout_sec)
    if thread.is_alive():
        logger.warning("%s exceeded its %.1fs deadline", name, timeout_sec)
        raise OperationTimeoutError(f"{name} timed out after {timeout_sec:g} seconds")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
