"""Worker runtime that claims assembly jobs from the broker and runs them."""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .client import BrokerClient, BrokerError
from .config import Settings, configure_logging
from .errors import OperationTimeoutError
from .merge import SourceDocument
from .outline import HierarchyMode
from .scratch import read_scratch_file, scratch_directory, write_scratch_file
from .service import AssemblyService
from .timeouts import run_with_deadline

logger = logging.getLogger(__name__)

TOOL_OUTPUT_SUFFIXES = {
    "merge": "merged",
    "resize-merge": "resized_merged",
    "resize": "resized",
    "image-to-pdf": "images",
    "centered-text": "text",
    "page-numbers": "numbered",
    "overlay": "overlay",
    "pdfa": "pdfa",
}
DOWNLOAD_TIMEOUT_SEC = 120
UPLOAD_TIMEOUT_SEC = 120


@dataclass
class ToolOutput:
    """Files and structured values produced by one job."""

    files: List[Tuple[str, bytes]] = field(default_factory=list)
    result: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobInput:
    filename: str
    content: bytes
    item: Dict[str, Any]

    def to_source(self) -> SourceDocument:
        """Build a merge source from the input's outline options."""
        title = self.item.get("title") or Path(self.filename).stem
        mode = self.item.get("hierarchyMode")
        return SourceDocument(
            content=self.content,
            title=str(title),
            hierarchy_mode=HierarchyMode.WHOLE_HIERARCHY if mode is None else mode,
            start_on_odd_page=bool(self.item.get("startOnOddPage", False)),
            bookmark_styles=self.item.get("bookmarkStyles"),
        )


def _strip_input_prefix(name: str) -> str:
    if "_" in name:
        prefix, remainder = name.split("_", 1)
        if prefix.isdigit():
            return remainder
    return name


def _output_name(tool: str, inputs: List[JobInput]) -> str:
    suffix = TOOL_OUTPUT_SUFFIXES.get(tool, "output")
    if not inputs:
        return f"{suffix}.pdf"
    stem = Path(_strip_input_prefix(inputs[0].filename)).stem or "output"
    return f"{stem}_{suffix}.pdf"


def _parse_int(value: Any, default: int) -> int:
    """Parse an integer with a safe fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_lines(value: Any) -> List[str]:
    if isinstance(value, str):
        return value.splitlines()
    if isinstance(value, list):
        return [str(line) for line in value]
    return []


def _require_inputs(inputs: List[JobInput]) -> None:
    if not inputs:
        raise ValueError("PDF file is required")


class AssemblyWorker:
    """Poll the broker for jobs and execute assembly tools."""

    def __init__(
        self,
        settings: Settings,
        service: Optional[AssemblyService] = None,
        client: Optional[BrokerClient] = None,
    ) -> None:
        if not settings.broker_url:
            raise RuntimeError("PDFASSEMBLY_BROKER_URL is required")
        if not settings.worker_token:
            raise RuntimeError("PDFASSEMBLY_WORKER_TOKEN is required")
        self.settings = settings
        self.service = service or AssemblyService(settings)
        self.client = client or BrokerClient(
            settings.broker_url, settings.worker_id, settings.worker_token
        )
        self.worker_id = settings.worker_id
        self._client_lock = threading.Lock()
        self._stop_event = threading.Event()

    def run(self) -> None:
        """Run the polling loops until ``stop`` is called."""
        threads = [
            threading.Thread(
                target=self._poll_loop, name=f"pdfassembly-worker-{index}", daemon=True
            )
            for index in range(self.settings.worker_concurrency)
        ]
        logger.info(
            "Worker %s started with %d poll loop(s)", self.worker_id, len(threads)
        )
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def stop(self) -> None:
        self._stop_event.set()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._call_broker(self.client.claim_next_job)
            except BrokerError as error:
                if not error.transient:
                    logger.error("Broker rejected the worker, stopping: %s", error)
                    self._stop_event.set()
                    return
                logger.warning("Failed to claim a job: %s", error)
                job = None
            if not job:
                self._stop_event.wait(self.settings.poll_interval_sec)
                continue
            self._process_job(job)

    def _process_job(self, job: Dict[str, Any]) -> None:
        """Process a single job from the broker."""
        job_id = job["_id"]
        logger.info("Processing job %s (%s)", job_id, job.get("tool"))
        started = time.time()
        progress = {"value": 10}
        stop_event = threading.Event()
        heartbeat = threading.Thread(
            target=self._heartbeat, args=(job_id, progress, stop_event), daemon=True
        )
        heartbeat.start()
        try:
            self._report(job_id, 10)
            with scratch_directory(self.settings.scratch_dir) as temp:
                inputs = self._download_inputs(job.get("inputs") or [], temp)
                progress["value"] = 40
                self._report(job_id, 40)
                output = run_with_deadline(
                    lambda: self._run_tool(job, inputs),
                    self.settings.job_timeout_sec,
                    name=f"job {job_id}",
                )
                progress["value"] = 75
                self._report(job_id, 75)
                output_payload = self._upload_outputs(output.files, temp)
            elapsed_minutes = max((time.time() - started) / 60, 0.01)
            bytes_processed = sum(len(item.content) for item in inputs)
            self._call_broker(
                self.client.complete_job,
                job_id,
                outputs=output_payload,
                result=output.result,
                minutes_used=elapsed_minutes,
                bytes_processed=bytes_processed,
            )
            self._report(job_id, 100)
            logger.info("Job %s completed", job_id)
        except OperationTimeoutError as error:
            self._safe_fail(job_id, "JOB_TIMEOUT", "Processing timed out.", str(error))
        except ValueError as error:
            self._safe_fail(job_id, "USER_INPUT_INVALID", str(error), str(error))
        except BrokerError as error:
            self._safe_fail(
                job_id,
                "SERVICE_CAPACITY_TEMPORARY",
                "Processing failed. Please retry.",
                error.message,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected failure in job %s", job_id)
            self._safe_fail(
                job_id,
                "SERVICE_CAPACITY_TEMPORARY",
                "Processing failed. Please retry.",
                str(error),
            )
        finally:
            stop_event.set()
            heartbeat.join(timeout=1)

    def _report(self, job_id: str, progress: int) -> None:
        """Update job progress and renew the lease."""
        self._call_broker(self.client.report_progress, job_id, progress)

    def _fail(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        log_message: str | None = None,
    ) -> None:
        """Report a failed job with a friendly error."""
        logger.warning("Job %s failed (%s): %s", job_id, error_code, log_message or error_message)
        self._call_broker(self.client.fail_job, job_id, error_code, error_message)

    def _safe_fail(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        log_message: str | None = None,
    ) -> None:
        """Attempt to report a failure without crashing the worker."""
        try:
            self._fail(job_id, error_code, error_message, log_message)
        except Exception as error:  # noqa: BLE001
            logger.error("Failed to report job failure for %s: %s", job_id, error)

    def _heartbeat(
        self, job_id: str, progress: Dict[str, int], stop_event: threading.Event
    ) -> None:
        """Heartbeat loop that renews the job lease."""
        while not stop_event.wait(self.settings.heartbeat_sec):
            try:
                self._report(job_id, progress["value"])
            except BrokerError as error:
                if not error.transient:
                    logger.error("Lease for job %s lost: %s", job_id, error)
                    return
                logger.warning("Heartbeat for job %s failed: %s", job_id, error)

    def _download_inputs(self, inputs: List[Dict[str, Any]], temp: Path) -> List[JobInput]:
        """Download job inputs into the job's scratch directory."""
        downloaded: List[JobInput] = []
        for index, item in enumerate(inputs, start=1):
            url = self._call_broker(self.client.download_url, item["storageId"])
            if not url:
                raise RuntimeError("Missing download URL")
            filename = f"{index:02d}_{Path(item['filename']).name}"
            target = temp / filename
            with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_SEC) as response:
                response.raise_for_status()
                with target.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        if chunk:
                            handle.write(chunk)
            downloaded.append(
                JobInput(
                    filename=Path(item["filename"]).name,
                    content=read_scratch_file(target),
                    item=item,
                )
            )
        return downloaded

    def _run_tool(self, job: Dict[str, Any], inputs: List[JobInput]) -> ToolOutput:
        """
        Dispatch the tool named by a job and collect what it produced.

        Returns:
            ToolOutput: Files to upload and structured values for ``completeJob``.

        Raises:
            ValueError: When required configuration or inputs for the tool are
                missing or invalid.
            RuntimeError: When the job names an unsupported tool.
        """
        tool = job["tool"]
        config = job.get("config")
        if not isinstance(config, dict):
            config = {}
        name = _output_name(tool, inputs)
        service = self.service
        page_size = config.get("pageSize")
        landscape = bool(config.get("landscape", False))

        if tool in ("merge", "resize-merge"):
            _require_inputs(inputs)
            sources = [item.to_source() for item in inputs]
            if tool == "merge":
                merged = service.merge(sources)
            else:
                merged = service.resize_merge(sources, page_size, landscape)
            return ToolOutput([(name, merged.content)], {"pageCount": merged.page_count})
        if tool == "resize":
            _require_inputs(inputs)
            margin = _parse_float(config.get("margin"), 0)
            content = service.resize(inputs[0].content, page_size, landscape, margin)
            return ToolOutput([(name, content)])
        if tool == "image-to-pdf":
            if not inputs:
                raise ValueError("Image file is required")
            margin = config.get("margin")
            converted = service.convert_images(
                [item.content for item in inputs],
                page_size,
                None if margin is None else _parse_float(margin, 36),
            )
            return ToolOutput([(name, converted.content)], {"pageCount": converted.page_count})
        if tool == "centered-text":
            lines = _parse_lines(config.get("lines"))
            if not lines:
                raise ValueError("Text lines are required")
            content = service.create_centered_text(
                lines,
                str(config.get("fontName") or "helvetica"),
                _parse_float(config.get("fontSize"), 12),
                page_size,
                landscape,
            )
            return ToolOutput([(name, content)])
        if tool == "page-count":
            _require_inputs(inputs)
            return ToolOutput(result={"pageCount": service.page_count(inputs[0].content)})
        if tool == "page-numbers":
            _require_inputs(inputs)
            total = config.get("totalPageCount")
            content = service.add_page_numbers(
                inputs[0].content,
                max(0, _parse_int(config.get("pagesToSkip"), 0)),
                _parse_int(config.get("firstNumber"), 1),
                None if total is None else _parse_int(total, 0),
                str(config.get("fontName") or "helvetica"),
                _parse_float(config.get("fontSize"), 10),
                _parse_float(config.get("margin"), 20),
            )
            return ToolOutput([(name, content)])
        if tool == "overlay":
            _require_inputs(inputs)
            text = config.get("text") or ""
            if not str(text).strip():
                raise ValueError("Overlay text is required")
            content = service.add_overlay(
                inputs[0].content,
                str(text),
                config.get("vertical") or "bottom",
                config.get("horizontal") or "right",
                str(config.get("fontName") or "helvetica"),
                _parse_float(config.get("fontSize"), 10),
                _parse_float(config.get("margin"), 20),
            )
            return ToolOutput([(name, content)])
        if tool == "pdfa":
            _require_inputs(inputs)
            converted = service.convert_to_pdfa(inputs[0].content)
            return ToolOutput([(name, converted.content)], {"pageCount": converted.page_count})
        if tool == "pdf-info":
            _require_inputs(inputs)
            info = service.pdf_info(inputs[0].content)
            return ToolOutput(
                result={
                    "pageCount": info.page_count,
                    "version": info.version,
                    "encrypted": info.encrypted,
                    "configuredConformance": info.configured_conformance,
                }
            )
        raise RuntimeError(f"Unsupported tool: {tool}")

    def _upload_outputs(self, files: List[Tuple[str, bytes]], temp: Path) -> List[Dict[str, Any]]:
        """Upload output files to broker storage."""
        payload = []
        for filename, content in files:
            output = write_scratch_file(temp / filename, content)
            upload_url = self._call_broker(self.client.upload_url)
            with output.open("rb") as handle:
                response = requests.post(
                    upload_url,
                    data=handle,
                    headers={"Content-Type": "application/pdf"},
                    timeout=UPLOAD_TIMEOUT_SEC,
                )
                response.raise_for_status()
                storage_id = response.json()["storageId"]
            payload.append(
                {
                    "storageId": storage_id,
                    "filename": filename,
                    "sizeBytes": len(content),
                }
            )
        return payload

    def _call_broker(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a broker client call with thread-safe access."""
        with self._client_lock:
            return func(*args, **kwargs)


def main() -> None:
    """Entrypoint for the worker process."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info("Starting worker in %s mode", settings.mode.value)
    AssemblyWorker(settings).run()


if __name__ == "__main__":
    main()
