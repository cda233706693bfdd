"""HTTP client for the job broker that hands out assembly jobs.

Every broker function is a JSON call authenticated with the worker token.
Failures surface as :class:`BrokerError`; ``transient`` tells the caller
whether waiting and trying again can help (network trouble, throttling,
broker-side 5xx) or whether the worker has lost its standing with the
broker (rejected token, unknown function, function-level error).
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SEC = 60
# The broker answers function-level errors with this status and a JSON body.
FUNCTION_ERROR_STATUS = 560
TRANSIENT_STATUSES = frozenset({408, 425, 429})


@dataclass
class BrokerError(Exception):
    """Raised when a broker call does not return a value."""

    message: str
    data: Optional[Dict[str, Any]] = None
    status: Optional[int] = None
    transient: bool = False

    def __post_init__(self) -> None:
        super().__init__(self.message)


def is_transient_status(status: int) -> bool:
    return status in TRANSIENT_STATUSES or status >= 500


class BrokerClient:
    """Typed calls to the broker's job and file functions."""

    def __init__(
        self,
        url: str,
        worker_id: str,
        worker_token: str,
        auth_token: Optional[str] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.worker_id = worker_id
        self.worker_token = worker_token
        self.auth_token = auth_token
        self.session = requests.Session()

    def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        """Call a broker query or mutation and return its value."""
        body = {
            "path": path,
            "format": "json",
            "args": [{**args, "workerToken": self.worker_token}],
        }
        headers = {
            "Content-Type": "application/json",
            "X-Client": "pdfassembly-worker",
        }
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            response = self.session.post(
                f"{self.url}/api/{kind}",
                data=json.dumps(body),
                headers=headers,
                timeout=REQUEST_TIMEOUT_SEC,
            )
        except requests.RequestException as error:
            raise BrokerError(f"{path}: {error}", transient=True) from error

        status = response.status_code
        if status not in (200, FUNCTION_ERROR_STATUS):
            logger.warning("Broker %s %s returned HTTP %s", kind, path, status)
            raise BrokerError(
                f"{path}: HTTP {status}: {response.text}",
                status=status,
                transient=is_transient_status(status),
            )

        try:
            payload = response.json()
        except ValueError as error:
            raise BrokerError(f"{path}: invalid JSON reply", status=status, transient=True) from error
        if payload.get("status") == "success":
            return payload.get("value")
        raise BrokerError(
            payload.get("errorMessage", "Unknown error"),
            payload.get("errorData"),
            status=status,
        )

    def claim_next_job(self) -> Optional[Dict[str, Any]]:
        """Lease the next queued job, or ``None`` when the queue is empty."""
        return self._call("mutation", "jobs:claimNextJob", {"workerId": self.worker_id})

    def report_progress(self, job_id: str, progress: int) -> None:
        """Record progress and renew the job lease."""
        self._call(
            "mutation",
            "jobs:reportJobProgress",
            {"jobId": job_id, "workerId": self.worker_id, "progress": progress},
        )

    def complete_job(
        self,
        job_id: str,
        outputs: List[Dict[str, Any]],
        result: Optional[Dict[str, Any]],
        minutes_used: float,
        bytes_processed: int,
    ) -> None:
        self._call(
            "mutation",
            "jobs:completeJob",
            {
                "jobId": job_id,
                "workerId": self.worker_id,
                "outputs": outputs,
                "result": result,
                "minutesUsed": minutes_used,
                "bytesProcessed": bytes_processed,
            },
        )

    def fail_job(self, job_id: str, error_code: str, error_message: str) -> None:
        self._call(
            "mutation",
            "jobs:failJob",
            {
                "jobId": job_id,
                "workerId": self.worker_id,
                "errorCode": error_code,
                "errorMessage": error_message,
            },
        )

    def download_url(self, storage_id: str) -> Optional[str]:
        return self._call("query", "files:getDownloadUrl", {"storageId": storage_id})

    def upload_url(self) -> str:
        return self._call("mutation", "files:generateUploadUrl", {})
