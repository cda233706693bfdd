import threading
import time
from io import BytesIO
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest
from pypdf import PdfReader

from pdfassembly.client import BrokerError
from pdfassembly.config import Settings
from pdfassembly.outline import HierarchyMode
from pdfassembly.worker import AssemblyWorker, JobInput, ToolOutput, _output_name


def _settings(**overrides) -> Settings:
    values = {"broker_url": "http://broker.test", "worker_token": "token", "worker_id": "w1"}
    values.update(overrides)
    return Settings(**values)


def _worker(client=None, service=None, **overrides) -> AssemblyWorker:
    return AssemblyWorker(_settings(**overrides), service=service, client=client or Mock())


def test_worker_requires_broker_settings() -> None:
    """The broker URL and token are mandatory."""
    with pytest.raises(RuntimeError):
        AssemblyWorker(Settings(worker_token="token"))
    with pytest.raises(RuntimeError):
        AssemblyWorker(Settings(broker_url="http://broker.test"))


def test_job_input_defaults_to_whole_hierarchy() -> None:
    """Inputs without outline options get the file stem as title."""
    source = JobInput("01_report.pdf", b"%PDF", {}).to_source()
    assert source.title == "01_report"
    assert source.hierarchy_mode is HierarchyMode.WHOLE_HIERARCHY

    styled = JobInput(
        "a.pdf", b"%PDF", {"title": "Annex", "hierarchyMode": "none", "startOnOddPage": True}
    ).to_source()
    assert styled.title == "Annex"
    assert styled.hierarchy_mode is HierarchyMode.NONE
    assert styled.start_on_odd_page is True


def test_output_name_uses_first_input() -> None:
    """Output files are named after the first input and the tool."""
    inputs = [JobInput("report.pdf", b"", {})]
    assert _output_name("merge", inputs) == "report_merged.pdf"
    assert _output_name("centered-text", []) == "text.pdf"


def test_run_tool_merge(make_pdf, read_outline) -> None:
    """Merge jobs return the merged file and its page count."""
    worker = _worker()
    inputs = [
        JobInput("a.pdf", make_pdf(pages=1), {"title": "Invoices"}),
        JobInput("b.pdf", make_pdf(pages=1), {"title": "Invoices", "startOnOddPage": True}),
    ]
    output = worker._run_tool({"tool": "merge", "config": {}}, inputs)
    assert output.result == {"pageCount": 3}
    (name, content), = output.files
    assert name == "a_merged.pdf"
    assert read_outline(content) == [("Invoices", 1, [])]


def test_run_tool_resize_merge(make_pdf) -> None:
    """resize-merge uses the configured page size."""
    worker = _worker()
    inputs = [JobInput("a.pdf", make_pdf(pages=2), {}), JobInput("b.pdf", make_pdf(pages=1), {})]
    output = worker._run_tool(
        {"tool": "resize-merge", "config": {"pageSize": "A5", "landscape": True}}, inputs
    )
    assert output.result == {"pageCount": 3}
    reader = PdfReader(BytesIO(output.files[0][1]))
    box = reader.pages[0].mediabox
    assert (round(float(box.width)), round(float(box.height))) == (595, 420)


def test_run_tool_page_count_and_info(make_pdf) -> None:
    """Query tools only return structured results."""
    worker = _worker()
    inputs = [JobInput("a.pdf", make_pdf(pages=4), {})]
    assert worker._run_tool({"tool": "page-count"}, inputs) == ToolOutput(result={"pageCount": 4})

    info = worker._run_tool({"tool": "pdf-info"}, inputs)
    assert info.files == []
    assert info.result["pageCount"] == 4
    assert info.result["encrypted"] is False
    assert info.result["configuredConformance"] is None


def test_run_tool_centered_text_passes_config() -> None:
    """Configuration values reach the service with defaults filled in."""
    service = Mock()
    service.create_centered_text.return_value = b"%PDF-1.4"
    worker = _worker(service=service)
    output = worker._run_tool(
        {"tool": "centered-text", "config": {"lines": "Title\nSubtitle", "pageSize": "A4"}}, []
    )
    service.create_centered_text.assert_called_once_with(
        ["Title", "Subtitle"], "helvetica", 12.0, "A4", False
    )
    assert output.files == [("text.pdf", b"%PDF-1.4")]


def test_run_tool_requires_inputs() -> None:
    """Tools that read a PDF reject jobs without inputs."""
    with pytest.raises(ValueError):
        _worker()._run_tool({"tool": "page-numbers", "config": {}}, [])


def test_run_tool_rejects_unknown_tool(make_pdf) -> None:
    """Unknown tools are a runtime error."""
    with pytest.raises(RuntimeError):
        _worker()._run_tool({"tool": "split"}, [JobInput("a.pdf", make_pdf(), {})])


def test_process_job_completes(make_pdf, tmp_path: Path) -> None:
    """A successful job reports progress and completes with its outputs."""
    client = Mock()
    worker = _worker(client=client, scratch_dir=tmp_path)
    inputs = [JobInput("a.pdf", make_pdf(pages=2), {})]
    uploaded = [{"storageId": "s1", "filename": "a_merged.pdf", "sizeBytes": 10}]
    with patch.object(worker, "_download_inputs", return_value=inputs), patch.object(
        worker, "_upload_outputs", return_value=uploaded
    ):
        worker._process_job({"_id": "job-1", "tool": "page-count", "inputs": []})

    completed = client.complete_job.call_args
    assert completed.args == ("job-1",)
    assert completed.kwargs["outputs"] == uploaded
    assert completed.kwargs["result"] == {"pageCount": 2}
    assert completed.kwargs["bytes_processed"] == len(inputs[0].content)
    progress = [call.args[1] for call in client.report_progress.call_args_list]
    assert progress[0] == 10
    assert progress[-1] == 100
    client.fail_job.assert_not_called()


def test_process_job_reports_invalid_input(tmp_path: Path) -> None:
    """Invalid input fails the job with a user-facing code."""
    client = Mock()
    worker = _worker(client=client, scratch_dir=tmp_path)
    inputs = [JobInput("a.pdf", b"not a pdf", {})]
    with patch.object(worker, "_download_inputs", return_value=inputs):
        worker._process_job({"_id": "job-2", "tool": "page-count", "inputs": []})

    assert client.fail_job.call_args.args[:2] == ("job-2", "USER_INPUT_INVALID")
    client.complete_job.assert_not_called()


def test_process_job_reports_timeout(tmp_path: Path) -> None:
    """Jobs that exceed their deadline fail with JOB_TIMEOUT."""
    client = Mock()
    service = Mock()
    service.page_count.side_effect = lambda content: time.sleep(1)
    worker = _worker(client=client, service=service, scratch_dir=tmp_path, job_timeout_sec=0.05)
    with patch.object(worker, "_download_inputs", return_value=[JobInput("a.pdf", b"x", {})]):
        worker._process_job({"_id": "job-3", "tool": "page-count", "inputs": []})

    assert client.fail_job.call_args.args[:2] == ("job-3", "JOB_TIMEOUT")


def test_process_job_reports_unexpected_failure(tmp_path: Path) -> None:
    """Unexpected errors are reported as retryable."""
    client = Mock()
    worker = _worker(client=client, scratch_dir=tmp_path)
    with patch.object(worker, "_download_inputs", return_value=[]):
        worker._process_job({"_id": "job-4", "tool": "split", "inputs": []})

    assert client.fail_job.call_args.args[:2] == ("job-4", "SERVICE_CAPACITY_TEMPORARY")


def test_download_inputs_fetches_each_file(tmp_path: Path) -> None:
    """Inputs are downloaded through the broker's URLs into scratch files."""
    client = Mock()
    client.download_url.return_value = "https://files.test/one"
    worker = _worker(client=client)
    response = MagicMock()
    response.iter_content.return_value = [b"%PDF-", b"1.4"]
    response.__enter__.return_value = response
    with patch("pdfassembly.worker.requests.get", return_value=response) as get:
        inputs = worker._download_inputs(
            [{"storageId": "s1", "filename": "dir/report.pdf", "title": "Report"}], tmp_path
        )

    client.download_url.assert_called_once_with("s1")
    get.assert_called_once()
    item = {"storageId": "s1", "filename": "dir/report.pdf", "title": "Report"}
    assert inputs == [JobInput("report.pdf", b"%PDF-1.4", item)]
    assert (tmp_path / "01_report.pdf").read_bytes() == b"%PDF-1.4"


def test_upload_outputs_posts_files(tmp_path: Path) -> None:
    """Outputs are posted to a fresh upload URL each."""
    client = Mock()
    client.upload_url.return_value = "https://files.test/upload"
    worker = _worker(client=client)
    response = Mock()
    response.json.return_value = {"storageId": "stored-1"}
    with patch("pdfassembly.worker.requests.post", return_value=response):
        payload = worker._upload_outputs([("out.pdf", b"%PDF-1.4")], tmp_path)

    assert payload == [{"storageId": "stored-1", "filename": "out.pdf", "sizeBytes": 8}]


def test_poll_loop_stops_when_broker_rejects_worker() -> None:
    """A non-transient claim error stops every poll loop."""
    client = Mock()
    client.claim_next_job.side_effect = BrokerError("Invalid worker token", status=401)
    worker = _worker(client=client)

    worker._poll_loop()

    assert worker._stop_event.is_set()
    client.claim_next_job.assert_called_once_with()


def test_poll_loop_retries_transient_claim_errors() -> None:
    """Transient claim errors are waited out and the loop keeps polling."""
    client = Mock()
    worker = _worker(client=client, poll_interval_sec=0.01)
    client.claim_next_job.side_effect = _claim_sequence(worker)

    worker._poll_loop()

    assert client.claim_next_job.call_count == 3


def _claim_sequence(worker: AssemblyWorker):
    errors = [
        BrokerError("HTTP 503", status=503, transient=True),
        BrokerError("connection reset", transient=True),
    ]

    def _claim():
        if errors:
            raise errors.pop(0)
        worker.stop()
        return None

    return _claim


def test_heartbeat_stops_after_lease_is_lost() -> None:
    """The heartbeat gives up once the broker refuses the lease renewal."""
    client = Mock()
    client.report_progress.side_effect = BrokerError("Lease expired")
    worker = _worker(client=client, heartbeat_sec=0.01)
    stop_event = threading.Event()

    worker._heartbeat("job-5", {"value": 40}, stop_event)

    client.report_progress.assert_called_once_with("job-5", 40)
    assert not stop_event.is_set()
