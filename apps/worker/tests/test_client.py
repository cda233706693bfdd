import json
from unittest.mock import Mock, patch

import pytest
import requests

from pdfassembly.client import BrokerClient, BrokerError


def _response(status: int, payload=None, text: str = "") -> Mock:
    response = Mock(status_code=status, text=text)
    if payload is None:
        response.json.side_effect = ValueError("no JSON")
    else:
        response.json.return_value = payload
    return response


def _client() -> BrokerClient:
    return BrokerClient("http://broker.test/", "w1", "secret")


def test_claim_next_job_posts_worker_credentials() -> None:
    """Calls carry the function path, worker id and token."""
    client = _client()
    job = {"_id": "job-1", "tool": "merge"}
    with patch.object(
        client.session, "post", return_value=_response(200, {"status": "success", "value": job})
    ) as post:
        assert client.claim_next_job() == job

    url = post.call_args.args[0]
    body = json.loads(post.call_args.kwargs["data"])
    assert url == "http://broker.test/api/mutation"
    assert body["path"] == "jobs:claimNextJob"
    assert body["args"] == [{"workerId": "w1", "workerToken": "secret"}]


def test_download_url_is_a_query() -> None:
    """File lookups go to the query endpoint."""
    client = _client()
    with patch.object(
        client.session,
        "post",
        return_value=_response(200, {"status": "success", "value": "https://files.test/a"}),
    ) as post:
        assert client.download_url("s1") == "https://files.test/a"

    assert post.call_args.args[0] == "http://broker.test/api/query"
    body = json.loads(post.call_args.kwargs["data"])
    assert body["args"] == [{"storageId": "s1", "workerToken": "secret"}]


def test_function_error_is_not_transient() -> None:
    """Errors raised by the broker function keep their message and data."""
    client = _client()
    payload = {"status": "error", "errorMessage": "Lease expired", "errorData": {"jobId": "j"}}
    with patch.object(client.session, "post", return_value=_response(560, payload)):
        with pytest.raises(BrokerError) as excinfo:
            client.report_progress("j", 40)

    assert excinfo.value.message == "Lease expired"
    assert excinfo.value.data == {"jobId": "j"}
    assert excinfo.value.status == 560
    assert excinfo.value.transient is False


@pytest.mark.parametrize("status", [429, 502, 503])
def test_throttling_and_server_errors_are_transient(status: int) -> None:
    """Busy or failing brokers are worth retrying."""
    client = _client()
    with patch.object(client.session, "post", return_value=_response(status, text="busy")):
        with pytest.raises(BrokerError) as excinfo:
            client.upload_url()
    assert excinfo.value.status == status
    assert excinfo.value.transient is True


@pytest.mark.parametrize("status", [401, 403, 404])
def test_client_errors_are_fatal(status: int) -> None:
    """Rejected credentials or unknown functions are not retried."""
    client = _client()
    with patch.object(client.session, "post", return_value=_response(status, text="denied")):
        with pytest.raises(BrokerError) as excinfo:
            client.claim_next_job()
    assert excinfo.value.transient is False


def test_connection_error_is_transient() -> None:
    """Network failures become transient broker errors."""
    client = _client()
    with patch.object(
        client.session, "post", side_effect=requests.ConnectionError("connection refused")
    ):
        with pytest.raises(BrokerError) as excinfo:
            client.fail_job("j", "JOB_TIMEOUT", "Processing timed out.")
    assert excinfo.value.transient is True
    assert excinfo.value.status is None


def test_invalid_json_reply_is_transient() -> None:
    """A 200 reply that is not JSON is treated as a broker hiccup."""
    client = _client()
    with patch.object(client.session, "post", return_value=_response(200, text="<html>")):
        with pytest.raises(BrokerError) as excinfo:
            client.complete_job("j", [], None, 0.5, 10)
    assert excinfo.value.transient is True
