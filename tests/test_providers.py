"""Tests for the identity provider and email clients."""

import io
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from trustgate.errors import UpstreamError
from trustgate.providers import DiditClient, EmailClient


def _response(payload, status=200):
    resp = MagicMock()
    resp.status = status
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def _http_error(code, body):
    return urllib.error.HTTPError(
        "https://verification.didit.me/x", code, "error", {}, io.BytesIO(body.encode("utf-8"))
    )


@pytest.fixture
def client():
    return DiditClient("didit-key", "wf-1", base_url="https://verification.didit.me/", timeout=5.0)


class TestDiditClient:
    """Identity provider calls."""

    def test_create_session(self, client):
        with patch("urllib.request.urlopen", return_value=_response(
            {"session_id": "sess-1", "url": "https://verify.didit.me/sess-1"}
        )) as urlopen:
            session = client.create_session(
                "signer-1", "https://sign.example.com/sign/tok",
                email="ada@example.com", first_name="Ada", last_name="Lovelace",
            )

        assert session.session_id == "sess-1"
        assert session.verification_url == "https://verify.didit.me/sess-1"

        req = urlopen.call_args[0][0]
        assert urlopen.call_args[1]["timeout"] == 5.0
        assert req.full_url == "https://verification.didit.me/v2/session/"
        assert req.get_method() == "POST"
        assert req.get_header("X-api-key") == "didit-key"
        body = json.loads(req.data)
        assert body["workflow_id"] == "wf-1"
        assert body["vendor_data"] == "signer-1"
        assert body["contact_details"] == {"email": "ada@example.com"}
        assert body["expected_details"] == {"first_name": "Ada", "last_name": "Lovelace"}

    def test_partial_name_not_sent(self, client):
        with patch("urllib.request.urlopen", return_value=_response(
            {"session_id": "sess-1", "verification_url": "https://verify.didit.me/sess-1"}
        )) as urlopen:
            client.create_session("signer-1", "https://cb", first_name="Plato")
        body = json.loads(urlopen.call_args[0][0].data)
        assert "expected_details" not in body
        assert "contact_details" not in body

    def test_create_session_missing_fields(self, client):
        with patch("urllib.request.urlopen", return_value=_response({"session_id": "sess-1"})):
            with pytest.raises(UpstreamError):
                client.create_session("signer-1", "https://cb")

    def test_http_error_carries_status_and_body(self, client):
        with patch("urllib.request.urlopen", side_effect=_http_error(403, '{"detail":"bad key"}')):
            with pytest.raises(UpstreamError) as exc:
                client.get_decision("sess-1")
        assert exc.value.status_code == 403
        assert exc.value.body == '{"detail":"bad key"}'

    def test_transport_error(self, client):
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("timed out")):
            with pytest.raises(UpstreamError) as exc:
                client.get_decision("sess-1")
        assert exc.value.status_code == 502

    def test_get_decision(self, client):
        with patch("urllib.request.urlopen", return_value=_response({"status": "Approved"})) as urlopen:
            assert client.get_decision("sess-1") == {"status": "Approved"}
        req = urlopen.call_args[0][0]
        assert req.full_url == "https://verification.didit.me/v3/session/sess-1/decision/"
        assert req.get_method() == "GET"

    def test_delete_missing_session(self, client):
        with patch("urllib.request.urlopen", side_effect=_http_error(404, "not found")):
            assert client.delete_session("sess-1") is False

    def test_delete_session(self, client):
        with patch("urllib.request.urlopen", return_value=_response({})) as urlopen:
            assert client.delete_session("sess-1") is True
        assert urlopen.call_args[0][0].get_method() == "DELETE"


class TestDiditReviewAndReports:
    """Session detail, manual review relay and PDF reports."""

    def test_get_session(self, client):
        with patch("urllib.request.urlopen", return_value=_response({"status": "In Review"})) as urlopen:
            assert client.get_session("sess-1") == {"status": "In Review"}
        assert urlopen.call_args[0][0].full_url == "https://verification.didit.me/v2/session/sess-1/"

    def test_session_detail_prefers_decision(self, client):
        with patch("urllib.request.urlopen", return_value=_response({"status": "Approved", "id_verification": {}})) as urlopen:
            assert client.get_session_detail("sess-1")["status"] == "Approved"
        assert urlopen.call_count == 1
        assert urlopen.call_args[0][0].full_url.endswith("/v3/session/sess-1/decision/")

    def test_session_detail_falls_back_to_session_record(self, client):
        side_effect = [_http_error(404, "no decision"), _response({"session_id": "sess-1", "status": "In Progress"})]
        with patch("urllib.request.urlopen", side_effect=side_effect) as urlopen:
            assert client.get_session_detail("sess-1")["status"] == "In Progress"
        assert urlopen.call_args[0][0].full_url == "https://verification.didit.me/v3/session/sess-1/"

    def test_session_detail_raises_last_error(self, client):
        side_effect = [_http_error(404, "a"), _http_error(404, "b"), _http_error(403, "forbidden")]
        with patch("urllib.request.urlopen", side_effect=side_effect):
            with pytest.raises(UpstreamError) as exc:
                client.get_session_detail("sess-1")
        assert exc.value.status_code == 403
        assert exc.value.body == "forbidden"

    def test_update_status(self, client):
        with patch("urllib.request.urlopen", return_value=_response({})) as urlopen:
            assert client.update_status("sess-1", "Approved", "documents match") == {"success": True}
        req = urlopen.call_args[0][0]
        assert req.get_method() == "PATCH"
        assert req.full_url == "https://verification.didit.me/v3/session/sess-1/update-status"
        assert json.loads(req.data) == {"new_status": "Approved", "comment": "documents match"}

    def test_generate_pdf(self, client):
        resp = _response({})
        resp.read.return_value = b"%PDF-1.4 report"
        with patch("urllib.request.urlopen", return_value=resp) as urlopen:
            assert client.generate_pdf("sess-1") == b"%PDF-1.4 report"
        req = urlopen.call_args[0][0]
        assert req.full_url == "https://verification.didit.me/v3/session/sess-1/generate-pdf"
        assert req.get_header("Accept") == "application/pdf"


class TestEmailClient:
    """Transactional email."""

    def test_no_api_key_skips(self):
        with patch("urllib.request.urlopen") as urlopen:
            result = EmailClient(None).send("ada@example.com", "Hi", "<p>Hi</p>")
        assert not result.success
        urlopen.assert_not_called()

    def test_send(self):
        with patch("urllib.request.urlopen", return_value=_response({"id": "em_1"})) as urlopen:
            result = EmailClient("re_key", sender="gate@example.com").send("ada@example.com", "Hi", "<p>Hi</p>")
        assert result.success
        assert result.id == "em_1"
        req = urlopen.call_args[0][0]
        assert req.get_header("Authorization") == "Bearer re_key"
        assert json.loads(req.data)["from"] == "gate@example.com"

    def test_send_failure_returned_not_raised(self):
        with patch("urllib.request.urlopen", side_effect=_http_error(422, "invalid to")):
            result = EmailClient("re_key").send("bad", "Hi", "<p>Hi</p>")
        assert not result.success
        assert result.error == "invalid to"
