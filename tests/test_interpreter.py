import base64
import json

import pytest
import requests

from docready.interpreter import (
    HttpInterpreter,
    InterpreterResponseError,
    InterpreterTransportError,
    extract_json,
    letter_grade,
    offline_estimate,
)


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_analyze_posts_base64_payload():
    body = "Here you go:\n```json\n" + json.dumps({"responses": [], "overallAssessment": {}}) + "\n```"
    session = FakeSession(FakeResponse(200, body))
    client = HttpInterpreter("https://proxy.example.com/analyze", timeout=5, api_key="tok", session=session)
    out = client.analyze(b"\xff\xd8\xffdata", "read it")
    assert out == {"responses": [], "overallAssessment": {}}
    url, kwargs = session.calls[0]
    assert url == "https://proxy.example.com/analyze"
    assert kwargs["timeout"] == 5
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert kwargs["json"]["prompt"] == "read it"
    encoded = kwargs["json"]["imageBase64"].split(",", 1)[1]
    assert base64.b64decode(encoded) == b"\xff\xd8\xffdata"


@pytest.mark.parametrize("status", [429, 500, 503])
def test_server_errors_are_transport(status):
    client = HttpInterpreter("https://proxy.example.com", session=FakeSession(FakeResponse(status, "busy")))
    with pytest.raises(InterpreterTransportError) as exc:
        client.analyze(b"x", "p")
    assert exc.value.details["status"] == status


def test_network_failure_is_transport():
    client = HttpInterpreter("https://proxy.example.com", session=FakeSession(error=requests.Timeout("slow")))
    with pytest.raises(InterpreterTransportError) as exc:
        client.analyze(b"x", "p")
    assert exc.value.error_code == "NETWORK_ERROR"


def test_client_errors_are_response_errors():
    client = HttpInterpreter("https://proxy.example.com", session=FakeSession(FakeResponse(400, "bad image")))
    with pytest.raises(InterpreterResponseError) as exc:
        client.analyze(b"x", "p")
    assert exc.value.error_code == "REJECTED"


@pytest.mark.parametrize(
    "text, code",
    [
        ("no json here", "NO_JSON"),
        ("{broken", "NO_JSON"),
        ("{'single': 'quotes'}", "BAD_JSON"),
        ("", "NO_JSON"),
    ],
)
def test_extract_json_failures(text, code):
    with pytest.raises(InterpreterResponseError) as exc:
        extract_json(text)
    assert exc.value.error_code == code


def test_extract_json_picks_outer_object():
    assert extract_json('prefix {"a": {"b": 1}} suffix') == {"a": {"b": 1}}


def test_offline_estimate_is_deterministic():
    a = offline_estimate("seed", 0.8)
    b = offline_estimate("seed", 0.8)
    assert a == b
    assert a["_offlineEstimate"] is True
    assert 3 <= len(a["responses"]) <= 8
    assert a["confidence"]["overall"] == pytest.approx(0.91)
    assert a["pageAnalysis"]["readabilityScore"] == 0.8
    assert offline_estimate("other", 0.8) != a


def test_offline_estimate_totals_are_consistent():
    out = offline_estimate("abc", 1.0, document_type="QUIZ")
    earned = sum(r["score"]["earned"] for r in out["responses"])
    possible = sum(r["score"]["possible"] for r in out["responses"])
    assert out["documentType"] == "QUIZ"
    assert out["overallAssessment"]["score"] == pytest.approx(earned / possible * 100)
    assert out["overallAssessment"]["grade"] == letter_grade(earned / possible * 100)
    assert out["confidence"]["overall"] == 0.95


@pytest.mark.parametrize("pct, grade", [(95, "A"), (90, "A"), (85, "B"), (72, "C"), (60, "D"), (59.9, "F")])
def test_letter_grade(pct, grade):
    assert letter_grade(pct) == grade
