import base64
import json

import httpx
import pytest

from callmonitor.domain.models import AudioSource
from callmonitor.infrastructure.gemini_adapter import (
    RESPONSE_SCHEMA,
    SYSTEM_INSTRUCTION,
    AnalyzerError,
    GeminiAnalyzer,
    MissingCredentialError,
    extract_text,
)

from conftest import analysis_payload

pytestmark = pytest.mark.anyio

AUDIO = AudioSource(data=b"\x00\x01fake-mp3", mime_type="audio/mpeg")


def _candidate(*texts):
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": t} for t in texts]}}]}


def _analyzer(handler, api_key="test-key"):
    return GeminiAnalyzer(
        api_key=api_key,
        model="gemini-test",
        base_url="https://gemini.test/v1beta",
        transport=httpx.MockTransport(handler),
    )


async def test_sends_one_request_with_inline_audio_and_schema():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_candidate(json.dumps(analysis_payload(overall=8.5))))

    result = await _analyzer(handler).analyze(AUDIO)

    assert result.overallScore == 8.5
    assert result.managerName == "Анна"
    assert len(requests) == 1

    request = requests[0]
    assert request.url.path == "/v1beta/models/gemini-test:generateContent"
    assert request.headers["x-goog-api-key"] == "test-key"
    body = json.loads(request.content)
    audio_part, prompt_part = body["contents"][0]["parts"]
    assert audio_part["inlineData"]["mimeType"] == "audio/mpeg"
    assert base64.b64decode(audio_part["inlineData"]["data"]) == AUDIO.data
    assert prompt_part["text"]
    assert body["systemInstruction"]["parts"][0]["text"] == SYSTEM_INSTRUCTION
    assert body["generationConfig"]["responseMimeType"] == "application/json"
    assert body["generationConfig"]["responseSchema"] == RESPONSE_SCHEMA


async def test_text_split_across_parts_is_joined():
    raw = json.dumps(analysis_payload())
    half = len(raw) // 2

    def handler(request):
        return httpx.Response(200, json=_candidate(raw[:half], raw[half:]))

    result = await _analyzer(handler).analyze(AUDIO)
    assert len(result.transcription) == 4


async def test_missing_key_fails_before_any_request(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=_candidate("{}"))

    with pytest.raises(MissingCredentialError):
        await _analyzer(handler, api_key=None).analyze(AUDIO)
    assert calls == []


async def test_key_is_read_from_environment(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    seen = []

    def handler(request):
        seen.append(request.headers["x-goog-api-key"])
        return httpx.Response(200, json=_candidate(json.dumps(analysis_payload())))

    await _analyzer(handler, api_key=None).analyze(AUDIO)
    assert seen == ["env-key"]


async def test_empty_response_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"candidates": []})

    with pytest.raises(AnalyzerError, match="No response from AI"):
        await _analyzer(handler).analyze(AUDIO)


async def test_invalid_json_is_an_error():
    def handler(request):
        return httpx.Response(200, json=_candidate('{"managerName": "Анна", '))

    with pytest.raises(AnalyzerError, match="expected format"):
        await _analyzer(handler).analyze(AUDIO)


async def test_incomplete_analysis_is_rejected():
    payload = analysis_payload()
    del payload["greeting"]

    def handler(request):
        return httpx.Response(200, json=_candidate(json.dumps(payload)))

    with pytest.raises(AnalyzerError):
        await _analyzer(handler).analyze(AUDIO)


async def test_out_of_range_score_is_rejected():
    payload = analysis_payload(scores={"joining": 14})

    def handler(request):
        return httpx.Response(200, json=_candidate(json.dumps(payload)))

    with pytest.raises(AnalyzerError):
        await _analyzer(handler).analyze(AUDIO)


async def test_http_error_carries_provider_message():
    def handler(request):
        return httpx.Response(
            400,
            json={"error": {"code": 400, "message": "API key not valid.", "status": "INVALID_ARGUMENT"}},
        )

    with pytest.raises(AnalyzerError, match="API key not valid") as exc_info:
        await _analyzer(handler).analyze(AUDIO)
    assert "400" in str(exc_info.value)


async def test_transport_error_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AnalyzerError, match="connection refused"):
        await _analyzer(handler).analyze(AUDIO)


def test_extract_text_tolerates_missing_fields():
    assert extract_text({}) == ""
    assert extract_text({"candidates": [{}]}) == ""
    assert extract_text({"candidates": [{"content": {"parts": [{"inlineData": {}}]}}]}) == ""


async def test_null_text_part_means_no_response():
    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": None}]}}]})

    with pytest.raises(AnalyzerError, match="No response from AI"):
        await _analyzer(handler).analyze(AUDIO)


async def test_non_object_candidate_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"candidates": ["x"]})

    with pytest.raises(AnalyzerError, match="unexpected response shape"):
        await _analyzer(handler).analyze(AUDIO)


async def test_error_status_with_list_body_is_an_error():
    def handler(request):
        return httpx.Response(500, json=[{"error": "internal"}])

    with pytest.raises(AnalyzerError, match=r"\(500\)"):
        await _analyzer(handler).analyze(AUDIO)


def test_extract_text_rejects_wrong_shapes():
    for body in (["x"], {"candidates": "x"}, {"candidates": [{"content": "x"}]},
                 {"candidates": [{"content": {"parts": {"text": "x"}}}]},
                 {"candidates": [{"content": {"parts": [{"text": 5}]}}]}):
        with pytest.raises(AnalyzerError):
            extract_text(body)
