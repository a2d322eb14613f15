import json

import aiohttp
import pytest

from voice_ordering.config import OpenAIProviderConfig
from voice_ordering.core.errors import ProviderFailure
from voice_ordering.pipelines.base import ResponseContext
from voice_ordering.pipelines.openai import OpenAILLMAdapter, OpenAISTTAdapter, OpenAITTSAdapter
from voice_ordering.pipelines.template import TemplateResponseGenerator


def _provider_config(**overrides) -> OpenAIProviderConfig:
    values = {"api_key": "sk-test", "base_url": "https://api.openai.test/v1", "organization": "org-1"}
    values.update(overrides)
    return OpenAIProviderConfig(**values)


def _context(**overrides) -> ResponseContext:
    values = dict(
        session_id="s1",
        system_prompt="You take orders.",
        menu_context="Menu:\nBurgers: Classic Burger ($9.99)",
        order_context="Current order: 1x Classic Burger.",
        history=[{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        order_update_message="Added 1x Classic Burger to your order.",
    )
    values.update(overrides)
    return ResponseContext(**values)


class _FakeResponse:
    def __init__(self, body: bytes, status: int = 200):
        self._body = body
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def read(self):
        return self._body


class _FakeSession:
    def __init__(self, body: bytes = b"", status: int = 200, error: Exception = None):
        self._body = body
        self._status = status
        self._error = error
        self.requests = []
        self.closed = False

    def post(self, url, json=None, params=None, headers=None, data=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "data": data})
        if self._error is not None:
            raise self._error
        return _FakeResponse(self._body, self._status)

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_openai_stt_adapter_transcribes(tmp_path):
    audio_path = tmp_path / "clip.wav"
    audio_path.write_bytes(b"RIFF0000WAVEfmt ")
    payload = {
        "text": " I'd like a burger ",
        "language": "english",
        "duration": 1.5,
        "segments": [{"avg_logprob": -0.1}, {"avg_logprob": -0.3}],
    }
    fake_session = _FakeSession(json.dumps(payload).encode("utf-8"))
    adapter = OpenAISTTAdapter("openai_stt", _provider_config(), session_factory=lambda: fake_session)

    await adapter.start()
    transcription = await adapter.transcribe("s1", audio_path, {"language": "en"})

    assert transcription.text == "I'd like a burger"
    assert transcription.duration_seconds == 1.5
    assert transcription.confidence == pytest.approx(0.8187, abs=1e-4)
    request = fake_session.requests[0]
    assert request["url"] == "https://api.openai.test/v1/audio/transcriptions"
    assert request["headers"]["Authorization"] == "Bearer sk-test"
    assert request["headers"]["OpenAI-Organization"] == "org-1"
    assert isinstance(request["data"], aiohttp.FormData)

    await adapter.stop()
    assert fake_session.closed is True


@pytest.mark.asyncio
async def test_openai_stt_plain_text_body(tmp_path):
    audio_path = tmp_path / "clip.webm"
    audio_path.write_bytes(b"\x1a\x45\xdf\xa3")
    fake_session = _FakeSession(b"two fries please")
    adapter = OpenAISTTAdapter("openai_stt", _provider_config(), session_factory=lambda: fake_session)

    transcription = await adapter.transcribe("s1", audio_path, {})

    assert transcription.text == "two fries please"
    assert transcription.confidence is None


@pytest.mark.parametrize("status,transient", [(429, True), (503, True), (400, False), (401, False)])
@pytest.mark.asyncio
async def test_openai_stt_status_mapping(tmp_path, status, transient):
    audio_path = tmp_path / "clip.wav"
    audio_path.write_bytes(b"x")
    fake_session = _FakeSession(b'{"error": {"message": "nope"}}', status=status)
    adapter = OpenAISTTAdapter("openai_stt", _provider_config(), session_factory=lambda: fake_session)

    with pytest.raises(ProviderFailure) as exc_info:
        await adapter.transcribe("s1", audio_path, {})

    assert exc_info.value.transient is transient
    assert exc_info.value.status == status


@pytest.mark.asyncio
async def test_openai_connection_error_is_transient(tmp_path):
    audio_path = tmp_path / "clip.wav"
    audio_path.write_bytes(b"x")
    fake_session = _FakeSession(error=aiohttp.ClientConnectionError("reset by peer"))
    adapter = OpenAISTTAdapter("openai_stt", _provider_config(), session_factory=lambda: fake_session)

    with pytest.raises(ProviderFailure) as exc_info:
        await adapter.transcribe("s1", audio_path, {})

    assert exc_info.value.transient is True


@pytest.mark.asyncio
async def test_missing_api_key_is_permanent(tmp_path):
    audio_path = tmp_path / "clip.wav"
    audio_path.write_bytes(b"x")
    adapter = OpenAISTTAdapter("openai_stt", _provider_config(api_key=None), session_factory=_FakeSession)

    with pytest.raises(ProviderFailure) as exc_info:
        await adapter.transcribe("s1", audio_path, {})

    assert exc_info.value.transient is False


@pytest.mark.asyncio
async def test_openai_llm_adapter_builds_messages():
    body = {"choices": [{"message": {"content": " Added a burger. Anything else? "}}], "usage": {"total_tokens": 42}}
    fake_session = _FakeSession(json.dumps(body).encode("utf-8"))
    adapter = OpenAILLMAdapter("openai_llm", _provider_config(), session_factory=lambda: fake_session)

    response = await adapter.generate("s1", "I'd like a burger", _context(max_tokens=200, temperature=0.2), {})

    assert response.text == "Added a burger. Anything else?"
    assert response.metadata == {"total_tokens": 42}
    request = fake_session.requests[0]
    assert request["url"] == "https://api.openai.test/v1/chat/completions"
    payload = request["json"]
    assert payload["model"] == "gpt-4o-mini"
    assert payload["max_tokens"] == 200
    assert payload["temperature"] == 0.2
    messages = payload["messages"]
    assert messages[0]["role"] == "system"
    assert "Classic Burger ($9.99)" in messages[0]["content"]
    assert "Order system result for the latest request: Added 1x Classic Burger" in messages[0]["content"]
    assert messages[1:3] == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
    assert messages[-1] == {"role": "user", "content": "I'd like a burger"}


@pytest.mark.asyncio
async def test_openai_llm_malformed_payload():
    adapter = OpenAILLMAdapter("openai_llm", _provider_config(), session_factory=lambda: _FakeSession(b'{"choices": []}'))

    with pytest.raises(ProviderFailure, match="unexpected chat completion payload"):
        await adapter.generate("s1", "hi", _context(), {})


@pytest.mark.asyncio
async def test_openai_tts_adapter_chunks_audio():
    audio = bytes(range(256)) * 3
    fake_session = _FakeSession(audio)
    adapter = OpenAITTSAdapter(
        "openai_tts",
        _provider_config(voice="nova"),
        session_factory=lambda: fake_session,
        chunk_size=256,
    )

    chunks = [chunk async for chunk in adapter.synthesize("s1", "Your total is $10.81.", {})]

    assert len(chunks) == 3
    assert b"".join(chunks) == audio
    payload = fake_session.requests[0]["json"]
    assert payload == {"model": "tts-1", "input": "Your total is $10.81.", "voice": "nova", "response_format": "mp3"}


@pytest.mark.asyncio
async def test_openai_tts_empty_text_yields_nothing():
    fake_session = _FakeSession(b"audio")
    adapter = OpenAITTSAdapter("openai_tts", _provider_config(), session_factory=lambda: fake_session)

    assert [chunk async for chunk in adapter.synthesize("s1", "", {})] == []
    assert fake_session.requests == []


@pytest.mark.asyncio
async def test_template_generator_uses_order_state():
    generator = TemplateResponseGenerator()

    response = await generator.generate("s1", "I'd like a burger", _context(), {})
    idle = await generator.generate("s1", "hello", _context(order_update_message=None, order_context=""), {})

    assert response.text == (
        "Added 1x Classic Burger to your order. Current order: 1x Classic Burger. Anything else?"
    )
    assert idle.text == "What would you like to order?"
