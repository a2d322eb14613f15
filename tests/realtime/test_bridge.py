"""
Tests for the realtime bridge: connection mapping, frame segmentation into
voice interactions, backlog handling while busy, and disconnect grace periods.
"""

import asyncio
import struct

import pytest

from voice_ordering.config import RealtimeConfig
from voice_ordering.core.errors import InvalidArgument
from voice_ordering.core.models import ConnectionState, ConnectionStatus, VoiceProcessingResult
from voice_ordering.realtime.bridge import RealtimeBridge
from voice_ordering.realtime.tokens import EphemeralToken

pytestmark = pytest.mark.usefixtures("fake_vad")

SAMPLES = 320  # 20 ms at 16 kHz
LOUD = struct.pack(f"<{SAMPLES}h", *([3000] * SAMPLES))
QUIET = b"\x00\x00" * SAMPLES


class _FakeCoordinator:
    def __init__(self):
        self.calls = []
        self.gate = None
        self.started = asyncio.Event()

    async def process_voice_interaction(self, audio, session_id, language="en", *, audio_format="webm", synthesize=None, request_id=None):
        self.calls.append({"audio": audio, "session_id": session_id, "format": audio_format, "synthesize": synthesize})
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        return VoiceProcessingResult(
            session_id=session_id,
            request_id=f"req-{len(self.calls)}",
            success=True,
            ai_response="Got it.",
            audio=b"reply-audio",
        )


class _FakeTokenIssuer:
    def __init__(self):
        self.issued = []
        self.stopped = False

    async def issue(self, customer_id, session_type="voice_ordering", voice_session_id=None):
        token = EphemeralToken(
            value=f"ek_{len(self.issued)}",
            expires_at=5000.0,
            realtime_session_id="sess_rt",
            customer_id=customer_id,
            session_type=session_type,
            voice_session_id=voice_session_id,
        )
        self.issued.append(token)
        return token

    async def validate_token(self, value):
        return next((t for t in self.issued if t.value == value), None)

    async def cleanup_expired(self):
        return 0

    async def stop(self):
        self.stopped = True


@pytest.fixture
def realtime_config():
    return RealtimeConfig(
        sample_rate_hz=16000,
        silence_duration_ms=100,
        min_speech_ms=40,
        grace_period_seconds=0.05,
    )


@pytest.fixture
def fake_coordinator():
    return _FakeCoordinator()


@pytest.fixture
def token_issuer():
    return _FakeTokenIssuer()


@pytest.fixture
def bridge(registry, fake_coordinator, token_issuer, realtime_config):
    return RealtimeBridge(registry, fake_coordinator, token_issuer, realtime_config)


async def _speak(bridge, connection_id, loud_frames=3, trailing_quiet=5):
    result = None
    for _ in range(loud_frames):
        result = await bridge.handle_audio_frame(connection_id, LOUD) or result
    for _ in range(trailing_quiet):
        result = await bridge.handle_audio_frame(connection_id, QUIET) or result
    return result


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_creates_realtime_session(self, registry, bridge):
        session_id = await bridge.handle_connection("conn-1", "cust-1", "a@example.com")

        session = await registry.get_session(session_id)
        assert session.context == {"channel": "realtime"}
        connection = bridge.get_connection("conn-1")
        assert connection.status == ConnectionStatus.CONNECTED
        assert connection.state == ConnectionState.LISTENING
        assert connection.session_id == session_id

    @pytest.mark.asyncio
    async def test_reconnect_reuses_active_session(self, bridge):
        session_id = await bridge.handle_connection("conn-1", "cust-1")
        await bridge.handle_disconnection("conn-1")

        again = await bridge.handle_connection("conn-2", "cust-1", session_id=session_id)

        assert again == session_id
        with pytest.raises(InvalidArgument):
            bridge.get_connection("conn-1")
        assert bridge.get_connection("conn-2").status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_to_closed_session_starts_new_one(self, registry, bridge):
        session_id = await bridge.handle_connection("conn-1", "cust-1")
        await registry.close_session(session_id)

        again = await bridge.handle_connection("conn-2", "cust-1", session_id=session_id)

        assert again != session_id
        assert await bridge.validate_session(again) is True
        assert await bridge.validate_session(session_id) is False

    @pytest.mark.asyncio
    async def test_session_of_another_customer_is_not_reused(self, registry, bridge):
        owned = await bridge.handle_connection("conn-1", "cust-1")

        other = await bridge.handle_connection("conn-2", "cust-2", session_id=owned)

        assert other != owned
        assert (await registry.get_session(other)).customer_id == "cust-2"
        assert bridge.get_connection("conn-1").session_id == owned
        assert bridge.get_connection("conn-2").session_id == other

    @pytest.mark.asyncio
    async def test_empty_connection_id_rejected(self, bridge):
        with pytest.raises(InvalidArgument):
            await bridge.handle_connection("", "cust-1")


class TestAudioFrames:
    @pytest.mark.asyncio
    async def test_segment_becomes_voice_interaction(self, bridge, fake_coordinator):
        spoken = []

        async def _on_speak(result):
            spoken.append((bridge.get_connection("conn-1").state, result.audio))

        session_id = await bridge.handle_connection("conn-1", "cust-1", on_speak=_on_speak)

        result = await _speak(bridge, "conn-1")

        assert result.success is True
        call = fake_coordinator.calls[0]
        assert call["session_id"] == session_id
        assert call["format"] == "pcm16"
        assert call["synthesize"] is True
        assert call["audio"].startswith(LOUD * 3)
        assert spoken == [(ConnectionState.SPEAKING, b"reply-audio")]
        connection = bridge.get_connection("conn-1")
        assert connection.state == ConnectionState.LISTENING
        assert connection.segments_submitted == 1
        assert connection.frames_received == 8

    @pytest.mark.asyncio
    async def test_frames_during_processing_are_backlogged(self, bridge, fake_coordinator):
        fake_coordinator.gate = asyncio.Event()
        await bridge.handle_connection("conn-1", "cust-1")
        for frame in [LOUD] * 3 + [QUIET] * 4:
            await bridge.handle_audio_frame("conn-1", frame)

        pending = asyncio.create_task(bridge.handle_audio_frame("conn-1", QUIET))
        await fake_coordinator.started.wait()
        assert bridge.get_connection("conn-1").state == ConnectionState.PROCESSING
        assert await bridge.handle_audio_frame("conn-1", LOUD) is None
        assert await bridge.handle_audio_frame("conn-1", LOUD) is None
        assert len(fake_coordinator.calls) == 1

        fake_coordinator.gate.set()
        result = await pending

        assert result.success is True
        slot_state = bridge.get_connection("conn-1").state
        assert slot_state == ConnectionState.LISTENING
        # The two backlogged frames were fed to the segmenter after processing
        result = await _speak(bridge, "conn-1", loud_frames=0)
        assert result is not None
        assert fake_coordinator.calls[1]["audio"].count(LOUD) == 2

    @pytest.mark.asyncio
    async def test_flush_processes_partial_speech(self, bridge, fake_coordinator):
        await bridge.handle_connection("conn-1", "cust-1")
        for _ in range(3):
            await bridge.handle_audio_frame("conn-1", LOUD)

        result = await bridge.flush("conn-1")

        assert result.success is True
        assert fake_coordinator.calls[0]["audio"] == LOUD * 3

    @pytest.mark.asyncio
    async def test_unknown_connection_rejected(self, bridge):
        with pytest.raises(InvalidArgument):
            await bridge.handle_audio_frame("nope", LOUD)


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_mapping_removed_after_grace_period(self, registry, bridge):
        session_id = await bridge.handle_connection("conn-1", "cust-1")

        await bridge.handle_disconnection("conn-1")

        assert bridge.get_connection("conn-1").status == ConnectionStatus.DISCONNECTED
        with pytest.raises(InvalidArgument):
            await bridge.handle_audio_frame("conn-1", LOUD)
        await asyncio.sleep(0.15)
        with pytest.raises(InvalidArgument):
            bridge.get_connection("conn-1")
        assert (await registry.get_session(session_id)).is_active

    @pytest.mark.asyncio
    async def test_reconnect_within_grace_keeps_mapping(self, bridge):
        session_id = await bridge.handle_connection("conn-1", "cust-1")
        await bridge.handle_disconnection("conn-1")

        await bridge.handle_connection("conn-1", "cust-1", session_id=session_id)
        await asyncio.sleep(0.15)

        assert bridge.get_connection("conn-1").status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_session_close_drops_connection(self, registry, bridge):
        session_id = await bridge.handle_connection("conn-1", "cust-1")

        await registry.close_session(session_id)

        with pytest.raises(InvalidArgument):
            bridge.get_connection("conn-1")

    @pytest.mark.asyncio
    async def test_disconnect_unknown_is_noop(self, bridge):
        await bridge.handle_disconnection("ghost")


class TestTokensAndStatus:
    @pytest.mark.asyncio
    async def test_token_expiry_recorded_on_connection(self, bridge, token_issuer):
        session_id = await bridge.handle_connection("conn-1", "cust-1")

        token = await bridge.generate_ephemeral_token("cust-1", session_id=session_id)

        assert bridge.get_connection("conn-1").ephemeral_token_expiry == token.expires_at
        assert await bridge.validate_token(token.value) is True
        assert await bridge.validate_token("ek_other") is False

    @pytest.mark.asyncio
    async def test_connection_status(self, bridge):
        await bridge.handle_connection("conn-1", "cust-1")
        await bridge.handle_connection("conn-2", "cust-2")
        await bridge.handle_disconnection("conn-2")

        status = await bridge.get_connection_status()

        assert status["healthy"] is True
        assert status["active_connections"] == 1
        assert status["active_sessions"] == 2
        assert status["service_type"] == "realtime"
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_stop_clears_everything(self, bridge, token_issuer):
        await bridge.handle_connection("conn-1", "cust-1")
        await bridge.handle_disconnection("conn-1")

        await bridge.stop()

        assert token_issuer.stopped is True
        with pytest.raises(InvalidArgument):
            bridge.get_connection("conn-1")


class TestWithCoordinator:
    @pytest.mark.asyncio
    async def test_streamed_speech_updates_order(self, registry, coordinator, token_issuer, realtime_config, fake_stt):
        bridge = RealtimeBridge(registry, coordinator, token_issuer, realtime_config)
        session_id = await bridge.handle_connection("conn-1", "cust-1")

        result = await _speak(bridge, "conn-1")

        assert result.success is True
        assert result.transcription == "I'd like a burger"
        assert fake_stt.paths[0].suffix == ".wav"
        session = await registry.get_session(session_id)
        assert [i.menu_item_id for i in session.working_order.items] == ["burger"]
