"""
Speech segmentation of streamed PCM16 audio.

Frames arrive from the realtime transport in arbitrary sizes. Speech detection
is layered: WebRTC VAD classifies the audio in 20 ms frames and RMS energy
gates it, so a frame counts as speech only when the VAD hears voice and its
energy reaches ``speech_threshold``. Rates the VAD does not accept are
decimated to 8 kHz when they are a multiple of it; any other rate falls back
to the energy gate alone.

A segment is emitted once speech was heard and the trailing silence reaches
``silence_duration_ms``, or when the buffer reaches ``max_segment_ms``.
Segments with less than ``min_speech_ms`` of speech are dropped.
"""

from __future__ import annotations

import math
import sys
from array import array
from dataclasses import dataclass
from typing import Optional

import structlog
import webrtcvad

logger = structlog.get_logger(__name__)

VAD_SAMPLE_RATES = (8000, 16000, 32000, 48000)
VAD_FRAME_MS = 20


def pcm16_rms(pcm16: bytes) -> int:
    """Root mean square of little-endian signed 16-bit samples."""
    usable = len(pcm16) - (len(pcm16) % 2)
    if usable <= 0:
        return 0
    samples = array("h")
    samples.frombytes(pcm16[:usable])
    if sys.byteorder != "little":
        samples.byteswap()
    total = sum(s * s for s in samples)
    return int(math.sqrt(total / len(samples)))


def _decimate(pcm16: bytes, step: int) -> bytes:
    samples = array("h")
    samples.frombytes(pcm16)
    return samples[::step].tobytes()


@dataclass
class SegmenterState:
    """Per-connection buffering state."""
    buffer: bytearray
    speech_ms: float = 0.0
    trailing_silence_ms: float = 0.0
    heard_speech: bool = False
    segments_emitted: int = 0
    segments_dropped: int = 0


class SpeechSegmenter:
    def __init__(
        self,
        *,
        sample_rate_hz: int = 24000,
        speech_threshold: int = 500,
        silence_duration_ms: int = 500,
        min_speech_ms: int = 200,
        max_segment_ms: int = 15000,
        vad_aggressiveness: int = 1,
        vad=None,
    ):
        self.sample_rate_hz = sample_rate_hz
        self.speech_threshold = speech_threshold
        self.silence_duration_ms = silence_duration_ms
        self.min_speech_ms = min_speech_ms
        self.max_segment_ms = max_segment_ms
        self.vad_aggressiveness = vad_aggressiveness
        self.state = SegmenterState(buffer=bytearray())

        if sample_rate_hz in VAD_SAMPLE_RATES:
            self.vad_sample_rate_hz: Optional[int] = sample_rate_hz
            self._decimation = 1
        elif sample_rate_hz % 8000 == 0:
            self.vad_sample_rate_hz = 8000
            self._decimation = sample_rate_hz // 8000
        else:
            self.vad_sample_rate_hz = None
            self._decimation = 1
            logger.warning(
                "Sample rate not supported by WebRTC VAD; using energy detection only",
                sample_rate_hz=sample_rate_hz,
            )
        self._vad = None
        if self.vad_sample_rate_hz is not None:
            self._vad = vad if vad is not None else webrtcvad.Vad(vad_aggressiveness)
        self._vad_frame_bytes = int(sample_rate_hz * VAD_FRAME_MS / 1000) * 2
        self._vad_pending = bytearray()
        self._last_voiced = False

    @classmethod
    def from_config(cls, config) -> "SpeechSegmenter":
        return cls(
            sample_rate_hz=config.sample_rate_hz,
            speech_threshold=config.speech_threshold,
            silence_duration_ms=config.silence_duration_ms,
            min_speech_ms=config.min_speech_ms,
            max_segment_ms=config.max_segment_ms,
            vad_aggressiveness=config.vad_aggressiveness,
        )

    def _duration_ms(self, byte_count: int) -> float:
        return byte_count / 2.0 / self.sample_rate_hz * 1000.0

    @property
    def buffered_ms(self) -> float:
        return self._duration_ms(len(self.state.buffer))

    def _voiced(self, frame: bytes) -> bool:
        """Run the VAD over every complete 20 ms frame buffered so far.

        A push too short to complete a VAD frame keeps the previous verdict.
        """
        if self._vad is None:
            return True
        self._vad_pending.extend(frame)
        verdicts = []
        while len(self._vad_pending) >= self._vad_frame_bytes:
            chunk = bytes(self._vad_pending[: self._vad_frame_bytes])
            del self._vad_pending[: self._vad_frame_bytes]
            if self._decimation > 1:
                chunk = _decimate(chunk, self._decimation)
            verdicts.append(self._vad.is_speech(chunk, self.vad_sample_rate_hz))
        if verdicts:
            self._last_voiced = any(verdicts)
        return self._last_voiced

    def is_speech(self, frame: bytes) -> bool:
        voiced = self._voiced(frame)
        return voiced and pcm16_rms(frame) >= self.speech_threshold

    def push(self, frame: bytes) -> Optional[bytes]:
        """Buffer ``frame``; return a finished speech segment when one is ready."""
        if not frame:
            return None
        state = self.state
        frame_ms = self._duration_ms(len(frame))
        speech = self.is_speech(frame)
        state.buffer.extend(frame)

        if speech:
            state.heard_speech = True
            state.speech_ms += frame_ms
            state.trailing_silence_ms = 0.0
        elif state.heard_speech:
            state.trailing_silence_ms += frame_ms
        else:
            # Leading silence is not kept; keep at most one silence window of pre-roll
            limit = int(self.silence_duration_ms / 1000.0 * self.sample_rate_hz) * 2
            if len(state.buffer) > limit:
                del state.buffer[: len(state.buffer) - limit]

        end_of_utterance = state.heard_speech and state.trailing_silence_ms >= self.silence_duration_ms
        if end_of_utterance or self.buffered_ms >= self.max_segment_ms:
            return self._take_segment()
        return None

    def flush(self) -> Optional[bytes]:
        """Return whatever speech is buffered, e.g. when the client ends the stream."""
        if not self.state.heard_speech:
            self.reset()
            return None
        return self._take_segment()

    def _take_segment(self) -> Optional[bytes]:
        state = self.state
        segment = bytes(state.buffer)
        speech_ms = state.speech_ms
        self.reset()
        if speech_ms < self.min_speech_ms:
            state.segments_dropped += 1
            logger.debug("Dropped short audio segment", speech_ms=round(speech_ms, 1), min_speech_ms=self.min_speech_ms)
            return None
        state.segments_emitted += 1
        return segment

    def reset(self) -> None:
        state = self.state
        state.buffer = bytearray()
        state.speech_ms = 0.0
        state.trailing_silence_ms = 0.0
        state.heard_speech = False
        self._vad_pending = bytearray()
        self._last_voiced = False
