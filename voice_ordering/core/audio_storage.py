"""
Transient audio storage.

Uploaded and streamed audio is validated, then written to a per-request temp
file that is removed when the request's ``scoped()`` block exits, whatever the
exit path. A periodic sweep removes anything older than the retention window
that a crashed worker may have left behind.
"""

from __future__ import annotations

import asyncio
import io
import os
import tempfile
import time
import uuid
import wave
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Set

import structlog

from ..config import AudioConfig
from .errors import InvalidAudio

logger = structlog.get_logger(__name__)

# Bitrate assumed when estimating the duration of compressed uploads
_ESTIMATE_BITS_PER_SECOND = 128_000


class AudioStorage:
    def __init__(self, config: Optional[AudioConfig] = None):
        self._config = config or AudioConfig()
        base = self._config.temp_dir or os.path.join(tempfile.gettempdir(), self._config.temp_dir_name)
        self._dir = Path(base)
        self._live: Set[Path] = set()
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def max_bytes(self) -> int:
        return int(self._config.max_file_size_mb) * 1024 * 1024

    @property
    def pcm_sample_rate_hz(self) -> int:
        return int(self._config.pcm_sample_rate_hz)

    # ------------------------------------------------------------------ validation

    def normalize_format(self, audio_format: Optional[str]) -> str:
        fmt = (audio_format or "").strip().lower().lstrip(".")
        if "/" in fmt:
            # MIME type such as "audio/webm;codecs=opus"
            fmt = fmt.split("/", 1)[1].split(";", 1)[0]
        aliases = {"x-wav": "wav", "wave": "wav", "mpeg3": "mp3", "x-m4a": "m4a", "pcm": "pcm16", "l16": "pcm16"}
        return aliases.get(fmt, fmt)

    def estimate_duration(self, audio: bytes, audio_format: str) -> float:
        fmt = self.normalize_format(audio_format)
        if fmt == "pcm16":
            return len(audio) / float(2 * self._config.pcm_sample_rate_hz)
        if fmt == "wav":
            try:
                with wave.open(io.BytesIO(audio), "rb") as wav:
                    rate = wav.getframerate() or 1
                    return wav.getnframes() / float(rate)
            except (wave.Error, EOFError) as e:
                logger.debug("Unreadable WAV header; estimating from size", error=str(e))
        return len(audio) * 8 / float(_ESTIMATE_BITS_PER_SECOND)

    def validate(self, audio: bytes, audio_format: str) -> float:
        """Check size, format and duration; return the estimated duration in seconds."""
        if not audio:
            raise InvalidAudio("Audio payload is empty")
        if len(audio) > self.max_bytes:
            raise InvalidAudio(
                f"Audio payload is {len(audio)} bytes; the limit is {self._config.max_file_size_mb} MB"
            )
        fmt = self.normalize_format(audio_format)
        if fmt not in self._config.supported_formats:
            raise InvalidAudio(
                f"Unsupported audio format '{audio_format}'. Supported: {', '.join(self._config.supported_formats)}"
            )
        duration = self.estimate_duration(audio, fmt)
        if duration > self._config.max_duration_seconds:
            raise InvalidAudio(
                f"Audio is about {duration:.0f}s long; the limit is {self._config.max_duration_seconds}s"
            )
        return duration

    # ------------------------------------------------------------------ scoped files

    def _new_path(self, audio_format: str) -> Path:
        stamp = time.strftime("%Y%m%d_%H%M%S")
        ext = self.normalize_format(audio_format) or "bin"
        return self._dir / f"voice_{stamp}_{uuid.uuid4().hex[:8]}.{ext}"

    def _write_sync(self, path: Path, audio: bytes) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(audio)

    def _remove(self, path: Path) -> None:
        self._live.discard(path)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Failed to delete temp audio file", path=str(path), error=str(e))

    @asynccontextmanager
    async def scoped(self, audio: bytes, audio_format: str) -> AsyncIterator[Path]:
        """Write ``audio`` to a temp file for the duration of the block."""
        path = self._new_path(audio_format)
        self._live.add(path)
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write_sync, path, audio)
            yield path
        finally:
            # Synchronous so it also runs to completion when the task is being cancelled
            self._remove(path)

    def live_files(self) -> int:
        return len(self._live)

    # ------------------------------------------------------------------ sweep

    def cleanup_old_files(self, max_age_seconds: Optional[float] = None) -> int:
        max_age = self._config.retention_seconds if max_age_seconds is None else max_age_seconds
        if not self._dir.exists():
            return 0
        cutoff = time.time() - max_age
        removed = 0
        for path in self._dir.glob("voice_*"):
            if path in self._live:
                continue
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to delete stale temp audio file", path=str(path), error=str(e))
        if removed:
            logger.info("Removed stale temp audio files", count=removed, directory=str(self._dir))
        return removed

    def stats(self) -> Dict[str, object]:
        files = [p for p in self._dir.glob("voice_*") if p.is_file()] if self._dir.exists() else []
        return {
            "file_count": len(files),
            "total_size_bytes": sum(p.stat().st_size for p in files),
            "live_files": len(self._live),
            "path": str(self._dir),
        }

    async def start(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="voice-audio-temp-sweep")

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        interval = max(1.0, float(self._config.cleanup_interval_seconds))
        while True:
            await asyncio.sleep(interval)
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self.cleanup_old_files)
            except Exception as e:
                logger.error("Temp audio sweep failed", error=str(e), exc_info=True)


def pcm16_to_wav(pcm16: bytes, sample_rate_hz: int, channels: int = 1) -> bytes:
    """Wrap raw little-endian PCM16 in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate_hz)
        wav.writeframes(pcm16)
    return buffer.getvalue()
