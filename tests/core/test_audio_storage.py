"""
Tests for temp audio storage: validation, scoped files and the stale-file sweep.
"""

import io
import os
import time
import wave

import pytest

from voice_ordering.config import AudioConfig
from voice_ordering.core.audio_storage import AudioStorage, pcm16_to_wav
from voice_ordering.core.errors import InvalidAudio


class TestValidation:
    def test_empty_payload_rejected(self, audio_storage):
        with pytest.raises(InvalidAudio, match="empty"):
            audio_storage.validate(b"", "wav")

    def test_oversized_payload_rejected(self, tmp_path):
        storage = AudioStorage(AudioConfig(temp_dir=str(tmp_path), max_file_size_mb=1))

        with pytest.raises(InvalidAudio, match="limit is 1 MB"):
            storage.validate(b"\x00" * (1024 * 1024 + 1), "webm")

    def test_unsupported_format_rejected(self, audio_storage):
        with pytest.raises(InvalidAudio, match="Unsupported audio format"):
            audio_storage.validate(b"\x00" * 10, "flac")

    def test_too_long_rejected(self, tmp_path, wav_factory):
        storage = AudioStorage(AudioConfig(temp_dir=str(tmp_path), max_duration_seconds=1))

        with pytest.raises(InvalidAudio, match="limit is 1s"):
            storage.validate(wav_factory(seconds=2.0), "wav")

    def test_valid_wav_returns_duration(self, audio_storage, wav_factory):
        assert audio_storage.validate(wav_factory(seconds=0.5), "audio/wav") == pytest.approx(0.5)

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("audio/webm;codecs=opus", "webm"),
            (".WAV", "wav"),
            ("audio/x-wav", "wav"),
            ("pcm", "pcm16"),
        ],
    )
    def test_normalize_format(self, audio_storage, raw, expected):
        assert audio_storage.normalize_format(raw) == expected


class TestDurationEstimate:
    def test_pcm16_duration_uses_sample_rate(self, tmp_path):
        storage = AudioStorage(AudioConfig(temp_dir=str(tmp_path), pcm_sample_rate_hz=16000))

        assert storage.estimate_duration(b"\x00\x00" * 8000, "pcm16") == pytest.approx(0.5)

    def test_compressed_duration_estimated_from_size(self, audio_storage):
        # 16000 bytes at 128 kbps
        assert audio_storage.estimate_duration(b"\x00" * 16000, "webm") == pytest.approx(1.0)

    def test_corrupt_wav_falls_back_to_size(self, audio_storage):
        assert audio_storage.estimate_duration(b"not a wav" * 100, "wav") == pytest.approx(900 * 8 / 128000)


class TestScopedFiles:
    @pytest.mark.asyncio
    async def test_file_exists_only_inside_block(self, audio_storage):
        async with audio_storage.scoped(b"abc", "webm") as path:
            assert path.exists()
            assert path.read_bytes() == b"abc"
            assert path.suffix == ".webm"
            assert audio_storage.live_files() == 1

        assert not path.exists()
        assert audio_storage.live_files() == 0

    @pytest.mark.asyncio
    async def test_file_removed_when_block_raises(self, audio_storage):
        with pytest.raises(RuntimeError):
            async with audio_storage.scoped(b"abc", "wav") as path:
                raise RuntimeError("transcription crashed")

        assert not path.exists()


class TestCleanup:
    def test_old_files_removed(self, audio_storage):
        audio_storage.directory.mkdir(parents=True, exist_ok=True)
        old = audio_storage.directory / "voice_old.wav"
        fresh = audio_storage.directory / "voice_new.wav"
        unrelated = audio_storage.directory / "keep.txt"
        for path in (old, fresh, unrelated):
            path.write_bytes(b"x")
        stale = time.time() - 7200
        os.utime(old, (stale, stale))
        os.utime(unrelated, (stale, stale))

        assert audio_storage.cleanup_old_files(max_age_seconds=3600) == 1
        assert not old.exists()
        assert fresh.exists()
        assert unrelated.exists()
        assert audio_storage.stats()["file_count"] == 1

    def test_missing_directory_is_noop(self, tmp_path):
        storage = AudioStorage(AudioConfig(temp_dir=str(tmp_path / "never-created")))

        assert storage.cleanup_old_files() == 0


class TestPcmToWav:
    def test_wraps_samples_in_wav_header(self):
        pcm = b"\x01\x00" * 2400

        data = pcm16_to_wav(pcm, 24000)

        with wave.open(io.BytesIO(data), "rb") as wav:
            assert wav.getframerate() == 24000
            assert wav.getsampwidth() == 2
            assert wav.getnchannels() == 1
            assert wav.readframes(wav.getnframes()) == pcm
