import asyncio

import pytest

from src.voicenotes.audio import transcoder as transcoder_module
from src.voicenotes.audio.transcoder import TranscodeTarget, Transcoder
from src.voicenotes.errors import TranscodeFailure

OPUS_TARGET = TranscodeTarget(codec="libopus", bitrate="32k", container="ogg", content_type="audio/ogg")


class _FakeProcess:
    def __init__(self, returncode, stderr=b""):
        self.returncode = returncode
        self._stderr = stderr

    async def communicate(self):
        return b"", self._stderr


def test_target_defaults_to_opus_in_ogg():
    target = TranscodeTarget.from_settings()
    assert target == OPUS_TARGET


def test_build_command_is_fixed_per_target():
    cmd = Transcoder(target=OPUS_TARGET, ffmpeg_binary="ffmpeg").build_command("/tmp/in.webm", "/tmp/out.ogg")
    assert cmd == [
        "ffmpeg",
        "-y",
        "-i",
        "/tmp/in.webm",
        "-vn",
        "-c:a",
        "libopus",
        "-b:a",
        "32k",
        "-f",
        "ogg",
        "/tmp/out.ogg",
    ]


@pytest.mark.asyncio
async def test_missing_binary_raises_transcode_failure(monkeypatch):
    monkeypatch.setattr(transcoder_module.shutil, "which", lambda _: None)

    with pytest.raises(TranscodeFailure, match="not found"):
        await Transcoder(target=OPUS_TARGET, ffmpeg_binary="no-such-ffmpeg").transcode("in.webm", "out.ogg")


@pytest.mark.asyncio
async def test_non_zero_exit_raises_with_stderr_tail(monkeypatch):
    seen = {}

    async def _fake_exec(*cmd, **kwargs):
        seen["cmd"] = list(cmd)
        return _FakeProcess(1, b"Invalid data found when processing input")

    monkeypatch.setattr(transcoder_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec)

    with pytest.raises(TranscodeFailure) as exc_info:
        await Transcoder(target=OPUS_TARGET, ffmpeg_binary="ffmpeg").transcode("in.webm", "out.ogg")

    assert "exit=1" in str(exc_info.value)
    assert "Invalid data" in str(exc_info.value)
    assert seen["cmd"][-1] == "out.ogg"


@pytest.mark.asyncio
async def test_zero_exit_succeeds(monkeypatch):
    async def _fake_exec(*cmd, **kwargs):
        return _FakeProcess(0)

    monkeypatch.setattr(transcoder_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec)

    await Transcoder(target=OPUS_TARGET, ffmpeg_binary="ffmpeg").transcode("in.webm", "out.ogg")


@pytest.mark.asyncio
async def test_spawn_error_is_wrapped(monkeypatch):
    async def _fake_exec(*cmd, **kwargs):
        raise PermissionError("not executable")

    monkeypatch.setattr(transcoder_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_exec)

    with pytest.raises(TranscodeFailure, match="could not be started"):
        await Transcoder(target=OPUS_TARGET, ffmpeg_binary="ffmpeg").transcode("in.webm", "out.ogg")
