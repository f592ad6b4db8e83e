import json
import subprocess

import pytest

from voxdispatch.errors import UnreadableMedia
from voxdispatch.media import MediaProber, file_format


def test_probe_wav_with_soundfile(make_wav):
    path = make_wav(2.5)

    info = MediaProber().probe(path)

    assert info.duration_seconds == pytest.approx(2.5, abs=0.01)
    assert info.container_format == "wav"
    assert info.codec == "pcm_16"
    assert info.sample_rate == 8000
    assert info.channels == 1
    assert info.size_bytes == path.stat().st_size


def test_probe_is_repeatable(make_wav):
    path = make_wav(1.0)
    prober = MediaProber()
    before = path.read_bytes()

    assert prober.probe(path) == prober.probe(path)
    assert path.read_bytes() == before


def test_missing_file_is_unreadable(tmp_path):
    with pytest.raises(UnreadableMedia):
        MediaProber().probe(tmp_path / "missing.wav")


def _fake_run(payload=None, returncode=0, stderr=""):
    calls = []

    def _run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(
            cmd, returncode, stdout=json.dumps(payload or {}), stderr=stderr
        )

    return _run, calls


def test_ffprobe_fallback_for_compressed_media(monkeypatch, tmp_path):
    path = tmp_path / "talk.mp4"
    path.write_bytes(b"\x00" * 2048)
    payload = {
        "streams": [
            {"codec_type": "video", "codec_name": "h264"},
            {"codec_type": "audio", "codec_name": "aac", "sample_rate": "44100", "channels": 2},
        ],
        "format": {"format_name": "mov,mp4,m4a", "duration": "45.2", "bit_rate": "128000"},
    }
    fake, calls = _fake_run(payload)
    monkeypatch.setattr(subprocess, "run", fake)

    info = MediaProber(ffprobe_bin="my-ffprobe").probe(path)

    assert calls[0][0] == "my-ffprobe"
    assert info.duration_seconds == pytest.approx(45.2)
    assert info.codec == "aac"
    assert info.sample_rate == 44100
    assert info.channels == 2
    assert info.bitrate == 128000
    assert info.size_bytes == 2048


def test_ffprobe_without_audio_stream(monkeypatch, tmp_path):
    path = tmp_path / "silent.mp4"
    path.write_bytes(b"\x00" * 64)
    fake, _ = _fake_run({"streams": [{"codec_type": "video"}], "format": {}})
    monkeypatch.setattr(subprocess, "run", fake)

    with pytest.raises(UnreadableMedia, match="No audio stream"):
        MediaProber().probe(path)


def test_ffprobe_failure_is_unreadable(monkeypatch, tmp_path):
    path = tmp_path / "broken.mp3"
    path.write_bytes(b"not audio")
    fake, _ = _fake_run(returncode=1, stderr="Invalid data found")
    monkeypatch.setattr(subprocess, "run", fake)

    with pytest.raises(UnreadableMedia) as excinfo:
        MediaProber().probe(path)
    assert "Invalid data" in excinfo.value.context["stderr"]


def test_missing_ffprobe_binary(monkeypatch, tmp_path):
    path = tmp_path / "clip.mp3"
    path.write_bytes(b"not audio")

    def _raise(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", _raise)

    with pytest.raises(UnreadableMedia):
        MediaProber().probe(path)


def test_file_format_uses_extension():
    assert file_format("Meeting.MP3") == "mp3"
    assert file_format("/tmp/noext") == ""
