import json
import subprocess
from pathlib import Path

import pytest

import library.derive as derive_mod
from library.classify import MediaClass
from library.derive import (
    DerivationError,
    Deriver,
    parse_dcraw_size,
    parse_ffprobe,
    parse_framerate,
    parse_identify_size,
)

from helpers import completed, write_file


class ToolBox:
    """Stand-in for `_run`: dispatches on the tool name and records every call."""

    def __init__(self):
        self.calls = []
        self.handlers = {}
        self.temp_inputs = []

    def on(self, tool, fn):
        self.handlers[tool] = fn

    def __call__(self, cmd, *, timeout=None, binary=False):
        self.calls.append(list(cmd))
        return self.handlers[cmd[0]](cmd)


def _convert_ok(box):
    def handler(cmd):
        src = Path(cmd[1][: -len("[0]")])
        box.temp_inputs.append(src)
        assert src.exists()
        Path(cmd[-1]).write_bytes(b"\xff\xd8jpeg")
        return completed(cmd)
    return handler


@pytest.fixture()
def tools(monkeypatch):
    box = ToolBox()
    monkeypatch.setattr(derive_mod, "_run", box)
    return box


def test_thumbnail_path_mirrors_tree(cfg):
    d = Deriver(cfg)
    src = Path(cfg.originals_path) / "2024" / "trip" / "IMG_1.CR2"
    assert d.thumbnail_path_for(src) == Path(cfg.thumbnails_path).absolute() / "2024" / "trip" / "IMG_1.jpg"


def test_standard_image(cfg, tools):
    src = write_file(cfg.originals_path, "a/photo.png")
    tools.on("convert", _convert_ok(tools))
    tools.on("identify", lambda cmd: completed(cmd, stdout="800 600"))
    out = Deriver(cfg).derive(src, MediaClass.STANDARD_IMAGE)
    assert out.thumbnail_path.is_file()
    assert (out.width, out.height) == (800, 600)
    # Dimensions come from the written thumbnail, after -auto-orient
    assert tools.calls[1] == ["identify", "-format", "%w %h", f"{out.thumbnail_path}[0]"]
    convert = tools.calls[0]
    assert convert[1] == f"{src}[0]"
    assert "-auto-orient" in convert
    assert convert[convert.index("-resize") + 1] == "800x800>"
    assert convert[convert.index("-quality") + 1] == "85"


def test_convert_failure_raises(cfg, tools):
    src = write_file(cfg.originals_path, "broken.jpg")
    tools.on("convert", lambda cmd: completed(cmd, 1, stderr="improper image header"))
    with pytest.raises(DerivationError, match="improper image header"):
        Deriver(cfg).derive(src, MediaClass.STANDARD_IMAGE)


def test_raw_uses_embedded_preview(cfg, tools):
    src = write_file(cfg.originals_path, "IMG_1.CR2")
    tools.on("dcraw", lambda cmd: (
        completed(cmd, stdout=b"\xff\xd8preview", stderr=b"") if "-e" in cmd
        else completed(cmd, stdout="Image size:  6000 x 4000\nOutput size: 6000 x 4000\n")
    ))
    tools.on("convert", _convert_ok(tools))
    out = Deriver(cfg).derive(src, MediaClass.RAW)
    assert (out.width, out.height) == (6000, 4000)
    assert [c for c in tools.calls if c[0] == "dcraw" and "-w" in c] == []
    assert tools.temp_inputs[0].suffix == ".jpg"
    assert not tools.temp_inputs[0].exists()


def test_raw_falls_back_to_full_decode(cfg, tools):
    src = write_file(cfg.originals_path, "IMG_2.NEF")

    def dcraw(cmd):
        if "-e" in cmd:
            return completed(cmd, 1, stdout=b"", stderr=b"no embedded thumbnail")
        if "-w" in cmd:
            return completed(cmd, stdout=b"P6\n2 2\n255\n" + b"\x00" * 12, stderr=b"")
        return completed(cmd, stdout="Camera: Nikon\nImage size:  4000 x 3000\n")

    tools.on("dcraw", dcraw)
    tools.on("convert", _convert_ok(tools))
    out = Deriver(cfg).derive(src, MediaClass.RAW)
    assert out.thumbnail_path.is_file()
    assert (out.width, out.height) == (4000, 3000)
    assert tools.temp_inputs[0].suffix == ".ppm"
    assert not tools.temp_inputs[0].exists()


def test_raw_fails_when_both_decodes_fail(cfg, tools):
    src = write_file(cfg.originals_path, "IMG_3.ARW")
    tools.on("dcraw", lambda cmd: completed(cmd, 1, stdout=b"", stderr=b"cannot decode"))
    with pytest.raises(DerivationError):
        Deriver(cfg).derive(src, MediaClass.RAW)
    assert not any(c[0] == "convert" for c in tools.calls)


def test_temp_file_removed_when_resize_fails(cfg, tools):
    src = write_file(cfg.originals_path, "IMG_4.CR2")
    tools.on("dcraw", lambda cmd: completed(cmd, stdout=b"\xff\xd8preview", stderr=b""))

    def convert(cmd):
        tools.temp_inputs.append(Path(cmd[1][:-3]))
        return completed(cmd, 1, stderr="no decode delegate")

    tools.on("convert", convert)
    with pytest.raises(DerivationError):
        Deriver(cfg).derive(src, MediaClass.RAW)
    assert not tools.temp_inputs[0].exists()


PROBE = {
    "format": {"duration": "12.5"},
    "streams": [
        {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080,
         "avg_frame_rate": "30000/1001", "r_frame_rate": "30/1"},
        {"codec_type": "audio", "codec_name": "aac"},
    ],
}


def test_video_retries_at_start_when_no_frame(cfg, tools):
    src = write_file(cfg.originals_path, "clip.mp4")
    tools.on("ffprobe", lambda cmd: completed(cmd, stdout=json.dumps(PROBE)))

    def ffmpeg(cmd):
        if cmd[cmd.index("-ss") + 1] == "0.000":
            Path(cmd[-1]).write_bytes(b"\xff\xd8frame")
        return completed(cmd)

    tools.on("ffmpeg", ffmpeg)
    out = Deriver(cfg).derive(src, MediaClass.VIDEO)
    seeks = [c[c.index("-ss") + 1] for c in tools.calls if c[0] == "ffmpeg"]
    assert seeks == ["1.000", "0.000"]
    assert out.duration == 12.5
    assert (out.width, out.height) == (1920, 1080)
    assert out.video_codec == "h264"
    assert out.audio_codec == "aac"
    assert out.framerate == 29.97


def test_video_rederive_does_not_keep_stale_frame(cfg, tools):
    src = write_file(cfg.originals_path, "short.mp4")
    old = Deriver(cfg).thumbnail_path_for(src, MediaClass.VIDEO)
    old.parent.mkdir(parents=True, exist_ok=True)
    old.write_bytes(b"OLD-FRAME")
    tools.on("ffprobe", lambda cmd: completed(cmd, 1))

    def ffmpeg(cmd):
        # Seeking past the end exits 0 without writing anything
        if cmd[cmd.index("-ss") + 1] == "0.000":
            Path(cmd[-1]).write_bytes(b"\xff\xd8new-frame")
        return completed(cmd)

    tools.on("ffmpeg", ffmpeg)
    out = Deriver(cfg).derive(src, MediaClass.VIDEO)
    seeks = [c[c.index("-ss") + 1] for c in tools.calls if c[0] == "ffmpeg"]
    assert seeks == ["1.000", "0.000"]
    assert out.thumbnail_path == old
    assert old.read_bytes() == b"\xff\xd8new-frame"
    assert [p.name for p in old.parent.iterdir() if ".partial" in p.name] == []


def test_video_failed_rederive_leaves_previous_thumbnail(cfg, tools):
    src = write_file(cfg.originals_path, "gone.mp4")
    old = Deriver(cfg).thumbnail_path_for(src, MediaClass.VIDEO)
    old.parent.mkdir(parents=True, exist_ok=True)
    old.write_bytes(b"OLD-FRAME")
    tools.on("ffprobe", lambda cmd: completed(cmd, 1))
    tools.on("ffmpeg", lambda cmd: completed(cmd))
    with pytest.raises(DerivationError, match="no frame"):
        Deriver(cfg).derive(src, MediaClass.VIDEO)
    assert old.read_bytes() == b"OLD-FRAME"
    assert [p.name for p in old.parent.iterdir()] == [old.name]


def test_video_thumbnail_keeps_extension(cfg):
    d = Deriver(cfg)
    root = Path(cfg.thumbnails_path).absolute()
    photo = Path(cfg.originals_path) / "IMG_9.JPG"
    video = Path(cfg.originals_path) / "IMG_9.MOV"
    assert d.thumbnail_path_for(photo, MediaClass.STANDARD_IMAGE) == root / "IMG_9.jpg"
    assert d.thumbnail_path_for(video, MediaClass.VIDEO) == root / "IMG_9.mov.jpg"
    assert d.thumbnail_path_for(photo, keep_extension=True) == root / "IMG_9.jpg.jpg"


def test_video_ffprobe_failure_leaves_attributes_unknown(cfg, tools):
    src = write_file(cfg.originals_path, "clip.mov")

    def ffprobe(cmd):
        raise DerivationError("ffprobe timed out after 5.0s")

    def ffmpeg(cmd):
        Path(cmd[-1]).write_bytes(b"\xff\xd8frame")
        return completed(cmd)

    tools.on("ffprobe", ffprobe)
    tools.on("ffmpeg", ffmpeg)
    out = Deriver(cfg).derive(src, MediaClass.VIDEO)
    assert out.thumbnail_path.is_file()
    assert out.duration == 0.0
    assert out.video_codec == ""


def test_video_without_frame_fails(cfg, tools):
    src = write_file(cfg.originals_path, "empty.mkv")
    tools.on("ffprobe", lambda cmd: completed(cmd, 1))
    tools.on("ffmpeg", lambda cmd: completed(cmd, 1, stderr="Invalid data found"))
    with pytest.raises(DerivationError, match="Invalid data"):
        Deriver(cfg).derive(src, MediaClass.VIDEO)


def test_unsupported_class_is_rejected(cfg, tools):
    src = write_file(cfg.originals_path, "notes.txt")
    with pytest.raises(DerivationError):
        Deriver(cfg).derive(src, MediaClass.UNSUPPORTED)


def test_run_converts_timeout_and_missing_binary(monkeypatch):
    def expired(cmd, **kw):
        raise subprocess.TimeoutExpired(cmd, kw.get("timeout"))

    monkeypatch.setattr(derive_mod.subprocess, "run", expired)
    with pytest.raises(DerivationError, match="timed out"):
        derive_mod._run(["/usr/bin/dcraw", "-e"], timeout=1)

    def missing(cmd, **kw):
        raise FileNotFoundError(2, "No such file or directory")

    monkeypatch.setattr(derive_mod.subprocess, "run", missing)
    with pytest.raises(DerivationError):
        derive_mod._run(["dcraw-not-installed"])


def test_parsers():
    assert parse_dcraw_size("Camera: Canon\nImage size:  5472 x 3648\n") == (5472, 3648)
    assert parse_dcraw_size("Camera: Canon\n") == (0, 0)
    assert parse_identify_size("640 480") == (640, 480)
    with pytest.raises(DerivationError):
        parse_identify_size("garbage")
    assert parse_framerate("25/1") == 25.0
    assert parse_framerate("0/0") == 0.0
    assert parse_framerate(None) == 0.0
    info = parse_ffprobe({"streams": [{"codec_type": "video", "codec_name": "hevc",
                                       "avg_frame_rate": "0/0", "r_frame_rate": "24/1", "duration": "3.0"}]})
    assert info["framerate"] == 24.0
    assert info["duration"] == 3.0
    assert info["audio_codec"] == ""


def test_run_zero_timeout_means_unbounded(monkeypatch):
    seen = {}

    def fake_run(cmd, **kw):
        seen.update(kw)
        return completed(cmd)

    monkeypatch.setattr(derive_mod.subprocess, "run", fake_run)
    derive_mod._run(["identify", "x.jpg"], timeout=0)
    assert seen["timeout"] is None
