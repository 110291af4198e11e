from __future__ import annotations

import asyncio
from types import SimpleNamespace

import numpy as np
import pytest

from mesh_call.capture import (
    CaptureDenied,
    CaptureError,
    CaptureUnavailable,
    DeviceCapture,
    DeviceSpec,
    FallbackCapture,
    PatternVideoTrack,
    SyntheticCapture,
    ToggleableAudioTrack,
    ToneAudioTrack,
    VideoConstraints,
    create_capture,
    default_devices,
    identify_capture,
)


def test_pattern_track_renders_requested_geometry():
    camera = PatternVideoTrack(64, 48)
    screen = PatternVideoTrack(32, 16, source="screen")

    frame = asyncio.run(camera.recv())

    assert camera.render().shape == (48, 64, 3)
    assert screen.render().shape == (16, 32, 3)
    assert frame.width == 64 and frame.height == 48


def test_muted_audio_track_sends_silence():
    async def _test():
        track = ToggleableAudioTrack(ToneAudioTrack())
        audible = await track.recv()
        track.enabled = False
        silent = await track.recv()
        track.stop()
        return audible, silent, track

    audible, silent, track = asyncio.run(_test())

    assert np.any(audible.to_ndarray() != 0)
    assert not np.any(silent.to_ndarray())
    assert silent.samples == audible.samples
    assert silent.pts > audible.pts
    assert track.readyState == "ended"
    assert track.source.readyState == "ended"


def test_synthetic_capture_honours_constraints():
    async def _test():
        capture = SyntheticCapture(screen_size=(320, 200))
        audio = await capture.acquire_audio()
        video = await capture.acquire_video(VideoConstraints(160, 120, 15))
        screen = await capture.acquire_screen()
        return audio, video, screen

    audio, video, screen = asyncio.run(_test())

    assert audio.kind == "audio" and audio.enabled
    assert video.kind == "video" and video.source == "camera"
    assert video.render().shape == (120, 160, 3)
    assert screen.source == "screen"
    assert screen.render().shape == (200, 320, 3)


def test_video_constraints_validation():
    assert VideoConstraints(1280, 720).video_size() == "1280x720"
    with pytest.raises(ValueError):
        VideoConstraints(0, 720)
    with pytest.raises(ValueError):
        VideoConstraints(fps=120)


def _devices() -> dict[str, DeviceSpec]:
    return {
        "camera": DeviceSpec("/dev/video9", "v4l2"),
        "microphone": DeviceSpec("default", "pulse"),
    }


def test_device_capture_opens_player_with_constraints():
    calls = []
    video = SimpleNamespace(kind="video")

    def factory(file, *, format=None, options=None):
        calls.append((file, format, options))
        return SimpleNamespace(audio=None, video=video)

    capture = DeviceCapture(_devices(), player_factory=factory)
    track = asyncio.run(capture.acquire_video(VideoConstraints(320, 240, 10)))

    assert track is video
    assert calls == [("/dev/video9", "v4l2", {"video_size": "320x240", "framerate": "10"})]


@pytest.mark.parametrize(
    "error, expected",
    [
        (PermissionError("denied"), CaptureDenied),
        (FileNotFoundError("no such device"), CaptureUnavailable),
    ],
)
def test_device_capture_maps_open_errors(error, expected):
    def factory(file, *, format=None, options=None):
        raise error

    capture = DeviceCapture(_devices(), player_factory=factory)
    with pytest.raises(expected):
        asyncio.run(capture.acquire_audio())


def test_device_capture_without_stream_or_device_is_unavailable():
    capture = DeviceCapture(
        _devices(), player_factory=lambda *args, **kwargs: SimpleNamespace(audio=None, video=None)
    )
    with pytest.raises(CaptureUnavailable):
        asyncio.run(capture.acquire_audio())
    with pytest.raises(CaptureUnavailable, match="No screen device"):
        asyncio.run(capture.acquire_screen())


class _Broken(SyntheticCapture):
    def __init__(self, error: CaptureError) -> None:
        super().__init__()
        self.error = error

    async def acquire_video(self, constraints=None):
        raise self.error


def test_fallback_capture_only_covers_unavailable_devices():
    fallback = FallbackCapture(_Broken(CaptureUnavailable("busy")), SyntheticCapture())
    track = asyncio.run(fallback.acquire_video())
    assert isinstance(track, PatternVideoTrack)

    denied = FallbackCapture(_Broken(CaptureDenied("no")), SyntheticCapture())
    with pytest.raises(CaptureDenied):
        asyncio.run(denied.acquire_video())


def test_create_capture_reads_choice_and_environment(monkeypatch: pytest.MonkeyPatch):
    assert identify_capture(create_capture("Synthetic")) == "synthetic"
    assert identify_capture(create_capture("device")) == "device"

    monkeypatch.setenv("MESHCALL_CAPTURE", "synthetic")
    assert identify_capture(create_capture()) == "synthetic"
    monkeypatch.delenv("MESHCALL_CAPTURE")
    assert identify_capture(create_capture()) == "auto"

    with pytest.raises(CaptureError, match="Unknown capture choice"):
        create_capture("webcam")


def test_default_devices_per_platform():
    assert default_devices("linux")["camera"] == DeviceSpec("/dev/video0", "v4l2")
    assert default_devices("darwin")["microphone"].format == "avfoundation"
    assert default_devices("win32") == {}
