"""Capture source abstractions producing local audio and video tracks."""
from __future__ import annotations

import asyncio
import fractions
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import av
import numpy as np
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

from .config import DEFAULT_CAPTURE_CHOICE

logger = logging.getLogger(__name__)

AUDIO_SAMPLE_RATE = 48000
AUDIO_PTIME = 0.020


class CaptureError(RuntimeError):
    """Raised when a capture source cannot be acquired."""


class CaptureDenied(CaptureError):
    """The user or the platform refused access to the device."""


class CaptureUnavailable(CaptureError):
    """The device is missing or busy."""


@dataclass(frozen=True, slots=True)
class VideoConstraints:
    """Requested geometry and rate for camera capture."""

    width: int = 640
    height: int = 480
    fps: int = 30

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Video dimensions must be positive integers")
        if self.fps < 1 or self.fps > 60:
            raise ValueError("Video fps must be between 1 and 60")

    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


class ToggleableAudioTrack(MediaStreamTrack):
    """Audio track with an ``enabled`` flag; disabled tracks send silence.

    Muting keeps the track and its timing intact, so the remote side keeps
    receiving frames and no renegotiation is needed.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self._source = source
        self.enabled = True

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self._source.recv()
        if self.enabled:
            return frame
        silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in silent.planes:
            plane.update(bytes(plane.buffer_size))
        silent.pts = frame.pts
        silent.sample_rate = frame.sample_rate
        silent.time_base = frame.time_base
        return silent

    def stop(self) -> None:
        self._source.stop()
        super().stop()


class ToneAudioTrack(MediaStreamTrack):
    """Generates a quiet sine tone paced in real time."""

    kind = "audio"

    def __init__(self, frequency: float = 440.0, *, sample_rate: int = AUDIO_SAMPLE_RATE) -> None:
        super().__init__()
        self._frequency = float(frequency)
        self._sample_rate = int(sample_rate)
        self._samples = int(self._sample_rate * AUDIO_PTIME)
        self._timestamp = 0
        self._start: float | None = None

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        if self._start is None:
            self._start = time.time()
        else:
            self._timestamp += self._samples
            wait = self._start + (self._timestamp / self._sample_rate) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        positions = (np.arange(self._samples) + self._timestamp) / self._sample_rate
        wave = np.sin(2 * np.pi * self._frequency * positions) * 0.1 * 32767
        samples = wave.astype(np.int16).reshape(1, -1)
        frame = AudioFrame.from_ndarray(samples, format="s16", layout="mono")
        frame.pts = self._timestamp
        frame.sample_rate = self._sample_rate
        frame.time_base = fractions.Fraction(1, self._sample_rate)
        return frame


class PatternVideoTrack(VideoStreamTrack):
    """Synthetic moving test pattern for camera or screen capture."""

    def __init__(self, width: int = 640, height: int = 480, *, source: str = "camera") -> None:
        super().__init__()
        self._width = int(width)
        self._height = int(height)
        self.source = source
        self._started = time.perf_counter()

    def render(self) -> np.ndarray:
        elapsed = time.perf_counter() - self._started
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        blue = np.tile(vertical, (1, self._width))
        if self.source == "screen":
            green = np.zeros_like(red)
            column = int(elapsed * 60) % self._width
            green[:, column : column + 4] = 255
        else:
            green = np.roll(red, int(elapsed * 10), axis=1)
        return np.stack([red, green, blue], axis=2).astype(np.uint8)

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = VideoFrame.from_ndarray(self.render(), format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class BaseCapture(ABC):
    """Acquires local media tracks from the host platform."""

    @abstractmethod
    async def acquire_audio(self) -> ToggleableAudioTrack:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def acquire_video(
        self, constraints: VideoConstraints | None = None
    ) -> MediaStreamTrack:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def acquire_screen(self) -> MediaStreamTrack:  # pragma: no cover - interface only
        raise NotImplementedError


class SyntheticCapture(BaseCapture):
    """Device-free capture used for development, demos and headless peers."""

    def __init__(self, *, screen_size: tuple[int, int] = (1280, 720)) -> None:
        self._screen_size = screen_size

    async def acquire_audio(self) -> ToggleableAudioTrack:
        return ToggleableAudioTrack(ToneAudioTrack())

    async def acquire_video(self, constraints: VideoConstraints | None = None) -> MediaStreamTrack:
        constraints = constraints or VideoConstraints()
        return PatternVideoTrack(constraints.width, constraints.height, source="camera")

    async def acquire_screen(self) -> MediaStreamTrack:
        width, height = self._screen_size
        return PatternVideoTrack(width, height, source="screen")


@dataclass(frozen=True, slots=True)
class DeviceSpec:
    """An FFmpeg input used by :class:`DeviceCapture`."""

    file: str
    format: str | None = None


_PLATFORM_DEVICES: dict[str, dict[str, DeviceSpec]] = {
    "linux": {
        "camera": DeviceSpec("/dev/video0", "v4l2"),
        "microphone": DeviceSpec("default", "pulse"),
        "screen": DeviceSpec(os.environ.get("DISPLAY", ":0") or ":0", "x11grab"),
    },
    "darwin": {
        "camera": DeviceSpec("default:none", "avfoundation"),
        "microphone": DeviceSpec("none:default", "avfoundation"),
        "screen": DeviceSpec("Capture screen 0:none", "avfoundation"),
    },
}


def default_devices(platform: str | None = None) -> dict[str, DeviceSpec]:
    platform = platform or sys.platform
    key = "linux" if platform.startswith("linux") else platform
    return dict(_PLATFORM_DEVICES.get(key, {}))


class DeviceCapture(BaseCapture):
    """Capture from system devices through aiortc's ``MediaPlayer``."""

    def __init__(
        self,
        devices: dict[str, DeviceSpec] | None = None,
        *,
        player_factory=MediaPlayer,
    ) -> None:
        self._devices = devices if devices is not None else default_devices()
        self._player_factory = player_factory

    def _device(self, name: str) -> DeviceSpec:
        try:
            return self._devices[name]
        except KeyError:
            raise CaptureUnavailable(f"No {name} device configured for {sys.platform}") from None

    async def _open(self, name: str, options: dict[str, str] | None = None):
        spec = self._device(name)
        try:
            return await asyncio.to_thread(
                self._player_factory, spec.file, format=spec.format, options=options or {}
            )
        except PermissionError as exc:
            raise CaptureDenied(f"Access to the {name} was denied: {exc}") from exc
        except (OSError, av.FFmpegError) as exc:
            raise CaptureUnavailable(f"Unable to open {name} {spec.file!r}: {exc}") from exc

    async def acquire_audio(self) -> ToggleableAudioTrack:
        player = await self._open("microphone")
        if player.audio is None:
            raise CaptureUnavailable("Microphone device produced no audio stream")
        return ToggleableAudioTrack(player.audio)

    async def acquire_video(self, constraints: VideoConstraints | None = None) -> MediaStreamTrack:
        constraints = constraints or VideoConstraints()
        player = await self._open(
            "camera",
            {"video_size": constraints.video_size(), "framerate": str(constraints.fps)},
        )
        if player.video is None:
            raise CaptureUnavailable("Camera device produced no video stream")
        return player.video

    async def acquire_screen(self) -> MediaStreamTrack:
        player = await self._open("screen", {"framerate": "15"})
        if player.video is None:
            raise CaptureUnavailable("Screen capture produced no video stream")
        return player.video


class FallbackCapture(BaseCapture):
    """Use *primary* and fall back to *fallback* when a device is unavailable.

    Refused permissions are not retried; the user's answer stands.
    """

    def __init__(self, primary: BaseCapture, fallback: BaseCapture) -> None:
        self.primary = primary
        self.fallback = fallback

    async def acquire_audio(self) -> ToggleableAudioTrack:
        try:
            return await self.primary.acquire_audio()
        except CaptureUnavailable as exc:
            logger.error("Microphone unavailable, using synthetic audio: %s", exc)
            return await self.fallback.acquire_audio()

    async def acquire_video(self, constraints: VideoConstraints | None = None) -> MediaStreamTrack:
        try:
            return await self.primary.acquire_video(constraints)
        except CaptureUnavailable as exc:
            logger.error("Camera unavailable, using synthetic video: %s", exc)
            return await self.fallback.acquire_video(constraints)

    async def acquire_screen(self) -> MediaStreamTrack:
        try:
            return await self.primary.acquire_screen()
        except CaptureUnavailable as exc:
            logger.error("Screen capture unavailable, using synthetic pattern: %s", exc)
            return await self.fallback.acquire_screen()


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("MESHCALL_CAPTURE", DEFAULT_CAPTURE_CHOICE)
    return choice.strip().lower()


def create_capture(choice: str | None = None) -> BaseCapture:
    """Create the capture backend named by *choice* or the environment."""

    resolved = _normalise_choice(choice)
    if resolved == "synthetic":
        return SyntheticCapture()
    if resolved == "device":
        return DeviceCapture()
    if resolved == "auto":
        return FallbackCapture(DeviceCapture(), SyntheticCapture())
    raise CaptureError(f"Unknown capture choice: {choice}")


def identify_capture(capture: BaseCapture) -> str:
    """Return the canonical identifier for a capture backend."""

    if isinstance(capture, FallbackCapture):
        return "auto"
    if isinstance(capture, DeviceCapture):
        return "device"
    if isinstance(capture, SyntheticCapture):
        return "synthetic"
    return "unknown"


__all__ = [
    "BaseCapture",
    "CaptureDenied",
    "CaptureError",
    "CaptureUnavailable",
    "DeviceCapture",
    "DeviceSpec",
    "FallbackCapture",
    "PatternVideoTrack",
    "SyntheticCapture",
    "ToggleableAudioTrack",
    "ToneAudioTrack",
    "VideoConstraints",
    "create_capture",
    "default_devices",
    "identify_capture",
]
