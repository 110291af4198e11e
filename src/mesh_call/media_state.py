"""Local capture state shared by every peer link."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class VideoSource(str, Enum):
    """The single active local video source."""

    NONE = "none"
    CAMERA = "camera"
    SCREEN = "screen"


@dataclass(slots=True)
class LocalMediaState:
    """Current microphone and video source of the local participant.

    Only :class:`~mesh_call.renegotiation.RenegotiationManager` mutates this
    object. ``video_track`` is present exactly while ``active_video_source``
    is not ``NONE``.
    """

    microphone_enabled: bool = False
    active_video_source: VideoSource = VideoSource.NONE
    audio_track: Any = None
    video_track: Any = None
    # Camera state to restore when screen sharing ends.
    resume_camera: bool = False

    @property
    def camera_enabled(self) -> bool:
        return self.active_video_source is VideoSource.CAMERA

    @property
    def screen_sharing(self) -> bool:
        return self.active_video_source is VideoSource.SCREEN

    def snapshot(self) -> dict[str, object]:
        return {
            "microphone_enabled": self.microphone_enabled,
            "active_video_source": self.active_video_source.value,
            "has_audio_track": self.audio_track is not None,
            "has_video_track": self.video_track is not None,
        }


__all__ = ["LocalMediaState", "VideoSource"]
