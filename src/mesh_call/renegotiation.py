"""Keeps every peer link's outbound tracks in line with the local media state."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from .capture import BaseCapture, CaptureError, VideoConstraints
from .media_state import LocalMediaState, VideoSource
from .peer_link import PeerLink
from .protocol import TrackKind

logger = logging.getLogger(__name__)

LinksProvider = Callable[[], Iterable[PeerLink]]
CaptureFailedCallback = Callable[[str, CaptureError], None]


class RenegotiationManager:
    """Owns :class:`LocalMediaState` and fans its changes out to peer links.

    Changes are serialised by a lock. New capture is acquired before any state
    is touched, then the state is updated and the change is posted to every
    link without suspending in between. Links created by the registry take
    the current state through :meth:`attach_current`, so a link created while
    a change is in progress never sees a stale snapshot.
    """

    def __init__(
        self,
        capture: BaseCapture,
        *,
        links: LinksProvider | None = None,
        constraints: VideoConstraints | None = None,
        on_capture_failed: CaptureFailedCallback | None = None,
    ) -> None:
        self._capture = capture
        self._links = links or (lambda: ())
        self._constraints = constraints or VideoConstraints()
        self._on_capture_failed = on_capture_failed
        self._lock = asyncio.Lock()
        self._ended_tasks: set[asyncio.Task[None]] = set()
        self.state = LocalMediaState()

    def bind_links(self, links: LinksProvider) -> None:
        self._links = links

    # ---- link attachment ----
    def attach_current(self, link: PeerLink) -> None:
        """Give a freshly created link the current outbound tracks."""

        if self.state.audio_track is not None:
            link.attach_track(TrackKind.AUDIO, self.state.audio_track)
        if self.state.video_track is not None:
            link.attach_track(TrackKind.VIDEO, self.state.video_track)

    def _fan_out(self, kind: TrackKind, track: Any) -> None:
        for link in list(self._links()):
            link.attach_track(kind, track)

    def _capture_failed(self, source: str, exc: CaptureError) -> None:
        logger.warning("Unable to acquire %s: %s", source, exc)
        if self._on_capture_failed is not None:
            self._on_capture_failed(source, exc)

    # ---- microphone ----
    async def ensure_microphone(self) -> bool:
        """Acquire the microphone if it has never been acquired."""

        async with self._lock:
            if self.state.audio_track is not None:
                return self.state.microphone_enabled
            return await self._acquire_microphone()

    async def _acquire_microphone(self) -> bool:
        try:
            track = await self._capture.acquire_audio()
        except CaptureError as exc:
            self._capture_failed("microphone", exc)
            return False
        track.enabled = True
        self.state.audio_track = track
        self.state.microphone_enabled = True
        self._fan_out(TrackKind.AUDIO, track)
        return True

    async def toggle_microphone(self) -> bool:
        """Mute or unmute. Only the track's ``enabled`` flag changes."""

        async with self._lock:
            if self.state.audio_track is None:
                return await self._acquire_microphone()
            enabled = not self.state.microphone_enabled
            self.state.microphone_enabled = enabled
            self.state.audio_track.enabled = enabled
            logger.info("Microphone %s", "unmuted" if enabled else "muted")
            return enabled

    # ---- video ----
    async def toggle_camera(self) -> bool:
        async with self._lock:
            if self.state.active_video_source is VideoSource.CAMERA:
                self._clear_video()
                return False
            try:
                track = await self._capture.acquire_video(self._constraints)
            except CaptureError as exc:
                self._capture_failed("camera", exc)
                return self.state.camera_enabled
            self.state.resume_camera = False
            self._set_video(VideoSource.CAMERA, track)
            return True

    async def toggle_screen_share(self) -> bool:
        async with self._lock:
            if self.state.active_video_source is VideoSource.SCREEN:
                await self._end_screen_share()
                return False
            try:
                track = await self._capture.acquire_screen()
            except CaptureError as exc:
                self._capture_failed("screen", exc)
                return self.state.screen_sharing
            self.state.resume_camera = self.state.active_video_source is VideoSource.CAMERA
            self._set_video(VideoSource.SCREEN, track)
            return True

    async def _end_screen_share(self) -> None:
        if not self.state.resume_camera:
            self._clear_video()
            return
        self.state.resume_camera = False
        try:
            track = await self._capture.acquire_video(self._constraints)
        except CaptureError as exc:
            self._capture_failed("camera", exc)
            self._clear_video()
            return
        self._set_video(VideoSource.CAMERA, track)

    def _set_video(self, source: VideoSource, track: Any) -> None:
        previous = self.state.video_track
        self.state.video_track = track
        self.state.active_video_source = source
        self._watch_ended(track)
        self._fan_out(TrackKind.VIDEO, track)
        logger.info("Video source is now %s", source.value)
        if previous is not None:
            previous.stop()

    def _clear_video(self) -> None:
        previous = self.state.video_track
        self.state.video_track = None
        self.state.active_video_source = VideoSource.NONE
        self._fan_out(TrackKind.VIDEO, None)
        logger.info("Video source is now %s", VideoSource.NONE.value)
        if previous is not None:
            previous.stop()

    # ---- source ended ----
    def _watch_ended(self, track: Any) -> None:
        register = getattr(track, "on", None)
        if register is None:
            return

        def _ended() -> None:
            self.on_source_ended(track)

        register("ended", _ended)

    def on_source_ended(self, track: Any) -> None:
        """Handle a capture source that stopped outside of our control."""

        task = asyncio.get_running_loop().create_task(self._source_ended(track))
        self._ended_tasks.add(task)
        task.add_done_callback(self._ended_tasks.discard)

    async def _source_ended(self, track: Any) -> None:
        async with self._lock:
            if track is not self.state.video_track:
                return
            if self.state.active_video_source is VideoSource.SCREEN:
                logger.info("Screen share ended by the platform")
                await self._end_screen_share()
            else:
                logger.warning("Camera source ended")
                self._clear_video()

    async def wait_idle(self) -> None:
        if self._ended_tasks:
            await asyncio.gather(*list(self._ended_tasks))

    # ---- teardown ----
    async def shutdown(self) -> None:
        """Stop every local track and reset the state."""

        async with self._lock:
            audio = self.state.audio_track
            video = self.state.video_track
            self.state = LocalMediaState()
            for track in (video, audio):
                if track is not None:
                    track.stop()


__all__ = ["RenegotiationManager"]
