"""Connection interface used by peer links and its aiortc implementation."""
from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Union

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp

from .config import DEFAULT_ICE_SERVERS
from .protocol import IceCandidate, SessionDescription, TrackKind

logger = logging.getLogger(__name__)


class DescriptionRejected(RuntimeError):
    """A session description could not be produced, decoded or applied."""


class RollbackUnsupported(DescriptionRejected):
    """The media engine cannot abandon a local offer in place."""


class CandidateRejected(RuntimeError):
    """A remote reachability candidate could not be applied."""


# ---- link events ----
@dataclass(frozen=True, slots=True)
class LocalCandidateDiscovered:
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class RemoteTrackAdded:
    kind: TrackKind
    track: Any = field(compare=False)


@dataclass(frozen=True, slots=True)
class NegotiationNeeded:
    pass


LinkEvent = Union[LocalCandidateDiscovered, RemoteTrackAdded, NegotiationNeeded]
LinkListener = Callable[[LinkEvent], None]


class BaseConnection(ABC):
    """Media engine operations needed to negotiate one peer link.

    ``create_link`` returns an opaque handle that is passed back to every
    other method. Events for the link are reported through *listener*.
    """

    @abstractmethod
    def create_link(self, listener: LinkListener) -> Any:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def add_or_replace_track(self, handle: Any, track: Any) -> None:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    async def clear_track(self, handle: Any, kind: TrackKind) -> None:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    async def create_offer(self, handle: Any) -> SessionDescription:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    async def create_answer(self, handle: Any) -> SessionDescription:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    async def set_local_description(
        self, handle: Any, description: SessionDescription
    ) -> SessionDescription:  # pragma: no cover
        """Apply *description* locally and return the description to transmit."""

        raise NotImplementedError

    @abstractmethod
    async def set_remote_description(
        self, handle: Any, description: SessionDescription
    ) -> None:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    async def add_remote_candidate(self, handle: Any, candidate: IceCandidate) -> None:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    def needs_negotiation(self, handle: Any) -> bool:  # pragma: no cover
        """Return ``True`` when an attached track has no negotiated slot yet."""

        raise NotImplementedError

    @abstractmethod
    async def rollback(self, handle: Any) -> None:  # pragma: no cover
        """Abandon an unanswered local offer."""

        raise NotImplementedError

    @abstractmethod
    async def close(self, handle: Any) -> None:  # pragma: no cover
        raise NotImplementedError


class _AbsentTrack(MediaStreamTrack):
    """Placeholder that never yields frames; marks an outbound slot as empty."""

    def __init__(self, kind: str) -> None:
        super().__init__()
        self.kind = kind
        self._stopped = asyncio.Event()

    async def recv(self):
        await self._stopped.wait()
        raise MediaStreamError

    def stop(self) -> None:
        self._stopped.set()
        super().stop()


@dataclass(slots=True)
class AiortcLink:
    """Handle returned by :meth:`AiortcConnection.create_link`."""

    pc: RTCPeerConnection
    listener: LinkListener = field(repr=False)
    placeholders: list[_AbsentTrack] = field(default_factory=list, repr=False)


def _has_send(direction: str | None) -> bool:
    return direction in ("sendrecv", "sendonly")


class AiortcConnection(BaseConnection):
    """:class:`BaseConnection` backed by aiortc peer connections.

    Local tracks are shared between links through a :class:`MediaRelay` so a
    single capture feeds every remote participant. aiortc gathers candidates
    before ``setLocalDescription`` returns, so local candidates travel inside
    the description and :class:`LocalCandidateDiscovered` is never emitted.
    """

    def __init__(
        self,
        ice_servers: Iterable[str] = DEFAULT_ICE_SERVERS,
        *,
        relay: MediaRelay | None = None,
    ) -> None:
        servers = [url for url in ice_servers if url]
        # An empty list disables aiortc's built-in default STUN server.
        ice = [RTCIceServer(urls=servers)] if servers else []
        self._configuration = RTCConfiguration(iceServers=ice)
        self._relay = relay or MediaRelay()

    def create_link(self, listener: LinkListener) -> AiortcLink:
        pc = RTCPeerConnection(configuration=self._configuration)
        link = AiortcLink(pc=pc, listener=listener)

        @pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            try:
                kind = TrackKind(track.kind)
            except ValueError:
                logger.debug("Ignoring remote track of kind %s", track.kind)
                return
            listener(RemoteTrackAdded(kind=kind, track=track))

        @pc.on("connectionstatechange")
        async def _on_state_change() -> None:
            logger.debug("Peer connection state is %s", pc.connectionState)

        return link

    # ---- tracks ----
    async def add_or_replace_track(self, handle: AiortcLink, track: MediaStreamTrack) -> None:
        proxy = self._relay.subscribe(track)
        for transceiver in handle.pc.getTransceivers():
            if transceiver.kind != track.kind or transceiver.stopped:
                continue
            result = transceiver.sender.replaceTrack(proxy)
            if inspect.isawaitable(result):
                await result
            if not _has_send(transceiver.direction):
                transceiver.direction = "sendrecv"
            return
        handle.pc.addTrack(proxy)

    async def clear_track(self, handle: AiortcLink, kind: TrackKind) -> None:
        kind_value = TrackKind(kind).value
        for transceiver in handle.pc.getTransceivers():
            if transceiver.kind != kind_value or transceiver.stopped:
                continue
            placeholder = _AbsentTrack(kind_value)
            handle.placeholders.append(placeholder)
            result = transceiver.sender.replaceTrack(placeholder)
            if inspect.isawaitable(result):
                await result

    def needs_negotiation(self, handle: AiortcLink) -> bool:
        for transceiver in handle.pc.getTransceivers():
            if transceiver.stopped or not _has_send(transceiver.direction):
                continue
            if transceiver.mid is None or not _has_send(transceiver.currentDirection):
                return True
        return False

    # ---- descriptions ----
    async def create_offer(self, handle: AiortcLink) -> SessionDescription:
        try:
            offer = await handle.pc.createOffer()
        except Exception as exc:
            raise DescriptionRejected(f"Unable to create offer: {exc}") from exc
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self, handle: AiortcLink) -> SessionDescription:
        try:
            answer = await handle.pc.createAnswer()
        except Exception as exc:
            raise DescriptionRejected(f"Unable to create answer: {exc}") from exc
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(
        self, handle: AiortcLink, description: SessionDescription
    ) -> SessionDescription:
        try:
            await handle.pc.setLocalDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as exc:
            raise DescriptionRejected(f"Unable to apply local {description.type}: {exc}") from exc
        local = handle.pc.localDescription
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def set_remote_description(
        self, handle: AiortcLink, description: SessionDescription
    ) -> None:
        try:
            await handle.pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as exc:
            raise DescriptionRejected(f"Unable to apply remote {description.type}: {exc}") from exc

    async def add_remote_candidate(self, handle: AiortcLink, candidate: IceCandidate) -> None:
        text = candidate.candidate
        if not text:
            # End-of-candidates marker.
            return
        if text.startswith("candidate:"):
            text = text[len("candidate:") :]
        try:
            parsed = candidate_from_sdp(text)
            parsed.sdpMid = candidate.sdp_mid
            parsed.sdpMLineIndex = candidate.sdp_mline_index
            await handle.pc.addIceCandidate(parsed)
        except Exception as exc:
            raise CandidateRejected(f"Unable to apply candidate {candidate.candidate!r}: {exc}") from exc

    async def rollback(self, handle: AiortcLink) -> None:
        raise RollbackUnsupported("aiortc peer connections cannot roll back a local offer")

    async def close(self, handle: AiortcLink) -> None:
        for placeholder in handle.placeholders:
            placeholder.stop()
        handle.placeholders.clear()
        await handle.pc.close()


__all__ = [
    "AiortcConnection",
    "AiortcLink",
    "BaseConnection",
    "CandidateRejected",
    "DescriptionRejected",
    "LinkEvent",
    "LinkListener",
    "LocalCandidateDiscovered",
    "NegotiationNeeded",
    "RemoteTrackAdded",
    "RollbackUnsupported",
]
