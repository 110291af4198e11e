"""Per-client mapping from remote participant id to its peer link."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping

from .config import DEFAULT_MAX_PENDING_CANDIDATES
from .connection import BaseConnection, RemoteTrackAdded
from .peer_link import LinkRole, PeerLink, SignalSender
from .protocol import (
    IceCandidate,
    ProtocolError,
    SessionDescription,
    SignalKind,
    TrackKind,
)

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from .renegotiation import RenegotiationManager

logger = logging.getLogger(__name__)


class RegistryListener:
    """Receives link lifecycle notifications. Methods default to no-ops."""

    def participant_connected(self, participant_id: str) -> None:
        return None

    def participant_disconnected(self, participant_id: str) -> None:
        return None

    def remote_track(self, participant_id: str, kind: TrackKind, track: Any) -> None:
        return None


class SessionRegistry:
    """Creates, looks up and tears down peer links.

    Every inbound message is routed by the relay-supplied sender id; a
    message for a participant without a live link is discarded. At most one
    link exists per remote id.
    """

    def __init__(
        self,
        local_id: str,
        connection: BaseConnection,
        send: SignalSender,
        *,
        max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES,
        listener: RegistryListener | None = None,
    ) -> None:
        self.local_id = local_id
        self._connection = connection
        self._send = send
        self._max_pending = max_pending_candidates
        self._listener = listener or RegistryListener()
        self._media: RenegotiationManager | None = None
        self._links: dict[str, PeerLink] = {}

    def attach_media(self, media: RenegotiationManager) -> None:
        self._media = media
        media.bind_links(self.links)

    # ---- lookup ----
    def links(self) -> list[PeerLink]:
        return [link for link in self._links.values() if not link.closed]

    def get(self, remote_id: str) -> PeerLink | None:
        return self._links.get(remote_id)

    def __contains__(self, remote_id: object) -> bool:
        return remote_id in self._links

    def __len__(self) -> int:
        return len(self._links)

    # ---- lifecycle ----
    def _create_link(self, remote_id: str, role: LinkRole) -> PeerLink:
        link = PeerLink(
            self.local_id,
            remote_id,
            self._connection,
            self._send,
            role=role,
            max_pending_candidates=self._max_pending,
            on_remote_track=self._remote_track,
            on_closed=self._link_closed,
        )
        self._links[remote_id] = link
        if self._media is not None:
            self._media.attach_current(link)
        link.start()
        logger.info("Created %s link to %s", role.value, remote_id)
        self._notify(self._listener.participant_connected, remote_id)
        return link

    def _link_closed(self, link: PeerLink) -> None:
        # Links that were replaced or removed are no longer current.
        if self._links.get(link.remote_id) is not link:
            return
        del self._links[link.remote_id]
        self._notify(self._listener.participant_disconnected, link.remote_id)

    def _remote_track(self, link: PeerLink, event: RemoteTrackAdded) -> None:
        if self._links.get(link.remote_id) is not link:
            return
        self._notify(self._listener.remote_track, link.remote_id, event.kind, event.track)

    @staticmethod
    def _notify(callback: Callable[..., None], *args: Any) -> None:
        # Listener failures must not leave a link half set up.
        try:
            callback(*args)
        except Exception:
            logger.exception("Registry listener %s failed", callback.__name__)

    async def _discard(self, remote_id: str) -> PeerLink | None:
        link = self._links.pop(remote_id, None)
        if link is None:
            return None
        self._notify(self._listener.participant_disconnected, remote_id)
        await link.close()
        return link

    async def on_participant_joined(self, remote_id: str) -> PeerLink | None:
        """Offer to a newcomer; the participant already in the room initiates."""

        if not remote_id or remote_id == self.local_id:
            return None
        if remote_id in self._links:
            logger.info("Participant %s announced again; replacing its link", remote_id)
            await self._discard(remote_id)
        link = self._create_link(remote_id, LinkRole.CALLER)
        link.begin_negotiation()
        return link

    async def on_participant_left(self, remote_id: str) -> None:
        if await self._discard(remote_id) is None:
            logger.debug("Participant %s left without a link", remote_id)
        else:
            logger.info("Participant %s left", remote_id)

    async def on_signaling_message(
        self, kind: SignalKind, sender_id: str | None, payload: Mapping[str, Any]
    ) -> None:
        """Route an offer, answer or candidate from *sender_id* to its link."""

        if not sender_id or sender_id == self.local_id:
            logger.warning("Discarding %s without a valid sender", kind.value)
            return
        if kind is SignalKind.OFFER:
            await self._on_offer(sender_id, payload)
        elif kind is SignalKind.ANSWER:
            await self._on_answer(sender_id, payload)
        elif kind is SignalKind.ICE_CANDIDATE:
            self._on_candidate(sender_id, payload)
        else:
            logger.warning("Registry cannot handle %s messages", kind.value)

    async def _on_offer(self, sender_id: str, payload: Mapping[str, Any]) -> None:
        try:
            description = SessionDescription.from_payload(payload, expected="offer")
        except ProtocolError as exc:
            logger.error("Invalid offer from %s: %s", sender_id, exc)
            link = self._links.get(sender_id)
            if link is not None:
                await link.close()
            return
        link = self._links.get(sender_id)
        if link is None:
            link = self._create_link(sender_id, LinkRole.CALLEE)
        link.receive_offer(description)

    async def _on_answer(self, sender_id: str, payload: Mapping[str, Any]) -> None:
        link = self._links.get(sender_id)
        if link is None or link.closed:
            logger.info("Discarding answer from %s: no open link", sender_id)
            return
        try:
            description = SessionDescription.from_payload(payload, expected="answer")
        except ProtocolError as exc:
            logger.error("Invalid answer from %s: %s", sender_id, exc)
            await link.close()
            return
        link.receive_answer(description)

    def _on_candidate(self, sender_id: str, payload: Mapping[str, Any]) -> None:
        link = self._links.get(sender_id)
        if link is None or link.closed:
            logger.debug("Discarding candidate from %s: no open link", sender_id)
            return
        try:
            candidate = IceCandidate.from_payload(payload.get("candidate"))
        except ProtocolError as exc:
            logger.warning("Dropping candidate from %s: %s", sender_id, exc)
            return
        link.receive_candidate(candidate)

    # ---- bulk ----
    async def wait_idle(self) -> None:
        """Wait for every live link to finish its queued events."""

        await asyncio.gather(*(link.wait_idle() for link in self.links()))

    async def close_all(self) -> None:
        remote_ids = list(self._links)
        await asyncio.gather(*(self._discard(remote_id) for remote_id in remote_ids))


__all__ = ["RegistryListener", "SessionRegistry"]
