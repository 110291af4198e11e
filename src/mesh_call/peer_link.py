"""Negotiation state machine for the link to one remote participant.

Every input to a link, whether it comes from the relay, from the local media
state or from the media engine, is posted to the link's event queue and
handled by a single worker task. A link's transitions are therefore strictly
ordered while other links progress independently.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from .config import DEFAULT_MAX_PENDING_CANDIDATES
from .connection import (
    BaseConnection,
    CandidateRejected,
    DescriptionRejected,
    LinkEvent,
    LocalCandidateDiscovered,
    NegotiationNeeded,
    RemoteTrackAdded,
    RollbackUnsupported,
)
from .protocol import IceCandidate, ProtocolError, SessionDescription, SignalKind, TrackKind

logger = logging.getLogger(__name__)

SignalSender = Callable[[SignalKind, dict[str, Any]], Awaitable[None]]
RemoteTrackCallback = Callable[["PeerLink", RemoteTrackAdded], None]
ClosedCallback = Callable[["PeerLink"], None]


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_SENT = "answer-sent"
    STABLE = "stable"
    CLOSED = "closed"


class LinkRole(str, Enum):
    """Which side initiated the first negotiation round."""

    CALLER = "caller"
    CALLEE = "callee"


# ---- commands posted alongside link events ----
@dataclass(frozen=True, slots=True)
class StartNegotiation:
    pass


@dataclass(frozen=True, slots=True)
class RemoteOffer:
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class RemoteAnswer:
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class RemoteCandidate:
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class OutboundTrackChanged:
    """Attach *track* for *kind*, or clear the slot when *track* is ``None``."""

    kind: TrackKind
    track: Any = field(default=None, compare=False)


LinkCommand = Union[StartNegotiation, RemoteOffer, RemoteAnswer, RemoteCandidate, OutboundTrackChanged]

_STOP = object()


class PeerLink:
    """Negotiates media with a single remote participant."""

    def __init__(
        self,
        local_id: str,
        remote_id: str,
        connection: BaseConnection,
        send: SignalSender,
        *,
        role: LinkRole,
        max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES,
        on_remote_track: RemoteTrackCallback | None = None,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        if max_pending_candidates < 1:
            raise ValueError("max_pending_candidates must be positive")
        self.local_id = local_id
        self.remote_id = remote_id
        self.role = role
        self._connection = connection
        self._send = send
        self._max_pending = max_pending_candidates
        self._on_remote_track = on_remote_track
        self._on_closed = on_closed

        self._state = NegotiationState.IDLE
        self.state_history: deque[NegotiationState] = deque([self._state], maxlen=64)
        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self._pending_candidates: deque[IceCandidate] = deque()
        self._outbound: dict[TrackKind, Any] = {TrackKind.AUDIO: None, TrackKind.VIDEO: None}
        self._renegotiate_pending = False
        self._renegotiate_forced = False

        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.handle = connection.create_link(self.post)

    def __repr__(self) -> str:
        return f"PeerLink(remote_id={self.remote_id!r}, role={self.role.value}, state={self._state.value})"

    # ---- properties ----
    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is NegotiationState.CLOSED

    @property
    def pending_remote_candidates(self) -> tuple[IceCandidate, ...]:
        return tuple(self._pending_candidates)

    @property
    def outbound_tracks(self) -> dict[TrackKind, Any]:
        return dict(self._outbound)

    # ---- inputs ----
    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"peer-link-{self.remote_id}"
            )

    def post(self, event: LinkEvent | LinkCommand) -> None:
        """Queue *event* for the worker. Events for a closed link are dropped."""

        if self.closed:
            logger.debug("Dropping %s for closed link %s", type(event).__name__, self.remote_id)
            return
        self._queue.put_nowait(event)

    def attach_track(self, kind: TrackKind, track: Any) -> None:
        self.post(OutboundTrackChanged(TrackKind(kind), track))

    def begin_negotiation(self) -> None:
        self.post(StartNegotiation())

    def receive_offer(self, description: SessionDescription) -> None:
        self.post(RemoteOffer(description))

    def receive_answer(self, description: SessionDescription) -> None:
        self.post(RemoteAnswer(description))

    def receive_candidate(self, candidate: IceCandidate) -> None:
        self.post(RemoteCandidate(candidate))

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""

        await self._queue.join()

    async def close(self) -> None:
        """Release the connection and move to ``closed``.

        In-flight connection calls are not cancelled; their results are
        discarded when they complete.
        """

        if self.closed:
            return
        self._set_state(NegotiationState.CLOSED)
        self._pending_candidates.clear()
        self._outbound = {TrackKind.AUDIO: None, TrackKind.VIDEO: None}
        self._renegotiate_pending = False
        self._renegotiate_forced = False
        self._queue.put_nowait(_STOP)
        try:
            await self._connection.close(self.handle)
        except Exception:
            logger.exception("Error while closing connection to %s", self.remote_id)
        logger.info("Link to %s closed", self.remote_id)
        if self._on_closed is not None:
            self._on_closed(self)

    # ---- worker ----
    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event is _STOP:
                    return
                if self.closed:
                    continue
                await self._dispatch(event)
            except (DescriptionRejected, ProtocolError) as exc:
                if self.closed:
                    logger.debug("Ignoring late failure on closed link %s: %s", self.remote_id, exc)
                else:
                    logger.error("Negotiation with %s failed: %s", self.remote_id, exc)
                    await self.close()
            except Exception:
                if self.closed:
                    logger.debug("Ignoring late error on closed link %s", self.remote_id, exc_info=True)
                else:
                    logger.exception("Unexpected error on link to %s", self.remote_id)
                    await self.close()
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: object) -> None:
        if isinstance(event, StartNegotiation):
            await self._offer()
        elif isinstance(event, RemoteOffer):
            await self._handle_offer(event.description)
        elif isinstance(event, RemoteAnswer):
            await self._handle_answer(event.description)
        elif isinstance(event, RemoteCandidate):
            await self._handle_candidate(event.candidate)
        elif isinstance(event, OutboundTrackChanged):
            await self._handle_track_change(event.kind, event.track)
        elif isinstance(event, NegotiationNeeded):
            self._request_renegotiation(force=True)
            await self._renegotiate_if_pending()
        elif isinstance(event, LocalCandidateDiscovered):
            await self._signal(SignalKind.ICE_CANDIDATE, {"candidate": event.candidate.to_dict()})
        elif isinstance(event, RemoteTrackAdded):
            logger.info("Received %s track from %s", event.kind.value, self.remote_id)
            if self._on_remote_track is not None:
                self._on_remote_track(self, event)
        else:
            logger.warning("Link %s ignoring unknown event %r", self.remote_id, event)

    # ---- transitions ----
    def _set_state(self, state: NegotiationState) -> None:
        if state is self._state:
            return
        logger.debug("Link %s: %s -> %s", self.remote_id, self._state.value, state.value)
        self._state = state
        self.state_history.append(state)

    async def _signal(self, kind: SignalKind, payload: dict[str, Any]) -> None:
        data = dict(payload)
        data["to"] = self.remote_id
        await self._send(kind, data)

    async def _offer(self) -> None:
        if self._state not in (NegotiationState.IDLE, NegotiationState.STABLE):
            self._request_renegotiation(force=True)
            return
        self._renegotiate_pending = False
        self._renegotiate_forced = False
        offer = await self._connection.create_offer(self.handle)
        if self.closed:
            return
        local = await self._connection.set_local_description(self.handle, offer)
        if self.closed:
            return
        self.local_description = local
        self._set_state(NegotiationState.OFFER_SENT)
        logger.info("Sending offer to %s", self.remote_id)
        await self._signal(SignalKind.OFFER, local.to_dict())

    async def _handle_offer(self, description: SessionDescription) -> None:
        if self._state is NegotiationState.OFFER_SENT:
            if self.local_id < self.remote_id:
                logger.info("Offer collision with %s; keeping local offer", self.remote_id)
                return
            logger.info("Offer collision with %s; rolling back local offer", self.remote_id)
            try:
                await self._connection.rollback(self.handle)
            except RollbackUnsupported:
                await self._replace_connection()
            if self.closed:
                return
            self.local_description = None
            # Local changes from the abandoned offer still need a round.
            self._request_renegotiation(force=True)

        await self._connection.set_remote_description(self.handle, description)
        if self.closed:
            return
        self.remote_description = description
        self._set_state(NegotiationState.OFFER_RECEIVED)
        await self._drain_candidates()
        if self.closed:
            return

        answer = await self._connection.create_answer(self.handle)
        if self.closed:
            return
        local = await self._connection.set_local_description(self.handle, answer)
        if self.closed:
            return
        self.local_description = local
        self._set_state(NegotiationState.ANSWER_SENT)
        logger.info("Sending answer to %s", self.remote_id)
        await self._signal(SignalKind.ANSWER, local.to_dict())
        if self.closed:
            return
        self._set_state(NegotiationState.STABLE)
        await self._renegotiate_if_pending()

    async def _replace_connection(self) -> None:
        """Drop the unanswered offer by starting over on a fresh connection.

        The outbound tracks are attached to the new connection so the answer
        and the follow-up round carry the current media.
        """

        logger.info("Replacing connection to %s to abandon local offer", self.remote_id)
        previous = self.handle
        self.handle = self._connection.create_link(self.post)
        self.remote_description = None
        try:
            await self._connection.close(previous)
        except Exception:
            logger.exception("Error while closing replaced connection to %s", self.remote_id)
        for track in self._outbound.values():
            if self.closed:
                return
            if track is not None:
                await self._connection.add_or_replace_track(self.handle, track)

    async def _handle_answer(self, description: SessionDescription) -> None:
        if self._state is not NegotiationState.OFFER_SENT:
            logger.warning(
                "Ignoring answer from %s while link is %s", self.remote_id, self._state.value
            )
            return
        await self._connection.set_remote_description(self.handle, description)
        if self.closed:
            return
        self.remote_description = description
        await self._drain_candidates()
        if self.closed:
            return
        self._set_state(NegotiationState.STABLE)
        logger.info("Link to %s is stable", self.remote_id)
        await self._renegotiate_if_pending()

    async def _handle_candidate(self, candidate: IceCandidate) -> None:
        if self.remote_description is None:
            if len(self._pending_candidates) >= self._max_pending:
                logger.warning(
                    "Candidate queue for %s is full (%d); dropping candidate",
                    self.remote_id,
                    self._max_pending,
                )
                return
            self._pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _drain_candidates(self) -> None:
        while self._pending_candidates and not self.closed:
            await self._apply_candidate(self._pending_candidates.popleft())

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        try:
            await self._connection.add_remote_candidate(self.handle, candidate)
        except CandidateRejected as exc:
            logger.warning("Dropping candidate from %s: %s", self.remote_id, exc)

    async def _handle_track_change(self, kind: TrackKind, track: Any) -> None:
        if track is None:
            await self._connection.clear_track(self.handle, kind)
        else:
            await self._connection.add_or_replace_track(self.handle, track)
        if self.closed:
            return
        self._outbound[kind] = track
        if self._connection.needs_negotiation(self.handle):
            self._request_renegotiation()
            await self._renegotiate_if_pending()

    def _request_renegotiation(self, *, force: bool = False) -> None:
        self._renegotiate_pending = True
        self._renegotiate_forced = self._renegotiate_forced or force

    async def _renegotiate_if_pending(self) -> None:
        # Rounds start only from stable; otherwise the flag waits for the
        # current round to finish.
        if not self._renegotiate_pending or self._state is not NegotiationState.STABLE:
            return
        self._renegotiate_pending = False
        forced, self._renegotiate_forced = self._renegotiate_forced, False
        if not forced and not self._connection.needs_negotiation(self.handle):
            return
        logger.info("Renegotiating link to %s", self.remote_id)
        await self._offer()


__all__ = [
    "LinkRole",
    "NegotiationState",
    "OutboundTrackChanged",
    "PeerLink",
    "RemoteAnswer",
    "RemoteCandidate",
    "RemoteOffer",
    "StartNegotiation",
]
