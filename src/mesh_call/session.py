"""Client session wiring the relay transport, capture, links and local media."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .capture import BaseCapture, CaptureError, VideoConstraints
from .config import ClientSettings
from .connection import BaseConnection
from .protocol import (
    ProtocolError,
    SignalKind,
    SignalMessage,
    decode_message,
    encode_message,
    parse_chat,
    parse_name,
)
from .registry import RegistryListener, SessionRegistry
from .renegotiation import RenegotiationManager

logger = logging.getLogger(__name__)


class RelayUnavailable(ConnectionError):
    """The relay connection could not be established or was lost."""


class RelayTransport(ABC):
    """Bidirectional message channel to the relay."""

    @abstractmethod
    async def connect(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def send(self, text: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def receive(self) -> str | bytes | Mapping[str, Any]:  # pragma: no cover
        """Return the next message, raising :class:`RelayUnavailable` on loss."""

        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class WebSocketRelayTransport(RelayTransport):
    """Relay transport over a WebSocket using the ``websockets`` client."""

    def __init__(self, url: str, *, open_timeout: float = 10.0) -> None:
        self.url = url
        self._open_timeout = open_timeout
        self._socket = None

    async def connect(self) -> None:
        try:
            self._socket = await websockets.connect(self.url, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise RelayUnavailable(f"Unable to reach relay at {self.url}: {exc}") from exc
        logger.info("Connected to relay at %s", self.url)

    def _require_socket(self):
        if self._socket is None:
            raise RelayUnavailable("Relay transport is not connected")
        return self._socket

    async def send(self, text: str) -> None:
        socket = self._require_socket()
        try:
            await socket.send(text)
        except ConnectionClosed as exc:
            raise RelayUnavailable(f"Relay connection closed: {exc}") from exc

    async def receive(self) -> str | bytes:
        socket = self._require_socket()
        try:
            return await socket.recv()
        except ConnectionClosed as exc:
            raise RelayUnavailable(f"Relay connection closed: {exc}") from exc

    async def close(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            await socket.close()


@dataclass(frozen=True, slots=True)
class ChatMessage:
    sender_id: str
    text: str
    sender_name: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    local: bool = False


class SessionObserver(RegistryListener):
    """UI-facing notifications. Override the methods of interest."""

    def name_changed(self, participant_id: str, name: str) -> None:
        return None

    def chat_received(self, message: ChatMessage) -> None:
        return None

    def capture_failed(self, source: str, error: CaptureError) -> None:
        return None

    def session_ended(self, reason: str) -> None:
        return None


class MeshSession:
    """A participant in the shared room.

    ``start`` connects to the relay, waits for the relay-assigned id,
    acquires the microphone, joins and announces the display name. Inbound
    messages are then processed one at a time by a receive task.
    """

    def __init__(
        self,
        transport: RelayTransport,
        capture: BaseCapture,
        connection: BaseConnection,
        *,
        settings: ClientSettings | None = None,
        observer: SessionObserver | None = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.display_name = self.settings.display_name
        self._transport = transport
        self._connection = connection
        self._observer = observer or SessionObserver()
        self.media = RenegotiationManager(
            capture,
            constraints=VideoConstraints(
                self.settings.video_width, self.settings.video_height, self.settings.video_fps
            ),
            on_capture_failed=self._observer.capture_failed,
        )
        self.local_id: str | None = None
        self.registry: SessionRegistry | None = None
        self.names: dict[str, str] = {}
        self.chat_history: deque[ChatMessage] = deque(maxlen=self.settings.chat_history)
        self._receiver: asyncio.Task[None] | None = None
        self._ended = asyncio.Event()
        self._closing = False
        self.end_reason: str | None = None

    @property
    def joined(self) -> bool:
        return self.registry is not None and not self._closing

    # ---- lifecycle ----
    async def start(self) -> str:
        await self._transport.connect()
        self.local_id = await self._wait_for_welcome()
        logger.info("Relay assigned id %s", self.local_id)
        self.registry = SessionRegistry(
            self.local_id,
            self._connection,
            self._send_signal,
            max_pending_candidates=self.settings.max_pending_candidates,
            listener=self._observer,
        )
        self.registry.attach_media(self.media)
        if not await self.media.ensure_microphone():
            logger.warning("Continuing without a microphone")
        await self._send(SignalKind.JOIN, {})
        await self._send(SignalKind.NAME_CHANGED, {"name": self.display_name})
        self._receiver = asyncio.get_running_loop().create_task(
            self._receive_loop(), name="mesh-session-receiver"
        )
        return self.local_id

    async def _wait_for_welcome(self) -> str:
        while True:
            try:
                message = decode_message(await self._transport.receive())
            except ProtocolError as exc:
                logger.warning("Ignoring malformed relay message: %s", exc)
                continue
            if message.kind is not SignalKind.WELCOME:
                logger.debug("Ignoring %s received before welcome", message.kind.value)
                continue
            participant_id = message.data.get("id")
            if isinstance(participant_id, str) and participant_id:
                return participant_id
            logger.warning("Welcome message without an id: %r", message.data)

    async def wait_closed(self) -> str | None:
        await self._ended.wait()
        return self.end_reason

    async def hang_up(self) -> None:
        """Stop all tracks, close every link and leave the relay."""

        await self._end("hang-up")

    async def _end(self, reason: str) -> None:
        if self._closing:
            return
        self._closing = True
        self.end_reason = reason
        receiver = self._receiver
        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await receiver
        if self.registry is not None:
            await self.registry.close_all()
        await self.media.shutdown()
        try:
            await self._transport.close()
        except Exception:
            logger.exception("Error while closing relay transport")
        logger.info("Session ended (%s)", reason)
        self._ended.set()
        self._observer.session_ended(reason)

    # ---- inbound ----
    async def _receive_loop(self) -> None:
        try:
            while True:
                raw = await self._transport.receive()
                try:
                    message = decode_message(raw)
                except ProtocolError as exc:
                    logger.warning("Ignoring malformed relay message: %s", exc)
                    continue
                try:
                    await self.dispatch(message)
                except Exception:
                    logger.exception("Error while handling %s from the relay", message.kind.value)
        except RelayUnavailable as exc:
            logger.error("Lost connection to the relay: %s", exc)
            await self._end("relay-unavailable")

    async def dispatch(self, message: SignalMessage) -> None:
        """Handle one decoded relay message."""

        registry = self.registry
        if registry is None:
            raise RuntimeError("Session has not been started")
        kind = message.kind
        if kind is SignalKind.PARTICIPANT_JOINED:
            participant_id = message.data.get("id")
            if not isinstance(participant_id, str):
                logger.warning("participant-joined without an id: %r", message.data)
                return
            await registry.on_participant_joined(participant_id)
            # Newcomers learn names from these re-announcements.
            await self._send(SignalKind.NAME_CHANGED, {"name": self.display_name})
        elif kind is SignalKind.PARTICIPANT_LEFT:
            participant_id = message.data.get("id")
            if not isinstance(participant_id, str):
                logger.warning("participant-left without an id: %r", message.data)
                return
            self.names.pop(participant_id, None)
            await registry.on_participant_left(participant_id)
        elif kind in (SignalKind.OFFER, SignalKind.ANSWER, SignalKind.ICE_CANDIDATE):
            await registry.on_signaling_message(kind, message.sender, message.data)
        elif kind is SignalKind.NAME_CHANGED:
            self._on_name_changed(message)
        elif kind is SignalKind.CHAT:
            self._on_chat(message)
        else:
            logger.warning("Unexpected %s message from the relay", kind.value)

    def _on_name_changed(self, message: SignalMessage) -> None:
        sender = message.sender
        if sender is None:
            return
        try:
            name = parse_name(message.data)
        except ProtocolError as exc:
            logger.warning("Ignoring name change from %s: %s", sender, exc)
            return
        if self.names.get(sender) == name:
            return
        self.names[sender] = name
        self._observer.name_changed(sender, name)

    def _on_chat(self, message: SignalMessage) -> None:
        sender = message.sender
        if sender is None:
            return
        try:
            text = parse_chat(message.data)
        except ProtocolError as exc:
            logger.warning("Ignoring chat from %s: %s", sender, exc)
            return
        chat = ChatMessage(sender_id=sender, text=text, sender_name=self.names.get(sender))
        self.chat_history.append(chat)
        self._observer.chat_received(chat)

    # ---- outbound ----
    async def _send(self, kind: SignalKind, data: Mapping[str, Any]) -> None:
        await self._transport.send(encode_message(kind, data))

    async def _send_signal(self, kind: SignalKind, data: dict[str, Any]) -> None:
        try:
            await self._send(kind, data)
        except RelayUnavailable as exc:
            # The receive task ends the session when the relay is gone.
            logger.warning("Could not send %s to %s: %s", kind.value, data.get("to"), exc)

    # ---- actions ----
    async def toggle_microphone(self) -> bool:
        return await self.media.toggle_microphone()

    async def toggle_camera(self) -> bool:
        return await self.media.toggle_camera()

    async def toggle_screen_share(self) -> bool:
        return await self.media.toggle_screen_share()

    async def set_display_name(self, name: str) -> str:
        cleaned = parse_name({"name": name})
        self.display_name = cleaned
        if self.joined:
            await self._send(SignalKind.NAME_CHANGED, {"name": cleaned})
        return cleaned

    async def send_chat(self, text: str) -> ChatMessage:
        cleaned = parse_chat({"text": text})
        if not self.joined:
            raise RelayUnavailable("Session is not connected to the relay")
        await self._send(SignalKind.CHAT, {"text": cleaned})
        chat = ChatMessage(
            sender_id=self.local_id or "",
            text=cleaned,
            sender_name=self.display_name,
            local=True,
        )
        self.chat_history.append(chat)
        return chat


__all__ = [
    "ChatMessage",
    "MeshSession",
    "RelayTransport",
    "RelayUnavailable",
    "SessionObserver",
    "WebSocketRelayTransport",
]
