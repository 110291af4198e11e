"""Stateless fan-out hub forwarding signalling messages between participants.

The relay knows room membership and nothing else. It assigns participant ids,
stamps the sender id on every forwarded message and never looks inside offer,
answer or candidate payloads.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from .protocol import (
    BROADCAST_KINDS,
    ProtocolError,
    SignalKind,
    SignalMessage,
    TARGETED_KINDS,
    decode_message,
    routing_target,
)

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class RelayMember:
    """A connected participant as seen by the relay."""

    participant_id: str
    send: SendFn = field(repr=False)
    joined: bool = False
    display_name: str | None = None


def _new_participant_id() -> str:
    return uuid.uuid4().hex


class Relay:
    """Single-room signalling hub.

    All methods run on one event loop; the hub keeps no per-message state so
    there is nothing to lock.
    """

    def __init__(self, *, id_factory: Callable[[], str] = _new_participant_id) -> None:
        self._members: dict[str, RelayMember] = {}
        self._id_factory = id_factory

    # ------------------------------ membership -----------------------------
    async def connect(self, send: SendFn) -> str:
        """Register a new connection and greet it with its relay-assigned id."""

        participant_id = self._id_factory()
        while participant_id in self._members:
            participant_id = self._id_factory()
        self._members[participant_id] = RelayMember(participant_id, send)
        logger.info("Participant %s connected", participant_id)
        await self._deliver(participant_id, SignalKind.WELCOME, {"id": participant_id})
        return participant_id

    async def disconnect(self, participant_id: str) -> None:
        member = self._members.pop(participant_id, None)
        if member is None:
            return
        logger.info(
            "Participant %s disconnected. Relay has %d connections",
            participant_id,
            len(self._members),
        )
        if member.joined:
            await self._broadcast(
                SignalKind.PARTICIPANT_LEFT, {"id": participant_id}, exclude=participant_id
            )

    def members(self) -> list[RelayMember]:
        return list(self._members.values())

    def room_members(self) -> list[RelayMember]:
        return [member for member in self._members.values() if member.joined]

    def room_status(self) -> dict[str, object]:
        members = self.room_members()
        return {
            "count": len(members),
            "participants": [
                {"id": member.participant_id, "name": member.display_name} for member in members
            ],
        }

    # ------------------------------ messages -------------------------------
    async def handle(self, sender_id: str, raw: str | bytes | Mapping[str, Any]) -> None:
        """Process one inbound message from *sender_id*."""

        if sender_id not in self._members:
            logger.debug("Dropping message from unknown participant %s", sender_id)
            return
        try:
            message = decode_message(raw)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed message from %s: %s", sender_id, exc)
            return

        if message.kind is SignalKind.JOIN:
            await self._join(sender_id)
        elif not self._members[sender_id].joined:
            logger.warning(
                "Dropping %s from %s: participant has not joined the room",
                message.kind.value,
                sender_id,
            )
        elif message.kind in TARGETED_KINDS:
            await self._forward(sender_id, message)
        elif message.kind in BROADCAST_KINDS:
            await self._broadcast_from(sender_id, message)
        else:
            logger.warning(
                "Participant %s sent relay-only message type %s; ignoring",
                sender_id,
                message.kind.value,
            )

    async def _join(self, participant_id: str) -> None:
        member = self._members[participant_id]
        if member.joined:
            logger.debug("Participant %s already in the room", participant_id)
            return
        member.joined = True
        logger.info(
            "Participant %s joined the room. Room has %d participants",
            participant_id,
            len(self.room_members()),
        )
        await self._broadcast(
            SignalKind.PARTICIPANT_JOINED, {"id": participant_id}, exclude=participant_id
        )

    async def _forward(self, sender_id: str, message: SignalMessage) -> None:
        try:
            target = routing_target(message)
        except ProtocolError as exc:
            logger.warning("Dropping %s from %s: %s", message.kind.value, sender_id, exc)
            return
        target_member = self._members.get(target)
        if target_member is None or not target_member.joined:
            logger.info(
                "Dropping %s from %s: target %s is not in the room",
                message.kind.value,
                sender_id,
                target,
            )
            return
        data = {key: value for key, value in message.data.items() if key not in ("to", "from")}
        data["from"] = sender_id
        await self._deliver(target, message.kind, data)

    async def _broadcast_from(self, sender_id: str, message: SignalMessage) -> None:
        data = {key: value for key, value in message.data.items() if key != "from"}
        data["from"] = sender_id
        if message.kind is SignalKind.NAME_CHANGED:
            name = data.get("name")
            if isinstance(name, str):
                self._members[sender_id].display_name = name
        await self._broadcast(message.kind, data, exclude=sender_id)

    # ------------------------------ delivery -------------------------------
    async def _broadcast(
        self, kind: SignalKind, data: dict[str, Any], *, exclude: str | None = None
    ) -> None:
        for member in self.room_members():
            if member.participant_id == exclude:
                continue
            await self._deliver(member.participant_id, kind, data)

    async def _deliver(self, participant_id: str, kind: SignalKind, data: dict[str, Any]) -> None:
        member = self._members.get(participant_id)
        if member is None:
            return
        try:
            await member.send({"type": kind.value, "data": dict(data)})
        except Exception as exc:
            logger.error("Failed to deliver %s to %s: %s", kind.value, participant_id, exc)
            await self.disconnect(participant_id)


__all__ = ["Relay", "RelayMember"]
