from __future__ import annotations

import json
from typing import Any

from fakes import run_async, sequential_ids

from mesh_call.protocol import SignalKind, encode_message
from mesh_call.relay import Relay


class Inbox:
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def __call__(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    def of(self, kind: SignalKind) -> list[dict[str, Any]]:
        return [message["data"] for message in self.messages if message["type"] == kind.value]


async def _joined(relay: Relay, *names: str) -> dict[str, Inbox]:
    inboxes: dict[str, Inbox] = {}
    for name in names:
        inbox = Inbox()
        participant_id = await relay.connect(inbox)
        assert participant_id == name
        await relay.handle(participant_id, encode_message(SignalKind.JOIN))
        inboxes[name] = inbox
    return inboxes


def test_connect_sends_welcome_with_assigned_id():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a"))
        inbox = Inbox()
        assert await relay.connect(inbox) == "a"
        assert inbox.messages == [{"type": "welcome", "data": {"id": "a"}}]
        assert relay.room_status() == {"count": 0, "participants": []}

    run_async(_test())


def test_duplicate_ids_are_regenerated():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "a", "b"))
        assert await relay.connect(Inbox()) == "a"
        assert await relay.connect(Inbox()) == "b"

    run_async(_test())


def test_join_is_announced_to_existing_members_only():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "b"))
        inboxes = await _joined(relay, "a", "b")

        assert inboxes["a"].of(SignalKind.PARTICIPANT_JOINED) == [{"id": "b"}]
        assert inboxes["b"].of(SignalKind.PARTICIPANT_JOINED) == []
        assert relay.room_status()["count"] == 2

        # A repeated join is not re-announced.
        await relay.handle("b", encode_message(SignalKind.JOIN))
        assert len(inboxes["a"].of(SignalKind.PARTICIPANT_JOINED)) == 1

    run_async(_test())


def test_targeted_messages_reach_only_the_target_with_sender_stamped():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "b", "c"))
        inboxes = await _joined(relay, "a", "b", "c")

        await relay.handle(
            "a",
            encode_message(
                SignalKind.OFFER, {"to": "c", "type": "offer", "sdp": "v=0", "from": "mallory"}
            ),
        )

        assert inboxes["c"].of(SignalKind.OFFER) == [{"type": "offer", "sdp": "v=0", "from": "a"}]
        assert inboxes["b"].of(SignalKind.OFFER) == []
        assert inboxes["a"].of(SignalKind.OFFER) == []

    run_async(_test())


def test_messages_for_unknown_targets_or_without_target_are_dropped():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "b"))
        inboxes = await _joined(relay, "a", "b")
        before = {name: list(inbox.messages) for name, inbox in inboxes.items()}

        await relay.handle("a", encode_message(SignalKind.ANSWER, {"to": "zed", "sdp": "x"}))
        await relay.handle("a", encode_message(SignalKind.ICE_CANDIDATE, {"candidate": {}}))
        await relay.handle("a", "garbage")
        await relay.handle("a", encode_message(SignalKind.WELCOME, {"id": "a"}))
        await relay.handle("ghost", encode_message(SignalKind.JOIN))

        assert {name: inbox.messages for name, inbox in inboxes.items()} == before

    run_async(_test())


def test_name_and_chat_are_broadcast_to_others():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "b", "c"))
        inboxes = await _joined(relay, "a", "b", "c")

        await relay.handle("b", encode_message(SignalKind.NAME_CHANGED, {"name": "Bob"}))
        await relay.handle("b", encode_message(SignalKind.CHAT, {"text": "hi"}))

        for name in ("a", "c"):
            assert inboxes[name].of(SignalKind.NAME_CHANGED) == [{"name": "Bob", "from": "b"}]
            assert inboxes[name].of(SignalKind.CHAT) == [{"text": "hi", "from": "b"}]
        assert inboxes["b"].of(SignalKind.CHAT) == []
        assert {"id": "b", "name": "Bob"} in relay.room_status()["participants"]

    run_async(_test())


def test_disconnect_announces_departure_once():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "b", "c"))
        inboxes = await _joined(relay, "a", "b")
        lurker = Inbox()
        await relay.connect(lurker)

        await relay.disconnect("b")
        await relay.disconnect("b")
        await relay.disconnect("c")

        assert inboxes["a"].of(SignalKind.PARTICIPANT_LEFT) == [{"id": "b"}]
        assert lurker.messages == [{"type": "welcome", "data": {"id": "c"}}]
        assert [member.participant_id for member in relay.members()] == ["a"]

    run_async(_test())


def test_failed_delivery_drops_the_member():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "b"))
        inboxes = await _joined(relay, "a")

        async def broken(message: dict[str, Any]) -> None:
            if message["type"] != "welcome":
                raise ConnectionError("socket gone")

        await relay.connect(broken)
        await relay.handle("b", json.dumps({"type": "join", "data": {}}))
        await relay.handle("a", encode_message(SignalKind.CHAT, {"text": "anyone?"}))

        assert [member.participant_id for member in relay.members()] == ["a"]
        assert inboxes["a"].of(SignalKind.PARTICIPANT_LEFT) == [{"id": "b"}]

    run_async(_test())


def test_participants_outside_the_room_cannot_signal():
    async def _test() -> None:
        relay = Relay(id_factory=sequential_ids("a", "b", "lurker"))
        inboxes = await _joined(relay, "a", "b")
        lurker = Inbox()
        assert await relay.connect(lurker) == "lurker"
        before = {name: list(inbox.messages) for name, inbox in inboxes.items()}

        await relay.handle("lurker", encode_message(SignalKind.CHAT, {"text": "spam"}))
        await relay.handle("lurker", encode_message(SignalKind.NAME_CHANGED, {"name": "Mallory"}))
        await relay.handle("lurker", encode_message(SignalKind.OFFER, {"to": "a", "sdp": "v=0"}))
        await relay.handle("a", encode_message(SignalKind.OFFER, {"to": "lurker", "sdp": "v=0"}))

        assert {name: inbox.messages for name, inbox in inboxes.items()} == before
        assert lurker.of(SignalKind.OFFER) == []

    run_async(_test())
