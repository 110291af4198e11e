from __future__ import annotations

from fakes import FakeConnection, RecordingObserver, SignalRecorder, run_async

from mesh_call.peer_link import LinkRole, NegotiationState
from mesh_call.protocol import SignalKind
from mesh_call.registry import SessionRegistry


def make_registry(local_id: str = "alice"):
    connection = FakeConnection()
    recorder = SignalRecorder()
    observer = RecordingObserver()
    registry = SessionRegistry(local_id, connection, recorder, listener=observer)
    return registry, connection, recorder, observer


def test_participant_joined_creates_caller_link_and_offers():
    async def _test() -> None:
        registry, _, recorder, observer = make_registry()
        link = await registry.on_participant_joined("bob")
        await registry.wait_idle()

        assert registry.get("bob") is link
        assert link.role is LinkRole.CALLER
        assert link.state is NegotiationState.OFFER_SENT
        assert [data["to"] for data in recorder.of(SignalKind.OFFER)] == ["bob"]
        assert observer.named("connected") == [("connected", "bob")]

    run_async(_test())


def test_own_join_is_ignored():
    async def _test() -> None:
        registry, _, recorder, _ = make_registry()
        assert await registry.on_participant_joined("alice") is None
        assert len(registry) == 0
        assert recorder.messages == []

    run_async(_test())


def test_offer_from_unknown_sender_creates_callee_link():
    async def _test() -> None:
        registry, _, recorder, _ = make_registry("carol")
        await registry.on_signaling_message(
            SignalKind.OFFER, "alice", {"type": "offer", "sdp": "fake-offer kinds=audio", "from": "alice"}
        )
        await registry.wait_idle()

        link = registry.get("alice")
        assert link is not None
        assert link.role is LinkRole.CALLEE
        assert link.state is NegotiationState.STABLE
        assert recorder.of(SignalKind.ANSWER)[0]["to"] == "alice"

    run_async(_test())


def test_answers_are_routed_by_sender_id():
    async def _test() -> None:
        registry, _, _, _ = make_registry()
        bob = await registry.on_participant_joined("bob")
        carol = await registry.on_participant_joined("carol")
        await registry.wait_idle()
        assert bob.state is carol.state is NegotiationState.OFFER_SENT

        await registry.on_signaling_message(
            SignalKind.ANSWER, "carol", FakeConnection.answer_for(carol.local_description)
        )
        await registry.wait_idle()

        assert carol.state is NegotiationState.STABLE
        assert bob.state is NegotiationState.OFFER_SENT
        assert bob.remote_description is None

    run_async(_test())


def test_answer_from_unknown_sender_is_discarded():
    async def _test() -> None:
        registry, _, _, _ = make_registry()
        await registry.on_signaling_message(
            SignalKind.ANSWER, "mallory", {"type": "answer", "sdp": "fake-answer kinds="}
        )
        assert registry.get("mallory") is None
        assert len(registry) == 0

    run_async(_test())


def test_departure_with_pending_offer_closes_link_and_ignores_late_answer():
    async def _test() -> None:
        registry, connection, _, observer = make_registry()
        link = await registry.on_participant_joined("bob")
        await registry.wait_idle()
        assert link.state is NegotiationState.OFFER_SENT

        await registry.on_participant_left("bob")
        await registry.on_signaling_message(
            SignalKind.ANSWER, "bob", FakeConnection.answer_for(link.local_description)
        )
        await link.wait_idle()

        assert link.state is NegotiationState.CLOSED
        assert link.remote_description is None
        assert connection.handles[0].closed
        assert registry.get("bob") is None
        assert observer.named("disconnected") == [("disconnected", "bob")]

    run_async(_test())


def test_reannounced_participant_gets_a_fresh_link():
    async def _test() -> None:
        registry, _, recorder, _ = make_registry()
        first = await registry.on_participant_joined("bob")
        second = await registry.on_participant_joined("bob")
        await registry.wait_idle()

        assert first is not second
        assert first.state is NegotiationState.CLOSED
        assert registry.get("bob") is second
        assert len(registry) == 1
        assert len(recorder.of(SignalKind.OFFER)) == 1

    run_async(_test())


def test_failed_link_is_removed_from_registry():
    async def _test() -> None:
        registry, _, _, observer = make_registry("bob")
        await registry.on_signaling_message(
            SignalKind.OFFER, "alice", {"type": "offer", "sdp": "invalid"}
        )
        link = registry.get("alice")
        assert link is not None
        await link.wait_idle()

        assert link.state is NegotiationState.CLOSED
        assert registry.get("alice") is None
        assert observer.named("disconnected") == [("disconnected", "alice")]

    run_async(_test())


def test_malformed_answer_closes_link():
    async def _test() -> None:
        registry, _, _, _ = make_registry()
        link = await registry.on_participant_joined("bob")
        await registry.wait_idle()

        await registry.on_signaling_message(SignalKind.ANSWER, "bob", {"type": "offer"})

        assert link.state is NegotiationState.CLOSED
        assert registry.get("bob") is None

    run_async(_test())


def test_candidates_are_routed_and_bad_payloads_dropped():
    async def _test() -> None:
        registry, connection, _, _ = make_registry("bob")
        await registry.on_signaling_message(
            SignalKind.OFFER, "alice", {"type": "offer", "sdp": "fake-offer kinds=audio"}
        )
        await registry.on_signaling_message(
            SignalKind.ICE_CANDIDATE, "alice", {"candidate": {"sdpMLineIndex": -1}}
        )
        await registry.on_signaling_message(
            SignalKind.ICE_CANDIDATE,
            "alice",
            {"candidate": {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0}},
        )
        await registry.on_signaling_message(
            SignalKind.ICE_CANDIDATE, "zed", {"candidate": {"candidate": "candidate:2"}}
        )
        await registry.wait_idle()

        link = registry.get("alice")
        assert link is not None and link.state is NegotiationState.STABLE
        assert [c.candidate for c in connection.handles[0].candidates] == ["candidate:1"]
        assert registry.get("zed") is None

    run_async(_test())


def test_messages_claiming_to_be_from_self_are_ignored():
    async def _test() -> None:
        registry, _, _, _ = make_registry()
        await registry.on_signaling_message(
            SignalKind.OFFER, "alice", {"type": "offer", "sdp": "fake-offer kinds="}
        )
        await registry.on_signaling_message(SignalKind.OFFER, None, {"type": "offer", "sdp": "x"})
        assert len(registry) == 0

    run_async(_test())


def test_remote_tracks_are_reported_to_listener():
    async def _test() -> None:
        registry, _, _, observer = make_registry("bob")
        await registry.on_signaling_message(
            SignalKind.OFFER, "alice", {"type": "offer", "sdp": "fake-offer kinds=audio,video"}
        )
        await registry.wait_idle()

        assert [event[1:] for event in observer.named("track")] == [
            ("alice", "audio"),
            ("alice", "video"),
        ]

    run_async(_test())


def test_close_all_closes_every_link():
    async def _test() -> None:
        registry, connection, _, observer = make_registry()
        links = [await registry.on_participant_joined(name) for name in ("bob", "carol")]
        await registry.wait_idle()

        await registry.close_all()

        assert all(link.state is NegotiationState.CLOSED for link in links)
        assert all(handle.closed for handle in connection.handles)
        assert len(registry) == 0
        assert sorted(event[1] for event in observer.named("disconnected")) == ["bob", "carol"]

    run_async(_test())
