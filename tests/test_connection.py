"""Exercises :class:`AiortcConnection` with two in-process peer connections."""

from __future__ import annotations

import pytest

from fakes import run_async

from mesh_call.capture import ToneAudioTrack
from mesh_call.connection import (
    AiortcConnection,
    CandidateRejected,
    DescriptionRejected,
    RemoteTrackAdded,
    RollbackUnsupported,
)
from mesh_call.protocol import IceCandidate, SessionDescription, TrackKind


def test_offer_answer_settles_outbound_slot():
    async def _test() -> None:
        connection = AiortcConnection(ice_servers=())
        caller_events: list = []
        callee_events: list = []
        caller = connection.create_link(caller_events.append)
        callee = connection.create_link(callee_events.append)
        try:
            await connection.add_or_replace_track(caller, ToneAudioTrack())
            assert connection.needs_negotiation(caller)

            offer = await connection.set_local_description(
                caller, await connection.create_offer(caller)
            )
            assert offer.type == "offer"
            assert "m=audio" in offer.sdp

            await connection.set_remote_description(callee, offer)
            remote = [event for event in callee_events if isinstance(event, RemoteTrackAdded)]
            assert [event.kind for event in remote] == [TrackKind.AUDIO]
            assert not connection.needs_negotiation(callee)

            answer = await connection.set_local_description(
                callee, await connection.create_answer(callee)
            )
            await connection.set_remote_description(caller, answer)
            assert not connection.needs_negotiation(caller)

            # Substitution and clearing reuse the negotiated slot.
            await connection.add_or_replace_track(caller, ToneAudioTrack())
            assert len(caller.pc.getTransceivers()) == 1
            assert not connection.needs_negotiation(caller)
            await connection.clear_track(caller, TrackKind.AUDIO)
            assert not connection.needs_negotiation(caller)
            assert len(caller.placeholders) == 1
        finally:
            await connection.close(caller)
            await connection.close(callee)

        assert caller.placeholders == []

    run_async(_test())


def test_adding_a_new_kind_needs_negotiation():
    async def _test() -> None:
        connection = AiortcConnection(ice_servers=())
        link = connection.create_link(lambda event: None)
        try:
            assert not connection.needs_negotiation(link)
            await connection.clear_track(link, TrackKind.VIDEO)
            assert not connection.needs_negotiation(link)
            await connection.add_or_replace_track(link, ToneAudioTrack())
            assert connection.needs_negotiation(link)
        finally:
            await connection.close(link)

    run_async(_test())


def test_invalid_operations_raise_typed_errors():
    async def _test() -> None:
        connection = AiortcConnection(ice_servers=())
        other = AiortcConnection(ice_servers=())
        caller = connection.create_link(lambda event: None)
        stranger = other.create_link(lambda event: None)
        try:
            await connection.add_or_replace_track(caller, ToneAudioTrack())
            offer = await connection.set_local_description(
                caller, await connection.create_offer(caller)
            )

            with pytest.raises(DescriptionRejected):
                await other.set_remote_description(
                    stranger, SessionDescription("answer", offer.sdp)
                )
            with pytest.raises(RollbackUnsupported):
                await connection.rollback(caller)
            with pytest.raises(CandidateRejected):
                await connection.add_remote_candidate(
                    caller, IceCandidate("candidate:garbage", "0", 0)
                )
            # End-of-candidates markers are accepted silently.
            await connection.add_remote_candidate(caller, IceCandidate("", "0", 0))
        finally:
            await connection.close(caller)
            await other.close(stranger)

    run_async(_test())
