"""CallSessionController 테스트.

인메모리 시그널링 채널과 FakePeer/FakeMediaDevices로 두 참가자의 협상을
네트워크 없이 재현합니다.
"""

import asyncio
from collections import Counter

import pytest

from carecall.call import (
    CallState,
    STATUS_ANSWER_SENT,
    STATUS_ENDED,
    STATUS_MEDIA_ERROR,
    STATUS_OFFER_CREATED,
    STATUS_ROOM_NEGOTIATED,
)
from carecall.shared import (
    IceCandidate,
    MediaAccessDenied,
    NoDeviceFound,
    Role,
    SessionDescription,
    SignalingWriteFailed,
    TransportDisconnected,
    TransportFailed,
)
from carecall.signaling import InMemorySignalingChannel

from fakes import FakeMediaDevices, FakeTrack, settle, wait_for

ROOM = "room-1"


def senders(channel, role):
    return {record.sender_id for record in channel.candidates(ROOM, role)}


def remote_candidates(count, prefix="10.1.0"):
    return [
        IceCandidate(
            candidate=f"candidate:{i} 1 udp 2122 {prefix}.{i + 1} 6000{i} typ host",
            sdpMid="0",
            sdpMLineIndex=0,
        )
        for i in range(count)
    ]


async def connect_pair(make_session, peers):
    """nurse(offerer)와 patient(answerer)를 입장시키고 후보 교환까지 기다립니다."""
    nurse, patient = make_session(), make_session()
    await nurse.join("nurse-1", ROOM)
    await patient.join("patient-1", ROOM)
    nurse_peer = peers.for_label("nurse-1")[-1]
    patient_peer = peers.for_label("patient-1")[-1]
    await wait_for(lambda: nurse_peer.remote_description is not None)
    await wait_for(lambda: len(nurse_peer.applied_candidates) == 2)
    await wait_for(lambda: len(patient_peer.applied_candidates) == 2)
    return nurse, patient, nurse_peer, patient_peer


class CountingChannel(InMemorySignalingChannel):
    def __init__(self):
        super().__init__()
        self.calls = Counter()

    async def clear_negotiation(self, room_id, sender_id, offer=None, answer=None):
        self.calls["clear_negotiation"] += 1
        await super().clear_negotiation(room_id, sender_id, offer=offer, answer=answer)

    async def delete_own_candidates(self, room_id, sender_id):
        self.calls["delete_own_candidates"] += 1
        return await super().delete_own_candidates(room_id, sender_id)


class StaleReadChannel(InMemorySignalingChannel):
    """처음 몇 번의 get_room이 빈 룸을 돌려줍니다 (동시 입장 재현)."""

    def __init__(self, stale_reads: int):
        super().__init__()
        self.stale_reads = stale_reads

    async def get_room(self, room_id):
        if self.stale_reads > 0:
            self.stale_reads -= 1
            return None
        return await super().get_room(room_id)


class DuplicatingChannel(InMemorySignalingChannel):
    """모든 후보 레코드를 두 번씩 전달합니다."""

    async def subscribe_candidates(self, room_id, role, exclude_sender_id, on_added):
        async def twice(record):
            await on_added(record)
            await on_added(record)

        return await super().subscribe_candidates(room_id, role, exclude_sender_id, twice)


class FlakyChannel(InMemorySignalingChannel):
    """처음 failures번의 병합 쓰기가 실패합니다."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.merge_calls = 0

    async def create_or_merge_room(self, room_id, offer=None, answer=None, participant=None):
        self.merge_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise SignalingWriteFailed("create_or_merge_room", room_id)
        return await super().create_or_merge_room(room_id, offer=offer, answer=answer, participant=participant)


# ------------------------------------------------------------
# Role resolution
# ------------------------------------------------------------

async def test_first_joiner_becomes_offerer(make_session, channel, peers):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)
    peer = peers.for_label("nurse-1")[0]

    assert nurse.role is Role.OFFERING
    assert nurse.state is CallState.NEGOTIATING
    assert nurse.connection_status == STATUS_OFFER_CREATED
    assert peer.local_tracks == nurse.local_stream.tracks

    room = await channel.get_room(ROOM)
    assert room.offer == peer.local_description
    assert room.answer is None
    assert room.participants == ["nurse-1"]

    await wait_for(lambda: len(channel.candidates(ROOM, Role.OFFERING)) == 2)
    assert senders(channel, Role.OFFERING) == {"nurse-1"}
    assert channel.candidates(ROOM, Role.ANSWERING) == []


async def test_second_joiner_answers_and_candidates_cross(make_session, channel, peers):
    nurse, patient, nurse_peer, patient_peer = await connect_pair(make_session, peers)

    assert patient.role is Role.ANSWERING
    assert patient.connection_status == STATUS_ANSWER_SENT
    assert patient_peer.remote_description == nurse_peer.local_description
    assert nurse_peer.remote_description == patient_peer.local_description

    room = await channel.get_room(ROOM)
    assert room.answer == patient_peer.local_description
    assert room.participants == ["nurse-1", "patient-1"]

    # each side only consumes the other role's log
    assert all("from patient-1" in c.candidate for c in nurse_peer.applied_candidates)
    assert all("from nurse-1" in c.candidate for c in patient_peer.applied_candidates)
    assert senders(channel, Role.OFFERING) == {"nurse-1"}
    assert senders(channel, Role.ANSWERING) == {"patient-1"}


async def test_join_negotiated_room_only_adds_participant(make_session, channel, peers):
    offer = SessionDescription(type="offer", sdp="v=0 existing offer")
    answer = SessionDescription(type="answer", sdp="v=0 existing answer")
    await channel.create_or_merge_room(ROOM, offer=offer, answer=answer, participant="nurse-1")

    visitor = make_session()
    await visitor.join("visitor-1", ROOM)

    assert visitor.role is Role.UNDECIDED
    assert visitor.connection_status == STATUS_ROOM_NEGOTIATED
    room = await channel.get_room(ROOM)
    assert room.participants == ["nurse-1", "visitor-1"]

    await visitor.hang_up()
    room = await channel.get_room(ROOM)
    assert room.offer == offer
    assert room.answer == answer
    assert room.participants == ["nurse-1"]


async def test_simultaneous_join_resolves_loser_to_answerer(make_session, peers, fast_config):
    channel = StaleReadChannel(stale_reads=2)
    try:
        nurse = make_session(signaling=channel)
        patient_media = FakeMediaDevices()
        patient = make_session(media=patient_media, signaling=channel)

        await nurse.join("nurse-1", ROOM)
        await patient.join("patient-1", ROOM)

        nurse_peer = peers.for_label("nurse-1")[0]
        discarded, current = peers.for_label("patient-1")

        assert patient.role is Role.ANSWERING
        assert patient.error is None
        assert patient.connection_status == STATUS_ANSWER_SENT
        assert discarded.close_calls == 1
        assert not discarded.stopped_tracks
        assert not any(track.stopped for track in patient.local_stream.tracks)
        assert patient_media.acquire_calls == 1

        room = await channel.get_room(ROOM)
        assert room.offer == nurse_peer.local_description
        assert room.answer == current.local_description

        await wait_for(lambda: len(nurse_peer.applied_candidates) == 2)
        await settle()
        assert senders(channel, Role.OFFERING) == {"nurse-1"}
        assert all(f"#{current.sdp_id}" in c.candidate for c in nurse_peer.applied_candidates)
    finally:
        await nurse.hang_up()
        await patient.hang_up()
        await channel.close()


# ------------------------------------------------------------
# Candidate exchange
# ------------------------------------------------------------

async def test_offerer_buffers_candidates_until_answer(make_session, channel, peers):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)
    peer = peers.for_label("nurse-1")[0]

    early = remote_candidates(3)
    for candidate in early:
        await channel.append_candidate(ROOM, Role.ANSWERING, candidate, "patient-1")
    await settle()
    assert peer.applied_candidates == []

    answer = SessionDescription(type="answer", sdp="v=0 remote answer")
    await channel.create_or_merge_room(ROOM, answer=answer, participant="patient-1")
    await wait_for(lambda: len(peer.applied_candidates) == 3)
    assert peer.remote_description == answer
    assert peer.applied_candidates == early

    late = remote_candidates(1, prefix="10.2.0")[0]
    await channel.append_candidate(ROOM, Role.ANSWERING, late, "patient-1")
    await wait_for(lambda: len(peer.applied_candidates) == 4)
    assert peer.applied_candidates[-1] == late
    assert nurse.error is None


async def test_answerer_applies_replayed_candidates_after_offer(make_session, channel, peers):
    offer = SessionDescription(type="offer", sdp="v=0 remote offer")
    await channel.create_or_merge_room(ROOM, offer=offer, participant="nurse-1")
    early = remote_candidates(3)
    for candidate in early:
        await channel.append_candidate(ROOM, Role.OFFERING, candidate, "nurse-1")

    patient = make_session()
    await patient.join("patient-1", ROOM)
    peer = peers.for_label("patient-1")[0]

    await wait_for(lambda: len(peer.applied_candidates) == 3)
    assert peer.applied_candidates == early
    assert patient.error is None
    assert patient.state is CallState.NEGOTIATING


async def test_duplicate_candidate_delivery_applied_once(make_session, peers):
    channel = DuplicatingChannel()
    try:
        nurse = make_session(signaling=channel)
        await nurse.join("nurse-1", ROOM)
        peer = peers.for_label("nurse-1")[0]

        answer = SessionDescription(type="answer", sdp="v=0 remote answer")
        await channel.create_or_merge_room(ROOM, answer=answer, participant="patient-1")
        for candidate in remote_candidates(2):
            await channel.append_candidate(ROOM, Role.ANSWERING, candidate, "patient-1")

        await wait_for(lambda: len(peer.applied_candidates) >= 2)
        await settle()
        assert len(peer.applied_candidates) == 2
    finally:
        await nurse.hang_up()
        await channel.close()


# ------------------------------------------------------------
# Transport state
# ------------------------------------------------------------

async def test_connected_state(make_session, peers):
    nurse, _, nurse_peer, _ = await connect_pair(make_session, peers)

    await nurse_peer.report_state("connecting")
    await nurse_peer.report_state("connected")

    assert await nurse.wait_until_connected(timeout=1.0) is True
    assert nurse.state is CallState.CONNECTED
    assert nurse.connection_status == "Connection: connected"


async def test_transport_failure_after_connect_closes_session(make_session, channel, peers):
    nurse, _, nurse_peer, _ = await connect_pair(make_session, peers)
    await nurse_peer.report_state("connected")
    await nurse.wait_until_connected(timeout=1.0)

    await nurse_peer.report_state("failed")
    await wait_for(lambda: nurse.is_ended)

    assert isinstance(nurse.error, TransportFailed)
    assert nurse.state is CallState.CLOSED
    assert nurse.connection_status == "Error: transport failed"
    assert nurse.media.released
    assert nurse_peer.close_calls == 1
    room = await channel.get_room(ROOM)
    assert room.offer is None
    assert "nurse-1" not in room.participants


async def test_failure_before_connect_raises_from_wait(make_session, peers):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)
    peer = peers.for_label("nurse-1")[0]

    await peer.report_state("failed")
    with pytest.raises(TransportFailed):
        await nurse.wait_until_connected(timeout=1.0)


async def test_disconnect_closes_session(make_session, peers):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)
    await peers.for_label("nurse-1")[0].report_state("disconnected")

    await wait_for(lambda: nurse.is_ended)
    assert isinstance(nurse.error, TransportDisconnected)


async def test_wait_until_connected_times_out(make_session):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)
    assert await nurse.wait_until_connected(timeout=0.05) is False
    assert nurse.state is CallState.NEGOTIATING


async def test_remote_track_forwarded(make_session, peers):
    nurse = make_session()
    received = []

    async def on_track(track):
        received.append(track)

    nurse.on_remote_track = on_track
    await nurse.join("nurse-1", ROOM)
    track = FakeTrack("video")
    await peers.for_label("nurse-1")[0].receive_track(track)

    await wait_for(lambda: received == [track])
    assert nurse.remote_stream.video_tracks == [track]


# ------------------------------------------------------------
# Hangup
# ------------------------------------------------------------

async def test_offerer_hangup_clears_room(make_session, channel, peers):
    nurse, patient, nurse_peer, _ = await connect_pair(make_session, peers)

    await nurse.hang_up()

    room = await channel.get_room(ROOM)
    assert room.offer is None
    assert room.answer is None
    assert "nurse-1" not in room.participants
    assert senders(channel, Role.OFFERING) == set()
    assert nurse.state is CallState.CLOSED
    assert nurse.connection_status == STATUS_ENDED
    assert nurse_peer.close_calls == 1
    assert nurse_peer.stopped_tracks
    assert nurse.media.released

    await patient.hang_up()
    room = await channel.get_room(ROOM)
    assert room.participants == []
    assert senders(channel, Role.ANSWERING) == set()


async def test_answerer_ends_when_offerer_hangs_up(make_session, channel, peers):
    nurse, patient, _, patient_peer = await connect_pair(make_session, peers)
    await patient_peer.report_state("connected")
    await patient.wait_until_connected(timeout=1.0)

    await nurse.hang_up()
    await wait_for(lambda: patient.is_ended)

    assert patient.state is CallState.CLOSED
    assert isinstance(patient.error, TransportDisconnected)
    assert patient.connection_status == "Error: transport closed"
    assert patient.media.released
    assert patient_peer.close_calls == 1
    room = await channel.get_room(ROOM)
    assert room.participants == []
    assert room.offer is None
    assert room.answer is None
    assert senders(channel, Role.ANSWERING) == set()


async def test_remote_close_ends_connected_session(make_session, channel, peers):
    nurse, patient, nurse_peer, _ = await connect_pair(make_session, peers)
    await nurse_peer.report_state("connected")
    await nurse.wait_until_connected(timeout=1.0)

    # the transport reports closed when the other side tears down
    await nurse_peer.report_state("closed")
    await wait_for(lambda: nurse.is_ended)

    assert nurse.state is CallState.CLOSED
    assert isinstance(nurse.error, TransportDisconnected)
    assert nurse.media.released
    assert nurse_peer.close_calls == 1
    assert "nurse-1" not in (await channel.get_room(ROOM)).participants


async def test_own_hangup_close_event_is_ignored(make_session, peers):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)
    peer = peers.for_label("nurse-1")[0]

    await nurse.hang_up()
    await peer.report_state("closed")
    await settle()

    assert nurse.error is None
    assert nurse.connection_status == STATUS_ENDED


async def test_answerer_hangup_clears_only_answer(make_session, channel, peers):
    _, patient, nurse_peer, _ = await connect_pair(make_session, peers)

    await patient.hang_up()

    room = await channel.get_room(ROOM)
    assert room.offer == nurse_peer.local_description
    assert room.answer is None
    assert room.participants == ["nurse-1"]
    assert senders(channel, Role.ANSWERING) == set()
    assert senders(channel, Role.OFFERING) == {"nurse-1"}


async def test_double_hangup_runs_once(make_session, peers):
    channel = CountingChannel()
    try:
        nurse = make_session(signaling=channel)
        await nurse.join("nurse-1", ROOM)
        peer = peers.for_label("nurse-1")[0]

        await asyncio.gather(nurse.hang_up(), nurse.hang_up())
        await nurse.hang_up()

        assert channel.calls["clear_negotiation"] == 1
        assert channel.calls["delete_own_candidates"] == 1
        assert peer.close_calls == 1
        assert nurse.media.release_calls == 1
        assert nurse.connection_status == STATUS_ENDED
    finally:
        await channel.close()


async def test_async_with_hangs_up(make_session, channel):
    async with make_session() as nurse:
        await nurse.join("nurse-1", ROOM)
        assert (await channel.get_room(ROOM)).participants == ["nurse-1"]

    assert nurse.is_ended
    room = await channel.get_room(ROOM)
    assert room.participants == []
    assert room.offer is None


async def test_cancelled_join_runs_hangup(make_session, channel):
    gate = asyncio.Event()
    media = FakeMediaDevices(gate=gate)
    session = make_session(media=media)

    task = asyncio.create_task(session.join("nurse-1", ROOM))
    await wait_for(lambda: media.acquire_calls == 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.is_ended
    assert session.state is CallState.CLOSED
    assert channel.rooms == {}


async def test_hangup_during_media_acquisition(make_session, channel):
    gate = asyncio.Event()
    media = FakeMediaDevices(gate=gate)
    session = make_session(media=media)

    task = asyncio.create_task(session.join("nurse-1", ROOM))
    await wait_for(lambda: media.acquire_calls == 1)
    await session.hang_up()
    await task

    assert session.error is None
    assert session.connection_status == STATUS_ENDED
    assert channel.rooms == {}


async def test_join_twice_rejected(make_session):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)
    with pytest.raises(RuntimeError):
        await nurse.join("nurse-1", ROOM)


# ------------------------------------------------------------
# Failures
# ------------------------------------------------------------

@pytest.mark.parametrize("error", [MediaAccessDenied("camera blocked"), NoDeviceFound("no camera")])
async def test_media_failure_is_terminal_and_writes_nothing(make_session, channel, peers, error):
    session = make_session(media=FakeMediaDevices(error=error))

    with pytest.raises(type(error)):
        await session.join("nurse-1", ROOM)

    assert session.state is CallState.CLOSED
    assert session.connection_status == STATUS_MEDIA_ERROR
    assert session.error is error
    assert channel.rooms == {}
    assert peers.created == []


async def test_signaling_write_retried_once(make_session, peers):
    channel = FlakyChannel(failures=1)
    try:
        nurse = make_session(signaling=channel)
        await nurse.join("nurse-1", ROOM)

        assert channel.merge_calls == 2
        assert nurse.role is Role.OFFERING
        assert nurse.error is None
    finally:
        await nurse.hang_up()
        await channel.close()


async def test_signaling_failure_after_retry_closes_session(make_session, peers):
    channel = FlakyChannel(failures=2)
    try:
        nurse = make_session(signaling=channel)
        with pytest.raises(SignalingWriteFailed):
            await nurse.join("nurse-1", ROOM)

        assert channel.merge_calls == 2
        assert nurse.state is CallState.CLOSED
        assert nurse.connection_status.startswith("Error:")
        assert nurse.media.released
        assert channel.candidates(ROOM, Role.OFFERING) == []
    finally:
        await channel.close()


# ------------------------------------------------------------
# Controls
# ------------------------------------------------------------

async def test_toggles(make_session):
    nurse = make_session()
    await nurse.join("nurse-1", ROOM)

    assert nurse.toggle_mute() is True
    assert nurse.is_muted
    assert nurse.toggle_mute() is False
    assert nurse.toggle_video() is True
    assert nurse.is_video_off
