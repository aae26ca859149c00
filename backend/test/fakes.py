"""테스트용 전송/장치 대역 (test doubles).

FakePeer는 PeerConnectionManager와 같은 인터페이스를 가지며 네트워크 없이
SDP와 후보를 흉내 냅니다. 원격 description 전에 후보가 적용되면 예외를 던져
버퍼링 규칙 위반을 드러냅니다.
"""

import asyncio
import itertools
from typing import List, Optional

from carecall.shared import IceCandidate, MediaError, Role, SessionDescription
from carecall.webrtc import MediaStream, role_for_description_type

_sdp_ids = itertools.count(1)


class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeMediaDevices:
    """MediaDeviceController 대역."""

    def __init__(self, error: Optional[MediaError] = None, gate: Optional[asyncio.Event] = None):
        self.error = error
        self.gate = gate
        self.stream: Optional[MediaStream] = None
        self.audio_enabled = True
        self.video_enabled = True
        self.acquire_calls = 0
        self.release_calls = 0

    async def acquire(self) -> MediaStream:
        self.acquire_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.stream = MediaStream(tracks=[FakeTrack("audio"), FakeTrack("video")])
        return self.stream

    def toggle_audio(self) -> bool:
        self.audio_enabled = not self.audio_enabled
        return self.audio_enabled

    def toggle_video(self) -> bool:
        self.video_enabled = not self.video_enabled
        return self.video_enabled

    def release(self) -> None:
        self.release_calls += 1
        if self.stream is not None:
            for track in self.stream.tracks:
                track.stop()
            self.stream = None

    @property
    def released(self) -> bool:
        return self.release_calls > 0


class FakePeer:
    """PeerConnectionManager 대역."""

    def __init__(self, label: str = "", candidate_count: int = 2):
        self.label = label
        self.candidate_count = candidate_count
        self.role = Role.UNDECIDED
        self.remote_stream = MediaStream()
        self.on_ice_candidate_callback = None
        self.on_remote_track_callback = None
        self.on_connection_state_change_callback = None

        self.local_tracks: List = []
        self.local_description: Optional[SessionDescription] = None
        self.remote_description: Optional[SessionDescription] = None
        self.applied_candidates: List[IceCandidate] = []
        self.connection_state = "new"
        self.close_calls = 0
        self.stopped_tracks = False
        self.sdp_id = next(_sdp_ids)

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    @property
    def is_closed(self) -> bool:
        return self.close_calls > 0

    def add_local_tracks(self, stream: MediaStream) -> None:
        self.local_tracks.extend(stream.tracks)

    async def create_offer(self) -> SessionDescription:
        return SessionDescription(type="offer", sdp=f"v=0 offer {self.label} #{self.sdp_id}")

    async def create_answer(self) -> SessionDescription:
        assert self.remote_description is not None, "answer created without remote offer"
        return SessionDescription(type="answer", sdp=f"v=0 answer {self.label} #{self.sdp_id}")

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        self.local_description = description
        self.role = role_for_description_type(description.type)
        for index in range(self.candidate_count):
            candidate = IceCandidate(
                candidate=f"candidate:{index} 1 udp 2122 10.0.0.{index + 1} 5000{index} typ host "
                          f"from {self.label} #{self.sdp_id}",
                sdpMid="0",
                sdpMLineIndex=0,
            )
            if self.on_ice_candidate_callback:
                await self.on_ice_candidate_callback(candidate, self.role)
        return description

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.remote_description = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if self.remote_description is None:
            raise RuntimeError("candidate applied before remote description")
        self.applied_candidates.append(candidate)

    async def report_state(self, state: str) -> None:
        """전송 상태 변경을 흉내 냅니다."""
        self.connection_state = state
        if self.on_connection_state_change_callback:
            await self.on_connection_state_change_callback(state)

    async def receive_track(self, track) -> None:
        self.remote_stream.add_track(track)
        if self.on_remote_track_callback:
            await self.on_remote_track_callback(track, self.remote_stream)

    async def close(self, stop_tracks: bool = True) -> None:
        self.close_calls += 1
        if stop_tracks:
            self.stopped_tracks = True
            for track in self.local_tracks:
                track.stop()


class PeerFactory:
    """생성된 FakePeer를 라벨별로 기록하는 팩토리."""

    def __init__(self, candidate_count: int = 2):
        self.candidate_count = candidate_count
        self.created: List[FakePeer] = []

    def __call__(self, label: str) -> FakePeer:
        peer = FakePeer(label, self.candidate_count)
        self.created.append(peer)
        return peer

    def for_label(self, label: str) -> List[FakePeer]:
        return [peer for peer in self.created if peer.label == label]


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """predicate()가 참이 될 때까지 기다립니다."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def settle(rounds: int = 20) -> None:
    """대기 중인 구독 워커와 디스패치 태스크가 큐를 비우도록 양보합니다."""
    for _ in range(rounds):
        await asyncio.sleep(0.001)
