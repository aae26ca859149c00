"""WebRTC 피어 연결 관리 모듈.

이 모듈은 통화 시도 하나당 하나의 RTCPeerConnection을 감싸고, 로컬 트랙 추가,
SDP offer/answer 생성, ICE 후보 처리, 연결 상태 추적을 담당합니다.

주요 기능:
    - STUN 전용 ICE 설정으로 RTCPeerConnection 생성 (TURN 미사용)
    - 로컬 description 종류(offer/answer)에 따른 역할 기록
    - 로컬 ICE 후보 추출 및 역할 태깅
    - 원격 ICE 후보 적용
    - 멱등적인 연결 종료

Candidate Routing:
    aiortc는 setLocalDescription() 안에서 후보 수집을 끝내고 후보를 SDP에
    포함시킵니다 (icecandidate 이벤트 없음). 따라서 로컬 description이 설정된
    직후 SDP에서 후보를 추출해 콜백으로 전달하며, 각 후보는 그 시점의 로컬
    description 종류로 역할이 결정됩니다 (offer → offerer 로그, answer →
    answerer 로그).

Examples:
    >>> peer = PeerConnectionManager()
    >>> peer.add_local_tracks(local_stream)
    >>> offer = await peer.create_offer()
    >>> await peer.set_local_description(offer)
    >>> peer.role
    <Role.OFFERING: 'offering'>
    >>> await peer.close()

See Also:
    aiortc Documentation: https://aiortc.readthedocs.io/
"""

import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from .config import ice_config
from .tracks import MediaStream
from ..shared import IceCandidate, Role, SessionDescription

logger = logging.getLogger(__name__)

IceCandidateCallback = Callable[[IceCandidate, Role], Awaitable[None]]
RemoteTrackCallback = Callable[[MediaStreamTrack, MediaStream], Awaitable[None]]
ConnectionStateCallback = Callable[[str], Awaitable[None]]


def role_for_description_type(description_type: Optional[str]) -> Role:
    """로컬 description 종류에 해당하는 역할."""
    if description_type == "offer":
        return Role.OFFERING
    if description_type == "answer":
        return Role.ANSWERING
    return Role.UNDECIDED


def parse_sdp_candidates(sdp: str) -> List[IceCandidate]:
    """SDP의 a=candidate 라인을 IceCandidate 목록으로 변환합니다.

    Args:
        sdp (str): 로컬 description SDP

    Returns:
        List[IceCandidate]: 미디어 섹션 순서대로 정렬된 후보 목록
            - sdpMid: 섹션의 a=mid 값
            - sdpMLineIndex: 섹션 인덱스 (0부터)
            - usernameFragment: 섹션 또는 세션 수준의 a=ice-ufrag 값

    Examples:
        >>> parse_sdp_candidates(sdp)[0].candidate
        'candidate:0 1 UDP 2122252543 192.168.0.2 50515 typ host'
    """
    candidates: List[IceCandidate] = []
    session_ufrag: Optional[str] = None
    sections: List[dict] = []

    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            sections.append({"mid": None, "ufrag": None, "candidates": []})
            continue
        current = sections[-1] if sections else None
        if line.startswith("a=ice-ufrag:"):
            ufrag = line[len("a=ice-ufrag:"):]
            if current is None:
                session_ufrag = ufrag
            else:
                current["ufrag"] = ufrag
        elif line.startswith("a=mid:") and current is not None:
            current["mid"] = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and current is not None:
            current["candidates"].append(line[len("a="):])

    for index, section in enumerate(sections):
        for candidate in section["candidates"]:
            candidates.append(IceCandidate(
                candidate=candidate,
                sdpMid=section["mid"],
                sdpMLineIndex=index,
                usernameFragment=section["ufrag"] or session_ufrag,
            ))
    return candidates


class PeerConnectionManager:
    """하나의 통화 시도에 대한 WebRTC 전송 연결을 관리하는 클래스.

    Attributes:
        pc (RTCPeerConnection): aiortc 피어 연결
        role (Role): 로컬 description 종류로 결정된 역할
        remote_stream (MediaStream): 원격 트랙 모음 (전송 계층 소유, 읽기 전용)
        on_ice_candidate_callback: 로컬 후보 수집 시 호출 (candidate, role)
        on_remote_track_callback: 원격 트랙 수신 시 호출 (track, remote_stream)
        on_connection_state_change_callback: 연결 상태 변경 시 호출 (state)

    WebRTC Connection Lifecycle:
        1. add_local_tracks(): 로컬 스트림의 트랙 추가
        2. create_offer()/create_answer(): SDP 생성
        3. set_local_description(): 역할 기록 + 후보 수집/전달
        4. set_remote_description(): 원격 SDP 적용
        5. add_ice_candidate(): 원격 후보 적용
        6. close(): 송신 트랙 중지 및 연결 종료
    """

    def __init__(self, ice_servers: Optional[Sequence[str]] = None, label: str = ""):
        """PeerConnectionManager 초기화.

        Args:
            ice_servers: STUN 서버 URL 목록 (기본값: ice_config.STUN_SERVER_URLS)
            label: 로그에 표시할 이름 (보통 참가자 ID)
        """
        urls = list(ice_config.STUN_SERVER_URLS if ice_servers is None else ice_servers)
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in urls])
        self.pc = RTCPeerConnection(configuration=configuration)
        self.label = label
        self.role = Role.UNDECIDED
        self.remote_stream = MediaStream()

        self.on_ice_candidate_callback: Optional[IceCandidateCallback] = None
        self.on_remote_track_callback: Optional[RemoteTrackCallback] = None
        self.on_connection_state_change_callback: Optional[ConnectionStateCallback] = None

        self._closed = False
        self._emitted_candidates: set = set()

        logger.info(f"[WebRTC] RTCPeerConnection 생성: {self.label[:8]}, STUN={len(urls)}개 (TURN 없음)")

        @self.pc.on("track")
        async def on_track(track: MediaStreamTrack):
            """원격 트랙 수신 시 호출되는 이벤트 핸들러."""
            logger.info(f"[WebRTC] {self.label[:8]} 원격 {track.kind} 트랙 수신")
            self.remote_stream.add_track(track)
            if self.on_remote_track_callback:
                await self.on_remote_track_callback(track, self.remote_stream)

            @track.on("ended")
            async def on_ended():
                logger.info(f"[WebRTC] {self.label[:8]} 원격 {track.kind} 트랙 종료")

        @self.pc.on("connectionstatechange")
        async def on_connection_state_change():
            """연결 상태 변경 시 호출되는 이벤트 핸들러.

            상태: new, connecting, connected, failed, closed
            """
            state = self.pc.connectionState
            logger.info(f"[WebRTC] {self.label[:8]} 연결 상태: {state}")
            if self.on_connection_state_change_callback:
                await self.on_connection_state_change_callback(state)

        @self.pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            logger.info(f"[WebRTC] {self.label[:8]} ICE 상태: {self.pc.iceConnectionState}")

    # ------------------------------------------------------------
    # State
    # ------------------------------------------------------------

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    @property
    def local_description(self) -> Optional[SessionDescription]:
        description = self.pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    # ------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------

    def add_local_tracks(self, stream: MediaStream) -> None:
        """로컬 스트림의 모든 트랙을 연결에 추가합니다."""
        for track in stream.tracks:
            self.pc.addTrack(track)
            logger.info(f"[WebRTC] {self.label[:8]} 로컬 {track.kind} 트랙 추가")

    async def create_offer(self) -> SessionDescription:
        offer = await self.pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self.pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """로컬 description을 설정하고 수집된 후보를 전달합니다.

        Args:
            description: create_offer()/create_answer()의 결과

        Returns:
            SessionDescription: 후보가 포함된 실제 로컬 description

        Note:
            - 역할은 여기서 로컬 description 종류로 기록됩니다.
            - 후보 콜백은 description 설정이 끝난 뒤에만 호출됩니다.
        """
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        local = self.local_description
        self.role = role_for_description_type(local.type)

        candidates = parse_sdp_candidates(local.sdp)
        logger.info(f"[WebRTC] {self.label[:8]} 로컬 {local.type} 설정 완료: "
                    f"role={self.role.value}, 후보수={len(candidates)}, gathering={self.pc.iceGatheringState}")
        await self._emit_local_candidates(candidates)
        return local

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        logger.info(f"[WebRTC] {self.label[:8]} 원격 {description.type} 설정: signaling={self.pc.signalingState}")

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """원격 ICE 후보를 적용합니다.

        Raises:
            RuntimeError: 원격 description이 아직 설정되지 않은 경우
        """
        if not candidate.candidate:
            # end-of-candidates
            return
        if not self.has_remote_description:
            raise RuntimeError("remote description must be set before adding ICE candidates")

        sdp_fragment = candidate.candidate
        if sdp_fragment.startswith("candidate:"):
            sdp_fragment = sdp_fragment[len("candidate:"):]
        ice_candidate = candidate_from_sdp(sdp_fragment)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self.pc.addIceCandidate(ice_candidate)
        logger.debug(f"[WebRTC] {self.label[:8]} 원격 후보 적용: {candidate.candidate[:60]}")

    async def _emit_local_candidates(self, candidates: List[IceCandidate]) -> None:
        role = role_for_description_type(self.pc.localDescription.type)
        for candidate in candidates:
            key = (candidate.candidate, candidate.sdp_mid)
            if key in self._emitted_candidates:
                continue
            self._emitted_candidates.add(key)
            if self.on_ice_candidate_callback:
                await self.on_ice_candidate_callback(candidate, role)

    # ------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------

    async def close(self, stop_tracks: bool = True) -> None:
        """송신 트랙을 중지하고 연결을 종료합니다. 여러 번 호출해도 안전합니다.

        Args:
            stop_tracks: False이면 로컬 트랙을 살려 둡니다 (새 연결에 재사용할 때)
        """
        if self._closed:
            return
        self._closed = True
        if stop_tracks:
            for sender in self.pc.getSenders():
                if sender.track:
                    sender.track.stop()
        await self.pc.close()
        logger.info(f"[WebRTC] {self.label[:8]} 피어 연결 종료")
