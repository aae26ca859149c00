"""CareCall 통화 코어 패키지.

방문 간호 운영 대시보드의 1:1 화상 통화 코어입니다. 전용 시그널링 서버 없이
공유 문서 저장소만으로 offer/answer/ICE 후보를 교환합니다.

Modules:
    shared: DTO 및 예외 계층
    webrtc: 피어 연결 관리, 로컬 트랙, 설정
    media: 카메라/마이크 장치 관리
    signaling: 시그널링 채널 (인메모리, Redis)
    call: 통화 세션 상태 머신
    database: Redis 연결 관리
"""

from .shared import Role, Room, SessionDescription, IceCandidate, CandidateRecord, CallError
from .webrtc import PeerConnectionManager, LocalMediaTrack, MediaStream
from .media import MediaDeviceController, RemoteMediaSink
from .signaling import SignalingChannel, InMemorySignalingChannel, RedisSignalingChannel
from .call import CallSessionController, CallState
from .database import RedisManager, get_redis_manager

__all__ = [
    # Shared
    "Role",
    "Room",
    "SessionDescription",
    "IceCandidate",
    "CandidateRecord",
    "CallError",
    # WebRTC
    "PeerConnectionManager",
    "LocalMediaTrack",
    "MediaStream",
    # Media
    "MediaDeviceController",
    "RemoteMediaSink",
    # Signaling
    "SignalingChannel",
    "InMemorySignalingChannel",
    "RedisSignalingChannel",
    # Call
    "CallSessionController",
    "CallState",
    # Database
    "RedisManager",
    "get_redis_manager",
]
