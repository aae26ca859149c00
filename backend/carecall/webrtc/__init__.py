"""WebRTC 모듈.

피어 연결 관리와 로컬 트랙 래핑 기능을 제공합니다.

Classes:
    PeerConnectionManager: 통화 시도당 하나의 RTCPeerConnection 관리
    LocalMediaTrack: enabled 플래그를 가진 로컬 캡처 트랙
    MediaStream: 트랙 묶음

Config:
    ice_config: STUN 서버 설정
    media_config: 캡처 장치 설정
    connection_config: 통화 세션 설정
    signaling_config: 시그널링 저장소 설정
"""

from .tracks import LocalMediaTrack, MediaStream
from .peer_manager import PeerConnectionManager, parse_sdp_candidates, role_for_description_type
from .config import (
    ice_config,
    media_config,
    connection_config,
    signaling_config,
    ICEServerConfig,
    MediaConfig,
    ConnectionConfig,
    SignalingConfig,
)

__all__ = [
    # Classes
    "PeerConnectionManager",
    "LocalMediaTrack",
    "MediaStream",
    "parse_sdp_candidates",
    "role_for_description_type",
    # Config
    "ice_config",
    "media_config",
    "connection_config",
    "signaling_config",
    "ICEServerConfig",
    "MediaConfig",
    "ConnectionConfig",
    "SignalingConfig",
]
