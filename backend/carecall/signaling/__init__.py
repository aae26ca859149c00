"""시그널링 채널 모듈.

공유 문서 저장소를 통한 offer/answer/ICE 후보 교환을 담당합니다.

Classes:
    SignalingChannel: 채널 인터페이스
    InMemorySignalingChannel: 단일 프로세스용 구현 (테스트/로컬 개발)
    RedisSignalingChannel: Redis 기반 구현
"""

from .base import SignalingChannel, RoomCallback, CandidateCallback, Unsubscribe
from .memory import InMemorySignalingChannel
from .redis_channel import RedisSignalingChannel

__all__ = [
    "SignalingChannel",
    "RoomCallback",
    "CandidateCallback",
    "Unsubscribe",
    "InMemorySignalingChannel",
    "RedisSignalingChannel",
]
