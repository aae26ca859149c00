"""WebRTC 통화 코어 설정.

STUN 서버, 캡처 장치, 시그널링 저장소 등 통화 관련 상수와 환경변수 기반 설정.
TURN 서버는 설정하지 않습니다 (대칭형 NAT 환경에서는 연결 실패 가능).
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Tuple

# 환경변수 로드 (app.py에서 이미 로드됐을 수 있음)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    """문자열을 bool로 변환."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_list(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    """쉼표로 구분된 문자열을 튜플로 변환."""
    if not value:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정 (STUN 전용)."""

    # 기본 공개 STUN 서버
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
    )

    STUN_SERVER_URLS: Tuple[str, ...] = field(
        default_factory=lambda: _parse_list(
            os.getenv("STUN_SERVER_URLS"), ICEServerConfig.DEFAULT_STUN_SERVERS
        )
    )

    def as_dicts(self) -> list:
        """브라우저 RTCConfiguration 형식의 iceServers 목록."""
        return [{"urls": url} for url in self.STUN_SERVER_URLS]


# ============================================================
# 로컬 캡처 장치
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """카메라/마이크 캡처 설정 (ffmpeg 장치 이름과 포맷)."""

    VIDEO_DEVICE: str = os.getenv("VIDEO_DEVICE", "/dev/video0")
    VIDEO_FORMAT: str = os.getenv("VIDEO_FORMAT", "v4l2")
    VIDEO_SIZE: str = os.getenv("VIDEO_SIZE", "640x480")
    VIDEO_FRAMERATE: str = os.getenv("VIDEO_FRAMERATE", "30")

    AUDIO_DEVICE: str = os.getenv("AUDIO_DEVICE", "default")
    AUDIO_FORMAT: str = os.getenv("AUDIO_FORMAT", "pulse")

    @property
    def video_options(self) -> dict:
        return {"video_size": self.VIDEO_SIZE, "framerate": self.VIDEO_FRAMERATE}


# ============================================================
# 통화 연결 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """통화 세션 관련 설정."""

    # 시그널링 일시 오류 시 자동 재시도 횟수
    SIGNALING_RETRY_ATTEMPTS: int = int(os.getenv("SIGNALING_RETRY_ATTEMPTS", "1"))

    # 재시도 전 대기 시간 (초)
    SIGNALING_RETRY_DELAY: float = float(os.getenv("SIGNALING_RETRY_DELAY", "0.5"))

    # 역할 재결정 최대 횟수 (offer 경합 시)
    MAX_ROLE_RESOLUTIONS: int = 3

    # connected 상태 대기 타임아웃 (초)
    CONNECT_TIMEOUT: float = float(os.getenv("CONNECT_TIMEOUT", "30"))

    # disconnected 상태를 치명적 오류로 처리할지 여부
    CLOSE_ON_DISCONNECT: bool = _parse_bool(os.getenv("CLOSE_ON_DISCONNECT"), True)


# ============================================================
# 시그널링 저장소
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """공유 문서 저장소 설정."""

    # "redis" 또는 "memory"
    BACKEND: str = os.getenv("SIGNALING_BACKEND", "redis")

    # 룸 문서 컬렉션 이름 (키 prefix)
    COLLECTION: str = os.getenv("SIGNALING_COLLECTION", "videoCallRooms")

    # 후보 스트림 XREAD 블로킹 시간 (ms)
    SUBSCRIPTION_BLOCK_MS: int = int(os.getenv("SUBSCRIPTION_BLOCK_MS", "1000"))

    # 구독 리더 오류 후 재개 대기 시간 (초)
    SUBSCRIPTION_BACKOFF: float = float(os.getenv("SUBSCRIPTION_BACKOFF", "1.0"))


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
media_config = MediaConfig()
connection_config = ConnectionConfig()
signaling_config = SignalingConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] STUN 서버: {', '.join(ice_config.STUN_SERVER_URLS)} (TURN 미사용)")
logger.info(f"[WebRTC Config] 비디오 장치: {media_config.VIDEO_DEVICE} ({media_config.VIDEO_FORMAT})")
logger.info(f"[WebRTC Config] 오디오 장치: {media_config.AUDIO_DEVICE} ({media_config.AUDIO_FORMAT})")
logger.info(f"[WebRTC Config] 시그널링 백엔드: {signaling_config.BACKEND}, 컬렉션: {signaling_config.COLLECTION}")
