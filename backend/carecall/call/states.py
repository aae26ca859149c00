"""통화 세션 상태와 디스패치 메시지 정의.

외부 이벤트(룸 변경, 후보 추가, 로컬 후보 수집, 연결 상태 변경, 원격 트랙)는
모두 아래 메시지 중 하나로 변환되어 세션의 단일 큐에 들어갑니다. 각 메시지는
발생 시점의 전송 세대(generation)를 담고 있어, 폐기된 전송이나 종료된 세션의
늦은 알림을 구분할 수 있습니다.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from aiortc import MediaStreamTrack

from ..shared import CandidateRecord, IceCandidate, Role, Room


class CallState(str, Enum):
    """IDLE → ACQUIRING_MEDIA → NEGOTIATING → CONNECTED → CLOSED"""

    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring_media"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


# Call View에 표시되는 상태 문구
STATUS_CONNECTING = "Connecting..."
STATUS_ACQUIRING_MEDIA = "Acquiring media..."
STATUS_OFFER_CREATED = "Offer created. Waiting for peer..."
STATUS_ANSWER_SENT = "Answer created and sent."
STATUS_ROOM_NEGOTIATED = "Room already negotiated."
STATUS_MEDIA_ERROR = "Error: Could not access camera/microphone."
STATUS_ENDED = "Call ended."


def connection_status(state: str) -> str:
    return f"Connection: {state}"


@dataclass(frozen=True)
class SessionMessage:
    generation: int


@dataclass(frozen=True)
class RoomChanged(SessionMessage):
    room: Optional[Room]


@dataclass(frozen=True)
class RemoteCandidateAdded(SessionMessage):
    record: CandidateRecord


@dataclass(frozen=True)
class LocalCandidateGathered(SessionMessage):
    candidate: IceCandidate
    role: Role


@dataclass(frozen=True)
class RemoteDescriptionApplied(SessionMessage):
    """원격 description 설정 완료. 버퍼링된 후보를 적용할 시점."""


@dataclass(frozen=True)
class ConnectionStateChanged(SessionMessage):
    state: str


@dataclass(frozen=True)
class RemoteTrackReceived(SessionMessage):
    track: MediaStreamTrack
    stream: Any
