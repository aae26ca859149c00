"""시그널링 채널 인터페이스.

공유 문서 저장소를 유일한 통신 수단으로 사용하는 시그널링 채널의 계약을
정의합니다. 전용 시그널링 서버 없이 두 클라이언트가 같은 룸 문서를 관찰하며
offer/answer와 ICE 후보를 교환합니다.

Schema:
    rooms/{roomId}                    : {offer?, answer?, participants}
    rooms/{roomId}/offerCandidates/*  : {<ice candidate>, senderId}
    rooms/{roomId}/answerCandidates/* : {<ice candidate>, senderId}

Contract:
    - create_or_merge_room()은 비파괴 병합입니다. 호출자가 넘기지 않은 필드는
      건드리지 않으며, offer/answer는 비어 있을 때만 기록됩니다 (first-writer-wins).
    - 변경 알림은 at-least-once로 전달되며 각 필드/로그 내 순서만 보장됩니다.
    - 모든 실패는 SignalingReadFailed / SignalingWriteFailed로 호출자에게 전달됩니다.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from ..shared import CandidateRecord, IceCandidate, Role, Room, SessionDescription

RoomCallback = Callable[[Optional[Room]], Awaitable[None]]
CandidateCallback = Callable[[CandidateRecord], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]


class SignalingChannel(ABC):
    """관찰 가능한 공유 문서 저장소 위의 시그널링 채널."""

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]:
        """룸 문서를 읽습니다. 없으면 None."""

    @abstractmethod
    async def create_or_merge_room(
        self,
        room_id: str,
        offer: Optional[SessionDescription] = None,
        answer: Optional[SessionDescription] = None,
        participant: Optional[str] = None,
    ) -> Room:
        """룸 문서를 생성하거나 비파괴적으로 병합합니다.

        Args:
            room_id: 룸 ID
            offer: 기록할 offer (이미 offer가 있으면 무시됨)
            answer: 기록할 answer (이미 answer가 있으면 무시됨)
            participant: participants에 추가할 참가자 ID

        Returns:
            Room: 병합 직후 저장된 룸 문서. 호출자는 자신의 offer/answer가
                실제로 저장됐는지 이 값으로 확인합니다.
        """

    @abstractmethod
    async def subscribe_room(self, room_id: str, on_change: RoomCallback) -> Unsubscribe:
        """룸 문서 변경을 구독합니다.

        구독 직후 현재 스냅샷이 한 번 전달되고, 이후 변경마다 다시 전달됩니다.
        룸이 삭제된 경우 None이 전달됩니다.
        """

    @abstractmethod
    async def append_candidate(
        self,
        room_id: str,
        role: Role,
        candidate: IceCandidate,
        sender_id: str,
    ) -> CandidateRecord:
        """역할에 해당하는 후보 로그에 후보를 추가합니다."""

    @abstractmethod
    async def subscribe_candidates(
        self,
        room_id: str,
        role: Role,
        exclude_sender_id: str,
        on_added: CandidateCallback,
    ) -> Unsubscribe:
        """역할에 해당하는 후보 로그를 구독합니다.

        기존 레코드를 먼저 재생한 뒤 새 레코드를 추가 순서대로 전달합니다.
        exclude_sender_id가 보낸 레코드는 제외됩니다.
        """

    @abstractmethod
    async def delete_own_candidates(self, room_id: str, sender_id: str) -> int:
        """sender_id가 추가한 후보를 두 로그에서 모두 삭제합니다.

        Returns:
            int: 삭제된 레코드 수
        """

    @abstractmethod
    async def clear_negotiation(
        self,
        room_id: str,
        sender_id: str,
        offer: Optional[SessionDescription] = None,
        answer: Optional[SessionDescription] = None,
    ) -> None:
        """협상 필드를 정리하고 참가자 목록에서 sender_id를 제거합니다.

        offer/answer는 저장된 값이 넘겨받은 값과 같을 때만 삭제되므로,
        다른 클라이언트가 새로 기록한 협상을 지우지 않습니다.
        """

    async def close(self) -> None:
        """채널이 보유한 연결을 해제합니다."""
