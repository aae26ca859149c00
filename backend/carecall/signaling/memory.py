"""인메모리 시그널링 채널.

단일 프로세스 안에서 공유 문서 저장소를 흉내 내는 SignalingChannel 구현입니다.
같은 채널 인스턴스를 두 CallSessionController에 주입하면 서버 없이 통화
협상을 재현할 수 있어 테스트와 로컬 개발에 사용됩니다.

Note:
    - 알림은 구독자별 큐와 워커 태스크를 통해 비동기로 전달됩니다.
      쓰기 호출이 구독자 콜백을 직접 실행하지 않으므로 실제 저장소와 같은
      인터리빙이 발생합니다.
    - 구독자 콜백의 예외는 로그로 남기고 다음 알림을 계속 전달합니다.
"""

import asyncio
import itertools
import logging
from typing import Dict, List, Optional, Tuple

from .base import (
    CandidateCallback,
    RoomCallback,
    SignalingChannel,
    Unsubscribe,
)
from ..shared import CandidateRecord, IceCandidate, Role, Room, SessionDescription

logger = logging.getLogger(__name__)


class _Subscriber:
    """알림을 순서대로 콜백에 전달하는 구독자."""

    def __init__(self, name: str, callback, exclude_sender_id: Optional[str] = None):
        self.name = name
        self.callback = callback
        self.exclude_sender_id = exclude_sender_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.active = True
        self.task = asyncio.create_task(self._run())

    async def _run(self):
        while True:
            item = await self.queue.get()
            try:
                await self.callback(item)
            except Exception as e:
                logger.error(f"[Signaling] 구독자 {self.name} 콜백 오류: {type(e).__name__}: {e}", exc_info=True)

    def push(self, item) -> None:
        if self.active:
            self.queue.put_nowait(item)

    async def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        self.task.cancel()
        if asyncio.current_task() is self.task:
            return
        try:
            await self.task
        except asyncio.CancelledError:
            pass


class InMemorySignalingChannel(SignalingChannel):
    """프로세스 메모리 기반 SignalingChannel.

    Attributes:
        rooms (Dict[str, dict]): room_id → {"offer", "answer", "participants"}
        candidate_logs (Dict[Tuple[str, Role], List[CandidateRecord]]): 역할별 후보 로그

    Examples:
        >>> channel = InMemorySignalingChannel()
        >>> room = await channel.create_or_merge_room("r1", offer=offer, participant="A")
        >>> room.participants
        ['A']
    """

    def __init__(self):
        self.rooms: Dict[str, dict] = {}
        self.candidate_logs: Dict[Tuple[str, Role], List[CandidateRecord]] = {}
        self._room_subscribers: Dict[str, List[_Subscriber]] = {}
        self._candidate_subscribers: Dict[Tuple[str, Role], List[_Subscriber]] = {}
        self._record_ids = itertools.count(1)

    # ------------------------------------------------------------
    # Room document
    # ------------------------------------------------------------

    def _snapshot(self, room_id: str) -> Optional[Room]:
        doc = self.rooms.get(room_id)
        if doc is None:
            return None
        return Room(
            room_id=room_id,
            offer=doc["offer"],
            answer=doc["answer"],
            participants=list(doc["participants"]),
        )

    def _notify_room(self, room_id: str) -> None:
        snapshot = self._snapshot(room_id)
        for subscriber in self._room_subscribers.get(room_id, []):
            subscriber.push(snapshot)

    async def get_room(self, room_id: str) -> Optional[Room]:
        return self._snapshot(room_id)

    async def create_or_merge_room(
        self,
        room_id: str,
        offer: Optional[SessionDescription] = None,
        answer: Optional[SessionDescription] = None,
        participant: Optional[str] = None,
    ) -> Room:
        doc = self.rooms.setdefault(
            room_id, {"offer": None, "answer": None, "participants": {}}
        )
        if offer is not None and doc["offer"] is None:
            doc["offer"] = offer
        if answer is not None and doc["answer"] is None:
            doc["answer"] = answer
        if participant is not None:
            doc["participants"].setdefault(participant, None)

        logger.debug(f"[Signaling] 룸 병합: room={room_id}, offer={offer is not None}, "
                     f"answer={answer is not None}, participant={participant}")
        self._notify_room(room_id)
        return self._snapshot(room_id)

    async def subscribe_room(self, room_id: str, on_change: RoomCallback) -> Unsubscribe:
        subscriber = _Subscriber(f"room:{room_id}", on_change)
        self._room_subscribers.setdefault(room_id, []).append(subscriber)
        subscriber.push(self._snapshot(room_id))

        async def unsubscribe():
            subscribers = self._room_subscribers.get(room_id, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)
            await subscriber.stop()

        return unsubscribe

    async def clear_negotiation(
        self,
        room_id: str,
        sender_id: str,
        offer: Optional[SessionDescription] = None,
        answer: Optional[SessionDescription] = None,
    ) -> None:
        doc = self.rooms.get(room_id)
        if doc is None:
            return
        if offer is not None and doc["offer"] == offer:
            doc["offer"] = None
        if answer is not None and doc["answer"] == answer:
            doc["answer"] = None
        doc["participants"].pop(sender_id, None)
        self._notify_room(room_id)

    # ------------------------------------------------------------
    # Candidate logs
    # ------------------------------------------------------------

    async def append_candidate(
        self,
        room_id: str,
        role: Role,
        candidate: IceCandidate,
        sender_id: str,
    ) -> CandidateRecord:
        record = CandidateRecord(
            record_id=str(next(self._record_ids)),
            role=role,
            sender_id=sender_id,
            candidate=candidate,
        )
        self.candidate_logs.setdefault((room_id, role), []).append(record)
        for subscriber in self._candidate_subscribers.get((room_id, role), []):
            if record.sender_id != subscriber.exclude_sender_id:
                subscriber.push(record)
        return record

    async def subscribe_candidates(
        self,
        room_id: str,
        role: Role,
        exclude_sender_id: str,
        on_added: CandidateCallback,
    ) -> Unsubscribe:
        key = (room_id, role)
        subscriber = _Subscriber(f"{role.candidate_log}:{room_id}", on_added, exclude_sender_id)
        self._candidate_subscribers.setdefault(key, []).append(subscriber)
        for record in self.candidate_logs.get(key, []):
            if record.sender_id != exclude_sender_id:
                subscriber.push(record)

        async def unsubscribe():
            subscribers = self._candidate_subscribers.get(key, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)
            await subscriber.stop()

        return unsubscribe

    async def delete_own_candidates(self, room_id: str, sender_id: str) -> int:
        deleted = 0
        for role in (Role.OFFERING, Role.ANSWERING):
            log = self.candidate_logs.get((room_id, role))
            if not log:
                continue
            kept = [record for record in log if record.sender_id != sender_id]
            deleted += len(log) - len(kept)
            self.candidate_logs[(room_id, role)] = kept
        return deleted

    def candidates(self, room_id: str, role: Role) -> List[CandidateRecord]:
        """로그의 현재 레코드 목록 (조회용)."""
        return list(self.candidate_logs.get((room_id, role), []))

    async def close(self) -> None:
        subscribers = [s for subs in self._room_subscribers.values() for s in subs]
        subscribers += [s for subs in self._candidate_subscribers.values() for s in subs]
        self._room_subscribers.clear()
        self._candidate_subscribers.clear()
        for subscriber in subscribers:
            await subscriber.stop()
