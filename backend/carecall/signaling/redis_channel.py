"""Redis 기반 시그널링 채널.

룸 문서와 후보 로그를 Redis 자료구조에 매핑합니다.

Key Layout:
    {collection}:{roomId}                  HASH   offer, answer (JSON), createdAt
    {collection}:{roomId}:participants     ZSET   참가자 ID (score = 입장 시각)
    {collection}:{roomId}:offerCandidates  STREAM offerer 후보 로그
    {collection}:{roomId}:answerCandidates STREAM answerer 후보 로그
    {collection}:{roomId}:events           PUB/SUB 룸 변경 알림

Consistency:
    - offer/answer는 HSETNX로 기록되어 먼저 쓴 쪽만 남습니다.
    - 협상 필드 정리는 Lua 스크립트로 "저장된 sdp가 내 것일 때만" 삭제합니다.
    - 룸 변경 알림은 pub/sub 메시지를 받을 때마다 문서를 다시 읽어 전달하므로
      중복 전달은 있을 수 있지만 최신 상태는 누락되지 않습니다.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Type

import redis.asyncio as redis
from redis.exceptions import RedisError

from .base import (
    CandidateCallback,
    RoomCallback,
    SignalingChannel,
    Unsubscribe,
)
from ..shared import (
    CandidateRecord,
    IceCandidate,
    Role,
    Room,
    SessionDescription,
    SignalingError,
    SignalingReadFailed,
    SignalingWriteFailed,
)
from ..webrtc.config import signaling_config

logger = logging.getLogger(__name__)

# KEYS: room hash, participants zset
# ARGV: offer sdp ("" = keep), answer sdp ("" = keep), sender id
_CLEAR_NEGOTIATION_SCRIPT = """
local cleared = 0
for i, field in ipairs({'offer', 'answer'}) do
    local expected = ARGV[i]
    if expected ~= '' then
        local current = redis.call('HGET', KEYS[1], field)
        if current then
            local ok, decoded = pcall(cjson.decode, current)
            if ok and decoded['sdp'] == expected then
                redis.call('HDEL', KEYS[1], field)
                cleared = cleared + 1
            end
        end
    end
end
redis.call('ZREM', KEYS[2], ARGV[3])
return cleared
"""


def _dump_description(description: SessionDescription) -> str:
    return json.dumps(description.model_dump(), separators=(",", ":"))


def _load_description(raw: Optional[str]) -> Optional[SessionDescription]:
    if not raw:
        return None
    return SessionDescription.model_validate(json.loads(raw))


def _record_from_entry(entry_id: str, role: Role, fields: dict) -> CandidateRecord:
    mline_index = fields.get("sdpMLineIndex")
    candidate = IceCandidate(
        candidate=fields.get("candidate", ""),
        sdpMid=fields.get("sdpMid") or None,
        sdpMLineIndex=int(mline_index) if mline_index not in (None, "") else None,
        usernameFragment=fields.get("usernameFragment") or None,
    )
    return CandidateRecord(
        record_id=entry_id,
        role=role,
        sender_id=fields.get("senderId", ""),
        candidate=candidate,
    )


class RedisSignalingChannel(SignalingChannel):
    """Redis 위에 구현된 SignalingChannel.

    Args:
        client: decode_responses=True로 생성된 redis.asyncio 클라이언트
        collection: 키 prefix (기본값: SIGNALING_COLLECTION)

    Examples:
        >>> redis_mgr = get_redis_manager()
        >>> await redis_mgr.initialize()
        >>> channel = RedisSignalingChannel(redis_mgr.get_client())
        >>> room = await channel.get_room("r1")
    """

    def __init__(self, client: "redis.Redis", collection: Optional[str] = None):
        self.client = client
        self.collection = collection or signaling_config.COLLECTION
        self._clear_script = client.register_script(_CLEAR_NEGOTIATION_SCRIPT)
        self._tasks: set = set()

    # ------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------

    def room_key(self, room_id: str) -> str:
        return f"{self.collection}:{room_id}"

    def participants_key(self, room_id: str) -> str:
        return f"{self.collection}:{room_id}:participants"

    def candidates_key(self, room_id: str, role: Role) -> str:
        return f"{self.collection}:{room_id}:{role.candidate_log}"

    def events_channel(self, room_id: str) -> str:
        return f"{self.collection}:{room_id}:events"

    @asynccontextmanager
    async def _translate(self, error_cls: Type[SignalingError], operation: str, room_id: str):
        """Redis 예외를 시그널링 예외로 변환합니다."""
        try:
            yield
        except RedisError as e:
            logger.error(f"[Signaling] {operation} 실패 (room={room_id}): {type(e).__name__}: {e}")
            raise error_cls(operation, room_id, e) from e

    # ------------------------------------------------------------
    # Room document
    # ------------------------------------------------------------

    async def get_room(self, room_id: str) -> Optional[Room]:
        async with self._translate(SignalingReadFailed, "get_room", room_id):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hgetall(self.room_key(room_id))
                pipe.zrange(self.participants_key(room_id), 0, -1)
                doc, participants = await pipe.execute()

        if not doc and not participants:
            return None
        return Room(
            room_id=room_id,
            offer=_load_description(doc.get("offer")),
            answer=_load_description(doc.get("answer")),
            participants=list(participants),
        )

    async def create_or_merge_room(
        self,
        room_id: str,
        offer: Optional[SessionDescription] = None,
        answer: Optional[SessionDescription] = None,
        participant: Optional[str] = None,
    ) -> Room:
        room_key = self.room_key(room_id)
        async with self._translate(SignalingWriteFailed, "create_or_merge_room", room_id):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hsetnx(room_key, "createdAt", str(time.time()))
                if offer is not None:
                    pipe.hsetnx(room_key, "offer", _dump_description(offer))
                if answer is not None:
                    pipe.hsetnx(room_key, "answer", _dump_description(answer))
                if participant is not None:
                    pipe.zadd(self.participants_key(room_id), {participant: time.time()}, nx=True)
                pipe.publish(self.events_channel(room_id), "merge")
                await pipe.execute()

        logger.debug(f"[Signaling] 룸 병합: room={room_id}, offer={offer is not None}, "
                     f"answer={answer is not None}, participant={participant}")
        room = await self.get_room(room_id)
        return room if room is not None else Room(room_id=room_id)

    async def subscribe_room(self, room_id: str, on_change: RoomCallback) -> Unsubscribe:
        channel_name = self.events_channel(room_id)
        pubsub = self.client.pubsub()
        async with self._translate(SignalingReadFailed, "subscribe_room", room_id):
            await pubsub.subscribe(channel_name)

        async def deliver():
            room = await self.get_room(room_id)
            try:
                await on_change(room)
            except Exception as e:
                logger.error(f"[Signaling] 룸 구독 콜백 오류 (room={room_id}): {e}", exc_info=True)

        async def reader():
            needs_snapshot = True
            while True:
                try:
                    if needs_snapshot:
                        needs_snapshot = False
                        await deliver()
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message is not None:
                        await deliver()
                except asyncio.CancelledError:
                    raise
                except (RedisError, SignalingError) as e:
                    # Events may have been missed while failing; resend the latest snapshot
                    logger.warning(f"[Signaling] 룸 구독 일시 오류 (room={room_id}): {e}")
                    needs_snapshot = True
                    await asyncio.sleep(signaling_config.SUBSCRIPTION_BACKOFF)

        task = self._spawn(reader())

        async def unsubscribe():
            await self._cancel(task)
            try:
                await pubsub.unsubscribe(channel_name)
                await pubsub.aclose()
            except RedisError as e:
                logger.warning(f"[Signaling] 룸 구독 해제 오류 (room={room_id}): {e}")

        return unsubscribe

    async def clear_negotiation(
        self,
        room_id: str,
        sender_id: str,
        offer: Optional[SessionDescription] = None,
        answer: Optional[SessionDescription] = None,
    ) -> None:
        async with self._translate(SignalingWriteFailed, "clear_negotiation", room_id):
            cleared = await self._clear_script(
                keys=[self.room_key(room_id), self.participants_key(room_id)],
                args=[offer.sdp if offer else "", answer.sdp if answer else "", sender_id],
            )
            await self.client.publish(self.events_channel(room_id), "clear")
        logger.debug(f"[Signaling] 협상 정리: room={room_id}, sender={sender_id}, cleared={cleared}")

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
        fields = {
            key: "" if value is None else str(value)
            for key, value in candidate.to_json().items()
        }
        fields["senderId"] = sender_id
        async with self._translate(SignalingWriteFailed, "append_candidate", room_id):
            entry_id = await self.client.xadd(self.candidates_key(room_id, role), fields)
        return CandidateRecord(record_id=entry_id, role=role, sender_id=sender_id, candidate=candidate)

    async def subscribe_candidates(
        self,
        room_id: str,
        role: Role,
        exclude_sender_id: str,
        on_added: CandidateCallback,
    ) -> Unsubscribe:
        stream_key = self.candidates_key(room_id, role)

        async def reader():
            last_id = "0"
            while True:
                try:
                    response = await self.client.xread(
                        {stream_key: last_id},
                        block=signaling_config.SUBSCRIPTION_BLOCK_MS,
                        count=100,
                    )
                except asyncio.CancelledError:
                    raise
                except RedisError as e:
                    logger.warning(f"[Signaling] 후보 구독 일시 오류 ({stream_key}): {e}")
                    await asyncio.sleep(signaling_config.SUBSCRIPTION_BACKOFF)
                    continue

                for _stream, entries in response or []:
                    for entry_id, fields in entries:
                        last_id = entry_id
                        if fields.get("senderId") == exclude_sender_id:
                            continue
                        record = _record_from_entry(entry_id, role, fields)
                        try:
                            await on_added(record)
                        except Exception as e:
                            logger.error(f"[Signaling] 후보 구독 콜백 오류 ({stream_key}): {e}", exc_info=True)

        task = self._spawn(reader())

        async def unsubscribe():
            await self._cancel(task)

        return unsubscribe

    async def delete_own_candidates(self, room_id: str, sender_id: str) -> int:
        deleted = 0
        async with self._translate(SignalingWriteFailed, "delete_own_candidates", room_id):
            for role in (Role.OFFERING, Role.ANSWERING):
                stream_key = self.candidates_key(room_id, role)
                entries = await self.client.xrange(stream_key, "-", "+")
                own_ids = [entry_id for entry_id, fields in entries if fields.get("senderId") == sender_id]
                if own_ids:
                    deleted += await self.client.xdel(stream_key, *own_ids)
        return deleted

    # ------------------------------------------------------------
    # Background readers
    # ------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _cancel(self, task: asyncio.Task) -> None:
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """남아 있는 구독 리더를 모두 중지합니다. 연결 풀은 RedisManager가 닫습니다."""
        for task in list(self._tasks):
            await self._cancel(task)
