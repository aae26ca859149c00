"""통화 세션 컨트롤러.

미디어 장치, 피어 연결, 시그널링 채널을 조율하여 한 참가자의 통화 시도를
처음부터 끝까지 관리합니다.

State Machine:
    IDLE → ACQUIRING_MEDIA → NEGOTIATING(OFFERING | ANSWERING) → CONNECTED → CLOSED

Role Resolution:
    - 룸이 없거나 offer가 없음 → offerer: offer 작성 후 answer를 기다림
    - offer만 있음 → answerer: answer 작성 후 전송, 상대가 offer를 정리하면 종료
    - offer/answer 모두 있음 → 참가자 목록에만 추가 (재접속 미지원)
    - offer 경합 → 진 쪽 전송을 폐기하고 역할을 다시 결정 (answerer가 됨)

Concurrency:
    모든 외부 이벤트는 세대(generation)가 붙은 메시지로 변환되어 하나의 큐에서
    단일 디스패치 태스크가 처리합니다. 전송이 폐기되거나 세션이 종료되면 세대가
    바뀌므로 이전 세대의 알림은 무시됩니다.

Hangup:
    각 정리 단계는 독립적으로 실패할 수 있으며 실패는 로그로만 남습니다.
    hang_up()은 여러 경로에서 동시에 호출되어도 한 번만 실행됩니다.

Examples:
    >>> async with CallSessionController(channel) as session:
    ...     await session.join("nurse-1", "room-42")
    ...     await session.wait_until_connected()
    ...     session.toggle_mute()
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from aiortc import MediaStreamTrack

from .states import (
    CallState,
    ConnectionStateChanged,
    LocalCandidateGathered,
    RemoteCandidateAdded,
    RemoteDescriptionApplied,
    RemoteTrackReceived,
    RoomChanged,
    SessionMessage,
    STATUS_ACQUIRING_MEDIA,
    STATUS_ANSWER_SENT,
    STATUS_CONNECTING,
    STATUS_ENDED,
    STATUS_MEDIA_ERROR,
    STATUS_OFFER_CREATED,
    STATUS_ROOM_NEGOTIATED,
    connection_status,
)
from ..media import MediaDeviceController
from ..shared import (
    CallError,
    CandidateRecord,
    CleanupPartialFailure,
    IceCandidate,
    MediaError,
    NegotiationRaceDetected,
    Role,
    Room,
    SessionDescription,
    SignalingError,
    TransportDisconnected,
    TransportFailed,
)
from ..signaling import SignalingChannel, Unsubscribe
from ..webrtc import ConnectionConfig, MediaStream, PeerConnectionManager, connection_config

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]
RemoteTrackCallback = Callable[[MediaStreamTrack], Awaitable[None]]


def default_peer_factory(label: str) -> PeerConnectionManager:
    return PeerConnectionManager(label=label)


class CallSessionController:
    """한 참가자의 통화 세션 상태 머신.

    Attributes:
        channel (SignalingChannel): 시그널링 채널 (주입)
        media (MediaDeviceController): 로컬 장치 컨트롤러
        state (CallState): 현재 상태
        role (Role): 협상 역할 (offerer/answerer/미정)
        connection_status (str): Call View에 표시할 상태 문구
        local_stream (Optional[MediaStream]): 로컬 스트림 (media 소유)
        error (Optional[CallError]): 세션을 종료시킨 오류
        on_status_change (Optional[StatusCallback]): 상태 문구 변경 콜백
        on_remote_track (Optional[RemoteTrackCallback]): 원격 트랙 수신 콜백

    Note:
        세션 하나는 join()을 한 번만 할 수 있습니다. 다시 입장하려면 새 세션을
        만들어야 합니다.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        media: Optional[MediaDeviceController] = None,
        peer_factory: Optional[Callable[[str], PeerConnectionManager]] = None,
        config: ConnectionConfig = connection_config,
        on_status_change: Optional[StatusCallback] = None,
    ):
        self.channel = channel
        self.media = media if media is not None else MediaDeviceController()
        self.peer_factory = peer_factory or default_peer_factory
        self.config = config
        self.on_status_change = on_status_change
        self.on_remote_track: Optional[RemoteTrackCallback] = None

        self.user_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.state = CallState.IDLE
        self.role = Role.UNDECIDED
        self.connection_status = ""
        self.error: Optional[CallError] = None
        self.local_stream: Optional[MediaStream] = None
        self.peer: Optional[PeerConnectionManager] = None

        self._generation = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._negotiation_task: Optional[asyncio.Task] = None
        self._hangup_task: Optional[asyncio.Task] = None
        self._signaling_lock = asyncio.Lock()

        self._room_unsubscribe: Optional[Unsubscribe] = None
        self._candidate_unsubscribe: Optional[Unsubscribe] = None
        self._own_description: Optional[SessionDescription] = None
        self._remote_description: Optional[SessionDescription] = None
        self._remote_ready = False
        self._pending_candidates: List[CandidateRecord] = []
        self._seen_record_ids: set = set()
        self._touched_room = False

        self._connected = asyncio.Event()
        self._closed = asyncio.Event()

    # ------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self.peer.remote_stream if self.peer is not None else None

    @property
    def is_muted(self) -> bool:
        return not self.media.audio_enabled

    @property
    def is_video_off(self) -> bool:
        return not self.media.video_enabled

    @property
    def is_closed(self) -> bool:
        return self.state is CallState.CLOSED

    @property
    def is_ended(self) -> bool:
        """hangup 정리까지 모두 끝났는지 여부."""
        return self._closed.is_set()

    def _set_status(self, status: str) -> None:
        self.connection_status = status
        logger.info(f"[Call] {self._tag} 상태: {status}")
        if self.on_status_change:
            try:
                self.on_status_change(status)
            except Exception as e:
                logger.error(f"[Call] 상태 콜백 오류: {type(e).__name__}: {e}", exc_info=True)

    def _transition(self, state: CallState) -> None:
        if self.state is state:
            return
        logger.info(f"[Call] {self._tag} {self.state.value} → {state.value}")
        self.state = state

    @property
    def _tag(self) -> str:
        return f"{(self.user_id or '-')[:8]}@{self.room_id or '-'}"

    # ------------------------------------------------------------
    # Call View controls
    # ------------------------------------------------------------

    async def join(self, user_id: str, room_id: str) -> None:
        """룸에 입장하여 협상을 시작합니다.

        협상이 시작되면(offer/answer 기록) 반환합니다. 연결 완료는
        wait_until_connected()로 기다립니다.

        Args:
            user_id: 호출자가 제공하는 안정적인 참가자 ID
            room_id: 룸 ID

        Raises:
            MediaError: 카메라/마이크 획득 실패 (룸에는 아무것도 기록되지 않음)
            SignalingError: 재시도 후에도 시그널링 저장소 오류
            RuntimeError: 이미 join()한 세션
        """
        if self.state is not CallState.IDLE:
            raise RuntimeError(f"session already {self.state.value}; create a new session to re-join")

        self.user_id = user_id
        self.room_id = room_id
        self._transition(CallState.ACQUIRING_MEDIA)
        self._set_status(STATUS_CONNECTING)

        self._negotiation_task = asyncio.create_task(self._establish())
        try:
            await self._negotiation_task
        except asyncio.CancelledError:
            await asyncio.shield(self._request_hangup(STATUS_ENDED))
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # hang_up() or a transport failure ended the attempt first
            if self.error is not None:
                raise self.error
        except CallError as e:
            self._record_error(e)
            await asyncio.shield(self._request_hangup(self._error_status(e)))
            raise
        except Exception as e:
            logger.error(f"[Call] {self._tag} 협상 중 예외: {type(e).__name__}: {e}", exc_info=True)
            await asyncio.shield(self._request_hangup(f"Error: {e}"))
            raise

    async def hang_up(self) -> None:
        """통화를 종료하고 모든 자원을 정리합니다. 여러 번 호출해도 한 번만 실행됩니다."""
        await asyncio.shield(self._request_hangup(STATUS_ENDED))

    def toggle_mute(self) -> bool:
        """마이크 음소거를 토글합니다. 새 음소거 여부를 반환합니다."""
        self.media.toggle_audio()
        return self.is_muted

    def toggle_video(self) -> bool:
        """카메라 끄기를 토글합니다. 새 비디오 꺼짐 여부를 반환합니다."""
        self.media.toggle_video()
        return self.is_video_off

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        """전송 연결이 완료될 때까지 기다립니다.

        Args:
            timeout: 최대 대기 시간 (초, 기본값: config.CONNECT_TIMEOUT)

        Returns:
            bool: 연결되면 True, 타임아웃이거나 오류 없이 종료되면 False

        Raises:
            CallError: 세션이 오류로 종료된 경우 그 오류
        """
        timeout = self.config.CONNECT_TIMEOUT if timeout is None else timeout
        waiters = [
            asyncio.ensure_future(self._connected.wait()),
            asyncio.ensure_future(self._closed.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if self._connected.is_set():
            return True
        if self.error is not None:
            raise self.error
        return False

    async def wait_closed(self) -> None:
        """hangup 정리가 끝날 때까지 기다립니다. 종료 원인과 관계없이 반환합니다."""
        await self._closed.wait()

    async def __aenter__(self) -> "CallSessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.hang_up()

    # ------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------

    async def _establish(self) -> None:
        self._set_status(STATUS_ACQUIRING_MEDIA)
        self.local_stream = await self.media.acquire()

        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._touched_room = True
        self._transition(CallState.NEGOTIATING)

        attempts = self.config.MAX_ROLE_RESOLUTIONS
        for attempt in range(1, attempts + 1):
            self._build_peer()
            try:
                await self._resolve_role()
                return
            except NegotiationRaceDetected:
                logger.info(f"[Call] {self._tag} offer 경합 감지 ({attempt}/{attempts}), 역할 재결정")
                await self._discard_transport()
                if attempt == attempts:
                    raise

    async def _resolve_role(self) -> None:
        room = await self._signaling("get_room", self.channel.get_room, self.room_id)
        if room is None or room.offer is None:
            await self._negotiate_as_offerer()
        elif room.answer is None:
            await self._negotiate_as_answerer(room.offer)
        else:
            await self._signaling(
                "create_or_merge_room", self.channel.create_or_merge_room,
                self.room_id, participant=self.user_id,
            )
            logger.warning(f"[Call] {self._tag} 이미 협상된 룸, 참가자만 추가")
            self._set_status(STATUS_ROOM_NEGOTIATED)

    async def _negotiate_as_offerer(self) -> None:
        peer = self.peer
        offer = await peer.create_offer()
        self._own_description = await peer.set_local_description(offer)
        self.role = peer.role

        room = await self._signaling(
            "create_or_merge_room", self.channel.create_or_merge_room,
            self.room_id, offer=self._own_description, participant=self.user_id,
        )
        if room.offer != self._own_description:
            raise NegotiationRaceDetected(self.room_id)

        self._set_status(STATUS_OFFER_CREATED)
        generation = self._generation
        self._candidate_unsubscribe = await self._signaling(
            "subscribe_candidates", self.channel.subscribe_candidates,
            self.room_id, self.role.peer, self.user_id, self._candidate_listener(generation),
        )
        self._room_unsubscribe = await self._signaling(
            "subscribe_room", self.channel.subscribe_room,
            self.room_id, self._room_listener(generation),
        )

    async def _negotiate_as_answerer(self, offer: SessionDescription) -> None:
        peer = self.peer
        generation = self._generation
        # offerer candidates stay buffered until the offer is applied
        self._candidate_unsubscribe = await self._signaling(
            "subscribe_candidates", self.channel.subscribe_candidates,
            self.room_id, Role.OFFERING, self.user_id, self._candidate_listener(generation),
        )

        await peer.set_remote_description(offer)
        self._remote_description = offer
        self._enqueue(RemoteDescriptionApplied(generation))

        answer = await peer.create_answer()
        self._own_description = await peer.set_local_description(answer)
        self.role = peer.role

        room = await self._signaling(
            "create_or_merge_room", self.channel.create_or_merge_room,
            self.room_id, answer=self._own_description, participant=self.user_id,
        )
        if room.answer != self._own_description:
            # another client answered first
            raise NegotiationRaceDetected(self.room_id)

        self._set_status(STATUS_ANSWER_SENT)
        # the offerer clears its offer on hangup
        self._room_unsubscribe = await self._signaling(
            "subscribe_room", self.channel.subscribe_room,
            self.room_id, self._room_listener(generation),
        )

    def _build_peer(self) -> None:
        self._generation += 1
        generation = self._generation
        peer = self.peer_factory(self.user_id)

        async def on_ice_candidate(candidate: IceCandidate, role: Role):
            self._enqueue(LocalCandidateGathered(generation, candidate, role))

        async def on_remote_track(track: MediaStreamTrack, stream: MediaStream):
            self._enqueue(RemoteTrackReceived(generation, track, stream))

        async def on_connection_state_change(state: str):
            self._enqueue(ConnectionStateChanged(generation, state))

        peer.on_ice_candidate_callback = on_ice_candidate
        peer.on_remote_track_callback = on_remote_track
        peer.on_connection_state_change_callback = on_connection_state_change
        peer.add_local_tracks(self.local_stream)
        self.peer = peer

    async def _discard_transport(self) -> None:
        """경합에서 진 전송과 그 후보를 폐기합니다. 로컬 트랙은 유지합니다."""
        async with self._signaling_lock:
            self._generation += 1
            await self._unsubscribe_all()
            self._pending_candidates = []
            self._seen_record_ids = set()
            self._remote_ready = False
            self._own_description = None
            self._remote_description = None
            self.role = Role.UNDECIDED

            if self.peer is not None:
                await self.peer.close(stop_tracks=False)
            deleted = await self._signaling(
                "delete_own_candidates", self.channel.delete_own_candidates,
                self.room_id, self.user_id,
            )
            logger.info(f"[Call] {self._tag} 폐기된 전송의 후보 {deleted}개 삭제")

    async def _signaling(self, operation: str, func, *args, **kwargs):
        """시그널링 호출. 일시 오류는 설정된 횟수만큼 재시도합니다."""
        retries = self.config.SIGNALING_RETRY_ATTEMPTS
        for attempt in range(retries + 1):
            try:
                return await func(*args, **kwargs)
            except SignalingError as e:
                if attempt >= retries:
                    logger.error(f"[Call] {self._tag} {operation} 실패 (재시도 소진): {e}")
                    raise
                logger.warning(f"[Call] {self._tag} {operation} 실패, 재시도 ({attempt + 1}/{retries}): {e}")
                await asyncio.sleep(self.config.SIGNALING_RETRY_DELAY)

    # ------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------

    def _enqueue(self, message: SessionMessage) -> None:
        self._queue.put_nowait(message)

    def _room_listener(self, generation: int):
        async def on_change(room: Optional[Room]):
            self._enqueue(RoomChanged(generation, room))
        return on_change

    def _candidate_listener(self, generation: int):
        async def on_added(record: CandidateRecord):
            self._enqueue(RemoteCandidateAdded(generation, record))
        return on_added

    def _is_stale(self, message: SessionMessage) -> bool:
        return message.generation != self._generation or self.state is CallState.CLOSED

    async def _dispatch_loop(self) -> None:
        while True:
            message = await self._queue.get()
            if self._is_stale(message):
                logger.debug(f"[Call] {self._tag} 이전 세대 메시지 무시: {type(message).__name__}")
                continue
            try:
                await self._handle(message)
            except CallError as e:
                self._fail(e)
            except Exception as e:
                logger.error(f"[Call] {self._tag} {type(message).__name__} 처리 오류: "
                             f"{type(e).__name__}: {e}", exc_info=True)
                error = TransportFailed("failed")
                error.__cause__ = e
                self._fail(error)

    async def _handle(self, message: SessionMessage) -> None:
        if isinstance(message, LocalCandidateGathered):
            await self._on_local_candidate(message)
        elif isinstance(message, RemoteCandidateAdded):
            await self._on_remote_candidate(message.record)
        elif isinstance(message, RemoteDescriptionApplied):
            await self._flush_pending_candidates()
        elif isinstance(message, RoomChanged):
            await self._on_room_changed(message.room)
        elif isinstance(message, ConnectionStateChanged):
            self._on_connection_state(message.state)
        elif isinstance(message, RemoteTrackReceived):
            logger.info(f"[Call] {self._tag} 원격 {message.track.kind} 트랙 수신")
            if self.on_remote_track:
                await self.on_remote_track(message.track)

    async def _on_local_candidate(self, message: LocalCandidateGathered) -> None:
        async with self._signaling_lock:
            if self._is_stale(message):
                return
            await self._signaling(
                "append_candidate", self.channel.append_candidate,
                self.room_id, message.role, message.candidate, self.user_id,
            )

    async def _on_remote_candidate(self, record: CandidateRecord) -> None:
        if record.record_id in self._seen_record_ids:
            logger.debug(f"[Call] {self._tag} 중복 후보 무시: {record.record_id}")
            return
        self._seen_record_ids.add(record.record_id)
        if not self._remote_ready:
            self._pending_candidates.append(record)
            return
        await self._apply_remote_candidate(record)

    async def _flush_pending_candidates(self) -> None:
        self._remote_ready = True
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.info(f"[Call] {self._tag} 버퍼링된 원격 후보 {len(pending)}개 적용")
        for record in pending:
            await self._apply_remote_candidate(record)

    async def _apply_remote_candidate(self, record: CandidateRecord) -> None:
        try:
            await self.peer.add_ice_candidate(record.candidate)
        except ValueError as e:
            logger.warning(f"[Call] {self._tag} 원격 후보 적용 실패 ({record.record_id}): {e}")

    async def _on_room_changed(self, room: Optional[Room]) -> None:
        if self.role is Role.ANSWERING:
            if room is None or room.offer != self._remote_description:
                logger.info(f"[Call] {self._tag} 상대가 offer를 정리함, 통화 종료")
                self._fail(TransportDisconnected("closed"))
            return
        if self.role is not Role.OFFERING:
            return
        if room is None:
            logger.info(f"[Call] {self._tag} 룸 문서 없음")
            return
        if room.answer is not None and self._remote_description is None:
            self._remote_description = room.answer
            await self.peer.set_remote_description(room.answer)
            logger.info(f"[Call] {self._tag} answer 수신 및 적용")
            await self._flush_pending_candidates()

    def _on_connection_state(self, state: str) -> None:
        self._set_status(connection_status(state))
        if state == "connected":
            self._transition(CallState.CONNECTED)
            self._connected.set()
        elif state == "failed":
            self._fail(TransportFailed(state))
        elif state == "closed":
            # own close bumps the generation first, so this is the remote side going away
            self._fail(TransportDisconnected(state))
        elif state == "disconnected" and self.config.CLOSE_ON_DISCONNECT:
            self._fail(TransportDisconnected(state))

    def _fail(self, error: CallError) -> None:
        logger.error(f"[Call] {self._tag} 세션 오류: {type(error).__name__}: {error}")
        self._record_error(error)
        self._request_hangup(self._error_status(error))

    def _record_error(self, error: CallError) -> None:
        if self.error is None:
            self.error = error

    @staticmethod
    def _error_status(error: BaseException) -> str:
        if isinstance(error, MediaError):
            return STATUS_MEDIA_ERROR
        return f"Error: {error}"

    # ------------------------------------------------------------
    # Hangup
    # ------------------------------------------------------------

    def _request_hangup(self, final_status: str) -> asyncio.Task:
        if self._hangup_task is None:
            self._hangup_task = asyncio.create_task(self._teardown(final_status))
        return self._hangup_task

    async def _teardown(self, final_status: str) -> None:
        logger.info(f"[Call] {self._tag} 통화 종료 시작 (state={self.state.value}, role={self.role.value})")
        role = self.role
        self._generation += 1
        self._transition(CallState.CLOSED)

        steps = [
            ("cancel_negotiation", self._cancel_negotiation),
            ("unsubscribe", self._unsubscribe_all),
            ("stop_dispatch", self._stop_dispatch),
            ("delete_own_candidates", self._delete_own_candidates),
            ("clear_negotiation", lambda: self._clear_negotiation(role)),
            ("close_transport", self._close_transport),
            ("release_media", self._release_media),
        ]
        failures = []
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.warning(f"[Call] {self._tag} 정리 단계 실패: {name}: {type(e).__name__}: {e}")
                failures.append((name, e))

        if failures:
            logger.warning(f"[Call] {self._tag} {CleanupPartialFailure(failures)}")
        self._set_status(final_status)
        self._closed.set()
        logger.info(f"[Call] {self._tag} 통화 종료 완료")

    async def _cancel_negotiation(self) -> None:
        task = self._negotiation_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.wait([task])

    async def _unsubscribe_all(self) -> None:
        unsubscribers = [self._candidate_unsubscribe, self._room_unsubscribe]
        self._candidate_unsubscribe = None
        self._room_unsubscribe = None
        for unsubscribe in unsubscribers:
            if unsubscribe is not None:
                await unsubscribe()

    async def _stop_dispatch(self) -> None:
        task, self._dispatch_task = self._dispatch_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    async def _delete_own_candidates(self) -> None:
        if not self._touched_room:
            return
        await self.channel.delete_own_candidates(self.room_id, self.user_id)

    async def _clear_negotiation(self, role: Role) -> None:
        if not self._touched_room:
            return
        offer = answer = None
        if role is Role.OFFERING:
            offer = self._own_description
            room = await self.channel.get_room(self.room_id)
            if room is not None and room.offer == offer:
                answer = room.answer
        elif role is Role.ANSWERING:
            answer = self._own_description
        await self.channel.clear_negotiation(self.room_id, self.user_id, offer=offer, answer=answer)

    async def _close_transport(self) -> None:
        if self.peer is not None:
            await self.peer.close()

    async def _release_media(self) -> None:
        self.media.release()
