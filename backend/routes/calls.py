"""통화 제어 API 라우터.

Call View가 통화 코어를 조작하는 HTTP/WebSocket 엔드포인트를 제공합니다.
이 프로세스가 한 룸에서 대표하는 로컬 참가자는 하나이며, 세션은 룸 ID로
관리됩니다.

Endpoints:
    POST /api/calls/join              : 룸 입장 및 협상 시작
    POST /api/calls/{room_id}/hangup  : 통화 종료
    POST /api/calls/{room_id}/mute    : 마이크 음소거 토글
    POST /api/calls/{room_id}/video   : 카메라 끄기 토글
    GET  /api/calls/{room_id}         : 세션 상태 조회
    WS   /ws/calls/{room_id}          : 상태 문구 스트림
    GET  /api/rooms/{room_id}         : 룸 문서 조회 (읽기 전용)
    GET  /api/ice-servers             : 클라이언트용 STUN 목록
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from carecall.call import CallSessionController, default_peer_factory
from carecall.media import MediaDeviceController, RemoteMediaSink
from carecall.shared import CallError, MediaError, SignalingError
from carecall.signaling import SignalingChannel
from carecall.webrtc import ice_config
from .deps import verify_auth_header, verify_ws_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["calls"])

# 글로벌 참조 (app.py에서 설정됨)
_channel: Optional[SignalingChannel] = None
_media_factory: Callable[[], MediaDeviceController] = MediaDeviceController
_peer_factory = default_peer_factory
_calls: Dict[str, "ActiveCall"] = {}


class JoinRequest(BaseModel):
    """룸 입장 요청."""
    user_id: str = Field(min_length=1)
    room_id: str = Field(min_length=1)


@dataclass
class ActiveCall:
    """API가 보유한 통화 하나. 세션과 원격 미디어 싱크를 묶습니다."""

    session: CallSessionController
    sink: RemoteMediaSink = field(default_factory=RemoteMediaSink)
    listeners: Set[asyncio.Queue] = field(default_factory=set)
    # 세션 종료를 감시해 싱크를 멈추고 등록을 해제하는 태스크
    watcher: Optional[asyncio.Task] = None

    def publish(self, status: str) -> None:
        for queue in self.listeners:
            queue.put_nowait(status)

    def snapshot(self) -> dict:
        session = self.session
        remote = session.remote_stream
        return {
            "room_id": session.room_id,
            "user_id": session.user_id,
            "state": session.state.value,
            "role": session.role.value,
            "connection_status": session.connection_status,
            "is_muted": session.is_muted,
            "is_video_off": session.is_video_off,
            "remote_tracks": [track.kind for track in remote.tracks] if remote else [],
            "error": str(session.error) if session.error else None,
        }

    async def end(self) -> None:
        await self.session.hang_up()
        await self.sink.stop()


def init_calls(
    channel: SignalingChannel,
    media_factory: Optional[Callable[[], MediaDeviceController]] = None,
    peer_factory=None,
):
    """시그널링 채널과 팩토리를 설정합니다.

    app.py의 lifespan에서 호출합니다. 테스트는 가짜 장치/전송 팩토리를 넘깁니다.
    """
    global _channel, _media_factory, _peer_factory
    _channel = channel
    _media_factory = media_factory or MediaDeviceController
    _peer_factory = peer_factory or default_peer_factory
    logger.info(f"통화 라우터 초기화 완료: channel={type(channel).__name__}")


def get_active_calls() -> Dict[str, ActiveCall]:
    return _calls


def _unregister(room_id: str, call: ActiveCall) -> None:
    if _calls.get(room_id) is call:
        del _calls[room_id]


async def _watch_call(room_id: str, call: ActiveCall) -> None:
    """세션이 스스로 종료되면 (전송 실패, 상대 종료) 싱크를 멈추고 등록을 해제합니다."""
    await call.session.wait_closed()
    await call.sink.stop()
    if _calls.get(room_id) is call:
        del _calls[room_id]
        logger.info(f"[Call] 종료된 통화 정리: {room_id} ({call.session.connection_status})")


async def hangup_all() -> int:
    """모든 활성 통화를 종료합니다. 종료한 통화 수를 반환합니다."""
    calls = list(_calls.values())
    _calls.clear()
    for call in calls:
        try:
            await call.end()
        except Exception as e:
            logger.error(f"통화 종료 중 오류 ({call.session.room_id}): {e}")
    return len(calls)


def _require_channel() -> SignalingChannel:
    if _channel is None:
        raise HTTPException(status_code=503, detail="Signaling channel not ready")
    return _channel


def _get_call(room_id: str) -> ActiveCall:
    call = _calls.get(room_id)
    if call is None:
        raise HTTPException(status_code=404, detail="No active call for this room")
    return call


@router.post("/api/calls/join")
async def join_call(request: JoinRequest, _: bool = Depends(verify_auth_header)):
    """룸에 입장하여 통화 협상을 시작합니다.

    Args:
        request: user_id, room_id

    Returns:
        dict: 세션 상태

    Raises:
        HTTPException: 409 (이미 통화 중), 422 (장치 획득 실패), 503 (시그널링 오류)
    """
    channel = _require_channel()
    existing = _calls.get(request.room_id)
    if existing is not None:
        if not existing.session.is_closed:
            raise HTTPException(status_code=409, detail="Call already active for this room")
        # closed on its own; finish its cleanup before replacing it
        await existing.end()
        _unregister(request.room_id, existing)

    session = CallSessionController(channel, media=_media_factory(), peer_factory=_peer_factory)
    call = ActiveCall(session=session)
    session.on_status_change = call.publish
    session.on_remote_track = call.sink.add_track
    _calls[request.room_id] = call
    call.watcher = asyncio.create_task(_watch_call(request.room_id, call))

    try:
        await session.join(request.user_id, request.room_id)
    except MediaError as e:
        await call.sink.stop()
        logger.warning(f"[Call] 장치 획득 실패: {request.user_id[:8]}@{request.room_id}: {e}")
        raise HTTPException(status_code=422, detail=session.connection_status)
    except SignalingError as e:
        await call.sink.stop()
        raise HTTPException(status_code=503, detail=str(e))
    except CallError as e:
        await call.sink.stop()
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(f"[Call] 입장: {request.user_id[:8]}@{request.room_id} role={session.role.value}")
    return call.snapshot()


@router.post("/api/calls/{room_id}/hangup")
async def hangup_call(room_id: str, _: bool = Depends(verify_auth_header)):
    """통화를 종료하고 세션을 제거합니다."""
    call = _get_call(room_id)
    await call.end()
    _unregister(room_id, call)
    return call.snapshot()


@router.post("/api/calls/{room_id}/mute")
async def toggle_mute(room_id: str, _: bool = Depends(verify_auth_header)):
    call = _get_call(room_id)
    return {"is_muted": call.session.toggle_mute()}


@router.post("/api/calls/{room_id}/video")
async def toggle_video(room_id: str, _: bool = Depends(verify_auth_header)):
    call = _get_call(room_id)
    return {"is_video_off": call.session.toggle_video()}


@router.get("/api/calls/{room_id}")
async def get_call_status(room_id: str, _: bool = Depends(verify_auth_header)):
    return _get_call(room_id).snapshot()


@router.websocket("/ws/calls/{room_id}")
async def call_status_stream(websocket: WebSocket, room_id: str, token: Optional[str] = Query(None)):
    """세션의 connection_status 변경을 실시간으로 전달합니다.

    연결 직후 현재 상태를 한 번 보내고, 이후 변경마다
    {"type": "status", "status": ..., "state": ...} 메시지를 보냅니다.
    세션이 종료되면 마지막 상태를 보낸 뒤 연결을 닫습니다.
    """
    if not verify_ws_token(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return
    call = _calls.get(room_id)
    if call is None:
        await websocket.close(code=4004, reason="No active call")
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    call.listeners.add(queue)
    session = call.session
    try:
        status = session.connection_status
        while True:
            await websocket.send_json({"type": "status", "status": status, "state": session.state.value})
            if session.is_ended and queue.empty():
                break
            status = await queue.get()
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"[Call] 상태 스트림 연결 종료: {room_id}")
    finally:
        call.listeners.discard(queue)


@router.get("/api/rooms/{room_id}")
async def get_room(room_id: str, _: bool = Depends(verify_auth_header)):
    """룸 문서를 그대로 조회합니다 (읽기 전용)."""
    channel = _require_channel()
    try:
        room = await channel.get_room(room_id)
    except SignalingError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return {"room_id": room_id, **room.to_document(), "negotiated": room.is_negotiated}


@router.get("/api/ice-servers")
async def get_ice_servers(_: bool = Depends(verify_auth_header)):
    """클라이언트가 사용할 ICE 서버 목록 (STUN 전용, TURN 없음)."""
    return {"iceServers": ice_config.as_dicts()}
