"""Health Check API 라우터.

서비스 상태 확인을 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter

from carecall.database import get_redis_manager
from carecall.webrtc import signaling_config

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check():
    """전체 서비스 상태를 확인합니다.

    Returns:
        dict: 시그널링 백엔드와 Redis 연결 상태
    """
    redis_mgr = get_redis_manager()
    redis_status = "ok"

    if not redis_mgr.is_initialized:
        redis_status = "not_initialized"
    elif not await redis_mgr.ping():
        redis_status = "error"

    # 인메모리 백엔드는 Redis 없이도 정상
    if signaling_config.BACKEND == "memory":
        overall = "ok"
    else:
        overall = "ok" if redis_status == "ok" else "degraded"

    return {
        "status": overall,
        "signaling_backend": signaling_config.BACKEND,
        "services": {
            "redis": redis_status,
        }
    }


@router.get("/redis")
async def redis_health_check():
    """Redis 상태를 확인합니다.

    Returns:
        dict: Redis 연결 상태 정보
    """
    redis_mgr = get_redis_manager()
    if not redis_mgr.is_initialized:
        return {"status": "error", "message": "Redis not initialized"}
    pong = await redis_mgr.ping()
    if not pong:
        return {"status": "error", "message": "Redis ping failed"}
    return {"status": "ok", "connected": pong}
