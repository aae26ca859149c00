"""FastAPI Call Control Server.

이 모듈은 방문 간호 대시보드의 1:1 화상 통화 코어를 HTTP/WebSocket으로
노출하는 서버를 제공합니다. 통화 협상은 공유 문서 저장소(Redis)를 통해서만
이루어지며, 이 서버는 시그널링 메시지를 중계하지 않습니다.

주요 기능:
    - 룸 입장/종료, 음소거/비디오 토글 API
    - 세션 상태 문구 WebSocket 스트림
    - 룸 문서 조회 및 STUN 서버 목록 제공
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - CallSessionController: 참가자별 통화 상태 머신
    - SignalingChannel: Redis(운영) 또는 인메모리(로컬 개발) 문서 저장소
    - RemoteMediaSink: 원격 트랙 소비 (헤드리스 엔드포인트)
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carecall.database import get_redis_manager
from carecall.signaling import InMemorySignalingChannel, RedisSignalingChannel, SignalingChannel
from carecall.webrtc import signaling_config
from routes import health_router, calls_router, init_calls, hangup_all
from dotenv import load_dotenv
from pathlib import Path

# Load 환경변수 로드 variables from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{__import__('datetime').datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 60일 (2개월)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    import glob
    from datetime import datetime, timedelta

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file).replace("server_", "").replace(".log", "")
            if datetime.strptime(date_str, "%Y%m%d") < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


redis_manager = get_redis_manager()
signaling_channel: Optional[SignalingChannel] = None


async def create_signaling_channel() -> SignalingChannel:
    """설정된 백엔드의 시그널링 채널을 만듭니다.

    Redis 연결에 실패하면 인메모리 채널로 대체합니다 (단일 프로세스 안의
    참가자끼리만 통화 가능).
    """
    if signaling_config.BACKEND == "memory":
        logger.info("인메모리 시그널링 채널 사용")
        return InMemorySignalingChannel()

    if await redis_manager.initialize():
        logger.info("Redis 연결 완료")
        return RedisSignalingChannel(redis_manager.get_client())

    logger.warning("Redis 사용 불가, 인메모리 시그널링 채널로 실행")
    return InMemorySignalingChannel()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Note:
        - 시작: 오래된 로그 정리, 시그널링 채널 생성
        - 종료: 모든 활성 통화 종료, 채널 및 Redis 연결 종료
    """
    global signaling_channel

    logger.info("통화 제어 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    signaling_channel = await create_signaling_channel()
    init_calls(signaling_channel)

    yield

    logger.info("서버 종료 중...")

    ended = await hangup_all()
    if ended:
        logger.info(f"활성 통화 {ended}개 종료됨")

    await signaling_channel.close()

    if redis_manager.is_initialized:
        await redis_manager.close()
        logger.info("Redis 연결 종료됨")


app = FastAPI(title="CareCall Call Control Server", lifespan=lifespan)

# CORS - 개발 환경에서는 모든 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(calls_router)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: 서버 상태 정보
            - status (str): 서버 상태
            - service (str): 서비스 이름
    """
    return {"status": "ok", "service": "CareCall Call Control Server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
