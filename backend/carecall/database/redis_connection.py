"""시그널링 저장소용 Redis 연결 관리.

RedisSignalingChannel이 쓰는 연결 풀 하나를 프로세스 전체에서 공유합니다.
룸 문서 읽기/쓰기, 후보 스트림 XREAD, 룸 변경 pub/sub 구독이 모두 이 풀을
사용하며, /api/health가 같은 풀로 ping을 보냅니다.

Connection Notes:
    - decode_responses=True: 룸 해시와 스트림 필드를 str로 받습니다.
    - XREAD BLOCK과 pub/sub 연결은 오래 유지되므로 socket_timeout을 두지 않고
      health_check_interval로 끊긴 연결을 감지합니다.
    - 연결 실패 시 initialize()는 False를 반환하고, app.py가 인메모리 채널로
      대체합니다.

Examples:
    >>> from carecall.database import get_redis_manager
    >>> redis_mgr = get_redis_manager()
    >>> if await redis_mgr.initialize():
    ...     channel = RedisSignalingChannel(redis_mgr.get_client())
    >>> await redis_mgr.close()
"""

import os
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RedisManager:
    """시그널링 채널이 공유하는 Redis 클라이언트 싱글톤.

    Attributes:
        client: decode_responses=True로 생성된 redis.asyncio 클라이언트
        _initialized: ping까지 성공했는지 여부
    """

    _instance: Optional["RedisManager"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.client = None
            cls._instance._initialized = False
        return cls._instance

    @property
    def redis_url(self) -> str:
        return os.getenv("REDIS_URL", "redis://localhost:6379")

    @property
    def health_check_interval(self) -> int:
        """유휴 연결 점검 주기 (초). 구독 연결이 조용히 끊기는 것을 막습니다."""
        return int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self.client is not None

    async def initialize(self) -> bool:
        """연결 풀을 만들고 ping으로 확인합니다.

        Returns:
            bool: 시그널링에 Redis를 쓸 수 있으면 True
        """
        if self._initialized:
            return True

        client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            health_check_interval=self.health_check_interval,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.error(f"[Signaling] Redis 연결 실패 ({self.redis_url}): {type(e).__name__}: {e}")
            await client.aclose()
            return False

        self.client = client
        self._initialized = True
        logger.info(f"[Signaling] Redis 연결 완료: {self.redis_url}")
        return True

    async def close(self):
        """연결 풀을 닫습니다. 구독 리더는 채널 close()에서 먼저 멈춰야 합니다."""
        if self.client is None:
            return
        client, self.client = self.client, None
        self._initialized = False
        await client.aclose()
        logger.info("[Signaling] Redis 연결 종료")

    async def ping(self) -> bool:
        if not self.is_initialized:
            return False
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"[Signaling] Redis ping 실패: {e}")
            return False

    def get_client(self) -> "redis.Redis":
        """초기화된 클라이언트를 반환합니다.

        Raises:
            RuntimeError: initialize()가 성공하기 전 호출한 경우
        """
        if not self.is_initialized:
            raise RuntimeError("Redis not initialized. Call initialize() first.")
        return self.client


def get_redis_manager() -> RedisManager:
    return RedisManager()
