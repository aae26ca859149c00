"""데이터베이스 모듈.

시그널링 문서 저장소로 사용하는 Redis 연결을 관리합니다.
"""

from .redis_connection import RedisManager, get_redis_manager

__all__ = [
    "RedisManager",
    "get_redis_manager",
]
