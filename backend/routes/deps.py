"""통화 제어 API 접근 제어.

통화 API는 로컬 카메라/마이크를 열고 룸 문서를 수정하므로, ACCESS_PASSWORD가
설정된 경우 HTTP는 Bearer 헤더로, 상태 스트림 WebSocket은 token 쿼리로 같은
비밀번호를 요구합니다. 비밀번호가 비어 있으면 (로컬 개발) 검사하지 않습니다.

비밀번호는 요청마다 환경변수에서 읽으므로 재시작 없이 바꿀 수 있습니다.
"""

import hmac
import logging
import os
from typing import Optional

from fastapi import Header, HTTPException

logger = logging.getLogger(__name__)


def get_access_password() -> str:
    return os.getenv("ACCESS_PASSWORD", "")


def _matches(candidate: Optional[str], password: str) -> bool:
    if candidate is None:
        return False
    return hmac.compare_digest(candidate.encode(), password.encode())


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """통화 제어 엔드포인트의 Authorization 헤더를 검증합니다.

    Args:
        authorization: "Bearer <ACCESS_PASSWORD>"

    Raises:
        HTTPException: 헤더가 없거나 형식/비밀번호가 틀리면 401
    """
    password = get_access_password()
    if not password:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credential:
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if not _matches(credential, password):
        logger.warning("[Call] 잘못된 비밀번호로 통화 API 접근 시도")
        raise HTTPException(status_code=401, detail="Invalid password")
    return True


def verify_ws_token(token: Optional[str]) -> bool:
    """상태 스트림 WebSocket의 token 쿼리를 검증합니다. 브라우저 WebSocket은 헤더를 붙일 수 없습니다."""
    password = get_access_password()
    if not password:
        return True
    return _matches(token, password)
