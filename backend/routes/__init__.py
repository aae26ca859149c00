"""FastAPI 라우터 모듈.

app.py에서 분리된 API 엔드포인트들을 제공합니다.
"""

from .health import router as health_router
from .calls import router as calls_router, init_calls, hangup_all, get_active_calls
from .deps import verify_auth_header, verify_ws_token

__all__ = [
    "health_router",
    "calls_router",
    "init_calls",
    "hangup_all",
    "get_active_calls",
    "verify_auth_header",
    "verify_ws_token",
]
