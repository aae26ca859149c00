"""통화 세션 모듈."""

from .session import CallSessionController, default_peer_factory
from .states import (
    CallState,
    STATUS_ACQUIRING_MEDIA,
    STATUS_ANSWER_SENT,
    STATUS_CONNECTING,
    STATUS_ENDED,
    STATUS_MEDIA_ERROR,
    STATUS_OFFER_CREATED,
    STATUS_ROOM_NEGOTIATED,
    connection_status,
)

__all__ = [
    "CallSessionController",
    "default_peer_factory",
    "CallState",
    "STATUS_ACQUIRING_MEDIA",
    "STATUS_ANSWER_SENT",
    "STATUS_CONNECTING",
    "STATUS_ENDED",
    "STATUS_MEDIA_ERROR",
    "STATUS_OFFER_CREATED",
    "STATUS_ROOM_NEGOTIATED",
    "connection_status",
]
