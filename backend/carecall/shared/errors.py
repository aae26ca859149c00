"""통화 코어 예외 계층.

장치/전송 오류는 Call View까지 전달되고, 시그널링 일시 오류는 1회 재시도 후
전달되며, 정리(cleanup) 오류는 로그로만 남습니다.

Hierarchy:
    CallError
    ├── MediaError
    │   ├── MediaAccessDenied
    │   └── NoDeviceFound
    ├── SignalingError
    │   ├── SignalingReadFailed
    │   └── SignalingWriteFailed
    ├── NegotiationRaceDetected
    ├── TransportError
    │   ├── TransportFailed
    │   └── TransportDisconnected
    └── CleanupPartialFailure
"""

from typing import List, Optional


class CallError(Exception):
    """통화 코어의 모든 예외의 기반 클래스."""

    # Call View에 노출해야 하는 오류인지 여부
    user_visible: bool = True


class MediaError(CallError):
    """로컬 카메라/마이크 획득 실패. 해당 통화 시도에 치명적이며 재시도하지 않습니다."""


class MediaAccessDenied(MediaError):
    """사용자 또는 OS가 장치 접근을 거부함."""


class NoDeviceFound(MediaError):
    """호환되는 캡처 장치가 없음."""


class SignalingError(CallError):
    """공유 문서 저장소 읽기/쓰기 실패 (일시적)."""

    def __init__(self, operation: str, room_id: Optional[str] = None, cause: Optional[BaseException] = None):
        self.operation = operation
        self.room_id = room_id
        self.cause = cause
        detail = f"{operation} failed"
        if room_id:
            detail += f" (room={room_id})"
        if cause is not None:
            detail += f": {cause}"
        super().__init__(detail)


class SignalingReadFailed(SignalingError):
    """룸 문서 또는 후보 로그 읽기 실패."""


class SignalingWriteFailed(SignalingError):
    """룸 문서 또는 후보 로그 쓰기 실패."""


class NegotiationRaceDetected(CallError):
    """동시에 입장한 다른 클라이언트의 offer가 먼저 저장됨.

    사용자에게 알리는 오류가 아니며, 역할을 다시 결정하는 신호로만 사용됩니다.
    """

    user_visible = False

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"another offer already stored in room {room_id}")


class TransportError(CallError):
    """피어 간 전송 연결 오류. 세션을 종료하며 사용자가 다시 입장해야 합니다."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"transport {state}")


class TransportFailed(TransportError):
    """ICE/DTLS 연결 실패."""


class TransportDisconnected(TransportError):
    """연결된 이후 전송이 끊김."""


class CleanupPartialFailure(CallError):
    """hangup 정리 단계 중 일부가 실패함. 로그 전용."""

    user_visible = False

    def __init__(self, failures: List[tuple]):
        # [(step_name, exception), ...]
        self.failures = failures
        steps = ", ".join(name for name, _ in failures)
        super().__init__(f"cleanup steps failed: {steps}")
