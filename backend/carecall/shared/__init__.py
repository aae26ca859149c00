"""공유 DTO 및 예외."""

from .dto import Role, SessionDescription, Room, IceCandidate, CandidateRecord
from .errors import (
    CallError,
    MediaError,
    MediaAccessDenied,
    NoDeviceFound,
    SignalingError,
    SignalingReadFailed,
    SignalingWriteFailed,
    NegotiationRaceDetected,
    TransportError,
    TransportFailed,
    TransportDisconnected,
    CleanupPartialFailure,
)

__all__ = [
    # DTOs
    "Role",
    "SessionDescription",
    "Room",
    "IceCandidate",
    "CandidateRecord",
    # Errors
    "CallError",
    "MediaError",
    "MediaAccessDenied",
    "NoDeviceFound",
    "SignalingError",
    "SignalingReadFailed",
    "SignalingWriteFailed",
    "NegotiationRaceDetected",
    "TransportError",
    "TransportFailed",
    "TransportDisconnected",
    "CleanupPartialFailure",
]
