"""로컬 미디어 장치 모듈."""

from .devices import (
    MediaStream,
    MediaDeviceController,
    RemoteMediaSink,
    open_camera,
    open_microphone,
)

__all__ = [
    "MediaStream",
    "MediaDeviceController",
    "RemoteMediaSink",
    "open_camera",
    "open_microphone",
]
