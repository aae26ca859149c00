"""로컬 미디어 트랙 모듈.

카메라/마이크 트랙을 감싸 재협상 없이 음소거/비디오 끄기를 지원합니다.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List

import numpy as np
from aiortc import MediaStreamTrack
from av import AudioFrame, VideoFrame

logger = logging.getLogger(__name__)


@dataclass
class MediaStream:
    """트랙 묶음. 로컬/원격 스트림 모두에 사용합니다."""

    tracks: List[MediaStreamTrack] = field(default_factory=list)
    stream_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    @property
    def audio_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in self.tracks if track.kind == "audio"]

    @property
    def video_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in self.tracks if track.kind == "video"]


def silence_like(frame: AudioFrame) -> AudioFrame:
    """같은 포맷/길이의 무음 프레임을 만듭니다."""
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


def black_like(frame: VideoFrame) -> VideoFrame:
    """같은 크기의 검은 프레임을 만듭니다."""
    black = VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class LocalMediaTrack(MediaStreamTrack):
    """enabled 플래그를 가진 로컬 캡처 트랙.

    enabled가 False이면 원본 프레임 대신 무음(오디오) 또는 검은 화면(비디오)
    프레임을 전송합니다. 트랙은 피어 연결에 그대로 붙어 있으므로 재협상이
    필요 없습니다.

    Attributes:
        kind (str): 트랙 종류 ("audio" 또는 "video")
        track (MediaStreamTrack): 원본 캡처 트랙
        enabled (bool): 원본 프레임 전송 여부

    Examples:
        >>> local = LocalMediaTrack(player.audio)
        >>> local.enabled = False  # 음소거
        >>> frame = await local.recv()  # 무음 프레임
    """

    def __init__(self, track: MediaStreamTrack):
        """LocalMediaTrack 초기화.

        Args:
            track (MediaStreamTrack): 감쌀 원본 캡처 트랙
        """
        super().__init__()
        self.kind = track.kind
        self.track = track
        self.enabled = True

    async def recv(self):
        """원본 트랙에서 프레임을 받아 enabled 상태에 맞게 반환합니다."""
        frame = await self.track.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return silence_like(frame)
        return black_like(frame)

    def stop(self):
        """래퍼와 원본 트랙을 모두 중지합니다. 여러 번 호출해도 안전합니다."""
        super().stop()
        self.track.stop()
