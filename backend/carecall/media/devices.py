"""로컬 미디어 장치 관리 모듈.

카메라와 마이크를 열어 로컬 스트림을 만들고, 음소거/비디오 토글과
장치 해제를 담당합니다.

주요 기능:
    - 장치 획득 (MediaPlayer를 통한 ffmpeg 캡처)
    - 획득 실패를 MediaAccessDenied / NoDeviceFound로 분류
    - 재협상 없는 오디오/비디오 토글
    - 멱등적인 장치 해제

Examples:
    >>> devices = MediaDeviceController()
    >>> stream = await devices.acquire()
    >>> devices.toggle_audio()
    False
    >>> devices.release()
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from av.error import FFmpegError

from ..shared import MediaAccessDenied, NoDeviceFound
from ..webrtc.config import MediaConfig, media_config
from ..webrtc.tracks import LocalMediaTrack, MediaStream

logger = logging.getLogger(__name__)


def open_camera(config: MediaConfig = media_config) -> MediaPlayer:
    return MediaPlayer(config.VIDEO_DEVICE, format=config.VIDEO_FORMAT, options=config.video_options)


def open_microphone(config: MediaConfig = media_config) -> MediaPlayer:
    return MediaPlayer(config.AUDIO_DEVICE, format=config.AUDIO_FORMAT)


class MediaDeviceController:
    """로컬 카메라/마이크의 생명주기를 관리하는 클래스.

    Attributes:
        openers (Sequence[Callable]): 장치를 여는 함수 목록.
            각 함수는 audio/video 속성을 가진 객체(MediaPlayer)를 반환합니다.
        stream (Optional[MediaStream]): 획득된 로컬 스트림
        audio_enabled (bool): 마이크 전송 여부
        video_enabled (bool): 카메라 전송 여부

    Note:
        - 장치 열기는 블로킹 호출이므로 스레드에서 실행됩니다.
        - 획득 실패는 해당 통화 시도에 치명적이며 자동 재시도하지 않습니다.
    """

    def __init__(self, openers: Optional[Sequence[Callable[[], object]]] = None):
        self.openers = list(openers) if openers is not None else [open_camera, open_microphone]
        self.stream: Optional[MediaStream] = None
        self.audio_enabled = True
        self.video_enabled = True

    async def acquire(self) -> MediaStream:
        """카메라와 마이크를 열고 로컬 스트림을 반환합니다.

        Returns:
            MediaStream: LocalMediaTrack들로 구성된 로컬 스트림

        Raises:
            MediaAccessDenied: 사용자 또는 OS가 장치 접근을 거부한 경우
            NoDeviceFound: 호환되는 장치가 없는 경우
        """
        if self.stream is not None:
            return self.stream

        logger.info("[Media] 로컬 미디어 스트림 요청 중...")
        sources: List[MediaStreamTrack] = []
        try:
            for opener in self.openers:
                player = await asyncio.to_thread(opener)
                for source in (getattr(player, "audio", None), getattr(player, "video", None)):
                    if source is not None:
                        sources.append(source)
        except PermissionError as e:
            self._stop_sources(sources)
            logger.error(f"[Media] 장치 접근 거부: {e}")
            raise MediaAccessDenied(str(e)) from e
        except (FileNotFoundError, FFmpegError, OSError, ValueError) as e:
            self._stop_sources(sources)
            logger.error(f"[Media] 장치 열기 실패: {type(e).__name__}: {e}")
            raise NoDeviceFound(str(e)) from e

        if not sources:
            raise NoDeviceFound("no audio or video track available")

        stream = MediaStream()
        for source in sources:
            stream.add_track(LocalMediaTrack(source))
        self.stream = stream
        self.audio_enabled = True
        self.video_enabled = True
        logger.info(f"[Media] 로컬 스트림 획득: 오디오 {len(stream.audio_tracks)}개, 비디오 {len(stream.video_tracks)}개")
        return stream

    def toggle_audio(self) -> bool:
        """마이크 전송을 켜거나 끕니다. 새 enabled 값을 반환합니다."""
        if self.stream is None:
            logger.warning("[Media] 로컬 스트림 없음, 오디오 토글 무시")
            return self.audio_enabled
        self.audio_enabled = not self.audio_enabled
        for track in self.stream.audio_tracks:
            track.enabled = self.audio_enabled
        logger.info(f"[Media] 오디오 {'켜짐' if self.audio_enabled else '음소거'}")
        return self.audio_enabled

    def toggle_video(self) -> bool:
        """카메라 전송을 켜거나 끕니다. 새 enabled 값을 반환합니다."""
        if self.stream is None:
            logger.warning("[Media] 로컬 스트림 없음, 비디오 토글 무시")
            return self.video_enabled
        self.video_enabled = not self.video_enabled
        for track in self.stream.video_tracks:
            track.enabled = self.video_enabled
        logger.info(f"[Media] 비디오 {'켜짐' if self.video_enabled else '꺼짐'}")
        return self.video_enabled

    def release(self) -> None:
        """모든 로컬 트랙을 중지합니다. 여러 번 호출해도 안전합니다."""
        if self.stream is None:
            return
        stream, self.stream = self.stream, None
        self._stop_sources(stream.tracks)
        logger.info("[Media] 로컬 미디어 장치 해제")

    @staticmethod
    def _stop_sources(tracks: List[MediaStreamTrack]) -> None:
        for track in tracks:
            track.stop()


class RemoteMediaSink:
    """원격 트랙을 소비하는 싱크.

    화면이 없는 엔드포인트에서도 원격 트랙의 프레임을 계속 읽어야 수신 큐가
    쌓이지 않습니다. MediaBlackhole로 프레임을 버립니다.
    """

    def __init__(self):
        self.blackhole = MediaBlackhole()
        self.started = False

    async def add_track(self, track: MediaStreamTrack) -> None:
        self.blackhole.addTrack(track)
        # start() only spawns consumers for tracks that have none yet
        await self.blackhole.start()
        self.started = True
        logger.info(f"[Media] 원격 {track.kind} 트랙 싱크 연결")

    async def stop(self) -> None:
        if self.started:
            self.started = False
            await self.blackhole.stop()
