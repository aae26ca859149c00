"""공통 pytest fixture."""

import pytest

from carecall.call import CallSessionController
from carecall.signaling import InMemorySignalingChannel
from carecall.webrtc import ConnectionConfig

from fakes import FakeMediaDevices, PeerFactory


@pytest.fixture
def fast_config() -> ConnectionConfig:
    return ConnectionConfig(
        SIGNALING_RETRY_ATTEMPTS=1,
        SIGNALING_RETRY_DELAY=0,
        MAX_ROLE_RESOLUTIONS=3,
        CONNECT_TIMEOUT=1.0,
        CLOSE_ON_DISCONNECT=True,
    )


@pytest.fixture
async def channel():
    channel = InMemorySignalingChannel()
    yield channel
    await channel.close()


@pytest.fixture
def peers() -> PeerFactory:
    return PeerFactory()


@pytest.fixture
async def make_session(channel, peers, fast_config):
    """세션 생성 팩토리. 테스트가 끝나면 남은 세션을 모두 종료합니다."""
    sessions = []

    def factory(media=None, signaling=None, config=None):
        session = CallSessionController(
            signaling or channel,
            media=media if media is not None else FakeMediaDevices(),
            peer_factory=peers,
            config=config or fast_config,
        )
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        await session.hang_up()
