import pytest
from fastapi.testclient import TestClient

from keyroom.config import Settings
from keyroom.main import create_app
from keyroom.room_manager import RoomManager

ROOM = "demo"
PASSKEY = "abc123"
ADMIN_CODE = "xyz"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        debug=True,
        data_dir=tmp_path,
        allowed_hosts=("testserver",),
        rate_limit_enabled=False,
        cleanup_interval_s=3600,
    )


@pytest.fixture
def manager(settings, clock):
    return RoomManager(settings, clock=clock)


@pytest.fixture
def alice(manager):
    """Creates the demo room; returns alice's (owner) token."""
    token, _ = manager.join(ROOM, PASSKEY, "alice", admin_code=ADMIN_CODE)
    return token


@pytest.fixture
def bob(manager, alice):
    token, _ = manager.join(ROOM, PASSKEY, "bob")
    return token


@pytest.fixture
def client(settings, clock):
    app = create_app(settings, clock=clock)
    with TestClient(app) as c:
        yield c
