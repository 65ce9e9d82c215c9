import pytest
from pydantic import ValidationError

from voicetip.gateway.config import Settings

REQUIRED = {"database_url": "sqlite+aiosqlite:///:memory:", "redis_url": "redis://localhost:6379/0"}


def test_defaults_leave_room_for_a_full_attempt():
    settings = Settings(**REQUIRED)

    assert settings.synthesis_timeout_s + settings.storage_timeout_s < settings.stall_timeout_s


@pytest.mark.parametrize(
    "timeouts",
    [
        {"synthesis_timeout_s": 90, "storage_timeout_s": 30, "stall_timeout_s": 120},
        {"synthesis_timeout_s": 60, "storage_timeout_s": 60, "stall_timeout_s": 60},
    ],
)
def test_attempt_longer_than_stall_timeout_is_rejected(timeouts):
    with pytest.raises(ValidationError, match="stall_timeout_s"):
        Settings(**REQUIRED, **timeouts)
