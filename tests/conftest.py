import pytest

from media_bridge.config import Settings
from media_bridge.context import CallContext


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ELEVENLABS_API_KEY="xi-test-key",
        ELEVENLABS_API_BASE="https://api.elevenlabs.test",
    )


@pytest.fixture
def context():
    return CallContext(
        call_id="CA123",
        agent_id="agent-42",
        caller_name="Acme Plumbing",
        phone_number="+15551234567",
    )
