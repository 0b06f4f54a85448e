"""AgentProvider protocol and event types for conversational voice agents."""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, runtime_checkable


@dataclass
class AgentSessionConfig:
    """Session initialization sent to the agent once the leg opens."""

    first_message: str
    prompt: str
    extra_body: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentAudio:
    """Chunk of raw audio produced by the agent."""

    audio: bytes


@dataclass
class Interruption:
    """The agent detected the caller talking over it."""


@dataclass
class Ping:
    """Keep-alive ping that must be answered with a pong."""

    event_id: Any


@dataclass
class ConversationMetadata:
    """The agent acknowledged session initialization."""

    conversation_id: str | None
    user_input_audio_format: str | None = None
    agent_output_audio_format: str | None = None


AgentEvent = AgentAudio | Interruption | Ping | ConversationMetadata


@runtime_checkable
class AgentProvider(Protocol):
    """Interface that all agent providers must implement."""

    @property
    def is_open(self) -> bool:
        """Whether the agent connection is currently open."""
        ...

    async def get_connection_url(self, agent_id: str) -> str:
        """Exchange the service credential for a one-time connection URL."""
        ...

    async def connect(self, url: str) -> None:
        """Open the agent connection."""
        ...

    async def send_initiation(self, config: AgentSessionConfig) -> None:
        """Send the one-time session initialization message."""
        ...

    async def send_audio(self, audio: bytes) -> None:
        """Send raw caller audio to the agent."""
        ...

    async def send_pong(self, event_id: Any) -> None:
        """Answer a keep-alive ping."""
        ...

    def receive_events(self) -> AsyncIterator[AgentEvent]:
        """Yield events from the agent until the connection closes."""
        ...

    async def disconnect(self) -> None:
        """Close the agent connection."""
        ...
