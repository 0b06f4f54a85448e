"""Per-call state shared by the caller and agent legs."""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum


class AgentLegState(str, Enum):
    """Lifecycle of the agent leg."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class CallContext:
    """Mutable state for one bridged call.

    Created when the caller connection is upgraded and dropped when the
    bridge returns. Never shared between calls.
    """

    call_id: str
    agent_id: str
    caller_name: str
    phone_number: str
    stream_sid: str | None = None
    agent_state: AgentLegState = AgentLegState.IDLE
    agent_ready: bool = False
    pending_audio: deque[bytes] = field(default_factory=deque)

    def set_stream_sid(self, stream_sid: str) -> bool:
        """Record the Twilio stream sid. Returns False if one was already set."""
        if self.stream_sid is not None:
            return False
        self.stream_sid = stream_sid
        return True

    def buffer_audio(self, audio: bytes) -> None:
        """Queue an audio unit until the agent leg is ready."""
        if self.agent_ready:
            raise RuntimeError("Audio must not be buffered once the agent leg is ready")
        self.pending_audio.append(audio)

    def pop_pending(self) -> bytes | None:
        """Remove and return the oldest buffered audio unit, if any."""
        if not self.pending_audio:
            return None
        return self.pending_audio.popleft()

    def mark_ready(self) -> None:
        """Flip readiness to true. Only allowed once the queue is drained."""
        if self.pending_audio:
            raise RuntimeError("Pending audio must be drained before marking ready")
        self.agent_ready = True
        self.agent_state = AgentLegState.READY

    @property
    def is_terminal(self) -> bool:
        return self.agent_state in (AgentLegState.CLOSED, AgentLegState.FAILED)
