"""Provider registry: map names to AgentProvider implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..codec import get_agent_codec
from ..errors import ConfigurationError
from .elevenlabs import ElevenLabsProvider

if TYPE_CHECKING:
    from ..config import Settings
    from ..provider import AgentProvider

PROVIDERS: dict[str, type[Any]] = {
    "elevenlabs": ElevenLabsProvider,
}


def get_provider(name: str, settings: Settings) -> AgentProvider:
    """Instantiate a provider by name with the configured audio transport.

    Raises ConfigurationError for an unknown provider or transport, so a
    misconfigured server refuses calls before any leg is opened.
    """
    cls = PROVIDERS.get(name)
    if cls is None:
        raise ConfigurationError(f"Unknown provider: {name}. Available: {', '.join(PROVIDERS)}")
    try:
        codec = get_agent_codec(settings.AGENT_AUDIO_TRANSPORT)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    return cls(settings, codec=codec)  # type: ignore[no-any-return]
