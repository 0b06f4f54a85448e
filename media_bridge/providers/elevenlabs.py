"""ElevenLabs Conversational AI provider over a signed WebSocket URL."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
import websockets
from websockets.protocol import State

from ..codec import AgentAudioCodec, get_agent_codec
from ..config import Settings
from ..errors import CredentialExchangeError, DecodeError, ProtocolAnomaly, TransportError
from ..provider import (
    AgentAudio,
    AgentEvent,
    AgentSessionConfig,
    ConversationMetadata,
    Interruption,
    Ping,
)

logger = logging.getLogger(__name__)

SIGNED_URL_PATH = "/v1/convai/conversation/get_signed_url"


def build_initiation_message(config: AgentSessionConfig) -> dict[str, Any]:
    """Build the ``conversation_initiation_client_data`` message."""
    message: dict[str, Any] = {
        "type": "conversation_initiation_client_data",
        "conversation_config_override": {
            "agent": {
                "first_message": config.first_message,
                "prompt": {"prompt": config.prompt},
            },
        },
    }
    if config.extra_body:
        message["custom_llm_extra_body"] = dict(config.extra_body)
    return message


def _sub_event(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(f"Expected {key} to be an object, got {type(value).__name__}")
    return value


def parse_agent_message(raw: str | bytes, codec: AgentAudioCodec) -> AgentEvent:
    """Translate one frame from the agent into an AgentEvent.

    Raises DecodeError for frames that cannot be interpreted and
    ProtocolAnomaly for well-formed events of a type the bridge does not handle.
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return AgentAudio(audio=codec.decode_binary(bytes(raw)))

    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise DecodeError(f"Unparseable agent event: {exc}") from exc
    if not isinstance(data, dict):
        raise DecodeError("Agent event is not a JSON object")

    event_type = data.get("type", "")
    if event_type == "audio":
        return AgentAudio(audio=codec.decode_event(data))
    if event_type == "interruption":
        return Interruption()
    if event_type == "ping":
        ping_event = _sub_event(data, "ping_event")
        return Ping(event_id=ping_event.get("event_id"))
    if event_type == "conversation_initiation_metadata":
        meta = _sub_event(data, "conversation_initiation_metadata_event")
        return ConversationMetadata(
            conversation_id=meta.get("conversation_id"),
            user_input_audio_format=meta.get("user_input_audio_format"),
            agent_output_audio_format=meta.get("agent_output_audio_format"),
        )
    raise ProtocolAnomaly(f"Unhandled agent event: {event_type}")


class ElevenLabsProvider:
    """AgentProvider implementation for ElevenLabs Conversational AI."""

    def __init__(
        self,
        settings: Settings,
        codec: AgentAudioCodec | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._codec = codec or get_agent_codec(settings.AGENT_AUDIO_TRANSPORT)
        self._http_client = http_client
        self._ws: websockets.ClientConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def get_connection_url(self, agent_id: str) -> str:
        """Trade the API key for a signed, single-use conversation URL."""
        url = self._settings.ELEVENLABS_API_BASE.rstrip("/") + SIGNED_URL_PATH
        headers = {"xi-api-key": self._settings.ELEVENLABS_API_KEY}
        client = self._http_client or httpx.AsyncClient(timeout=self._settings.CREDENTIAL_TIMEOUT)
        try:
            response = await client.get(url, params={"agent_id": agent_id}, headers=headers)
        except httpx.HTTPError as exc:
            raise CredentialExchangeError(f"Signed URL request failed: {exc}") from exc
        finally:
            if self._http_client is None:
                await client.aclose()

        if not response.is_success:
            raise CredentialExchangeError(
                f"Signed URL request returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            signed_url = response.json()["signed_url"]
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialExchangeError("Signed URL missing from response") from exc
        return signed_url

    async def connect(self, url: str) -> None:
        """Open the WebSocket to the signed conversation URL."""
        try:
            self._ws = await websockets.connect(url)
        except (OSError, websockets.InvalidHandshake, websockets.InvalidURI) as exc:
            raise TransportError(f"Could not connect to ElevenLabs: {exc}") from exc
        logger.info("Connected to ElevenLabs (audio transport=%s)", self._codec.name)

    async def _send(self, frame: str | bytes) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(frame)
        except websockets.ConnectionClosed as exc:
            raise TransportError(f"ElevenLabs connection closed: {exc}") from exc

    async def send_initiation(self, config: AgentSessionConfig) -> None:
        """Send the conversation initiation message."""
        await self._send(json.dumps(build_initiation_message(config)))

    async def send_audio(self, audio: bytes) -> None:
        """Forward raw caller audio framed for the configured transport."""
        await self._send(self._codec.encode(audio))

    async def send_pong(self, event_id: Any) -> None:
        """Reply to a ping with the same event id."""
        await self._send(json.dumps({"type": "pong", "event_id": event_id}))

    async def receive_events(self) -> AsyncIterator[AgentEvent]:
        """Yield AgentEvents until ElevenLabs closes the stream."""
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                try:
                    yield parse_agent_message(raw, self._codec)
                except DecodeError as exc:
                    logger.warning("Dropping ElevenLabs frame: %s", exc)
                except ProtocolAnomaly as exc:
                    logger.debug("%s", exc)
        except websockets.ConnectionClosedError as exc:
            raise TransportError(f"ElevenLabs connection dropped: {exc}") from exc

    async def disconnect(self) -> None:
        """Close the ElevenLabs WebSocket connection."""
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
            logger.info("Disconnected from ElevenLabs")
