"""Audio payload translation between the Twilio and agent wire conventions.

Audio is never transcoded: both legs carry 8 kHz μ-law, so the canonical
form of an audio unit is simply its raw bytes. What differs is the framing.
Twilio wraps every chunk as base64 text inside a JSON event; the agent
accepts either a JSON field holding base64 text or a raw binary frame,
depending on the protocol revision in use.
"""

import base64
import binascii
import json
from typing import Any, Protocol, runtime_checkable

from .errors import DecodeError


def decode_caller_payload(payload: str) -> bytes:
    """Decode a Twilio ``media.payload`` into raw audio bytes."""
    if not isinstance(payload, str):
        raise DecodeError(f"Expected base64 text, got {type(payload).__name__}")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Malformed base64 payload: {exc}") from exc


def encode_caller_payload(audio: bytes) -> str:
    """Encode raw audio bytes as a Twilio ``media.payload``."""
    return base64.b64encode(audio).decode("ascii")


def extract_json_audio(message: dict[str, Any]) -> bytes:
    """Pull the audio bytes out of an agent ``audio`` event.

    Older agent revisions put the chunk under ``audio.chunk``, newer ones
    under ``audio_event.audio_base_64``.
    """
    audio = message.get("audio") or {}
    audio_event = message.get("audio_event") or {}
    payload = None
    if isinstance(audio, dict):
        payload = audio.get("chunk")
    if not payload and isinstance(audio_event, dict):
        payload = audio_event.get("audio_base_64")
    if not payload:
        raise DecodeError("Audio event carries no payload")
    return decode_caller_payload(payload)


@runtime_checkable
class AgentAudioCodec(Protocol):
    """Framing strategy for audio exchanged with the agent."""

    name: str

    def encode(self, audio: bytes) -> str | bytes:
        """Frame raw audio bytes for sending to the agent."""
        ...

    def decode_binary(self, frame: bytes) -> bytes:
        """Interpret a binary frame received from the agent as audio."""
        ...

    def decode_event(self, message: dict[str, Any]) -> bytes:
        """Interpret a JSON ``audio`` event received from the agent."""
        ...


class JsonAgentCodec:
    """Audio travels as base64 text in ``user_audio_chunk`` / ``audio`` events."""

    name = "json"

    def encode(self, audio: bytes) -> str:
        return json.dumps({"user_audio_chunk": encode_caller_payload(audio)})

    def decode_binary(self, frame: bytes) -> bytes:
        raise DecodeError("Binary frames are not used by the JSON audio transport")

    def decode_event(self, message: dict[str, Any]) -> bytes:
        return extract_json_audio(message)


class BinaryAgentCodec:
    """Audio travels as raw binary frames in both directions."""

    name = "binary"

    def encode(self, audio: bytes) -> bytes:
        return bytes(audio)

    def decode_binary(self, frame: bytes) -> bytes:
        if not isinstance(frame, (bytes, bytearray, memoryview)):
            raise DecodeError(f"Expected a binary frame, got {type(frame).__name__}")
        return bytes(frame)

    def decode_event(self, message: dict[str, Any]) -> bytes:
        return extract_json_audio(message)


AGENT_CODECS: dict[str, type[Any]] = {
    JsonAgentCodec.name: JsonAgentCodec,
    BinaryAgentCodec.name: BinaryAgentCodec,
}


def get_agent_codec(name: str) -> AgentAudioCodec:
    """Instantiate an agent audio codec by transport name."""
    cls = AGENT_CODECS.get(name)
    if cls is None:
        raise ValueError(f"Unknown agent audio transport: {name}. Available: {', '.join(AGENT_CODECS)}")
    return cls()  # type: ignore[no-any-return]
