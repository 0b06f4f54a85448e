import json
from unittest.mock import AsyncMock

import httpx
import pytest
import websockets

from media_bridge.codec import BinaryAgentCodec, JsonAgentCodec
from media_bridge.errors import (
    ConfigurationError,
    CredentialExchangeError,
    DecodeError,
    ProtocolAnomaly,
    TransportError,
)
from media_bridge.provider import (
    AgentAudio,
    AgentSessionConfig,
    ConversationMetadata,
    Interruption,
    Ping,
)
from media_bridge.providers import get_provider
from media_bridge.providers.elevenlabs import (
    ElevenLabsProvider,
    build_initiation_message,
    parse_agent_message,
)
from tests.fakes import FakeConnection


def provider_with(settings, handler=None, codec=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return ElevenLabsProvider(settings, codec=codec, http_client=client)


class TestParseAgentMessage:

    def test_audio_chunk(self):
        event = parse_agent_message(json.dumps({"type": "audio", "audio": {"chunk": "AQID"}}), JsonAgentCodec())
        assert event == AgentAudio(audio=b"\x01\x02\x03")

    def test_audio_event_base64(self):
        raw = json.dumps({"type": "audio", "audio_event": {"audio_base_64": "AQID", "event_id": 1}})
        assert parse_agent_message(raw, JsonAgentCodec()) == AgentAudio(audio=b"\x01\x02\x03")

    def test_binary_frame(self):
        assert parse_agent_message(b"\x01\x02", BinaryAgentCodec()) == AgentAudio(audio=b"\x01\x02")

    def test_binary_frame_rejected_by_json_transport(self):
        with pytest.raises(DecodeError):
            parse_agent_message(b"\x01\x02", JsonAgentCodec())

    def test_interruption(self):
        raw = json.dumps({"type": "interruption", "interruption_event": {"event_id": 4}})
        assert parse_agent_message(raw, JsonAgentCodec()) == Interruption()

    def test_ping(self):
        raw = json.dumps({"type": "ping", "ping_event": {"event_id": 12, "ping_ms": 40}})
        assert parse_agent_message(raw, JsonAgentCodec()) == Ping(event_id=12)

    def test_metadata(self):
        raw = json.dumps({
            "type": "conversation_initiation_metadata",
            "conversation_initiation_metadata_event": {
                "conversation_id": "conv_1",
                "user_input_audio_format": "ulaw_8000",
                "agent_output_audio_format": "ulaw_8000",
            },
        })
        assert parse_agent_message(raw, JsonAgentCodec()) == ConversationMetadata(
            conversation_id="conv_1",
            user_input_audio_format="ulaw_8000",
            agent_output_audio_format="ulaw_8000",
        )

    def test_unhandled_type_is_protocol_anomaly(self):
        with pytest.raises(ProtocolAnomaly, match="agent_response"):
            parse_agent_message(json.dumps({"type": "agent_response"}), JsonAgentCodec())

    @pytest.mark.parametrize("sub_event", ["oops", [1, 2], 7])
    @pytest.mark.parametrize(
        "event_type, key",
        [
            ("ping", "ping_event"),
            ("conversation_initiation_metadata", "conversation_initiation_metadata_event"),
            ("audio", "audio_event"),
            ("audio", "audio"),
        ],
    )
    def test_non_object_sub_event_is_decode_error(self, event_type, key, sub_event):
        with pytest.raises(DecodeError):
            parse_agent_message(json.dumps({"type": event_type, key: sub_event}), JsonAgentCodec())

    def test_ping_without_sub_event(self):
        assert parse_agent_message(json.dumps({"type": "ping"}), JsonAgentCodec()) == Ping(event_id=None)

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '{"type": "audio", "audio": {"chunk": "%%"}}'])
    def test_malformed(self, raw):
        with pytest.raises(DecodeError):
            parse_agent_message(raw, JsonAgentCodec())


def test_build_initiation_message():
    config = AgentSessionConfig(first_message="Hi!", prompt="Be brief.", extra_body={"call_sid": "CA1"})
    assert build_initiation_message(config) == {
        "type": "conversation_initiation_client_data",
        "conversation_config_override": {
            "agent": {"first_message": "Hi!", "prompt": {"prompt": "Be brief."}},
        },
        "custom_llm_extra_body": {"call_sid": "CA1"},
    }


def test_build_initiation_message_without_extra_body():
    message = build_initiation_message(AgentSessionConfig(first_message="Hi!", prompt="p"))
    assert "custom_llm_extra_body" not in message


def test_registry(settings):
    assert isinstance(get_provider("elevenlabs", settings), ElevenLabsProvider)
    with pytest.raises(ConfigurationError, match="Unknown provider"):
        get_provider("nope", settings)


def test_registry_applies_audio_transport(settings):
    settings.AGENT_AUDIO_TRANSPORT = "binary"
    provider = get_provider("elevenlabs", settings)
    assert isinstance(provider._codec, BinaryAgentCodec)

    settings.AGENT_AUDIO_TRANSPORT = "opus"
    with pytest.raises(ConfigurationError, match="Unknown agent audio transport"):
        get_provider("elevenlabs", settings)


@pytest.mark.asyncio
class TestCredentialExchange:

    async def test_signed_url(self, settings):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers["xi-api-key"]
            return httpx.Response(200, json={"signed_url": "wss://api.elevenlabs.test/convai?token=t"})

        url = await provider_with(settings, handler).get_connection_url("agent-42")
        assert url == "wss://api.elevenlabs.test/convai?token=t"
        assert seen["url"] == (
            "https://api.elevenlabs.test/v1/convai/conversation/get_signed_url?agent_id=agent-42"
        )
        assert seen["key"] == "xi-test-key"

    async def test_non_success_status(self, settings):
        provider = provider_with(settings, lambda request: httpx.Response(401, text="invalid api key"))
        with pytest.raises(CredentialExchangeError) as exc_info:
            await provider.get_connection_url("agent-42")
        assert exc_info.value.status_code == 401
        assert "invalid api key" in str(exc_info.value)

    async def test_missing_signed_url(self, settings):
        provider = provider_with(settings, lambda request: httpx.Response(200, json={"other": 1}))
        with pytest.raises(CredentialExchangeError):
            await provider.get_connection_url("agent-42")

    async def test_network_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CredentialExchangeError):
            await provider_with(settings, handler).get_connection_url("agent-42")


@pytest.mark.asyncio
class TestConnection:

    async def test_connect_failure_is_transport_error(self, settings, monkeypatch):
        monkeypatch.setattr(websockets, "connect", AsyncMock(side_effect=OSError("unreachable")))
        with pytest.raises(TransportError):
            await ElevenLabsProvider(settings).connect("wss://api.elevenlabs.test/convai")

    async def test_sends_json_audio_and_pong(self, settings):
        provider = ElevenLabsProvider(settings, codec=JsonAgentCodec())
        ws = FakeConnection([])
        provider._ws = ws
        assert provider.is_open

        await provider.send_audio(b"\x00\x00\x00")
        await provider.send_pong(9)
        await provider.send_initiation(AgentSessionConfig(first_message="Hi", prompt="p"))
        sent = [json.loads(call.args[0]) for call in ws.send.await_args_list]
        assert sent[0] == {"user_audio_chunk": "AAAA"}
        assert sent[1] == {"type": "pong", "event_id": 9}
        assert sent[2]["type"] == "conversation_initiation_client_data"

    async def test_sends_binary_audio(self, settings):
        provider = ElevenLabsProvider(settings, codec=BinaryAgentCodec())
        ws = FakeConnection([])
        provider._ws = ws
        await provider.send_audio(b"\x01\x02")
        ws.send.assert_awaited_once_with(b"\x01\x02")

    async def test_send_on_closed_connection_is_transport_error(self, settings):
        provider = ElevenLabsProvider(settings)
        ws = FakeConnection([])
        ws.send.side_effect = websockets.ConnectionClosedError(None, None)
        provider._ws = ws
        with pytest.raises(TransportError):
            await provider.send_audio(b"\x01")

    async def test_receive_skips_undecodable_frames(self, settings):
        provider = ElevenLabsProvider(settings, codec=JsonAgentCodec())
        provider._ws = FakeConnection([
            json.dumps({"type": "ping", "ping_event": {"event_id": 1}}),
            "garbage",
            json.dumps({"type": "interruption"}),
        ])
        events = [event async for event in provider.receive_events()]
        assert events == [Ping(event_id=1), Interruption()]

    async def test_receive_skips_malformed_control_events(self, settings):
        provider = ElevenLabsProvider(settings, codec=JsonAgentCodec())
        provider._ws = FakeConnection([
            json.dumps({"type": "ping", "ping_event": "oops"}),
            json.dumps({"type": "conversation_initiation_metadata", "conversation_initiation_metadata_event": [1]}),
            json.dumps({"type": "agent_response", "agent_response_event": {"agent_response": "Hi"}}),
            json.dumps({"type": "interruption"}),
        ])
        events = [event async for event in provider.receive_events()]
        assert events == [Interruption()]

    async def test_receive_abnormal_close_is_transport_error(self, settings):
        provider = ElevenLabsProvider(settings)
        provider._ws = FakeConnection([], error=websockets.ConnectionClosedError(None, None))
        with pytest.raises(TransportError):
            async for _ in provider.receive_events():
                pass

    async def test_disconnect_is_idempotent(self, settings):
        provider = ElevenLabsProvider(settings)
        ws = FakeConnection([])
        provider._ws = ws
        await provider.disconnect()
        await provider.disconnect()
        ws.close.assert_awaited_once()
        assert not provider.is_open

    async def test_nothing_sent_before_connect(self, settings):
        provider = ElevenLabsProvider(settings)
        await provider.send_audio(b"\x01")
        assert not provider.is_open
        assert [event async for event in provider.receive_events()] == []
