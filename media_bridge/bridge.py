"""Core bridge: relay audio between a Twilio Media Stream and a voice agent."""

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from .codec import decode_caller_payload, encode_caller_payload
from .config import Settings
from .context import AgentLegState, CallContext
from .errors import CredentialExchangeError, DecodeError, TransportError
from .provider import (
    AgentAudio,
    AgentEvent,
    AgentProvider,
    AgentSessionConfig,
    ConversationMetadata,
    Interruption,
    Ping,
)
from .providers import get_provider

logger = logging.getLogger(__name__)


def build_session_config(context: CallContext, settings: Settings) -> AgentSessionConfig:
    """Personalize the agent session for the caller."""
    return AgentSessionConfig(
        first_message=settings.render_greeting(context.caller_name, context.phone_number),
        prompt=settings.render_prompt(context.caller_name, context.phone_number),
        extra_body={
            "call_sid": context.call_id,
            "caller_name": context.caller_name,
            "phone_number": context.phone_number,
        },
    )


class CallBridge:
    """Runs the caller and agent legs of one call and keeps their lifecycles tied.

    The caller leg reads Twilio events and forwards audio to the agent,
    buffering it in the CallContext until the agent leg is ready. The agent
    leg walks IDLE -> AUTHENTICATING -> CONNECTING -> READY and then relays
    agent events back to Twilio. Whichever leg ends first closes the other.
    """

    def __init__(
        self,
        websocket: WebSocket,
        provider: AgentProvider,
        context: CallContext,
        settings: Settings,
    ) -> None:
        self.websocket = websocket
        self.provider = provider
        self.context = context
        self.settings = settings
        self._caller_open = True
        self._caller_closed = False
        self._agent_closed = False

    async def run(self) -> None:
        """Run both legs until either ends, then close both."""
        caller_task = asyncio.create_task(self._run_caller_leg())
        agent_task = asyncio.create_task(self._run_agent_leg())
        try:
            await asyncio.wait({caller_task, agent_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            try:
                await self.close_agent()
            except Exception:
                logger.exception("[%s] Error closing agent leg", self.context.call_id)
            finally:
                try:
                    await self.close_caller()
                finally:
                    for task in (caller_task, agent_task):
                        if not task.done():
                            task.cancel()
                    await asyncio.gather(caller_task, agent_task, return_exceptions=True)
                    logger.info(
                        "[%s] Bridge finished (agent leg %s)",
                        self.context.call_id,
                        self.context.agent_state.value,
                    )

    # Caller leg

    async def _run_caller_leg(self) -> None:
        call_id = self.context.call_id
        try:
            while True:
                message = await self.websocket.receive_text()
                if not await self.handle_caller_message(message):
                    break
        except WebSocketDisconnect as exc:
            self._caller_open = False
            logger.info("[%s] Twilio disconnected (code=%s)", call_id, exc.code)
        except TransportError as exc:
            logger.warning("[%s] Agent leg failed while forwarding audio: %s", call_id, exc)
        except Exception:
            logger.exception("[%s] Error receiving from Twilio", call_id)

    async def handle_caller_message(self, message: str) -> bool:
        """Process one Twilio event. Returns False once the stream has stopped."""
        call_id = self.context.call_id
        try:
            data = json.loads(message)
            event = data["event"]
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("[%s] Dropping malformed Twilio message: %r", call_id, exc)
            return True

        if event == "start":
            start = data.get("start")
            if not isinstance(start, dict):
                start = {}
            stream_sid = start.get("streamSid") or data.get("streamSid")
            if not self.context.call_id and start.get("callSid"):
                self.context.call_id = call_id = start["callSid"]
            if start.get("customParameters"):
                logger.info("[%s] Stream parameters: %s", call_id, start["customParameters"])
            if not stream_sid:
                logger.warning("[%s] Start event without streamSid", call_id)
            elif self.context.set_stream_sid(stream_sid):
                logger.info(
                    "[%s] Stream started: %s (format=%s)",
                    call_id,
                    stream_sid,
                    start.get("mediaFormat"),
                )
            else:
                logger.warning("[%s] Ignoring second start for stream %s", call_id, stream_sid)
        elif event == "media":
            try:
                audio = decode_caller_payload(data["media"]["payload"])
            except (KeyError, TypeError, DecodeError) as exc:
                logger.warning("[%s] Dropping Twilio media: %s", call_id, exc)
                return True
            await self._forward_caller_audio(audio)
        elif event == "stop":
            logger.info("[%s] Stream stopped", call_id)
            return False
        else:
            logger.debug("[%s] Twilio event: %s", call_id, event)
        return True

    async def _forward_caller_audio(self, audio: bytes) -> None:
        if not self.context.agent_ready:
            self.context.buffer_audio(audio)
        elif self.provider.is_open and not self._agent_closed:
            await self.provider.send_audio(audio)
        else:
            logger.debug("[%s] Agent leg closed, dropping caller audio", self.context.call_id)

    # Agent leg

    async def _run_agent_leg(self) -> None:
        context = self.context
        call_id = context.call_id
        try:
            context.agent_state = AgentLegState.AUTHENTICATING
            url = await self.provider.get_connection_url(context.agent_id)
            logger.info("[%s] Got signed URL, connecting to agent %s", call_id, context.agent_id)

            context.agent_state = AgentLegState.CONNECTING
            await self.provider.connect(url)

            await self.provider.send_initiation(build_session_config(context, self.settings))
            drained = await self._drain_pending_audio()
            logger.info("[%s] Agent leg ready (%d buffered chunks sent)", call_id, drained)

            async for event in self.provider.receive_events():
                await self.handle_agent_event(event)
            context.agent_state = AgentLegState.CLOSED
            logger.info("[%s] Agent closed the connection", call_id)
        except CredentialExchangeError as exc:
            context.agent_state = AgentLegState.FAILED
            logger.error("[%s] Credential exchange failed: %s", call_id, exc)
        except TransportError as exc:
            context.agent_state = AgentLegState.FAILED
            logger.warning("[%s] Agent transport error: %s", call_id, exc)
        except Exception:
            context.agent_state = AgentLegState.FAILED
            logger.exception("[%s] Error in agent leg", call_id)

    async def _drain_pending_audio(self) -> int:
        # Media arriving while a send is suspended is still queued, so the
        # queue is re-checked until empty before readiness flips.
        drained = 0
        while self.context.pending_audio:
            audio = self.context.pop_pending()
            await self.provider.send_audio(audio)
            drained += 1
        self.context.mark_ready()
        return drained

    async def handle_agent_event(self, event: AgentEvent) -> None:
        """Translate one agent event into Twilio frames or agent replies."""
        call_id = self.context.call_id
        if isinstance(event, AgentAudio):
            await self._send_to_caller({
                "event": "media",
                "streamSid": self.context.stream_sid,
                "media": {"payload": encode_caller_payload(event.audio)},
            })
        elif isinstance(event, Interruption):
            await self._send_to_caller({
                "event": "clear",
                "streamSid": self.context.stream_sid,
            })
        elif isinstance(event, Ping):
            if event.event_id is None:
                logger.warning("[%s] Ping without event id", call_id)
            else:
                await self.provider.send_pong(event.event_id)
        elif isinstance(event, ConversationMetadata):
            logger.info(
                "[%s] Conversation initialized: %s (in=%s, out=%s)",
                call_id,
                event.conversation_id,
                event.user_input_audio_format,
                event.agent_output_audio_format,
            )

    async def _send_to_caller(self, message: dict[str, Any]) -> bool:
        if not self.context.stream_sid or not self._caller_open:
            logger.debug("[%s] Caller not streaming, dropping %s frame", self.context.call_id, message["event"])
            return False
        try:
            await self.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            self._caller_open = False
            raise TransportError(f"Twilio connection lost: {exc}") from exc
        return True

    # Close-cascade

    async def close_caller(self) -> None:
        """Close the Twilio connection once, if it is still open."""
        if self._caller_closed:
            return
        self._caller_closed = True
        if not self._caller_open:
            return
        self._caller_open = False
        try:
            await self.websocket.close()
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug("[%s] Twilio socket already closed: %s", self.context.call_id, exc)

    async def close_agent(self) -> None:
        """Close the agent connection once."""
        if self._agent_closed:
            return
        self._agent_closed = True
        await self.provider.disconnect()
        if not self.context.is_terminal:
            self.context.agent_state = AgentLegState.CLOSED


async def run_bridge(
    websocket: WebSocket,
    settings: Settings,
    context: CallContext,
    provider: AgentProvider | None = None,
) -> None:
    """Bridge audio between a Twilio Media Stream and the configured agent."""
    if provider is None:
        provider = get_provider(settings.PROVIDER, settings)
    await CallBridge(websocket, provider, context, settings).run()
