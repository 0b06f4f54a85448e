"""FastAPI application: health check, TwiML webhook, and WebSocket handler."""

import logging
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.responses import JSONResponse, Response
from twilio.request_validator import RequestValidator  # type: ignore[import-untyped]
from twilio.twiml.voice_response import VoiceResponse  # type: ignore[import-untyped]

from .bridge import run_bridge
from .config import Settings
from .context import CallContext
from .errors import ConfigurationError
from .providers import get_provider

logger = logging.getLogger(__name__)

settings = Settings()

app = FastAPI()


def build_call_context(params: dict[str, str], config: Settings) -> CallContext:
    """Create the CallContext for an upgrade request, or refuse it."""
    agent_id = params.get("agent_id") or config.ELEVENLABS_AGENT_ID
    if not agent_id:
        raise ConfigurationError("Missing agent_id")
    if not config.ELEVENLABS_API_KEY:
        raise ConfigurationError("ELEVENLABS_API_KEY not configured")
    return CallContext(
        call_id=params.get("call_sid", ""),
        agent_id=agent_id,
        caller_name=params.get("business_name") or config.DEFAULT_CALLER_NAME,
        phone_number=params.get("phone_number", ""),
    )


@app.get("/")
@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """TwiML webhook for incoming Twilio calls.

    The call details go on the stream URL's query string, which is what
    `/media-stream` reads at upgrade time. Twilio itself does not forward query
    strings on `<Stream>` URLs; behind Twilio alone only the `<Parameter>`
    copies arrive, inside the `start` event's `customParameters`, so the agent
    falls back to ELEVENLABS_AGENT_ID and the caller to DEFAULT_CALLER_NAME.
    """
    form = dict(await request.form())
    if settings.TWILIO_AUTH_TOKEN:
        signature = request.headers.get("X-Twilio-Signature", "")
        proto = request.headers.get("x-forwarded-proto", "https")
        host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
        url = f"{proto}://{host}{request.url.path}"
        if not RequestValidator(settings.TWILIO_AUTH_TOKEN).validate(url, form, signature):
            logger.warning("Invalid Twilio signature")
            return JSONResponse({"error": "Forbidden"}, status_code=403)

    query = {
        "agent_id": request.query_params.get("agent_id") or settings.ELEVENLABS_AGENT_ID,
        "business_name": request.query_params.get("business_name") or settings.DEFAULT_CALLER_NAME,
        "phone_number": form.get("From", ""),
        "call_sid": form.get("CallSid", ""),
    }
    ws_host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
    response = VoiceResponse()
    connect = response.connect()
    stream = connect.stream(url=f"wss://{ws_host}/media-stream?{urlencode(query)}")
    for name, value in query.items():
        if value:
            stream.parameter(name=name, value=value)

    return Response(content=str(response), media_type="application/xml")


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """Accept a Twilio Media Stream and bridge it to the voice agent."""
    try:
        context = build_call_context(dict(websocket.query_params), settings)
        provider = get_provider(settings.PROVIDER, settings)
    except ConfigurationError as exc:
        logger.error("Rejecting media stream: %s", exc)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info("[%s] Media stream connected from %s", context.call_id, websocket.client)
    try:
        await run_bridge(websocket, settings, context, provider)
    except Exception:
        logger.exception("[%s] Bridge error", context.call_id)
    finally:
        logger.info("[%s] Media stream closed", context.call_id)


def main() -> None:
    """Run the bridge server."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
