"""
FastAPI Application — WhatsApp webhook front door for the coffee-shop agent.

Provides:
- Webhook verification and inbound message delivery for WhatsApp
- Health endpoint with live session count and channel diagnostics
- Background sweep of idle sessions
"""
from __future__ import annotations

import json
import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from config.settings import configure_logging, get_settings
from backend.connector import create_backend_connector
from channels.whatsapp_adapter import WhatsAppAdapter
from context.session import SessionSweeper
from core.engine import NLUEngine
from core.router import DialogueRouter, build_session_store
from voice.speech import SpeechService

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
configure_logging(_settings_boot.log_level)

backend_connector = create_backend_connector(_settings_boot.backend)
nlu_engine = NLUEngine(_settings_boot.llm)
speech_service = SpeechService(_settings_boot.speech)
whatsapp_adapter = WhatsAppAdapter(_settings_boot.whatsapp)

session_store = build_session_store(
    backend_connector,
    idle_timeout=timedelta(minutes=_settings_boot.session.idle_timeout_minutes),
)
router = DialogueRouter(
    sessions=session_store,
    channel=whatsapp_adapter,
    backend=backend_connector,
    nlu=nlu_engine,
    speech=speech_service,
    currency_symbol=_settings_boot.currency_symbol,
)
session_sweeper = SessionSweeper(
    session_store,
    interval_seconds=_settings_boot.session.sweep_interval_seconds,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await session_sweeper.start_background()

    logger.info("coffee_agent_started",
                app_name=settings.app_name,
                backend=type(backend_connector).__name__,
                llm_configured=nlu_engine.is_configured,
                tts_available=speech_service.is_tts_available)
    yield

    await session_sweeper.stop()
    await backend_connector.close()
    await whatsapp_adapter.shutdown()
    logger.info("coffee_agent_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Coffee Order Agent",
    description="WhatsApp ordering assistant for a coffee shop",
    version="1.0.0",
    lifespan=lifespan,
)


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sessions": session_store.count,
        "tts_available": speech_service.is_tts_available,
        "channel": await whatsapp_adapter.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    params = dict(request.query_params)
    challenge = whatsapp_adapter.verify_webhook(params)
    if challenge:
        try:
            return JSONResponse(content=int(challenge))
        except ValueError:
            return JSONResponse(content=challenge)
    raise HTTPException(403, "Verification failed")


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    """Receive WhatsApp messages with signature verification."""
    body_bytes = await request.body()

    signature = request.headers.get("X-Hub-Signature-256", "")
    if not whatsapp_adapter.verify_webhook_signature(body_bytes, signature):
        logger.warning("whatsapp_webhook_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        body = json.loads(body_bytes)
    except ValueError:
        logger.warning("whatsapp_webhook_malformed", size=len(body_bytes))
        raise HTTPException(400, "Malformed payload")

    messages = await whatsapp_adapter.handle_inbound(body)
    results = []
    for message in messages:
        if message.message_id:
            asyncio.create_task(whatsapp_adapter.mark_read(message.message_id))
        results.append(await router.handle_message(message))

    return {"status": "ok", "processed": len(results)}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
