"""
FastAPI Application — webhooks plus the control surface of the automation engine.

Provides:
- WhatsApp webhook verification and inbound intake (events go to the queue)
- Manual flow start / cancel and flow publishing
- Campaign control and progress
- CRM stage-change entry point
- Worker lifecycle (queue consumer, campaign and CRM tickers) via lifespan
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from channels.base import ResilientGateway
from channels.whatsapp_adapter import WhatsAppCloudGateway
from config.settings import get_settings
from core.errors import ConfigurationError
from core.orchestrator import AutomationOrchestrator
from database.session import close_db, configure_engine, init_db
from database.store_factory import create_store
from job_queue.consumer import publish_inbound
from job_queue.message_queue import Queues, create_message_queue
from models.schemas import StageChangeEvent, utcnow

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()
store = create_store({"store_backend": settings.database.store_backend})
whatsapp_client = WhatsAppCloudGateway(settings.gateway)
gateway = ResilientGateway(whatsapp_client, settings.gateway)
message_queue = create_message_queue(settings.queue)
orchestrator = AutomationOrchestrator(store, gateway, settings, queue=message_queue)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database.store_backend == "sql":
        configure_engine(settings.database.url)
        await init_db()

    await orchestrator.start()
    logger.info("automation_engine_started",
                store_backend=settings.database.store_backend,
                queue_backend=type(message_queue).__name__)
    yield

    await orchestrator.stop()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("automation_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Automation Engine API",
    description="Flow execution, campaign dispatch and CRM stage automations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class StartFlowRequest(BaseModel):
    conversation_id: str
    variables: dict[str, str] = {}


class CancelFlowRequest(BaseModel):
    reason: str = "manual"


class StageChangeRequest(BaseModel):
    deal_id: str
    from_stage: str = ""
    to_stage: str


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "store_backend": settings.database.store_backend,
        "tickers": {t.name: t.running for t in orchestrator.tickers},
    }


@app.get("/api/v1/stats")
async def get_stats():
    return await orchestrator.stats()


@app.get("/api/v1/queue/stats")
async def queue_stats():
    return {
        "inbound_queue_depth": await message_queue.queue_length(Queues.INBOUND),
        "delayed_depth": await message_queue.queue_length(Queues.DELAYED),
        "dlq_depth": await message_queue.queue_length(Queues.DLQ),
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    challenge = whatsapp_client.verify_webhook(dict(request.query_params))
    if challenge is None:
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    """Parse the webhook and queue one job per inbound message."""
    body = await request.json()
    events = whatsapp_client.parse_inbound(body)
    for event in events:
        await publish_inbound(event, message_queue)
    return {"status": "ok", "queued": len(events)}


# ══════════════════════════════════════════════════════════════
#  FLOWS
# ══════════════════════════════════════════════════════════════

@app.post("/flows/{flow_id}/start")
async def start_flow(flow_id: str, req: StartFlowRequest):
    try:
        session = await orchestrator.start_flow(flow_id, req.conversation_id, req.variables)
    except ConfigurationError as e:
        raise HTTPException(422, str(e))
    if session is None:
        raise HTTPException(409, "Conversation already has an active flow session")
    return session.model_dump(mode="json")


@app.post("/flows/{flow_id}/publish")
async def publish_flow(flow_id: str):
    try:
        version = await orchestrator.publish_flow(flow_id)
    except ConfigurationError as e:
        raise HTTPException(422, str(e))
    return {"flow_id": flow_id, "version": version.version,
            "published_at": version.published_at.isoformat()}


@app.post("/conversations/{conversation_id}/cancel-flow")
async def cancel_flow(conversation_id: str, req: CancelFlowRequest = CancelFlowRequest()):
    session = await orchestrator.cancel_session(conversation_id, req.reason)
    if session is None:
        raise HTTPException(404, "No active flow session")
    return {"session_id": session.id, "status": session.status.value}


# ══════════════════════════════════════════════════════════════
#  CAMPAIGNS
# ══════════════════════════════════════════════════════════════

async def _control(campaign_id: str, action: str) -> dict[str, Any]:
    if await orchestrator.campaign_progress(campaign_id) is None:
        raise HTTPException(404, "Campaign not found")
    if not await orchestrator.control_campaign(campaign_id, action):
        raise HTTPException(409, f"Campaign cannot {action} from its current status")
    return await orchestrator.campaign_progress(campaign_id)


@app.post("/campaigns/{campaign_id}/pause")
async def pause_campaign(campaign_id: str):
    return await _control(campaign_id, "pause")


@app.post("/campaigns/{campaign_id}/resume")
async def resume_campaign(campaign_id: str):
    return await _control(campaign_id, "resume")


@app.post("/campaigns/{campaign_id}/cancel")
async def cancel_campaign(campaign_id: str):
    return await _control(campaign_id, "cancel")


@app.get("/campaigns/{campaign_id}/progress")
async def campaign_progress(campaign_id: str):
    progress = await orchestrator.campaign_progress(campaign_id)
    if progress is None:
        raise HTTPException(404, "Campaign not found")
    return progress


# ══════════════════════════════════════════════════════════════
#  CRM
# ══════════════════════════════════════════════════════════════

@app.post("/crm/stage-change")
async def stage_change(req: StageChangeRequest):
    automation = await orchestrator.on_stage_change(
        StageChangeEvent(deal_id=req.deal_id, from_stage=req.from_stage, to_stage=req.to_stage),
    )
    if automation is None:
        return {"deal_id": req.deal_id, "automation": None}
    return {"deal_id": req.deal_id, "automation": automation.model_dump(mode="json")}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
