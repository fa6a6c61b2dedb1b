"""
HTTP layer - webhook endpoints and the sync-now trigger.

Routes:
    GET  /webhooks/instagram   subscription handshake (echo hub.challenge)
    POST /webhooks/instagram   webhook receipt -> WebhookProcessor
    POST /sync                 queue a sync-now request {user_id, full_sync}
    GET  /health               liveness

Every correctly signed, well-formed webhook gets a 200, whatever happened
inside the processor, so the platform never redelivers because of us.
"""

import json
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from dm_pilot import __version__
from dm_pilot.instagram import verify_webhook_signature
from dm_pilot.webhook_processor import WebhookProcessor
from dm_pilot.worker import BackgroundWorker

logger = logging.getLogger(__name__)


class SyncNowRequest(BaseModel):
    user_id: str
    full_sync: Optional[bool] = None


def create_app(
    processor: WebhookProcessor,
    verify_token: str,
    app_secret: str,
    signature_required: bool = True,
    worker: Optional[BackgroundWorker] = None,
) -> FastAPI:
    """Build the FastAPI app around already-wired components."""
    app = FastAPI(title="DM Pilot", version=__version__)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/webhooks/instagram")
    async def verify_webhook(
        mode: Optional[str] = Query(None, alias="hub.mode"),
        token: Optional[str] = Query(None, alias="hub.verify_token"),
        challenge: Optional[str] = Query(None, alias="hub.challenge"),
    ):
        """
        Webhook verification endpoint.

        The platform sends a GET with a challenge that must be echoed back
        as plain text.
        """
        if mode is None:
            return PlainTextResponse("ok")
        if mode == "subscribe" and verify_token and token == verify_token:
            return PlainTextResponse(challenge or "")

        logger.warning(f"Webhook verification failed: mode={mode}")
        raise HTTPException(status_code=403, detail="Verification failed")

    @app.post("/webhooks/instagram")
    async def receive_webhook(request: Request) -> dict:
        body = await request.body()

        if signature_required:
            signature = request.headers.get("X-Hub-Signature-256")
            if not verify_webhook_signature(body, signature, app_secret):
                logger.warning("Webhook rejected: invalid signature")
                raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

        result = await processor.process(payload)
        logger.info(f"Webhook processed: {result.outcome.value}")
        return {"status": result.status}

    @app.post("/sync", status_code=202)
    async def sync_now(request: SyncNowRequest) -> dict:
        if worker is None:
            raise HTTPException(status_code=503, detail="Worker not running")
        queued = worker.request_sync(request.user_id, request.full_sync)
        return {"status": "queued" if queued else "already_queued", "user_id": request.user_id}

    return app
