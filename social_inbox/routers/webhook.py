from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from social_inbox.config import settings
from social_inbox.database import get_db
from social_inbox.dependencies import get_webhook_processor
from social_inbox.logging_config import get_logger
from social_inbox.services.webhook_service import WebhookProcessor

logger = get_logger("webhook")

router = APIRouter()

ACK = "EVENT_RECEIVED"


@router.get("/facebook/webhook", response_class=PlainTextResponse)
async def verify_webhook(request: Request):
    """Meta subscription handshake: echo hub.challenge when the verify token matches."""
    params = request.query_params
    expected = settings.webhook_verify_token
    if params.get("hub.mode") == "subscribe" and expected and params.get("hub.verify_token") == expected:
        return PlainTextResponse(params.get("hub.challenge") or "")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post("/facebook/webhook", response_class=PlainTextResponse)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    # Always acknowledge; a non-200 makes Meta retry the whole batch.
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON")
        return PlainTextResponse(ACK)

    try:
        stored = await processor.handle(db, body)
        source = body.get("object") if isinstance(body, dict) else None
        logger.info("Webhook processed", extra={"context": {"object": source, "stored": stored}})
    except Exception:
        logger.exception("Webhook processing failed")
    return PlainTextResponse(ACK)
