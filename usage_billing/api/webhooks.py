"""Payment provider webhook route."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from usage_billing.api.deps import get_db
from usage_billing.schemas.billing import WebhookAck
from usage_billing.services.payment_gateway import stripe_gateway
from usage_billing.services.webhooks import webhook_processor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> dict:
    """Handle Stripe webhook. No auth; the signature is verified.

    Handler failures surface as 500 so Stripe redelivers the event.
    """
    if not stripe_gateway.is_configured():
        raise HTTPException(status_code=503, detail="Payment gateway not configured")

    body = await request.body()
    signature = request.headers.get("stripe-signature", "")
    result = webhook_processor.ingest(db, body, signature)
    return {"status": "ok", "result": result["status"], "event_id": result["event_id"]}
