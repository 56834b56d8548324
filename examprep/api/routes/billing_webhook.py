"""
Stripe webhook endpoint.

Status codes drive Stripe's redelivery: 2xx for processed or intentionally
ignored events, 400 for unauthenticated bodies, 500 when a transition must
be retried, 503 while billing is not configured.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from examprep.core.auth_dependency import get_db
from examprep.core.exceptions import InvalidInput, NotConfigured, SignatureError, TransitionError
from examprep.schemas.billing import WebhookAck
from examprep.services.subscription_store import SubscriptionStore
from examprep.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Billing Webhook"])


@router.post("/webhooks", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    payload = await request.body()
    processor = WebhookProcessor(SubscriptionStore(db))

    try:
        outcome = await run_in_threadpool(processor.process, payload, stripe_signature)
    except NotConfigured as e:
        logger.error(f"Webhook received while billing is not configured: {e}")
        raise HTTPException(status_code=e.status_code, detail=e.public_message)
    except (SignatureError, InvalidInput) as e:
        raise HTTPException(status_code=e.status_code, detail=e.public_message)
    except TransitionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.public_message)

    logger.debug(f"Webhook acknowledged: outcome={outcome.value}")
    return WebhookAck(received=True)
