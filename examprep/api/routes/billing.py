"""
Billing endpoints: checkout, customer portal and subscription view.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from examprep.core.auth_dependency import get_current_user_obj, get_db
from examprep.core.exceptions import BillingError
from examprep.db.models.user import User
from examprep.schemas.billing import (
    BillingErrorResponse,
    CheckoutSessionRequest,
    PlanInfo,
    SubscriptionResponse,
    UrlResponse,
)
from examprep.services import billing_service
from examprep.services.plans import list_plans
from examprep.services.stripe_catalog import catalog
from examprep.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Billing"])

ERROR_RESPONSES = {
    400: {"model": BillingErrorResponse},
    401: {"model": BillingErrorResponse},
    404: {"model": BillingErrorResponse},
    500: {"model": BillingErrorResponse},
    503: {"model": BillingErrorResponse},
}


def _to_http(error: BillingError, action: str) -> HTTPException:
    if error.status_code >= 500:
        logger.error(f"{action} failed: {error!r}", exc_info=error)
    else:
        logger.info(f"{action} rejected: {error!r}")
    return HTTPException(status_code=error.status_code, detail=error.public_message)


@router.post("/checkout", response_model=UrlResponse, responses=ERROR_RESPONSES)
def create_checkout(
    body: CheckoutSessionRequest,
    request: Request,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    """
    Start a hosted Stripe checkout for the monthly or annual plan.
    
    Returns the checkout URL the frontend redirects to.
    """
    try:
        url = billing_service.create_checkout_session(
            SubscriptionStore(db),
            user,
            body.plan_id,
            origin=request.headers.get("origin"),
        )
    except BillingError as e:
        raise _to_http(e, f"Checkout for user_id={user.id}")
    return UrlResponse(url=url)


@router.post("/portal", response_model=UrlResponse, responses=ERROR_RESPONSES)
def create_portal(
    request: Request,
    user: User = Depends(get_current_user_obj),
):
    """Open the Stripe customer portal to manage or cancel the subscription."""
    try:
        url = billing_service.create_portal_session(user, origin=request.headers.get("origin"))
    except BillingError as e:
        raise _to_http(e, f"Portal for user_id={user.id}")
    return UrlResponse(url=url)


@router.get("/subscription", response_model=SubscriptionResponse, status_code=status.HTTP_200_OK,
            responses={401: ERROR_RESPONSES[401], 404: ERROR_RESPONSES[404]})
def get_subscription(user: User = Depends(get_current_user_obj)):
    """Current tier and status of the authenticated user, plus the available plans."""
    return SubscriptionResponse(
        tier=user.subscription_tier,
        status=user.subscription_status,
        current_period_end=user.subscription_current_period_end,
        has_customer=bool(user.stripe_customer_id),
        plans=[
            PlanInfo(
                id=plan.id,
                name=plan.name,
                price=plan.price,
                interval=plan.interval,
                exam_limit=plan.exam_limit,
                price_id=plan.price_id,
            )
            for plan in list_plans(catalog.cached.price_ids if catalog.cached else None)
        ],
    )
