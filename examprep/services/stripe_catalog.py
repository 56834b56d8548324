"""
Stripe catalog provisioning.

Finds or creates the subscription product and one recurring price per paid
plan, then caches the resulting ids for the lifetime of the process.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

import stripe

from examprep.core import config
from examprep.core.exceptions import InvalidPlanError, ProvisioningError
from examprep.services.plans import (
    PAID_PLANS,
    PRODUCT_DESCRIPTION,
    PRODUCT_NAME,
    Plan,
    get_plan,
)
from examprep.services.stripe_service import require_configured, stripe_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogIds:
    product_id: str
    price_ids: Dict[str, str] = field(default_factory=dict)

    def price_id_for(self, plan_id: str) -> str:
        try:
            return self.price_ids[plan_id]
        except KeyError:
            raise InvalidPlanError(f"No price for plan: {plan_id}")


def _price_matches(price, plan: Plan) -> bool:
    recurring = stripe_value(price, "recurring")
    return (
        stripe_value(recurring, "interval") == plan.interval
        and stripe_value(price, "unit_amount") == plan.price
        and stripe_value(price, "currency", "").lower() == config.BILLING_CURRENCY.lower()
        and bool(stripe_value(price, "active", False))
    )


class CatalogProvisioner:
    """
    Single-flight, lazily initialized holder of the provisioned catalog ids.
    
    The first caller provisions under a lock; concurrent first callers wait
    for it and reuse the result. A failed attempt caches nothing, so the next
    call tries again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._catalog: Optional[CatalogIds] = None

    @property
    def cached(self) -> Optional[CatalogIds]:
        return self._catalog

    def ensure_catalog(self) -> CatalogIds:
        catalog = self._catalog
        if catalog is not None:
            return catalog
        
        with self._lock:
            if self._catalog is None:
                self._catalog = self._provision()
            return self._catalog

    def price_id_for(self, plan_id: str) -> str:
        return self.ensure_catalog().price_id_for(plan_id)

    def reset(self) -> None:
        """Forget the cached ids (used when the Stripe account changes)."""
        with self._lock:
            self._catalog = None

    def _provision(self) -> CatalogIds:
        require_configured()
        
        try:
            product_id = self._find_or_create_product()
            prices = stripe.Price.list(product=product_id, limit=100)
            existing = stripe_value(prices, "data", [])
            
            price_ids: Dict[str, str] = {}
            for plan_id in PAID_PLANS:
                plan = get_plan(plan_id)
                price = next((p for p in existing if _price_matches(p, plan)), None)
                if price is None:
                    price = stripe.Price.create(
                        product=product_id,
                        unit_amount=plan.price,
                        currency=config.BILLING_CURRENCY,
                        recurring={"interval": plan.interval},
                        nickname=plan.nickname,
                    )
                    logger.info(f"Created Stripe price: plan={plan_id}, price_id={price['id']}")
                price_ids[plan_id] = price["id"]
        except stripe.StripeError as e:
            logger.error(f"Stripe catalog provisioning failed: {e}")
            raise ProvisioningError("Failed to provision Stripe catalog") from e
        
        logger.info(f"Stripe products initialized: product_id={product_id}, prices={price_ids}")
        return CatalogIds(product_id=product_id, price_ids=price_ids)

    def _find_or_create_product(self) -> str:
        products = stripe.Product.list(active=True, limit=100)
        for product in stripe_value(products, "data", []):
            if stripe_value(product, "name") == PRODUCT_NAME:
                return product["id"]
        
        product = stripe.Product.create(
            name=PRODUCT_NAME,
            description=PRODUCT_DESCRIPTION,
        )
        logger.info(f"Created Stripe product: product_id={product['id']}")
        return product["id"]


# Process-wide catalog
catalog = CatalogProvisioner()
