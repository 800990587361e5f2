"""
RevenueTrackingService - analytics over Stripe-verified organizations.

Reads identities verified through Stripe and refreshes each one from the
payment provider. Customers deleted at the provider are skipped; any other
provider failure raises ExternalVerificationError rather than dropping the org
or reporting zero payments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Sequence

from fptrust.config.defaults import REVENUE_HIGH_VALUE_MIN_PAYMENTS
from fptrust.errors import ExternalVerificationError
if TYPE_CHECKING:
    from fptrust.storage.base import IdentityStoreAdapter

from .models import OrganizationIdentity, utcnow
from .verification import (
    PaymentProviderClient,
    ProviderClientError,
    customer_type_of,
    is_business_verified,
    wrap_stripe_error,
)

logger = logging.getLogger(__name__)


@dataclass
class RevenueVerifiedOrg:
    org_id: str
    stripe_customer_id: str
    verified_at: datetime
    account_age_days: int
    payment_count: int
    has_active_subscription: bool
    is_business_verified: bool
    customer_type: Optional[str] = None
    subscription_product_ids: List[str] = field(default_factory=list)


@dataclass
class RevenueStats:
    total_stripe_verified_orgs: int = 0
    avg_account_age_days: int = 0
    avg_payment_count: float = 0.0
    active_subscription_count: int = 0
    business_verified_count: int = 0
    individual_count: int = 0
    company_count: int = 0


class RevenueTrackingService:
    def __init__(self, identities: IdentityStoreAdapter, client: PaymentProviderClient):
        self.identities = identities
        self.client = client

    async def _refresh(
        self, identity: OrganizationIdentity, now: datetime
    ) -> Optional[RevenueVerifiedOrg]:
        customer_id = identity.stripe_customer_id
        try:
            customer = await self.client.get_customer(customer_id)
            if customer.deleted:
                logger.info(f"Skipping {identity.org_id}: customer {customer_id} deleted")
                return None
            payments = await self.client.count_successful_payments(customer_id)
            products = await self.client.list_active_subscription_products(customer_id)
        except ProviderClientError as e:
            if e.kind == "NOT_FOUND":
                logger.info(f"Skipping {identity.org_id}: customer {customer_id} not found")
                return None
            raise wrap_stripe_error(e, identity.org_id) from e
        except ExternalVerificationError:
            raise
        except Exception as e:
            raise wrap_stripe_error(e, identity.org_id) from e

        return RevenueVerifiedOrg(
            org_id=identity.org_id,
            stripe_customer_id=customer_id,
            verified_at=identity.verified_at,
            account_age_days=(now - customer.created_at).days,
            payment_count=payments,
            has_active_subscription=bool(products),
            is_business_verified=is_business_verified(customer),
            customer_type=customer_type_of(customer),
            subscription_product_ids=list(products),
        )

    async def get_revenue_verified_orgs(self) -> List[RevenueVerifiedOrg]:
        """Every Stripe-verified org still known to the provider, ordered by org id."""
        now = utcnow()
        orgs = []
        for identity in await self.identities.list_stripe_verified_identities():
            if not identity.stripe_customer_id:
                continue
            org = await self._refresh(identity, now)
            if org is not None:
                orgs.append(org)
        return orgs

    async def get_revenue_stats(self) -> RevenueStats:
        orgs = await self.get_revenue_verified_orgs()
        if not orgs:
            return RevenueStats()

        count = len(orgs)
        return RevenueStats(
            total_stripe_verified_orgs=count,
            avg_account_age_days=round(sum(o.account_age_days for o in orgs) / count),
            avg_payment_count=round(sum(o.payment_count for o in orgs) / count, 1),
            active_subscription_count=sum(1 for o in orgs if o.has_active_subscription),
            business_verified_count=sum(1 for o in orgs if o.is_business_verified),
            individual_count=sum(1 for o in orgs if o.customer_type == "individual"),
            company_count=sum(1 for o in orgs if o.customer_type == "company"),
        )

    async def get_active_subscribers(
        self, product_ids: Optional[Sequence[str]] = None
    ) -> List[RevenueVerifiedOrg]:
        """Orgs with an active subscription, optionally to one of ``product_ids``."""
        orgs = [o for o in await self.get_revenue_verified_orgs() if o.has_active_subscription]
        if not product_ids:
            return orgs
        wanted = set(product_ids)
        return [o for o in orgs if wanted.intersection(o.subscription_product_ids)]

    async def get_high_value_orgs(
        self, min_payments: int = REVENUE_HIGH_VALUE_MIN_PAYMENTS
    ) -> List[RevenueVerifiedOrg]:
        return [o for o in await self.get_revenue_verified_orgs() if o.payment_count >= min_payments]

    async def get_orgs_by_verification_date(
        self, start: datetime, end: Optional[datetime] = None
    ) -> List[RevenueVerifiedOrg]:
        """Orgs whose identity was verified within [start, end]; end defaults to now."""
        end = end or utcnow()
        return [
            o for o in await self.get_revenue_verified_orgs()
            if start <= o.verified_at <= end
        ]
