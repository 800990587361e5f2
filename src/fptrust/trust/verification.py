"""
External verification oracle.

Policy lives here; provider wire calls sit behind narrow async client
protocols supplied by the deployment. A failed provider call always raises
ExternalVerificationError. It is never read as "not delinquent" or
"zero payments".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from fptrust.config import env_bool, env_int
from fptrust.config.defaults import (
    GITHUB_ALLOW_PRIVATE_ORG_FALLBACK,
    GITHUB_MIN_AGE_DAYS,
    GITHUB_MIN_MEMBER_COUNT,
    GITHUB_MIN_PUBLIC_REPOS,
    GITHUB_RECENT_ACTIVITY_DAYS,
    STRIPE_ALLOWED_CUSTOMER_TYPES,
    STRIPE_MIN_AGE_DAYS,
    STRIPE_MIN_SUCCESSFUL_PAYMENTS,
    STRIPE_REJECT_DELINQUENT,
    STRIPE_REQUIRE_ACTIVE_SUBSCRIPTION,
    STRIPE_REQUIRE_VERIFIED_BUSINESS,
)
from fptrust.errors import ExternalVerificationError

from .models import VerificationMethod, VerificationResult, utcnow

logger = logging.getLogger(__name__)


class ProviderClientError(Exception):
    """Raised by provider clients. ``kind`` is RATE_LIMIT, INVALID_KEY, NOT_FOUND or API_ERROR."""

    def __init__(self, message: str, kind: str = "API_ERROR"):
        super().__init__(message)
        self.kind = kind


# =============================================================================
# Provider client protocols
# =============================================================================


@dataclass
class PaymentCustomer:
    customer_id: str
    created_at: datetime
    delinquent: bool = False
    tax_ids: List[str] = field(default_factory=list)
    deleted: bool = False
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class DirectoryOrganization:
    org_id: int
    login: str
    created_at: datetime
    public_repos: int


@runtime_checkable
class PaymentProviderClient(Protocol):
    async def get_customer(self, customer_id: str) -> PaymentCustomer: ...

    async def count_successful_payments(self, customer_id: str) -> int: ...

    async def list_active_subscription_products(self, customer_id: str) -> List[str]: ...

    async def list_open_invoice_due_dates(self, customer_id: str) -> List[Optional[datetime]]: ...


@runtime_checkable
class OrgDirectoryClient(Protocol):
    async def get_organization(self, login: str) -> DirectoryOrganization: ...

    async def count_members(self, login: str) -> int: ...

    async def latest_public_activity(self, login: str) -> Optional[datetime]: ...


@runtime_checkable
class VerificationOracle(Protocol):
    async def verify_customer(self, org_id: str, external_id: str) -> VerificationResult: ...


@runtime_checkable
class PaymentVerificationOracle(VerificationOracle, Protocol):
    async def has_delinquent_invoices(self, customer_id: str) -> bool: ...


def _age_days(created_at: datetime, now: datetime) -> int:
    return (now - created_at).days


def customer_type_of(customer: PaymentCustomer) -> Optional[str]:
    """Explicit metadata type, else company if tax IDs are on file, else individual if named."""
    if customer.metadata.get("customer_type"):
        return customer.metadata["customer_type"]
    if customer.tax_ids:
        return "company"
    if customer.name:
        return "individual"
    return None


def is_business_verified(customer: PaymentCustomer) -> bool:
    return customer.metadata.get("business_verified") == "true" or bool(customer.tax_ids)


def wrap_stripe_error(error: Exception, org_id: Optional[str] = None) -> ExternalVerificationError:
    kind = getattr(error, "kind", "API_ERROR")
    messages = {
        "RATE_LIMIT": "Stripe API rate limit exceeded",
        "INVALID_KEY": "Invalid Stripe API key",
    }
    return ExternalVerificationError(
        messages.get(kind, "Stripe API request failed"),
        provider="stripe",
        kind=kind,
        org_id=org_id,
        reason=str(error),
    )


# =============================================================================
# Stripe
# =============================================================================


@dataclass(frozen=True)
class StripeVerificationConfig:
    min_age_days: int = STRIPE_MIN_AGE_DAYS
    min_successful_payments: int = STRIPE_MIN_SUCCESSFUL_PAYMENTS
    require_active_subscription: bool = STRIPE_REQUIRE_ACTIVE_SUBSCRIPTION
    reject_delinquent: bool = STRIPE_REJECT_DELINQUENT
    allowed_customer_types: Tuple[str, ...] = STRIPE_ALLOWED_CUSTOMER_TYPES
    require_verified_business: bool = STRIPE_REQUIRE_VERIFIED_BUSINESS

    @classmethod
    def from_env(cls) -> "StripeVerificationConfig":
        return cls(
            min_age_days=env_int("STRIPE_MIN_AGE_DAYS", STRIPE_MIN_AGE_DAYS),
            min_successful_payments=env_int(
                "STRIPE_MIN_PAYMENTS", STRIPE_MIN_SUCCESSFUL_PAYMENTS),
            require_active_subscription=env_bool(
                "STRIPE_REQUIRE_SUBSCRIPTION", STRIPE_REQUIRE_ACTIVE_SUBSCRIPTION),
            reject_delinquent=env_bool("STRIPE_REJECT_DELINQUENT", STRIPE_REJECT_DELINQUENT),
            require_verified_business=env_bool(
                "STRIPE_REQUIRE_VERIFIED_BUSINESS", STRIPE_REQUIRE_VERIFIED_BUSINESS),
        )


class StripeVerifier:
    """Payment-history policy over a PaymentProviderClient."""

    provider = "stripe"

    def __init__(
        self,
        client: PaymentProviderClient,
        config: Optional[StripeVerificationConfig] = None,
    ):
        self.client = client
        self.config = config or StripeVerificationConfig()

    def _validate_customer_id(self, customer_id: str) -> None:
        if not customer_id.startswith("cus_"):
            raise ExternalVerificationError(
                f"Invalid Stripe customer ID format: {customer_id} (must start with 'cus_')",
                provider=self.provider,
                kind="INVALID_CUSTOMER_ID",
            )

    def _wrap(self, error: Exception, org_id: Optional[str]) -> ExternalVerificationError:
        return wrap_stripe_error(error, org_id)

    def _failure(self, customer_id: str, reason: str, **metadata: Any) -> VerificationResult:
        logger.warning(f"Stripe verification rejected {customer_id}: {reason}")
        return VerificationResult(
            verified=False,
            method=VerificationMethod.STRIPE_CUSTOMER,
            metadata={"customer_id": customer_id, **metadata},
            reason=reason,
        )

    async def verify_customer(self, org_id: str, external_id: str) -> VerificationResult:
        """
        Apply the payment-history policy to a Stripe customer.

        Policy rejections come back as unverified results. Provider failures
        raise ExternalVerificationError.
        """
        self._validate_customer_id(external_id)
        cfg = self.config
        now = utcnow()

        try:
            customer = await self.client.get_customer(external_id)
            if customer.deleted:
                return self._failure(external_id, f"Stripe customer '{external_id}' not found")

            age = _age_days(customer.created_at, now)
            if age < cfg.min_age_days:
                return self._failure(
                    external_id,
                    f"Customer account too new ({age} days, minimum {cfg.min_age_days})",
                )

            if cfg.reject_delinquent and customer.delinquent:
                return self._failure(
                    external_id, "Customer has delinquent invoices", delinquent=True
                )

            payments = await self.client.count_successful_payments(external_id)
            if payments < cfg.min_successful_payments:
                return self._failure(
                    external_id,
                    f"Insufficient payment history ({payments} payments, "
                    f"minimum {cfg.min_successful_payments})",
                )

            products = await self.client.list_active_subscription_products(external_id)
        except ProviderClientError as e:
            if e.kind == "NOT_FOUND":
                return self._failure(external_id, f"Stripe customer '{external_id}' not found")
            raise self._wrap(e, org_id) from e
        except ExternalVerificationError:
            raise
        except Exception as e:
            raise self._wrap(e, org_id) from e

        if cfg.require_active_subscription and not products:
            return self._failure(external_id, "No active subscription found")

        # tax IDs mark a registered business
        business_verified = bool(customer.tax_ids)
        customer_type = "company" if business_verified else "individual"
        if customer_type not in cfg.allowed_customer_types:
            return self._failure(
                external_id,
                f"Customer type '{customer_type}' not allowed "
                f"(allowed: {', '.join(cfg.allowed_customer_types)})",
            )
        if cfg.require_verified_business and not business_verified:
            return self._failure(
                external_id, "Business verification required but not completed"
            )

        logger.info(f"Stripe customer verified for {org_id}")
        return VerificationResult(
            verified=True,
            method=VerificationMethod.STRIPE_CUSTOMER,
            reason="Stripe customer verified",
            verified_at=now,
            metadata={
                "customer_id": customer.customer_id,
                "account_age_days": age,
                "successful_payments": payments,
                "has_active_subscription": bool(products),
                "subscription_product_ids": list(products),
                "delinquent": customer.delinquent,
                "customer_type": customer_type,
                "business_verified": business_verified,
            },
        )

    async def has_delinquent_invoices(self, customer_id: str) -> bool:
        """True if any open invoice is past due. Raises on provider failure."""
        self._validate_customer_id(customer_id)
        try:
            due_dates = await self.client.list_open_invoice_due_dates(customer_id)
        except Exception as e:
            raise self._wrap(e, None) from e
        now = utcnow()
        return any(due is not None and due < now for due in due_dates)


# =============================================================================
# GitHub
# =============================================================================


@dataclass(frozen=True)
class GitHubVerificationConfig:
    min_age_days: int = GITHUB_MIN_AGE_DAYS
    min_member_count: int = GITHUB_MIN_MEMBER_COUNT
    min_public_repos: int = GITHUB_MIN_PUBLIC_REPOS
    recent_activity_days: int = GITHUB_RECENT_ACTIVITY_DAYS
    allow_private_org_fallback: bool = GITHUB_ALLOW_PRIVATE_ORG_FALLBACK

    @classmethod
    def from_env(cls) -> "GitHubVerificationConfig":
        return cls(
            min_age_days=env_int("GITHUB_MIN_AGE_DAYS", GITHUB_MIN_AGE_DAYS),
            min_member_count=env_int("GITHUB_MIN_MEMBERS", GITHUB_MIN_MEMBER_COUNT),
            min_public_repos=env_int("GITHUB_MIN_PUBLIC_REPOS", GITHUB_MIN_PUBLIC_REPOS),
            recent_activity_days=env_int(
                "GITHUB_RECENT_ACTIVITY_DAYS", GITHUB_RECENT_ACTIVITY_DAYS),
            allow_private_org_fallback=env_bool(
                "GITHUB_PRIVATE_ORG_FALLBACK", GITHUB_ALLOW_PRIVATE_ORG_FALLBACK),
        )


class GitHubVerifier:
    """Org-membership policy over an OrgDirectoryClient."""

    provider = "github"

    def __init__(
        self,
        client: OrgDirectoryClient,
        config: Optional[GitHubVerificationConfig] = None,
    ):
        self.client = client
        self.config = config or GitHubVerificationConfig()

    def _failure(self, login: str, reason: str) -> VerificationResult:
        logger.warning(f"GitHub verification rejected {login}: {reason}")
        return VerificationResult(
            verified=False,
            method=VerificationMethod.GITHUB_ORG,
            metadata={"github_login": login},
            reason=reason,
        )

    async def verify_customer(self, org_id: str, external_id: str) -> VerificationResult:
        """``external_id`` is the GitHub org login."""
        cfg = self.config
        now = utcnow()
        last_activity: Optional[datetime] = None

        try:
            org = await self.client.get_organization(external_id)
            age = _age_days(org.created_at, now)
            if age < cfg.min_age_days:
                return self._failure(
                    external_id,
                    f"Organization too new ({age} days, minimum {cfg.min_age_days})",
                )

            members = await self.client.count_members(external_id)
            if members < cfg.min_member_count:
                return self._failure(
                    external_id,
                    f"Insufficient members ({members}, minimum {cfg.min_member_count})",
                )

            if org.public_repos < cfg.min_public_repos and not cfg.allow_private_org_fallback:
                return self._failure(
                    external_id,
                    f"Insufficient public repos ({org.public_repos}, "
                    f"minimum {cfg.min_public_repos})",
                )

            if cfg.recent_activity_days > 0 and org.public_repos > 0:
                last_activity = await self.client.latest_public_activity(external_id)
        except ProviderClientError as e:
            if e.kind == "NOT_FOUND":
                return self._failure(
                    external_id, f"GitHub organization '{external_id}' not found"
                )
            raise ExternalVerificationError(
                "GitHub API rate limit exceeded" if e.kind == "RATE_LIMIT"
                else "GitHub API request failed",
                provider=self.provider,
                kind=e.kind,
                org_id=org_id,
                reason=str(e),
            ) from e
        except Exception as e:
            raise ExternalVerificationError(
                "GitHub API request failed",
                provider=self.provider,
                org_id=org_id,
                reason=str(e),
            ) from e

        has_recent_activity = (
            last_activity is not None
            and _age_days(last_activity, now) <= cfg.recent_activity_days
        )
        if (
            cfg.recent_activity_days > 0
            and org.public_repos > 0
            and not has_recent_activity
            and not cfg.allow_private_org_fallback
        ):
            return self._failure(
                external_id, f"No activity in last {cfg.recent_activity_days} days"
            )

        logger.info(f"GitHub organization {org.login} verified for {org_id}")
        return VerificationResult(
            verified=True,
            method=VerificationMethod.GITHUB_ORG,
            reason="GitHub organization verified",
            verified_at=now,
            metadata={
                "github_org_id": org.org_id,
                "github_login": org.login,
                "account_age_days": age,
                "member_count": members,
                "public_repos": org.public_repos,
                "has_recent_activity": has_recent_activity,
                "last_activity": last_activity.isoformat() if last_activity else None,
            },
        )

    async def verify_organization(self, org_id: str, login: str) -> VerificationResult:
        return await self.verify_customer(org_id, login)
