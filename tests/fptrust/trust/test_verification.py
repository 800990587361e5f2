"""Tests for the Stripe and GitHub verification oracles."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from fptrust.errors import ExternalVerificationError
from fptrust.trust.models import VerificationMethod, utcnow
from fptrust.trust.verification import (
    DirectoryOrganization,
    GitHubVerificationConfig,
    GitHubVerifier,
    PaymentCustomer,
    ProviderClientError,
    StripeVerificationConfig,
    StripeVerifier,
)


def stripe_client(age_days=400, delinquent=False, tax_ids=None, payments=5, products=None):
    client = MagicMock()
    client.get_customer = AsyncMock(return_value=PaymentCustomer(
        customer_id="cus_123",
        created_at=utcnow() - timedelta(days=age_days),
        delinquent=delinquent,
        tax_ids=tax_ids or [],
    ))
    client.count_successful_payments = AsyncMock(return_value=payments)
    client.list_active_subscription_products = AsyncMock(return_value=products or [])
    client.list_open_invoice_due_dates = AsyncMock(return_value=[])
    return client


def github_client(age_days=400, members=10, public_repos=5, last_activity_days=3):
    client = MagicMock()
    client.get_organization = AsyncMock(return_value=DirectoryOrganization(
        org_id=4242,
        login="acme",
        created_at=utcnow() - timedelta(days=age_days),
        public_repos=public_repos,
    ))
    client.count_members = AsyncMock(return_value=members)
    client.latest_public_activity = AsyncMock(
        return_value=None if last_activity_days is None
        else utcnow() - timedelta(days=last_activity_days)
    )
    return client


@pytest.mark.asyncio
async def test_stripe_verified():
    """Test a customer passing every policy check."""
    verifier = StripeVerifier(stripe_client(tax_ids=["eu_vat"], products=["prod_1"]))

    result = await verifier.verify_customer("org-a", "cus_123")

    assert result.verified
    assert result.method == VerificationMethod.STRIPE_CUSTOMER
    assert result.verified_at is not None
    assert result.metadata["customer_id"] == "cus_123"
    assert result.metadata["account_age_days"] == 400
    assert result.metadata["successful_payments"] == 5
    assert result.metadata["has_active_subscription"] is True
    assert result.metadata["customer_type"] == "company"
    assert result.metadata["business_verified"] is True


@pytest.mark.asyncio
async def test_stripe_invalid_customer_id():
    """Test that malformed ids fail before any provider call."""
    client = stripe_client()
    verifier = StripeVerifier(client)

    with pytest.raises(ExternalVerificationError) as exc_info:
        await verifier.verify_customer("org-a", "acct_123")

    assert exc_info.value.kind == "INVALID_CUSTOMER_ID"
    client.get_customer.assert_not_called()


@pytest.mark.asyncio
async def test_stripe_policy_rejections():
    """Test each policy rejection reason."""
    too_new = await StripeVerifier(stripe_client(age_days=3)).verify_customer("o", "cus_1")
    assert not too_new.verified
    assert too_new.reason == "Customer account too new (3 days, minimum 30)"

    delinquent = await StripeVerifier(stripe_client(delinquent=True)).verify_customer("o", "cus_1")
    assert delinquent.reason == "Customer has delinquent invoices"
    assert delinquent.metadata["delinquent"] is True

    unpaid = await StripeVerifier(stripe_client(payments=0)).verify_customer("o", "cus_1")
    assert unpaid.reason == "Insufficient payment history (0 payments, minimum 1)"

    subscription = StripeVerifier(
        stripe_client(), StripeVerificationConfig(require_active_subscription=True)
    )
    assert (await subscription.verify_customer("o", "cus_1")).reason == "No active subscription found"

    business = StripeVerifier(
        stripe_client(), StripeVerificationConfig(require_verified_business=True)
    )
    assert (await business.verify_customer("o", "cus_1")).reason == (
        "Business verification required but not completed"
    )

    companies_only = StripeVerifier(
        stripe_client(), StripeVerificationConfig(allowed_customer_types=("company",))
    )
    rejected = await companies_only.verify_customer("o", "cus_1")
    assert "Customer type 'individual' not allowed" in rejected.reason


@pytest.mark.asyncio
async def test_stripe_not_found_is_unverified():
    """Test that a missing customer is a policy failure, not an error."""
    client = stripe_client()
    client.get_customer = AsyncMock(side_effect=ProviderClientError("gone", kind="NOT_FOUND"))

    result = await StripeVerifier(client).verify_customer("org-a", "cus_404")
    assert not result.verified
    assert result.reason == "Stripe customer 'cus_404' not found"


@pytest.mark.asyncio
@pytest.mark.parametrize("kind,message", [
    ("RATE_LIMIT", "Stripe API rate limit exceeded"),
    ("INVALID_KEY", "Invalid Stripe API key"),
    ("API_ERROR", "Stripe API request failed"),
])
async def test_stripe_provider_failure_raises(kind, message):
    """Test that provider failures never pass or silently fail policy."""
    client = stripe_client()
    client.count_successful_payments = AsyncMock(side_effect=ProviderClientError("boom", kind=kind))

    with pytest.raises(ExternalVerificationError) as exc_info:
        await StripeVerifier(client).verify_customer("org-a", "cus_1")

    assert exc_info.value.kind == kind
    assert exc_info.value.message == message
    assert exc_info.value.provider == "stripe"


@pytest.mark.asyncio
async def test_stripe_unexpected_exception_wrapped():
    """Test that arbitrary client exceptions are wrapped as API errors."""
    client = stripe_client()
    client.get_customer = AsyncMock(side_effect=ConnectionError("reset"))

    with pytest.raises(ExternalVerificationError) as exc_info:
        await StripeVerifier(client).verify_customer("org-a", "cus_1")
    assert exc_info.value.kind == "API_ERROR"
    assert isinstance(exc_info.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_has_delinquent_invoices():
    """Test past-due detection and failure propagation."""
    client = stripe_client()
    verifier = StripeVerifier(client)

    client.list_open_invoice_due_dates = AsyncMock(
        return_value=[None, utcnow() + timedelta(days=5)]
    )
    assert await verifier.has_delinquent_invoices("cus_1") is False

    client.list_open_invoice_due_dates = AsyncMock(return_value=[utcnow() - timedelta(days=1)])
    assert await verifier.has_delinquent_invoices("cus_1") is True

    client.list_open_invoice_due_dates = AsyncMock(side_effect=ProviderClientError("down"))
    with pytest.raises(ExternalVerificationError):
        await verifier.has_delinquent_invoices("cus_1")


@pytest.mark.asyncio
async def test_github_verified():
    """Test an organization passing every check."""
    verifier = GitHubVerifier(github_client())

    result = await verifier.verify_organization("org-a", "acme")

    assert result.verified
    assert result.method == VerificationMethod.GITHUB_ORG
    assert result.metadata["github_org_id"] == 4242
    assert result.metadata["member_count"] == 10
    assert result.metadata["has_recent_activity"] is True


@pytest.mark.asyncio
async def test_github_policy_rejections():
    """Test age and membership rejections."""
    young = await GitHubVerifier(github_client(age_days=10)).verify_customer("o", "acme")
    assert young.reason == "Organization too new (10 days, minimum 90)"

    small = await GitHubVerifier(github_client(members=1)).verify_customer("o", "acme")
    assert small.reason == "Insufficient members (1, minimum 3)"


@pytest.mark.asyncio
async def test_github_private_org_fallback():
    """Test repo and activity checks with and without the private-org fallback."""
    no_repos = github_client(public_repos=0)
    result = await GitHubVerifier(no_repos).verify_customer("o", "acme")
    assert result.verified
    no_repos.latest_public_activity.assert_not_called()

    strict = GitHubVerificationConfig(allow_private_org_fallback=False)
    result = await GitHubVerifier(github_client(public_repos=0), strict).verify_customer("o", "acme")
    assert result.reason == "Insufficient public repos (0, minimum 1)"

    stale = github_client(last_activity_days=400)
    result = await GitHubVerifier(stale, strict).verify_customer("o", "acme")
    assert result.reason == "No activity in last 180 days"


@pytest.mark.asyncio
async def test_github_failures():
    """Test not-found and provider errors."""
    missing = github_client()
    missing.get_organization = AsyncMock(side_effect=ProviderClientError("404", kind="NOT_FOUND"))
    result = await GitHubVerifier(missing).verify_customer("o", "ghost")
    assert not result.verified
    assert result.reason == "GitHub organization 'ghost' not found"

    limited = github_client()
    limited.count_members = AsyncMock(side_effect=ProviderClientError("slow down", kind="RATE_LIMIT"))
    with pytest.raises(ExternalVerificationError) as exc_info:
        await GitHubVerifier(limited).verify_customer("o", "acme")
    assert exc_info.value.kind == "RATE_LIMIT"
    assert exc_info.value.provider == "github"
