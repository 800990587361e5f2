"""End-to-end tests for TrustNetwork."""

import json
import tempfile
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from fptrust.errors import DuplicateBindingError, ErrorCode
from fptrust.settings import TrustSettings
from fptrust.storage import NoOpFPEventStore
from fptrust.trust.models import (
    ConsensusResult,
    FPEvent,
    KAnonymityRefusal,
    VerificationMethod,
    VerificationResult,
    utcnow,
)
from fptrust.trust.network import TrustNetwork
from fptrust.trust.nonce_binding import NonceBindingConfig
from fptrust.trust.verification import PaymentCustomer, StripeVerifier


@pytest.fixture
def temp_dir():
    """Create a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_settings(temp_dir, backend="sqlite"):
    return TrustSettings(
        data_dir=temp_dir,
        backend=backend,
        nonce=NonceBindingConfig(signing_key="network-test-key"),
    )


def github_verified(org_id):
    return VerificationResult(
        verified=True,
        method=VerificationMethod.GITHUB_ORG,
        metadata={"github_org_id": 1000 + int(org_id[-2:]), "account_age_days": 365, "member_count": 25},
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["sqlite", "file"])
async def test_onboard_bind_and_calibrate(temp_dir, backend):
    """Test onboarding twelve orgs and calibrating a shared rule."""
    async with TrustNetwork(make_settings(temp_dir, backend)) as network:
        bindings = {}
        for i in range(12):
            org_id = f"org-{i:02d}"
            result = await network.onboard(org_id, f"pk-{i}", github_verified(org_id))
            bindings[org_id] = result.binding
            for n in range(10):
                await network.events.record_event(FPEvent(
                    event_id=f"{org_id}-{n}",
                    rule_id="sql-injection",
                    org_id_hash=org_id,
                    timestamp=utcnow(),
                    is_false_positive=n < 2,
                ))

        reputation = await network.reputation.get_reputation("org-00")
        assert reputation.age_score == 1.0
        assert reputation.volume_score == pytest.approx(0.5)

        check = await network.nonces.verify_binding(bindings["org-03"].nonce, "org-03")
        assert check.valid

        with pytest.raises(DuplicateBindingError):
            await network.nonces.generate_and_bind_nonce("org-03", "pk-3")

        result = await network.calibration.calibrate_rule("sql-injection")
        assert isinstance(result, ConsensusResult)
        assert result.consensus_fp_rate == pytest.approx(0.2)
        assert result.total_contributors == 12

        aggregate = await network.aggregator.aggregate_fps_by_rule("sql-injection")
        assert aggregate.org_count == 12
        assert aggregate.fp_rate == pytest.approx(0.2)

    events = [json.loads(line)["event"] for line in network.settings.audit_path.read_text().splitlines()]
    assert events.count("binding_created") == 12
    assert "filter_summary" in events


@pytest.mark.asyncio
async def test_onboard_via_stripe_verifier(temp_dir):
    """Test wiring a Stripe verification result into onboarding."""
    client = MagicMock()
    client.get_customer = AsyncMock(return_value=PaymentCustomer(
        customer_id="cus_acme", created_at=utcnow() - timedelta(days=800)
    ))
    client.count_successful_payments = AsyncMock(return_value=24)
    client.list_active_subscription_products = AsyncMock(return_value=["prod_pro"])
    verifier = StripeVerifier(client, make_settings(temp_dir).stripe)

    async with TrustNetwork(make_settings(temp_dir), payments=client) as network:
        verification = await verifier.verify_customer("acme", "cus_acme")
        result = await network.onboard("acme", "pk-acme", verification)

        identity = await network.identities.get_identity("acme")
        assert identity.stripe_customer_id == "cus_acme"
        assert identity.unique_nonce == result.binding.nonce
        assert result.binding.verification_method == VerificationMethod.STRIPE_CUSTOMER

        reputation = await network.reputation.get_reputation("acme")
        assert reputation.volume_score == 1.0

        [org] = await network.revenue.get_revenue_verified_orgs()
        assert org.org_id == "acme"
        assert org.payment_count == 24
        assert org.has_active_subscription


@pytest.mark.asyncio
async def test_noop_event_store_refuses_everything(temp_dir):
    """Test that a network without event storage never releases aggregates."""
    async with TrustNetwork(make_settings(temp_dir), events=NoOpFPEventStore()) as network:
        assert network.revenue is None
        result = await network.calibration.calibrate_rule("any-rule")
        assert isinstance(result, KAnonymityRefusal)
        assert result.error == ErrorCode.INSUFFICIENT_K_ANONYMITY
        assert result.actual_k == 0


def test_missing_signing_key_fails_fast(temp_dir):
    """Test that the network cannot be built without a signing key."""
    with pytest.raises(ValueError):
        TrustNetwork(TrustSettings(data_dir=temp_dir))
