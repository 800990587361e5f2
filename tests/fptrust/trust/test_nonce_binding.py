"""Tests for NonceBindingService."""

import asyncio
import json
import tempfile
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

from fptrust.errors import (
    BindingAlreadyRevokedError,
    BindingNotFoundError,
    DuplicateBindingError,
    ErrorCode,
    IdentityNotFoundError,
    NonceMismatchError,
)
from fptrust.storage import BACKENDS, create_trust_adapters
from fptrust.trust.auditor import AuditLevel, TrustAuditor
from fptrust.trust.identity import IdentityRegistry
from fptrust.trust.nonce_binding import NonceBindingConfig, NonceBindingService


@pytest.fixture
def temp_dir():
    """Create a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(params=BACKENDS)
async def adapters(request, temp_dir):
    """Trust adapters, once per storage backend."""
    adapters = create_trust_adapters(request.param, temp_dir)
    await adapters.initialize()
    yield adapters
    await adapters.close()


@pytest.fixture
def auditor(temp_dir):
    return TrustAuditor(temp_dir / "audit.jsonl", level=AuditLevel.INFO)


@pytest.fixture
def service(adapters, auditor):
    return NonceBindingService(
        adapters.identity, NonceBindingConfig(signing_key="test-key"), auditor=auditor
    )


@pytest.fixture
async def registered(adapters):
    """Register org-a and org-b as manually verified identities."""
    registry = IdentityRegistry(adapters.identity)
    await registry.register_manual_identity("org-a", "pk-a")
    await registry.register_manual_identity("org-b", "pk-b")
    return registry


def read_audit(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_empty_signing_key_rejected(adapters):
    """Test that the service refuses to run without a key."""
    with pytest.raises(ValueError):
        NonceBindingService(adapters.identity, NonceBindingConfig())


def test_config_repr_hides_key():
    """Test that the signing key never appears in repr."""
    assert "secret" not in repr(NonceBindingConfig(signing_key="secret"))


@pytest.mark.asyncio
async def test_bind_requires_identity(service):
    """Test binding an unknown org."""
    with pytest.raises(IdentityNotFoundError):
        await service.generate_and_bind_nonce("ghost", "pk")


@pytest.mark.asyncio
async def test_bind_and_verify(service, registered, adapters):
    """Test a fresh binding verifies and is recorded on the identity."""
    result = await service.generate_and_bind_nonce("org-a", "pk-a")

    assert result.is_new
    assert result.previous_binding is None
    assert len(result.binding.nonce) == 64
    assert result.binding.is_active

    identity = await adapters.identity.get_identity("org-a")
    assert identity.unique_nonce == result.binding.nonce

    verification = await service.verify_binding(result.binding.nonce, "org-a")
    assert verification.valid
    assert verification.code is None


@pytest.mark.asyncio
async def test_second_bind_is_duplicate(service, registered):
    """Test that an org cannot hold two active bindings."""
    await service.generate_and_bind_nonce("org-a", "pk-a")
    with pytest.raises(DuplicateBindingError, match="already has an active nonce binding"):
        await service.generate_and_bind_nonce("org-a", "pk-a")


@pytest.mark.asyncio
async def test_concurrent_bind_exactly_one(service, registered):
    """Test racing binds for the same org."""
    results = await asyncio.gather(
        *(service.generate_and_bind_nonce("org-a", "pk-a") for _ in range(4)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, DuplicateBindingError) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_verify_failure_codes(service, registered, auditor):
    """Test each failure outcome of verify_binding."""
    missing = await service.verify_binding("0" * 64, "org-a")
    assert not missing.valid
    assert missing.code == ErrorCode.BINDING_NOT_FOUND

    bound = await service.generate_and_bind_nonce("org-a", "pk-a")
    other = await service.generate_and_bind_nonce("org-b", "pk-b")

    # org-b's nonce presented as org-a
    mismatch = await service.verify_binding(other.binding.nonce, "org-a")
    assert mismatch.code == ErrorCode.NONCE_MISMATCH
    assert mismatch.reason == "Nonce mismatch"

    await service.revoke_binding("org-a", "key leaked")
    revoked = await service.verify_binding(bound.binding.nonce, "org-a")
    assert revoked.code == ErrorCode.BINDING_ALREADY_REVOKED
    assert revoked.reason == "Nonce binding revoked: key leaked"

    records = read_audit(auditor.audit_path)
    failures = [r for r in records if r["event"] == "verification_failed"]
    assert [r["code"] for r in failures] == [
        "BINDING_NOT_FOUND", "NONCE_MISMATCH", "BINDING_ALREADY_REVOKED"
    ]
    # only prefixes are ever written
    assert all(bound.binding.nonce not in json.dumps(r) for r in records)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field, value",
    [
        ("public_key", lambda b: "attacker-key"),
        ("bound_at", lambda b: b.bound_at + timedelta(seconds=1)),
        ("signature", lambda b: "0" * len(b.signature)),
    ],
)
async def test_tampered_binding_fails_signature(service, registered, adapters, field, value):
    """Test that editing any signed field of a stored binding breaks its signature."""
    result = await service.generate_and_bind_nonce("org-a", "pk-a")
    assert (await service.verify_binding(result.binding.nonce, "org-a")).valid

    tampered = replace(result.binding, **{field: value(result.binding)})
    await adapters.identity.store_nonce_binding(tampered)

    verification = await service.verify_binding(result.binding.nonce, "org-a")
    assert not verification.valid
    assert verification.code == ErrorCode.SIGNATURE_INVALID


@pytest.mark.asyncio
async def test_different_key_fails_signature(service, registered, adapters):
    """Test that a binding signed under another key is rejected."""
    result = await service.generate_and_bind_nonce("org-a", "pk-a")
    other = NonceBindingService(adapters.identity, NonceBindingConfig(signing_key="other"))

    verification = await other.verify_binding(result.binding.nonce, "org-a")
    assert verification.code == ErrorCode.SIGNATURE_INVALID


@pytest.mark.asyncio
async def test_revoke_binding_errors(service, registered):
    """Test revoking without a binding, and revoking twice."""
    with pytest.raises(BindingNotFoundError):
        await service.revoke_binding("org-a", "nothing to revoke")

    await service.generate_and_bind_nonce("org-a", "pk-a")
    revoked = await service.revoke_binding("org-a", "compromised")
    assert revoked.revoked
    assert revoked.revocation_reason == "compromised"
    assert revoked.revoked_at is not None

    with pytest.raises(BindingAlreadyRevokedError, match="already revoked"):
        await service.revoke_binding("org-a", "again")


@pytest.mark.asyncio
async def test_rebind_after_revoke_links_history(service, registered):
    """Test that a re-bind after revocation is not new and links back."""
    first = await service.generate_and_bind_nonce("org-a", "pk-a")
    await service.revoke_binding("org-a", "compromised")

    second = await service.generate_and_bind_nonce("org-a", "pk-a2")
    assert not second.is_new
    assert second.binding.previous_nonce == first.binding.nonce
    assert second.previous_binding.nonce == first.binding.nonce
    assert (await service.verify_binding(second.binding.nonce, "org-a")).valid


@pytest.mark.asyncio
async def test_rotate_nonce(service, registered, adapters):
    """Test that rotation replaces the live binding in one step."""
    first = await service.generate_and_bind_nonce("org-a", "pk-a")

    rotated = await service.rotate_nonce("org-a", new_public_key="pk-new", reason="scheduled")

    assert not rotated.is_new
    assert rotated.binding.nonce != first.binding.nonce
    assert rotated.binding.previous_nonce == first.binding.nonce
    assert rotated.binding.public_key == "pk-new"
    assert rotated.binding.bound_at > first.binding.bound_at
    assert rotated.previous_binding.revocation_reason == "Rotated: scheduled"

    identity = await adapters.identity.get_identity("org-a")
    assert identity.public_key == "pk-new"
    assert identity.unique_nonce == rotated.binding.nonce

    assert (await service.verify_binding(rotated.binding.nonce, "org-a")).valid
    stale = await service.verify_binding(first.binding.nonce, "org-a")
    assert stale.code == ErrorCode.BINDING_ALREADY_REVOKED
    assert stale.reason == "Nonce binding revoked: Rotated: scheduled"


@pytest.mark.asyncio
async def test_rotate_keeps_public_key_by_default(service, registered):
    """Test rotation without a new key."""
    await service.generate_and_bind_nonce("org-a", "pk-a")
    rotated = await service.rotate_nonce("org-a")
    assert rotated.binding.public_key == "pk-a"
    assert rotated.previous_binding.revocation_reason == "Rotated: manual rotation"


@pytest.mark.asyncio
async def test_rotate_errors(service, registered):
    """Test rotating without a binding, and rotating a revoked binding."""
    with pytest.raises(BindingNotFoundError):
        await service.rotate_nonce("org-a")

    await service.generate_and_bind_nonce("org-a", "pk-a")
    await service.revoke_binding("org-a", "compromised")
    with pytest.raises(BindingAlreadyRevokedError, match="Cannot rotate revoked nonce"):
        await service.rotate_nonce("org-a")


@pytest.mark.asyncio
async def test_rotation_history_oldest_first(service, registered):
    """Test that history walks the chain back to the first binding."""
    first = await service.generate_and_bind_nonce("org-a", "pk-a")
    second = await service.rotate_nonce("org-a")
    third = await service.rotate_nonce("org-a")

    history = await service.get_rotation_history("org-a")
    assert [b.nonce for b in history] == [
        first.binding.nonce, second.binding.nonce, third.binding.nonce
    ]
    assert [b.revoked for b in history] == [True, True, False]
    assert await service.get_rotation_history("org-b") == []


@pytest.mark.asyncio
async def test_increment_usage_count(service, registered, adapters):
    """Test usage counting and its failure modes."""
    result = await service.generate_and_bind_nonce("org-a", "pk-a")
    nonce = result.binding.nonce

    assert await service.increment_usage_count(nonce, "org-a") == 1
    assert await service.increment_usage_count(nonce, "org-a") == 2
    assert await adapters.identity.get_nonce_usage_count("org-a") == 2

    with pytest.raises(NonceMismatchError):
        await service.increment_usage_count("0" * 64, "org-a")
    with pytest.raises(BindingNotFoundError):
        await service.increment_usage_count(nonce, "org-b")

    await service.revoke_binding("org-a", "done")
    with pytest.raises(BindingAlreadyRevokedError):
        await service.increment_usage_count(nonce, "org-a")


@pytest.mark.asyncio
async def test_binding_lifecycle_audited(service, registered, auditor):
    """Test that create, rotate and revoke each leave one audit record."""
    await service.generate_and_bind_nonce("org-a", "pk-a")
    await service.rotate_nonce("org-a", reason="scheduled")
    await service.revoke_binding("org-a", "offboarded")

    events = [r["event"] for r in read_audit(auditor.audit_path)]
    assert events == ["binding_created", "binding_rotated", "binding_revoked"]
