"""
IdentityRegistry - admits verified organizations into the network.

An identity is the precondition for a nonce binding. One identity per
org_id, and a payment-provider customer can back at most one identity.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from fptrust.errors import (
    DuplicateIdentityError,
    ExternalVerificationError,
    IdentityNotFoundError,
)

if TYPE_CHECKING:
    from fptrust.storage.base import IdentityStoreAdapter

from .auditor import TrustAuditor
from .models import OrganizationIdentity, VerificationMethod, VerificationResult, utcnow

logger = logging.getLogger(__name__)


class IdentityRegistry:
    def __init__(
        self,
        store: IdentityStoreAdapter,
        auditor: Optional[TrustAuditor] = None,
    ):
        self.store = store
        self.auditor = auditor or TrustAuditor()

    async def register_identity(
        self,
        org_id: str,
        public_key: str,
        verification: VerificationResult,
    ) -> OrganizationIdentity:
        """
        Register an organization backed by a verification oracle result.

        Raises:
            ExternalVerificationError: the oracle did not verify the org
            DuplicateIdentityError: org_id exists, or the Stripe customer
                already backs another org
        """
        if not verification.verified:
            await self.auditor.log_verification_failed(
                org_id, None, "EXTERNAL_VERIFICATION_FAILED", verification.reason
            )
            raise ExternalVerificationError(
                f"Organization {org_id} failed {verification.method.value} verification",
                provider=verification.method.value,
                kind="POLICY_REJECTED",
                org_id=org_id,
                reason=verification.reason,
            )

        if await self.store.get_identity(org_id) is not None:
            raise DuplicateIdentityError(
                f"Organization {org_id} is already registered", org_id=org_id
            )

        metadata = verification.metadata
        stripe_customer_id = metadata.get("customer_id")
        if stripe_customer_id:
            existing = await self.store.get_identity_by_stripe_customer_id(stripe_customer_id)
            if existing is not None:
                raise DuplicateIdentityError(
                    f"Stripe customer already bound to organization {existing.org_id}",
                    org_id=org_id,
                    reason="stripe_customer_reused",
                )

        identity = OrganizationIdentity(
            org_id=org_id,
            public_key=public_key,
            verification_method=verification.method,
            verified_at=verification.verified_at or utcnow(),
            github_org_id=metadata.get("github_org_id"),
            stripe_customer_id=stripe_customer_id,
            domain_ownership=metadata.get("domain"),
        )
        await self.store.store_identity(identity)
        logger.info(f"Registered identity {org_id} via {identity.verification_method.value}")
        return identity

    async def register_manual_identity(
        self, org_id: str, public_key: str, domain: Optional[str] = None
    ) -> OrganizationIdentity:
        """Operator-approved identity, no external evidence."""
        return await self.register_identity(
            org_id,
            public_key,
            VerificationResult(
                verified=True,
                method=VerificationMethod.MANUAL,
                metadata={"domain": domain} if domain else {},
            ),
        )

    async def get_identity(self, org_id: str) -> Optional[OrganizationIdentity]:
        return await self.store.get_identity(org_id)

    async def require_identity(self, org_id: str) -> OrganizationIdentity:
        identity = await self.store.get_identity(org_id)
        if identity is None:
            raise IdentityNotFoundError(
                f"Organization {org_id} not found or not verified", org_id=org_id
            )
        return identity

    async def revoke_identity(self, org_id: str, reason: str) -> None:
        await self.require_identity(org_id)
        await self.store.revoke_identity(org_id, reason)
        logger.warning(f"Identity {org_id} revoked: {reason}")
