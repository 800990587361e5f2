"""
Storage capability protocols.

Every backend must behave identically for these operations; the test suite
runs the same scenarios against each of them.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from fptrust.trust.models import (
    ConsensusResult,
    ContributionRecord,
    FPEvent,
    NonceBinding,
    OrganizationIdentity,
    OrganizationReputation,
    StakePledge,
)


@runtime_checkable
class IdentityStoreAdapter(Protocol):
    async def get_identity(self, org_id: str) -> Optional[OrganizationIdentity]: ...

    async def store_identity(self, identity: OrganizationIdentity) -> None: ...

    async def revoke_identity(self, org_id: str, reason: str) -> None: ...

    async def get_nonce_usage_count(self, org_id: str) -> int: ...

    async def get_identity_by_stripe_customer_id(
        self, customer_id: str
    ) -> Optional[OrganizationIdentity]: ...

    async def list_stripe_verified_identities(self) -> List[OrganizationIdentity]: ...

    async def get_nonce_binding(self, org_id: str) -> Optional[NonceBinding]:
        """Most recent binding for the org, revoked or not."""
        ...

    async def store_nonce_binding(self, binding: NonceBinding) -> None: ...

    async def get_nonce_binding_by_nonce(self, nonce: str) -> Optional[NonceBinding]: ...

    async def create_nonce_binding(self, binding: NonceBinding) -> None:
        """Insert a binding only if the org has no active one.

        Raises DuplicateBindingError otherwise. This is the single atomic
        check-then-act for nonce issuance.
        """
        ...

    async def replace_nonce_binding(
        self, revoked: NonceBinding, replacement: NonceBinding
    ) -> None:
        """Persist ``revoked`` and insert ``replacement`` as one step.

        Raises BindingAlreadyRevokedError if the stored copy of ``revoked`` is
        no longer active.
        """
        ...

    async def increment_nonce_usage(self, nonce: str) -> Optional[int]:
        """Bump usage on a live binding. Returns None if no live binding matches."""
        ...


@runtime_checkable
class ReputationStoreAdapter(Protocol):
    async def get_reputation(self, org_id: str) -> Optional[OrganizationReputation]: ...

    async def update_reputation(self, reputation: OrganizationReputation) -> None: ...

    async def get_stake_pledge(self, org_id: str) -> Optional[StakePledge]: ...

    async def update_stake_pledge(self, pledge: StakePledge) -> None: ...

    async def list_reputations_by_score(
        self, min_score: float = 0.0, limit: int = 100
    ) -> List[OrganizationReputation]: ...


@runtime_checkable
class ContributionLedgerAdapter(Protocol):
    async def append_contribution(self, record: ContributionRecord) -> None:
        """Add a record, replacing any stored record with the same org, rule and timestamp."""
        ...

    async def list_contributions(
        self, org_id: str, since: Optional[datetime] = None
    ) -> List[ContributionRecord]:
        """Contributions for an org, oldest first."""
        ...


@runtime_checkable
class FPEventStore(Protocol):
    async def record_event(self, event: FPEvent) -> None: ...

    async def list_events(
        self,
        rule_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[FPEvent]: ...


@runtime_checkable
class CalibrationResultAdapter(Protocol):
    async def store_calibration_result(self, result: ConsensusResult) -> None:
        """Keep the latest result per rule; an earlier one for the rule is replaced."""
        ...

    async def get_calibration_result(self, rule_id: str) -> Optional[ConsensusResult]: ...
