"""
ReputationEngine - contribution weights, stakes and slashing.

Weights combine base reputation, a stake multiplier and a consistency bonus,
capped at 1.0. An org with no reputation record has no weight at all: the
Byzantine filter treats it as insufficient data rather than as a low-trust
contributor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional, Sequence

from fptrust.config import env_float
from fptrust.config.defaults import (
    REPUTATION_AGE_SATURATION_DAYS,
    REPUTATION_CONSISTENCY_BONUS_CAP,
    REPUTATION_INITIAL_AGE_SCORE,
    REPUTATION_MEMBER_SATURATION,
    REPUTATION_MIN_STAKE_USD,
    REPUTATION_NEUTRAL_SCORE,
    REPUTATION_PAYMENT_SATURATION,
    REPUTATION_STAKE_MULTIPLIER_CAP,
)
from fptrust.errors import NoActiveStakeError
if TYPE_CHECKING:
    from fptrust.storage.base import ReputationStoreAdapter

from .auditor import TrustAuditor
from .consistency import ConsistencyCalculator
from .models import (
    ConsistencyScoreResult,
    ContributionRecord,
    ContributionWeight,
    OrganizationReputation,
    StakePledge,
    StakeStatus,
    VerificationResult,
    WeightFactors,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReputationConfig:
    min_stake_for_participation: float = REPUTATION_MIN_STAKE_USD
    stake_multiplier_cap: float = REPUTATION_STAKE_MULTIPLIER_CAP
    consistency_bonus_cap: float = REPUTATION_CONSISTENCY_BONUS_CAP

    @classmethod
    def from_env(cls) -> "ReputationConfig":
        return cls(
            min_stake_for_participation=env_float("MIN_STAKE_USD", REPUTATION_MIN_STAKE_USD),
            stake_multiplier_cap=env_float(
                "STAKE_MULTIPLIER_CAP", REPUTATION_STAKE_MULTIPLIER_CAP),
            consistency_bonus_cap=env_float(
                "CONSISTENCY_BONUS_CAP", REPUTATION_CONSISTENCY_BONUS_CAP),
        )


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class ReputationEngine:
    def __init__(
        self,
        store: ReputationStoreAdapter,
        config: Optional[ReputationConfig] = None,
        consistency: Optional[ConsistencyCalculator] = None,
        auditor: Optional[TrustAuditor] = None,
    ):
        self.store = store
        self.config = config or ReputationConfig()
        self.consistency = consistency or ConsistencyCalculator()
        self.auditor = auditor or TrustAuditor()

    def weight_for(self, reputation: OrganizationReputation) -> ContributionWeight:
        """Weight from an already-loaded reputation record."""
        stake = reputation.stake_pledge if reputation.stake_status == StakeStatus.ACTIVE else 0.0
        stake_ratio = min(stake / self.config.min_stake_for_participation, 1.0)
        factors = WeightFactors(
            base_reputation=reputation.reputation_score,
            stake_multiplier=stake_ratio * self.config.stake_multiplier_cap,
            consistency_bonus=reputation.consistency_score * self.config.consistency_bonus_cap,
        )
        return ContributionWeight(
            org_id=reputation.org_id,
            weight=min(factors.total_multiplier, 1.0),
            factors=factors,
        )

    async def calculate_contribution_weight(self, org_id: str) -> Optional[ContributionWeight]:
        """Returns None for an org without a reputation record."""
        reputation = await self.store.get_reputation(org_id)
        if reputation is None:
            logger.debug(f"No reputation for {org_id}; weight unresolved")
            return None
        return self.weight_for(reputation)

    async def get_weights(self, org_ids: Iterable[str]) -> Dict[str, ContributionWeight]:
        """Resolvable weights only; orgs without reputation are absent from the map."""
        weights: Dict[str, ContributionWeight] = {}
        for org_id in org_ids:
            weight = await self.calculate_contribution_weight(org_id)
            if weight is not None:
                weights[org_id] = weight
        return weights

    async def get_reputation(self, org_id: str) -> Optional[OrganizationReputation]:
        return await self.store.get_reputation(org_id)

    async def update_reputation(self, org_id: str, **changes: Any) -> OrganizationReputation:
        """Apply field changes, creating a neutral record if none exists."""
        existing = await self.store.get_reputation(org_id)
        if existing is None:
            existing = OrganizationReputation(
                org_id=org_id,
                reputation_score=REPUTATION_NEUTRAL_SCORE,
                consistency_score=REPUTATION_NEUTRAL_SCORE,
                age_score=REPUTATION_INITIAL_AGE_SCORE,
            )
            logger.info(f"Created reputation record for {org_id}")
        updated = replace(existing, **{**changes, "last_updated": utcnow()})
        await self.store.update_reputation(updated)
        return updated

    async def pledge_stake(self, org_id: str, amount_usd: float) -> StakePledge:
        """Record a stake. An active pledge is topped up; a slashed one is replaced."""
        if amount_usd <= 0:
            raise ValueError(f"Stake amount must be positive, got {amount_usd}")

        pledge = await self.store.get_stake_pledge(org_id)
        if pledge is not None and pledge.status == StakeStatus.ACTIVE:
            pledge = replace(pledge, amount_usd=pledge.amount_usd + amount_usd)
        else:
            pledge = StakePledge(org_id=org_id, amount_usd=amount_usd)
        await self.store.update_stake_pledge(pledge)
        await self.update_reputation(
            org_id, stake_pledge=pledge.amount_usd, stake_status=StakeStatus.ACTIVE
        )
        logger.info(f"Stake for {org_id} now {pledge.amount_usd:.2f} USD")
        return pledge

    async def slash_stake(self, org_id: str, reason: str) -> StakePledge:
        """
        Slash an org's stake for detected malicious behaviour.

        Zeroes reputation and increments flagged_count.

        Raises:
            NoActiveStakeError: nothing active to slash
        """
        pledge = await self.store.get_stake_pledge(org_id)
        if pledge is None or pledge.status != StakeStatus.ACTIVE:
            raise NoActiveStakeError(f"No active stake found for org: {org_id}", org_id=org_id)

        slashed = replace(pledge, status=StakeStatus.SLASHED, slash_reason=reason)
        await self.store.update_stake_pledge(slashed)

        current = await self.store.get_reputation(org_id)
        await self.update_reputation(
            org_id,
            reputation_score=0.0,
            flagged_count=(current.flagged_count if current else 0) + 1,
            stake_status=StakeStatus.SLASHED,
        )
        logger.warning(f"Slashed stake of {org_id} ({pledge.amount_usd:.2f} USD): {reason}")
        await self.auditor.log_stake_slashed(org_id, pledge.amount_usd, reason)
        return slashed

    async def can_participate_in_network(self, org_id: str) -> bool:
        reputation = await self.store.get_reputation(org_id)
        if reputation is None:
            return False
        if reputation.stake_status != StakeStatus.ACTIVE:
            return False
        if reputation.stake_pledge < self.config.min_stake_for_participation:
            return False
        # zero means slashed
        return reputation.reputation_score != 0.0

    async def refresh_consistency(
        self, org_id: str, contributions: Sequence[ContributionRecord]
    ) -> ConsistencyScoreResult:
        """Recompute consistency from the ledger; stored only with enough history."""
        result = self.consistency.calculate_score(org_id, contributions)
        changes: Dict[str, Any] = {"contribution_count": len(contributions)}
        if result.has_minimum_data:
            changes["consistency_score"] = result.score
        else:
            logger.debug(f"Consistency for {org_id} left unchanged: {result.unreliable_reason}")
        await self.update_reputation(org_id, **changes)
        return result

    async def apply_verification(
        self, org_id: str, result: VerificationResult
    ) -> OrganizationReputation:
        """
        Fold verification evidence into age and volume scores.

        Account age saturates at a year; volume at twelve successful payments
        or fifty org members. Delinquency counts as a flag.
        """
        metadata = result.metadata
        changes: Dict[str, Any] = {}

        if result.verified:
            age_days = metadata.get("account_age_days")
            if age_days is not None:
                changes["age_score"] = _clamp(age_days / REPUTATION_AGE_SATURATION_DAYS)

            if metadata.get("successful_payments") is not None:
                changes["volume_score"] = _clamp(
                    metadata["successful_payments"] / REPUTATION_PAYMENT_SATURATION
                )
            elif metadata.get("member_count") is not None:
                changes["volume_score"] = _clamp(
                    metadata["member_count"] / REPUTATION_MEMBER_SATURATION
                )

        if metadata.get("delinquent"):
            current = await self.store.get_reputation(org_id)
            changes["flagged_count"] = (current.flagged_count if current else 0) + 1
            logger.warning(f"Verification for {org_id} reports delinquent invoices")

        return await self.update_reputation(org_id, **changes)
