"""
ConsensusCalibrationStore - end-to-end consensus FP rate for a rule.

Flow for one rule:

1. Load reviewed events and apply the k-anonymity gate
2. Derive a per-org FP rate (false positives / reviewed events)
3. Resolve reputation weights
4. Byzantine filtering, weighted consensus, confidence
5. Record each weighted contributor's report in the ledger and refresh its
   consistency score before returning
6. Persist the result through the calibration result adapter

A ledger record is keyed by org, rule and the org's newest event for the
rule, so recalibrating unchanged data rewrites the same records.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

from fptrust.storage.base import CalibrationResultAdapter, ContributionLedgerAdapter
from fptrust.trust.auditor import TrustAuditor
from fptrust.trust.byzantine import ByzantineFilter
from fptrust.trust.models import (
    ContributionRecord,
    ConsensusResult,
    FPEvent,
    KAnonymityRefusal,
    RawContribution,
    utcnow,
)
from fptrust.trust.reputation import ReputationEngine

from .aggregator import CalibrationAggregator, distinct_orgs

logger = logging.getLogger(__name__)

ConsensusOutcome = Union[ConsensusResult, KAnonymityRefusal]


def contributions_from_events(events: Sequence[FPEvent]) -> List[RawContribution]:
    """Per-org FP rates, ordered by org hash. Events without an org hash are skipped."""
    counts: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
    latest: Dict[str, datetime] = {}
    for event in events:
        org = event.org_id_hash
        if not org:
            continue
        stats = counts[org]
        stats[1] += 1
        if event.is_false_positive:
            stats[0] += 1
        if org not in latest or event.timestamp > latest[org]:
            latest[org] = event.timestamp
    return [
        RawContribution(
            org_id_hash=org,
            fp_rate=fps / total,
            event_count=total,
            last_event_at=latest[org],
        )
        for org, (fps, total) in sorted(counts.items())
    ]


class ConsensusCalibrationStore:
    def __init__(
        self,
        aggregator: CalibrationAggregator,
        reputation: ReputationEngine,
        ledger: ContributionLedgerAdapter,
        results: CalibrationResultAdapter,
        byzantine: Optional[ByzantineFilter] = None,
        auditor: Optional[TrustAuditor] = None,
    ):
        self.aggregator = aggregator
        self.reputation = reputation
        self.ledger = ledger
        self.results = results
        self.byzantine = byzantine or ByzantineFilter()
        self.auditor = auditor or TrustAuditor()

    async def calibrate_rule(
        self, rule_id: str, timeout: Optional[float] = None
    ) -> ConsensusOutcome:
        events = await self.aggregator.scan(rule_id, timeout=timeout)
        return await self._calibrate(rule_id, events)

    async def _calibrate(self, rule_id: str, events: Sequence[FPEvent]) -> ConsensusOutcome:
        org_count = distinct_orgs(events)
        if org_count < self.aggregator.required_k:
            return await self.aggregator.refuse(rule_id, org_count)

        contributions = contributions_from_events(events)
        weights = await self.reputation.get_weights(c.org_id_hash for c in contributions)
        filtered = self.byzantine.filter_contributors(contributions, weights)
        consensus = self.byzantine.calculate_weighted_consensus(filtered.trusted_contributors)
        confidence = self.byzantine.calculate_confidence(
            filtered.trusted_contributors, filtered.statistics
        )

        now = utcnow()
        for contribution in contributions:
            org_id = contribution.org_id_hash
            if org_id not in weights:
                continue
            await self.ledger.append_contribution(ContributionRecord(
                org_id=org_id,
                rule_id=rule_id,
                contributed_fp_rate=contribution.fp_rate,
                consensus_fp_rate=consensus,
                event_count=contribution.event_count,
                timestamp=contribution.last_event_at or now,
            ))
            history = await self.ledger.list_contributions(org_id)
            await self.reputation.refresh_consistency(org_id, history)

        result = ConsensusResult(
            rule_id=rule_id,
            consensus_fp_rate=consensus,
            trusted_count=filtered.trusted_count,
            total_contributors=filtered.total_contributors,
            total_event_count=len(events),
            calculated_at=now,
            confidence=confidence,
            filtering_applied=filtered.filtering_applied,
            filter_rate=filtered.filter_rate,
            outliers_filtered=len(filtered.outlier_filtered),
            low_reputation_filtered=len(filtered.reputation_filtered),
            z_score_threshold=self.byzantine.config.z_score_threshold,
            reputation_percentile=self.byzantine.config.byzantine_filter_percentile,
        )
        await self.results.store_calibration_result(result)

        logger.info(
            f"Consensus for {rule_id}: {consensus:.4f} from {filtered.trusted_count}/"
            f"{filtered.total_contributors} trusted ({confidence.category} confidence)"
        )
        await self.auditor.log_filter_summary(
            rule_id,
            total=filtered.total_contributors,
            trusted=filtered.trusted_count,
            outliers=len(filtered.outlier_filtered),
            low_reputation=len(filtered.reputation_filtered),
            other=len(filtered.other_filtered),
            consensus_fp_rate=consensus,
        )
        return result

    async def get_calibration_result(self, rule_id: str) -> Optional[ConsensusResult]:
        """Most recent stored result for the rule, if any."""
        return await self.results.get_calibration_result(rule_id)

    async def calibrate_all_rules(
        self, timeout: Optional[float] = None
    ) -> Dict[str, ConsensusOutcome]:
        """One scan, then a calibration per rule. Refused rules keep their refusal."""
        events = await self.aggregator.scan(timeout=timeout)
        by_rule: Dict[str, List[FPEvent]] = defaultdict(list)
        for event in events:
            by_rule[event.rule_id].append(event)
        return {
            rule_id: await self._calibrate(rule_id, by_rule[rule_id])
            for rule_id in sorted(by_rule)
        }
