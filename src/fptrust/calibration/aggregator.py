"""
CalibrationAggregator - k-anonymity-gated per-rule FP aggregation.

Any aggregate backed by fewer than k distinct organizations is refused with a
KAnonymityRefusal. An empty store refuses too, so "no data" is never reported
as a verified empty result. Scans run under a timeout; expiry raises
AggregationCancelledError instead of returning whatever was read so far.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

from fptrust.config import env_float, env_int
from fptrust.config.defaults import CALIBRATION_SCAN_TIMEOUT_SECONDS, K_ANONYMITY_THRESHOLD
from fptrust.errors import AggregationCancelledError
from fptrust.storage.base import FPEventStore
from fptrust.trust.auditor import TrustAuditor
from fptrust.trust.models import CalibrationAggregate, FPEvent, KAnonymityRefusal

logger = logging.getLogger(__name__)

AggregateOutcome = Union[CalibrationAggregate, KAnonymityRefusal]


@dataclass(frozen=True)
class AggregatorConfig:
    k_anonymity_threshold: int = K_ANONYMITY_THRESHOLD
    scan_timeout_seconds: float = CALIBRATION_SCAN_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        return cls(
            k_anonymity_threshold=env_int("K_ANONYMITY_THRESHOLD", K_ANONYMITY_THRESHOLD),
            scan_timeout_seconds=env_float(
                "SCAN_TIMEOUT_SECONDS", CALIBRATION_SCAN_TIMEOUT_SECONDS),
        )


def distinct_orgs(events: Sequence[FPEvent]) -> int:
    return len({e.org_id_hash for e in events if e.org_id_hash})


class CalibrationAggregator:
    def __init__(
        self,
        events: FPEventStore,
        config: Optional[AggregatorConfig] = None,
        auditor: Optional[TrustAuditor] = None,
    ):
        self.events = events
        self.config = config or AggregatorConfig()
        self.auditor = auditor or TrustAuditor()

    @property
    def required_k(self) -> int:
        return self.config.k_anonymity_threshold

    async def scan(
        self,
        rule_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> List[FPEvent]:
        """Load events, all or nothing within the timeout."""
        limit = self.config.scan_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(self.events.list_events(rule_id, start, end), limit)
        except asyncio.TimeoutError as e:
            logger.warning(f"Aggregate scan for {rule_id or 'all rules'} cancelled after {limit}s")
            raise AggregationCancelledError(
                f"Aggregation for {rule_id or 'all rules'} cancelled after {limit}s",
                reason="timeout",
            ) from e

    async def refuse(self, rule_id: Optional[str], actual_k: int) -> KAnonymityRefusal:
        refusal = KAnonymityRefusal(required_k=self.required_k, actual_k=actual_k, rule_id=rule_id)
        logger.warning(f"k-anonymity refusal for {rule_id or 'all rules'}: {refusal.message}")
        await self.auditor.log_k_anonymity_refusal(rule_id, self.required_k, actual_k)
        return refusal

    def _summarize(self, rule_id: str, events: Sequence[FPEvent]) -> CalibrationAggregate:
        org_count = distinct_orgs(events)
        total_fps = sum(1 for e in events if e.is_false_positive)
        return CalibrationAggregate(
            rule_id=rule_id,
            org_count=org_count,
            total_fps=total_fps,
            total_events=len(events),
            average_fps_per_org=total_fps / org_count if org_count else 0.0,
            fp_rate=total_fps / len(events) if events else 0.0,
            meets_k_anonymity=org_count >= self.required_k,
        )

    async def _gate(self, rule_id: str, events: Sequence[FPEvent]) -> AggregateOutcome:
        aggregate = self._summarize(rule_id, events)
        if not aggregate.meets_k_anonymity:
            return await self.refuse(rule_id, aggregate.org_count)
        return aggregate

    async def aggregate_fps_by_rule(
        self, rule_id: str, timeout: Optional[float] = None
    ) -> AggregateOutcome:
        events = await self.scan(rule_id, timeout=timeout)
        return await self._gate(rule_id, events)

    async def get_rule_fp_rate(
        self,
        rule_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> AggregateOutcome:
        """Same gate as aggregate_fps_by_rule, applied after the time window."""
        events = await self.scan(rule_id, start, end, timeout=timeout)
        return await self._gate(rule_id, events)

    async def get_all_rule_fp_rates(
        self, timeout: Optional[float] = None
    ) -> Union[List[CalibrationAggregate], KAnonymityRefusal]:
        """
        Aggregates for every rule meeting k; the rest are omitted.

        If no rule qualifies the whole call is refused, with ``actual_k`` set
        to the best per-rule org count.
        """
        events = await self.scan(timeout=timeout)
        by_rule: Dict[str, List[FPEvent]] = defaultdict(list)
        for event in events:
            by_rule[event.rule_id].append(event)

        results = []
        best = 0
        for rule_id in sorted(by_rule):
            aggregate = self._summarize(rule_id, by_rule[rule_id])
            best = max(best, aggregate.org_count)
            if aggregate.meets_k_anonymity:
                results.append(aggregate)

        if not results:
            return await self.refuse(None, best)
        logger.info(f"Aggregated {len(results)}/{len(by_rule)} rules meeting k={self.required_k}")
        return results
