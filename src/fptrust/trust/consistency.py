"""
ConsistencyCalculator - how closely an org's past reports tracked consensus.

Scores are a time-decayed mean of per-contribution agreement. Organizations
without enough qualifying history get a neutral score, flagged as unreliable;
that is the normal state for newcomers, not an error.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from fptrust.config import env_bool, env_float, env_int
from fptrust.config.defaults import (
    CONSISTENCY_DECAY_RATE,
    CONSISTENCY_EXCLUDE_OUTLIERS,
    CONSISTENCY_MAX_BONUS,
    CONSISTENCY_MAX_CONTRIBUTION_AGE_DAYS,
    CONSISTENCY_MIN_CONTRIBUTIONS_REQUIRED,
    CONSISTENCY_MIN_EVENT_COUNT,
    CONSISTENCY_NEUTRAL_SCORE,
    CONSISTENCY_OUTLIER_THRESHOLD,
)

from .models import ConsistencyMetrics, ConsistencyScoreResult, ContributionRecord, utcnow

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class ConsistencyConfig:
    decay_rate: float = CONSISTENCY_DECAY_RATE
    max_contribution_age_days: int = CONSISTENCY_MAX_CONTRIBUTION_AGE_DAYS
    min_contributions_required: int = CONSISTENCY_MIN_CONTRIBUTIONS_REQUIRED
    outlier_threshold: float = CONSISTENCY_OUTLIER_THRESHOLD
    min_event_count: int = CONSISTENCY_MIN_EVENT_COUNT
    exclude_outliers_from_score: bool = CONSISTENCY_EXCLUDE_OUTLIERS
    max_consistency_bonus: float = CONSISTENCY_MAX_BONUS

    @classmethod
    def from_env(cls) -> "ConsistencyConfig":
        """Create config from environment variables with defaults as fallbacks."""
        return cls(
            decay_rate=env_float("CONSISTENCY_DECAY_RATE", CONSISTENCY_DECAY_RATE),
            max_contribution_age_days=env_int(
                "CONSISTENCY_MAX_AGE_DAYS", CONSISTENCY_MAX_CONTRIBUTION_AGE_DAYS),
            min_contributions_required=env_int(
                "CONSISTENCY_MIN_CONTRIBUTIONS", CONSISTENCY_MIN_CONTRIBUTIONS_REQUIRED),
            outlier_threshold=env_float(
                "CONSISTENCY_OUTLIER_THRESHOLD", CONSISTENCY_OUTLIER_THRESHOLD),
            min_event_count=env_int("CONSISTENCY_MIN_EVENT_COUNT", CONSISTENCY_MIN_EVENT_COUNT),
            exclude_outliers_from_score=env_bool(
                "CONSISTENCY_EXCLUDE_OUTLIERS", CONSISTENCY_EXCLUDE_OUTLIERS),
            max_consistency_bonus=env_float("CONSISTENCY_MAX_BONUS", CONSISTENCY_MAX_BONUS),
        )


def _age_days(timestamp: datetime, now: datetime) -> float:
    return (now - timestamp).total_seconds() / _SECONDS_PER_DAY


class ConsistencyCalculator:
    def __init__(self, config: Optional[ConsistencyConfig] = None):
        self.config = config or ConsistencyConfig()

    def calculate_single_contribution_score(
        self, contributed_rate: float, consensus_rate: float
    ) -> float:
        """1 - min(|contributed - consensus|, 1). Symmetric."""
        return 1.0 - min(abs(contributed_rate - consensus_rate), 1.0)

    def calculate_consistency_delta(self, contributed_rate: float, consensus_rate: float) -> float:
        """Adjustment in [-max_bonus, +max_bonus]; zero at a deviation of 0.5."""
        deviation = min(abs(contributed_rate - consensus_rate), 1.0)
        return (0.5 - deviation) * self.config.max_consistency_bonus * 2

    def calculate_score(
        self,
        org_id: str,
        contributions: Sequence[ContributionRecord],
        now: Optional[datetime] = None,
    ) -> ConsistencyScoreResult:
        now = now or utcnow()
        qualifying = self._filter(contributions, now)

        required = self.config.min_contributions_required
        if len(qualifying) < required:
            return self._neutral_result(
                org_id,
                qualifying,
                f"Only {len(qualifying)} contributions found (minimum {required} required)",
            )

        scored = [self._score(c) for c in qualifying]
        outliers = [c.deviation > self.config.outlier_threshold for c in scored]

        weighted_sum = 0.0
        total_weight = 0.0
        for record, is_outlier in zip(scored, outliers):
            if is_outlier and self.config.exclude_outliers_from_score:
                continue
            weight = math.exp(-self.config.decay_rate * _age_days(record.timestamp, now))
            weighted_sum += record.consistency_score * weight
            total_weight += weight

        if total_weight == 0:
            score = CONSISTENCY_NEUTRAL_SCORE
        else:
            score = min(max(weighted_sum / total_weight, 0.0), 1.0)

        logger.debug(
            f"Consistency for {org_id}: {score:.3f} over {len(scored)} contributions "
            f"({sum(outliers)} outliers)"
        )
        return ConsistencyScoreResult(
            score=score,
            metrics=self._metrics(org_id, scored, sum(outliers), score, now),
            contributions=scored,
            has_minimum_data=True,
        )

    def _filter(
        self, contributions: Sequence[ContributionRecord], now: datetime
    ) -> List[ContributionRecord]:
        max_age = timedelta(days=self.config.max_contribution_age_days)
        return [
            c for c in contributions
            if now - c.timestamp <= max_age and c.event_count >= self.config.min_event_count
        ]

    def _score(self, record: ContributionRecord) -> ContributionRecord:
        return replace(
            record,
            deviation=abs(record.contributed_fp_rate - record.consensus_fp_rate),
            consistency_score=self.calculate_single_contribution_score(
                record.contributed_fp_rate, record.consensus_fp_rate
            ),
        )

    @staticmethod
    def _metrics(
        org_id: str,
        scored: List[ContributionRecord],
        outlier_count: int,
        score: float,
        now: datetime,
    ) -> ConsistencyMetrics:
        deviations = [c.deviation for c in scored]
        mean = sum(deviations) / len(deviations)
        variance = sum((d - mean) ** 2 for d in deviations) / len(deviations)
        oldest = min(c.timestamp for c in scored)
        return ConsistencyMetrics(
            org_id=org_id,
            overall_score=score,
            rules_contributed=len({c.rule_id for c in scored}),
            contributions_considered=len(scored),
            average_deviation=mean,
            deviation_std_dev=math.sqrt(variance),
            outlier_count=outlier_count,
            last_contribution_date=max(c.timestamp for c in scored),
            oldest_contribution_age_days=_age_days(oldest, now),
        )

    @staticmethod
    def _neutral_result(
        org_id: str, qualifying: List[ContributionRecord], reason: str
    ) -> ConsistencyScoreResult:
        return ConsistencyScoreResult(
            score=CONSISTENCY_NEUTRAL_SCORE,
            metrics=ConsistencyMetrics(
                org_id=org_id,
                overall_score=CONSISTENCY_NEUTRAL_SCORE,
                rules_contributed=0,
                contributions_considered=len(qualifying),
                average_deviation=0.0,
                deviation_std_dev=0.0,
                outlier_count=0,
                last_contribution_date=None,
                oldest_contribution_age_days=0.0,
            ),
            contributions=list(qualifying),
            has_minimum_data=False,
            unreliable_reason=reason,
        )
