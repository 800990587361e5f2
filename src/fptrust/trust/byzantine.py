"""
ByzantineFilter - outlier rejection and trust-weighted consensus.

Filter stages, in order:

1. No resolvable weight         -> insufficient_data
2. Weight below the floor       -> below_minimum_reputation (when required)
3. Zero stake multiplier        -> no_stake (when required)
4. |Z| above threshold          -> statistical_outlier, regardless of weight
5. Bottom percentile by weight  -> low_reputation

Stages 4 and 5 only run with at least ``min_contributors_for_filtering``
valid contributors. Everything here is pure and synchronous.
"""

from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass
from typing import List, Mapping, Sequence

from fptrust.config import env_bool, env_float, env_int
from fptrust.config.defaults import (
    BYZANTINE_FILTER_PERCENTILE,
    BYZANTINE_MIN_CONTRIBUTORS_FOR_FILTERING,
    BYZANTINE_MINIMUM_REPUTATION_SCORE,
    BYZANTINE_REQUIRE_MINIMUM_REPUTATION,
    BYZANTINE_REQUIRE_STAKE,
    BYZANTINE_Z_SCORE_THRESHOLD,
    CONFIDENCE_CONTRIBUTOR_SATURATION,
    CONFIDENCE_EVENT_SATURATION,
    CONFIDENCE_HIGH_LEVEL,
    CONFIDENCE_MEDIUM_LEVEL,
    CONFIDENCE_MIN_TRUSTED,
)

from .models import (
    ByzantineFilterResult,
    CalibrationConfidence,
    ContributionWeight,
    FilteredContributor,
    FilterReason,
    FilterStatistics,
    RawContribution,
    WeightedContribution,
    WeightFactors,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ByzantineFilterConfig:
    z_score_threshold: float = BYZANTINE_Z_SCORE_THRESHOLD
    byzantine_filter_percentile: float = BYZANTINE_FILTER_PERCENTILE
    min_contributors_for_filtering: int = BYZANTINE_MIN_CONTRIBUTORS_FOR_FILTERING
    require_stake: bool = BYZANTINE_REQUIRE_STAKE
    require_minimum_reputation: bool = BYZANTINE_REQUIRE_MINIMUM_REPUTATION
    minimum_reputation_score: float = BYZANTINE_MINIMUM_REPUTATION_SCORE

    @classmethod
    def from_env(cls) -> "ByzantineFilterConfig":
        return cls(
            z_score_threshold=env_float("Z_SCORE_THRESHOLD", BYZANTINE_Z_SCORE_THRESHOLD),
            byzantine_filter_percentile=env_float(
                "FILTER_PERCENTILE", BYZANTINE_FILTER_PERCENTILE),
            min_contributors_for_filtering=env_int(
                "MIN_CONTRIBUTORS_FOR_FILTERING", BYZANTINE_MIN_CONTRIBUTORS_FOR_FILTERING),
            require_stake=env_bool("REQUIRE_STAKE", BYZANTINE_REQUIRE_STAKE),
            require_minimum_reputation=env_bool(
                "REQUIRE_MINIMUM_REPUTATION", BYZANTINE_REQUIRE_MINIMUM_REPUTATION),
            minimum_reputation_score=env_float(
                "MINIMUM_REPUTATION_SCORE", BYZANTINE_MINIMUM_REPUTATION_SCORE),
        )


def _mean(values: Sequence[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def _weighted(
    contribution: RawContribution, weight: ContributionWeight, z_score: float
) -> WeightedContribution:
    return WeightedContribution(
        org_id_hash=contribution.org_id_hash,
        fp_rate=contribution.fp_rate,
        weight=weight.weight,
        event_count=contribution.event_count,
        z_score=z_score,
        weight_factors=WeightFactors(
            base_reputation=weight.factors.base_reputation,
            stake_multiplier=weight.factors.stake_multiplier,
            consistency_bonus=weight.factors.consistency_bonus,
        ),
    )


def _filtered(
    contribution: RawContribution, weight: float, reason: FilterReason, details: str
) -> FilteredContributor:
    return FilteredContributor(
        org_id_hash=contribution.org_id_hash,
        fp_rate=contribution.fp_rate,
        weight=weight,
        reason=reason,
        details=details,
    )


class ByzantineFilter:
    def __init__(self, config: ByzantineFilterConfig = ByzantineFilterConfig()):
        self.config = config

    @property
    def z_score_threshold(self) -> float:
        return self.config.z_score_threshold

    def filter_contributors(
        self,
        contributions: Sequence[RawContribution],
        weights: Mapping[str, ContributionWeight],
    ) -> ByzantineFilterResult:
        cfg = self.config
        other: List[FilteredContributor] = []
        valid: List[RawContribution] = []

        for c in contributions:
            weight = weights.get(c.org_id_hash)
            if weight is None:
                other.append(_filtered(
                    c, 0.0, FilterReason.INSUFFICIENT_DATA, "No reputation weight found"))
            elif cfg.require_minimum_reputation and weight.weight < cfg.minimum_reputation_score:
                other.append(_filtered(
                    c,
                    weight.weight,
                    FilterReason.BELOW_MINIMUM_REPUTATION,
                    f"Weight {weight.weight:.3f} below minimum {cfg.minimum_reputation_score}",
                ))
            elif cfg.require_stake and weight.factors.stake_multiplier == 0:
                other.append(_filtered(
                    c, weight.weight, FilterReason.NO_STAKE, "No economic stake pledged"))
            else:
                valid.append(c)

        if len(valid) < cfg.min_contributors_for_filtering:
            trusted = [_weighted(c, weights[c.org_id_hash], 0.0) for c in valid]
            logger.debug(
                f"{len(valid)} valid contributors below {cfg.min_contributors_for_filtering}; "
                "statistical filtering skipped"
            )
            return self._result(contributions, valid, weights, trusted, [], [], other, False)

        rates = [c.fp_rate for c in valid]
        mean = statistics.fmean(rates)
        std_dev = statistics.pstdev(rates, mu=mean)

        outliers: List[FilteredContributor] = []
        survivors = []
        for c in valid:
            z_score = (c.fp_rate - mean) / std_dev if std_dev > 0 else 0.0
            if abs(z_score) > cfg.z_score_threshold:
                outliers.append(_filtered(
                    c,
                    weights[c.org_id_hash].weight,
                    FilterReason.STATISTICAL_OUTLIER,
                    f"Z-score: {z_score:.3f} (threshold: {cfg.z_score_threshold})",
                ))
            else:
                survivors.append((c, z_score))

        # sort is stable, so equal weights keep input order
        survivors.sort(key=lambda pair: weights[pair[0].org_id_hash].weight)
        cutoff = math.floor(len(survivors) * cfg.byzantine_filter_percentile)

        low_reputation: List[FilteredContributor] = []
        trusted: List[WeightedContribution] = []
        for index, (c, z_score) in enumerate(survivors):
            weight = weights[c.org_id_hash]
            if index < cutoff:
                low_reputation.append(_filtered(
                    c,
                    weight.weight,
                    FilterReason.LOW_REPUTATION,
                    f"Bottom {cfg.byzantine_filter_percentile * 100:.0f}% by weight",
                ))
            else:
                trusted.append(_weighted(c, weight, z_score))

        return self._result(
            contributions, valid, weights, trusted, outliers, low_reputation, other, True
        )

    def _result(
        self,
        contributions: Sequence[RawContribution],
        valid: Sequence[RawContribution],
        weights: Mapping[str, ContributionWeight],
        trusted: List[WeightedContribution],
        outliers: List[FilteredContributor],
        low_reputation: List[FilteredContributor],
        other: List[FilteredContributor],
        filtering_applied: bool,
    ) -> ByzantineFilterResult:
        total = len(contributions)
        stats = self._statistics(valid, weights, trusted)
        stats.outlier_count = len(outliers)
        stats.reputation_filtered_count = len(low_reputation)
        if total:
            logger.info(
                f"Byzantine filter: {len(trusted)}/{total} trusted "
                f"({len(outliers)} outliers, {len(low_reputation)} low reputation, "
                f"{len(other)} other)"
            )
        return ByzantineFilterResult(
            trusted_contributors=trusted,
            outlier_filtered=outliers,
            reputation_filtered=low_reputation,
            other_filtered=other,
            total_contributors=total,
            trusted_count=len(trusted),
            filter_rate=1 - len(trusted) / total if total else 0.0,
            statistics=stats,
            filtering_applied=filtering_applied,
        )

    def _statistics(
        self,
        valid: Sequence[RawContribution],
        weights: Mapping[str, ContributionWeight],
        trusted: Sequence[WeightedContribution],
    ) -> FilterStatistics:
        rates = [c.fp_rate for c in valid]
        mean = _mean(rates)
        weight_values = sorted(weights[c.org_id_hash].weight for c in valid)
        index = math.floor(len(weight_values) * self.config.byzantine_filter_percentile)
        return FilterStatistics(
            mean_fp_rate=mean,
            std_dev_fp_rate=statistics.pstdev(rates, mu=mean) if rates else 0.0,
            median_fp_rate=statistics.median(rates) if rates else 0.0,
            trusted_mean_fp_rate=_mean([c.fp_rate for c in trusted]),
            mean_weight=_mean(weight_values),
            weight_percentile_threshold=(
                weight_values[index] if index < len(weight_values) else 0.0
            ),
        )

    def calculate_weighted_consensus(self, trusted: Sequence[WeightedContribution]) -> float:
        """Sum(fp * w) / Sum(w). Zero for an empty set; check trusted_count first."""
        total_weight = sum(c.weight for c in trusted)
        if not trusted or total_weight <= 0:
            return 0.0
        return sum(c.fp_rate * c.weight for c in trusted) / total_weight

    def calculate_confidence(
        self, trusted: Sequence[WeightedContribution], stats: FilterStatistics
    ) -> CalibrationConfidence:
        contributor_factor = min(len(trusted) / CONFIDENCE_CONTRIBUTOR_SATURATION, 1.0)

        # coefficient of variation
        cv = 0.0
        if stats.trusted_mean_fp_rate > 0:
            cv = stats.std_dev_fp_rate / stats.trusted_mean_fp_rate
        agreement_factor = max(0.0, 1.0 - min(cv, 1.0))

        total_events = sum(c.event_count for c in trusted)
        event_factor = min(total_events / CONFIDENCE_EVENT_SATURATION, 1.0)
        reputation_factor = stats.mean_weight

        level = (
            contributor_factor * 0.35
            + agreement_factor * 0.3
            + event_factor * 0.2
            + reputation_factor * 0.15
        )

        reason = None
        if len(trusted) < CONFIDENCE_MIN_TRUSTED:
            category = "insufficient"
            reason = f"Only {len(trusted)} trusted contributors"
        elif level >= CONFIDENCE_HIGH_LEVEL:
            category = "high"
        elif level >= CONFIDENCE_MEDIUM_LEVEL:
            category = "medium"
        else:
            category = "low"
            if contributor_factor < 0.3:
                reason = "Insufficient contributors"
            elif agreement_factor < 0.3:
                reason = "High variance in FP rates"
            elif event_factor < 0.3:
                reason = "Insufficient event data"
            else:
                reason = "Low reputation scores"

        return CalibrationConfidence(
            level=level,
            category=category,
            factors={
                "contributor_count": contributor_factor,
                "agreement": agreement_factor,
                "event_count": event_factor,
                "reputation": reputation_factor,
            },
            low_confidence_reason=reason,
        )
