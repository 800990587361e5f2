"""Tests for ByzantineFilter."""

import pytest

from fptrust.trust.byzantine import ByzantineFilter, ByzantineFilterConfig
from fptrust.trust.models import (
    ContributionWeight,
    FilterReason,
    RawContribution,
    WeightedContribution,
    WeightFactors,
)


def weight(org_id, value, stake=0.0):
    return ContributionWeight(
        org_id=org_id,
        weight=value,
        factors=WeightFactors(base_reputation=value, stake_multiplier=stake, consistency_bonus=0.0),
    )


def contributions_and_weights(rows):
    """rows: (org, fp_rate, weight, event_count)"""
    contributions = [RawContribution(org, rate, events) for org, rate, _, events in rows]
    weights = {org: weight(org, w) for org, _, w, _ in rows if w is not None}
    return contributions, weights


@pytest.fixture
def poisoned():
    """Five honest orgs near 6% and one reporting 95%."""
    return contributions_and_weights([
        ("o1", 0.05, 0.9, 100),
        ("o2", 0.06, 0.8, 100),
        ("o3", 0.05, 0.7, 100),
        ("o4", 0.07, 0.6, 100),
        ("o5", 0.06, 0.3, 100),
        ("o6", 0.95, 0.9, 100),
    ])


def test_outlier_and_low_reputation_filtered(poisoned):
    """Test that the poisoner and the lowest-weight survivor are dropped."""
    contributions, weights = poisoned
    byzantine = ByzantineFilter(ByzantineFilterConfig(z_score_threshold=2.0))

    result = byzantine.filter_contributors(contributions, weights)

    assert result.filtering_applied
    assert [f.org_id_hash for f in result.outlier_filtered] == ["o6"]
    assert result.outlier_filtered[0].reason == FilterReason.STATISTICAL_OUTLIER
    assert "threshold: 2.0" in result.outlier_filtered[0].details
    assert [f.org_id_hash for f in result.reputation_filtered] == ["o5"]
    assert result.reputation_filtered[0].details == "Bottom 20% by weight"
    assert {c.org_id_hash for c in result.trusted_contributors} == {"o1", "o2", "o3", "o4"}
    assert result.total_contributors == 6
    assert result.trusted_count == 4
    assert result.filter_rate == pytest.approx(1 - 4 / 6)

    consensus = byzantine.calculate_weighted_consensus(result.trusted_contributors)
    assert consensus == pytest.approx(0.17 / 3.0)


def test_default_threshold_keeps_small_sample_outlier(poisoned):
    """Test that |z| can never exceed 3.0 with six contributors."""
    contributions, weights = poisoned
    result = ByzantineFilter().filter_contributors(contributions, weights)
    assert result.outlier_filtered == []


def test_statistics(poisoned):
    """Test the summary statistics over valid contributors."""
    contributions, weights = poisoned
    byzantine = ByzantineFilter(ByzantineFilterConfig(z_score_threshold=2.0))
    stats = byzantine.filter_contributors(contributions, weights).statistics

    assert stats.mean_fp_rate == pytest.approx(1.24 / 6)
    assert stats.median_fp_rate == pytest.approx(0.06)
    assert stats.mean_weight == pytest.approx(0.7)
    assert stats.weight_percentile_threshold == pytest.approx(0.6)
    assert stats.trusted_mean_fp_rate == pytest.approx(0.0575)
    assert stats.outlier_count == 1
    assert stats.reputation_filtered_count == 1


def test_hard_filters():
    """Test missing, sub-minimum and unstaked contributors."""
    contributions = [
        RawContribution("missing", 0.1, 10),
        RawContribution("weak", 0.1, 10),
        RawContribution("unstaked", 0.1, 10),
        RawContribution("staked", 0.1, 10),
    ]
    weights = {
        "weak": weight("weak", 0.05, stake=0.5),
        "unstaked": weight("unstaked", 0.5),
        "staked": weight("staked", 0.5, stake=0.5),
    }
    byzantine = ByzantineFilter(ByzantineFilterConfig(require_stake=True))

    result = byzantine.filter_contributors(contributions, weights)

    reasons = {f.org_id_hash: f.reason for f in result.other_filtered}
    assert reasons == {
        "missing": FilterReason.INSUFFICIENT_DATA,
        "weak": FilterReason.BELOW_MINIMUM_REPUTATION,
        "unstaked": FilterReason.NO_STAKE,
    }
    missing = next(f for f in result.other_filtered if f.org_id_hash == "missing")
    assert missing.weight == 0.0
    assert missing.details == "No reputation weight found"
    assert [c.org_id_hash for c in result.trusted_contributors] == ["staked"]


def test_below_minimum_skips_statistics():
    """Test that small samples are trusted as-is with zero z-scores."""
    contributions, weights = contributions_and_weights([
        ("a", 0.05, 0.5, 10),
        ("b", 0.06, 0.5, 10),
        ("c", 0.07, 0.5, 10),
        ("d", 0.90, 0.5, 10),
    ])
    byzantine = ByzantineFilter()
    result = byzantine.filter_contributors(contributions, weights)

    assert not result.filtering_applied
    assert result.trusted_count == 4
    assert all(c.z_score == 0.0 for c in result.trusted_contributors)
    assert result.filter_rate == 0.0


def test_equal_weight_consensus():
    """Test that equal weights give the plain mean."""
    contributions, weights = contributions_and_weights([
        ("a", 0.05, 0.5, 10),
        ("b", 0.06, 0.5, 10),
        ("c", 0.07, 0.5, 10),
    ])
    byzantine = ByzantineFilter()
    result = byzantine.filter_contributors(contributions, weights)
    assert byzantine.calculate_weighted_consensus(result.trusted_contributors) == pytest.approx(0.06)


def test_weighted_consensus_leans_to_heavier_weight():
    """Test Σ(fp·w)/Σw on two unequally weighted contributors."""
    factors = WeightFactors(base_reputation=0.5, stake_multiplier=0.0, consistency_bonus=0.0)
    trusted = [
        WeightedContribution("a", 0.05, 0.8, 10, 0.0, factors),
        WeightedContribution("b", 0.10, 0.2, 10, 0.0, factors),
    ]
    assert ByzantineFilter().calculate_weighted_consensus(trusted) == pytest.approx(0.06)


def test_identical_rates_have_no_outliers():
    """Test that zero spread gives zero z-scores."""
    contributions, weights = contributions_and_weights(
        [(f"o{i}", 0.125, 0.5, 10) for i in range(6)]
    )
    result = ByzantineFilter().filter_contributors(contributions, weights)
    assert result.outlier_filtered == []
    assert all(c.z_score == 0.0 for c in result.trusted_contributors)
    # equal weights: input order decides who falls in the bottom percentile
    assert [f.org_id_hash for f in result.reputation_filtered] == ["o0"]


def test_empty_input():
    """Test that no contributions yield an empty, zero result."""
    byzantine = ByzantineFilter()
    result = byzantine.filter_contributors([], {})

    assert result.total_contributors == 0
    assert result.trusted_count == 0
    assert result.filter_rate == 0.0
    assert byzantine.calculate_weighted_consensus(result.trusted_contributors) == 0.0


def test_confidence_insufficient():
    """Test the category for fewer than three trusted contributors."""
    contributions, weights = contributions_and_weights([
        ("a", 0.05, 0.9, 500),
        ("b", 0.05, 0.9, 500),
    ])
    byzantine = ByzantineFilter()
    result = byzantine.filter_contributors(contributions, weights)
    confidence = byzantine.calculate_confidence(result.trusted_contributors, result.statistics)

    assert confidence.category == "insufficient"
    assert confidence.low_confidence_reason == "Only 2 trusted contributors"


def test_confidence_high():
    """Test a large, agreeing, well-reputed sample."""
    contributions, weights = contributions_and_weights(
        [(f"o{i:02d}", 0.125, 1.0, 100) for i in range(20)]
    )
    byzantine = ByzantineFilter()
    result = byzantine.filter_contributors(contributions, weights)
    confidence = byzantine.calculate_confidence(result.trusted_contributors, result.statistics)

    assert result.trusted_count == 16
    assert confidence.category == "high"
    assert confidence.low_confidence_reason is None
    assert confidence.factors["agreement"] == 1.0
    assert confidence.factors["event_count"] == 1.0
    assert confidence.level == pytest.approx(0.8 * 0.35 + 0.3 + 0.2 + 0.15)


def test_confidence_low_names_reason():
    """Test that a low score explains its weakest factor."""
    contributions, weights = contributions_and_weights([
        ("a", 0.25, 0.2, 5),
        ("b", 0.25, 0.2, 5),
        ("c", 0.25, 0.2, 5),
    ])
    byzantine = ByzantineFilter()
    result = byzantine.filter_contributors(contributions, weights)
    confidence = byzantine.calculate_confidence(result.trusted_contributors, result.statistics)

    assert confidence.category == "low"
    assert confidence.low_confidence_reason == "Insufficient contributors"
    assert set(confidence.factors) == {"contributor_count", "agreement", "event_count", "reputation"}


def test_config_from_env(monkeypatch):
    """Test environment overrides."""
    monkeypatch.setenv("FPTRUST_Z_SCORE_THRESHOLD", "2.5")
    monkeypatch.setenv("FPTRUST_REQUIRE_STAKE", "yes")
    config = ByzantineFilterConfig.from_env()
    assert config.z_score_threshold == 2.5
    assert config.require_stake is True
    assert ByzantineFilter(config).z_score_threshold == 2.5


def test_config_from_env_rejects_garbage(monkeypatch):
    """Test that malformed values are not silently defaulted."""
    monkeypatch.setenv("FPTRUST_Z_SCORE_THRESHOLD", "three")
    with pytest.raises(ValueError, match="FPTRUST_Z_SCORE_THRESHOLD"):
        ByzantineFilterConfig.from_env()
