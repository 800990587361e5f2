"""Default configuration values for fptrust.

This module centralizes all tunable thresholds (decay rates, Z-score cutoffs,
k-anonymity floor, verification policy, etc.) into a single location. All
modules should import these constants instead of hard-coding values.

Usage:
    from fptrust.config.defaults import (
        K_ANONYMITY_THRESHOLD,
        BYZANTINE_Z_SCORE_THRESHOLD,
        CONSISTENCY_DECAY_RATE,
    )
"""

from __future__ import annotations

# =============================================================================
# Environment
# =============================================================================

ENV_PREFIX = "FPTRUST_"


# =============================================================================
# Nonce Binding Defaults
# =============================================================================

# 32 random bytes -> 64 hex characters
NONCE_BYTES = 32

# Prefix length used whenever a nonce appears in logs, audit records or errors
NONCE_LOG_PREFIX_CHARS = 8

ROTATION_REASON_PREFIX = "Rotated: "


# =============================================================================
# Consistency Score Defaults
# =============================================================================

CONSISTENCY_DECAY_RATE = 0.01  # ~70-day half-life
CONSISTENCY_MAX_CONTRIBUTION_AGE_DAYS = 180
CONSISTENCY_MIN_CONTRIBUTIONS_REQUIRED = 3
CONSISTENCY_OUTLIER_THRESHOLD = 0.3
CONSISTENCY_MIN_EVENT_COUNT = 1
CONSISTENCY_EXCLUDE_OUTLIERS = False
CONSISTENCY_MAX_BONUS = 0.2

# Score handed to organizations without enough history
CONSISTENCY_NEUTRAL_SCORE = 0.5


# =============================================================================
# Reputation Engine Defaults
# =============================================================================

REPUTATION_MIN_STAKE_USD = 1000.0
REPUTATION_STAKE_MULTIPLIER_CAP = 1.0
REPUTATION_CONSISTENCY_BONUS_CAP = 0.2
REPUTATION_NEUTRAL_SCORE = 0.5
REPUTATION_INITIAL_AGE_SCORE = 0.1

# Verification evidence normalization
REPUTATION_AGE_SATURATION_DAYS = 365
REPUTATION_PAYMENT_SATURATION = 12
REPUTATION_MEMBER_SATURATION = 50


# =============================================================================
# Byzantine Filter Defaults
# =============================================================================

BYZANTINE_Z_SCORE_THRESHOLD = 3.0  # 99.7% confidence
BYZANTINE_FILTER_PERCENTILE = 0.2  # Exclude bottom 20% by weight
BYZANTINE_MIN_CONTRIBUTORS_FOR_FILTERING = 5
BYZANTINE_REQUIRE_STAKE = False
BYZANTINE_REQUIRE_MINIMUM_REPUTATION = True
BYZANTINE_MINIMUM_REPUTATION_SCORE = 0.1

# Confidence scoring
CONFIDENCE_CONTRIBUTOR_SATURATION = 20
CONFIDENCE_EVENT_SATURATION = 1000
CONFIDENCE_MIN_TRUSTED = 3
CONFIDENCE_HIGH_LEVEL = 0.7
CONFIDENCE_MEDIUM_LEVEL = 0.5


# =============================================================================
# Calibration / k-Anonymity Defaults
# =============================================================================

K_ANONYMITY_THRESHOLD = 10
CALIBRATION_SCAN_TIMEOUT_SECONDS = 30.0


# =============================================================================
# Verification Oracle Defaults
# =============================================================================

STRIPE_MIN_AGE_DAYS = 30
STRIPE_MIN_SUCCESSFUL_PAYMENTS = 1
STRIPE_REQUIRE_ACTIVE_SUBSCRIPTION = False
STRIPE_REJECT_DELINQUENT = True
STRIPE_ALLOWED_CUSTOMER_TYPES = ("individual", "company")
STRIPE_REQUIRE_VERIFIED_BUSINESS = False

GITHUB_MIN_AGE_DAYS = 90
GITHUB_MIN_MEMBER_COUNT = 3
GITHUB_MIN_PUBLIC_REPOS = 1
GITHUB_RECENT_ACTIVITY_DAYS = 180
GITHUB_ALLOW_PRIVATE_ORG_FALLBACK = True

# Revenue analytics: successful payments that mark a high-value org
REVENUE_HIGH_VALUE_MIN_PAYMENTS = 5


# =============================================================================
# Audit Defaults
# =============================================================================

AUDIT_DEFAULT_LEVEL = "INFO"  # "DEBUG", "INFO", "WARN", "ERROR"
AUDIT_DEFAULT_SAMPLE_RATE = 0.1  # 10% sample for DEBUG events


# =============================================================================
# File Names
# =============================================================================

DATA_DIR_NAME = ".fptrust"
AUDIT_LOG_FILENAME = "audit.jsonl"
TRUST_DB_FILENAME = "trust.db"
FP_EVENTS_DB_FILENAME = "fp_events.db"
