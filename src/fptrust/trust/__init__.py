"""
Trust subsystem: identities, nonce bindings, reputation and Byzantine filtering.
"""

from .models import (
    ByzantineFilterResult,
    CalibrationAggregate,
    ConsensusResult,
    ContributionRecord,
    ContributionWeight,
    FilterReason,
    FPEvent,
    KAnonymityRefusal,
    NonceBinding,
    OrganizationIdentity,
    OrganizationReputation,
    RawContribution,
    StakePledge,
    StakeStatus,
    VerificationMethod,
    VerificationResult,
)
from .auditor import AuditLevel, TrustAuditor
from .byzantine import ByzantineFilter, ByzantineFilterConfig
from .consistency import ConsistencyCalculator, ConsistencyConfig
from .identity import IdentityRegistry
from .nonce_binding import NonceBindingConfig, NonceBindingService
from .reputation import ReputationConfig, ReputationEngine
from .revenue import RevenueStats, RevenueTrackingService, RevenueVerifiedOrg
from .verification import GitHubVerifier, StripeVerifier

__all__ = [
    "AuditLevel",
    "ByzantineFilter",
    "ByzantineFilterConfig",
    "ByzantineFilterResult",
    "CalibrationAggregate",
    "ConsensusResult",
    "ConsistencyCalculator",
    "ConsistencyConfig",
    "ContributionRecord",
    "ContributionWeight",
    "FPEvent",
    "FilterReason",
    "GitHubVerifier",
    "IdentityRegistry",
    "KAnonymityRefusal",
    "NonceBinding",
    "NonceBindingConfig",
    "NonceBindingService",
    "OrganizationIdentity",
    "OrganizationReputation",
    "RawContribution",
    "ReputationConfig",
    "ReputationEngine",
    "RevenueStats",
    "RevenueTrackingService",
    "RevenueVerifiedOrg",
    "StakePledge",
    "StakeStatus",
    "StripeVerifier",
    "TrustAuditor",
    "VerificationMethod",
    "VerificationResult",
]
