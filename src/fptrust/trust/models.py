"""
Shared dataclasses for the trust subsystem.

Persisted records round-trip through ``to_dict``/``from_dict`` with ISO-8601
UTC timestamps so both storage backends store identical documents.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from fptrust.errors import ErrorCode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed-width UTC form so stored timestamps sort lexicographically
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VerificationMethod(str, Enum):
    GITHUB_ORG = "github_org"
    STRIPE_CUSTOMER = "stripe_customer"
    MANUAL = "manual"


class StakeStatus(str, Enum):
    ACTIVE = "active"
    SLASHED = "slashed"
    WITHDRAWN = "withdrawn"


class FilterReason(str, Enum):
    """Why a contributor was left out of the consensus."""
    STATISTICAL_OUTLIER = "statistical_outlier"
    LOW_REPUTATION = "low_reputation"
    BELOW_MINIMUM_REPUTATION = "below_minimum_reputation"
    NO_STAKE = "no_stake"
    INSUFFICIENT_DATA = "insufficient_data"


# =============================================================================
# Identity
# =============================================================================


@dataclass
class OrganizationIdentity:
    """A verified organization. One per org_id."""
    org_id: str
    public_key: str
    verification_method: VerificationMethod
    verified_at: datetime
    unique_nonce: str = ""
    github_org_id: Optional[int] = None
    stripe_customer_id: Optional[str] = None
    domain_ownership: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "public_key": self.public_key,
            "verification_method": VerificationMethod(self.verification_method).value,
            "verified_at": to_iso(self.verified_at),
            "unique_nonce": self.unique_nonce,
            "github_org_id": self.github_org_id,
            "stripe_customer_id": self.stripe_customer_id,
            "domain_ownership": self.domain_ownership,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrganizationIdentity":
        return cls(
            org_id=data["org_id"],
            public_key=data["public_key"],
            verification_method=VerificationMethod(data["verification_method"]),
            verified_at=from_iso(data["verified_at"]),
            unique_nonce=data.get("unique_nonce") or "",
            github_org_id=data.get("github_org_id"),
            stripe_customer_id=data.get("stripe_customer_id"),
            domain_ownership=data.get("domain_ownership"),
        )


@dataclass
class NonceBinding:
    """A random trust token bound 1:1 to a verified organization."""
    nonce: str
    org_id: str
    public_key: str
    bound_at: datetime
    verification_method: VerificationMethod
    signature: str
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    previous_nonce: Optional[str] = None
    usage_count: int = 0

    @property
    def is_active(self) -> bool:
        return not self.revoked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "org_id": self.org_id,
            "public_key": self.public_key,
            "bound_at": to_iso(self.bound_at),
            "verification_method": VerificationMethod(self.verification_method).value,
            "signature": self.signature,
            "revoked": self.revoked,
            "revoked_at": to_iso(self.revoked_at),
            "revocation_reason": self.revocation_reason,
            "previous_nonce": self.previous_nonce,
            "usage_count": self.usage_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NonceBinding":
        return cls(
            nonce=data["nonce"],
            org_id=data["org_id"],
            public_key=data["public_key"],
            bound_at=from_iso(data["bound_at"]),
            verification_method=VerificationMethod(data["verification_method"]),
            signature=data["signature"],
            revoked=bool(data.get("revoked", False)),
            revoked_at=from_iso(data.get("revoked_at")),
            revocation_reason=data.get("revocation_reason"),
            previous_nonce=data.get("previous_nonce"),
            usage_count=int(data.get("usage_count", 0)),
        )


@dataclass
class NonceBindingResult:
    binding: NonceBinding
    is_new: bool
    previous_binding: Optional[NonceBinding] = None


@dataclass
class NonceVerificationResult:
    """Outcome of a binding check. ``code`` is None only when valid."""
    valid: bool
    code: Optional[ErrorCode] = None
    reason: Optional[str] = None
    binding: Optional[NonceBinding] = None


# =============================================================================
# Reputation
# =============================================================================


@dataclass
class OrganizationReputation:
    org_id: str
    reputation_score: float = 0.5
    stake_pledge: float = 0.0
    contribution_count: int = 0
    flagged_count: int = 0
    consistency_score: float = 0.5
    age_score: float = 0.1
    volume_score: float = 0.0
    stake_status: StakeStatus = StakeStatus.ACTIVE
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "reputation_score": self.reputation_score,
            "stake_pledge": self.stake_pledge,
            "contribution_count": self.contribution_count,
            "flagged_count": self.flagged_count,
            "consistency_score": self.consistency_score,
            "age_score": self.age_score,
            "volume_score": self.volume_score,
            "stake_status": StakeStatus(self.stake_status).value,
            "last_updated": to_iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrganizationReputation":
        return cls(
            org_id=data["org_id"],
            reputation_score=float(data["reputation_score"]),
            stake_pledge=float(data.get("stake_pledge", 0.0)),
            contribution_count=int(data.get("contribution_count", 0)),
            flagged_count=int(data.get("flagged_count", 0)),
            consistency_score=float(data.get("consistency_score", 0.5)),
            age_score=float(data.get("age_score", 0.1)),
            volume_score=float(data.get("volume_score", 0.0)),
            stake_status=StakeStatus(data.get("stake_status", "active")),
            last_updated=from_iso(data.get("last_updated")) or utcnow(),
        )


@dataclass
class StakePledge:
    org_id: str
    amount_usd: float
    pledged_at: datetime = field(default_factory=utcnow)
    status: StakeStatus = StakeStatus.ACTIVE
    slash_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "amount_usd": self.amount_usd,
            "pledged_at": to_iso(self.pledged_at),
            "status": StakeStatus(self.status).value,
            "slash_reason": self.slash_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StakePledge":
        return cls(
            org_id=data["org_id"],
            amount_usd=float(data["amount_usd"]),
            pledged_at=from_iso(data.get("pledged_at")) or utcnow(),
            status=StakeStatus(data.get("status", "active")),
            slash_reason=data.get("slash_reason"),
        )


@dataclass
class WeightFactors:
    base_reputation: float
    stake_multiplier: float
    consistency_bonus: float

    @property
    def total_multiplier(self) -> float:
        return self.base_reputation + self.stake_multiplier + self.consistency_bonus


@dataclass
class ContributionWeight:
    org_id: str
    weight: float
    factors: WeightFactors


# =============================================================================
# Consistency scoring
# =============================================================================


@dataclass
class ContributionRecord:
    """One historical FP-rate report, kept in the contribution ledger."""
    org_id: str
    rule_id: str
    contributed_fp_rate: float
    consensus_fp_rate: float
    event_count: int
    timestamp: datetime
    deviation: float = 0.0
    consistency_score: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.org_id}:{self.rule_id}:{to_iso(self.timestamp)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "rule_id": self.rule_id,
            "contributed_fp_rate": self.contributed_fp_rate,
            "consensus_fp_rate": self.consensus_fp_rate,
            "event_count": self.event_count,
            "timestamp": to_iso(self.timestamp),
            "deviation": self.deviation,
            "consistency_score": self.consistency_score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContributionRecord":
        return cls(
            org_id=data["org_id"],
            rule_id=data["rule_id"],
            contributed_fp_rate=float(data["contributed_fp_rate"]),
            consensus_fp_rate=float(data["consensus_fp_rate"]),
            event_count=int(data["event_count"]),
            timestamp=from_iso(data["timestamp"]),
            deviation=float(data.get("deviation", 0.0)),
            consistency_score=float(data.get("consistency_score", 0.0)),
        )


@dataclass
class ConsistencyMetrics:
    org_id: str
    overall_score: float
    rules_contributed: int
    contributions_considered: int
    average_deviation: float
    deviation_std_dev: float
    outlier_count: int
    last_contribution_date: Optional[datetime]
    oldest_contribution_age_days: float


@dataclass
class ConsistencyScoreResult:
    score: float
    metrics: ConsistencyMetrics
    contributions: List[ContributionRecord]
    has_minimum_data: bool
    unreliable_reason: Optional[str] = None


# =============================================================================
# Byzantine filtering
# =============================================================================


@dataclass
class RawContribution:
    """Per-org FP rate for one rule, one filtering pass."""
    org_id_hash: str
    fp_rate: float
    event_count: int
    last_event_at: Optional[datetime] = None


@dataclass
class WeightedContribution:
    org_id_hash: str
    fp_rate: float
    weight: float
    event_count: int
    z_score: float
    weight_factors: WeightFactors


@dataclass
class FilteredContributor:
    org_id_hash: str
    fp_rate: float
    weight: float
    reason: FilterReason
    details: str


@dataclass
class FilterStatistics:
    mean_fp_rate: float
    std_dev_fp_rate: float
    median_fp_rate: float
    trusted_mean_fp_rate: float
    mean_weight: float
    weight_percentile_threshold: float
    outlier_count: int = 0
    reputation_filtered_count: int = 0


@dataclass
class ByzantineFilterResult:
    trusted_contributors: List[WeightedContribution]
    outlier_filtered: List[FilteredContributor]
    reputation_filtered: List[FilteredContributor]
    other_filtered: List[FilteredContributor]
    total_contributors: int
    trusted_count: int
    filter_rate: float
    statistics: FilterStatistics
    filtering_applied: bool


@dataclass
class CalibrationConfidence:
    level: float
    category: str  # "high", "medium", "low", "insufficient"
    factors: Dict[str, float]
    low_confidence_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationConfidence":
        return cls(
            level=float(data["level"]),
            category=data["category"],
            factors={k: float(v) for k, v in data.get("factors", {}).items()},
            low_confidence_reason=data.get("low_confidence_reason"),
        )


# =============================================================================
# Calibration
# =============================================================================


@dataclass
class FPEvent:
    """A reviewed rule firing reported by one organization."""
    event_id: str
    rule_id: str
    org_id_hash: str
    timestamp: datetime
    is_false_positive: bool = True


@dataclass
class CalibrationAggregate:
    rule_id: str
    org_count: int
    total_fps: int
    total_events: int
    average_fps_per_org: float
    fp_rate: float
    meets_k_anonymity: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class KAnonymityRefusal:
    """Returned instead of any aggregate backed by fewer than k organizations."""
    required_k: int
    actual_k: int
    rule_id: Optional[str] = None

    @property
    def error(self) -> ErrorCode:
        return ErrorCode.INSUFFICIENT_K_ANONYMITY

    @property
    def message(self) -> str:
        return (
            "Insufficient data for privacy-preserving query. "
            f"Requires at least {self.required_k} organizations, "
            f"found {self.actual_k}."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error.value,
            "message": self.message,
            "required_k": self.required_k,
            "actual_k": self.actual_k,
        }


@dataclass
class ConsensusResult:
    rule_id: str
    consensus_fp_rate: float
    trusted_count: int
    total_contributors: int
    total_event_count: int
    calculated_at: datetime
    confidence: CalibrationConfidence
    filtering_applied: bool
    filter_rate: float
    outliers_filtered: int
    low_reputation_filtered: int
    z_score_threshold: float
    reputation_percentile: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "consensus_fp_rate": self.consensus_fp_rate,
            "trusted_count": self.trusted_count,
            "total_contributors": self.total_contributors,
            "total_event_count": self.total_event_count,
            "calculated_at": to_iso(self.calculated_at),
            "confidence": self.confidence.to_dict(),
            "filtering_applied": self.filtering_applied,
            "filter_rate": self.filter_rate,
            "outliers_filtered": self.outliers_filtered,
            "low_reputation_filtered": self.low_reputation_filtered,
            "z_score_threshold": self.z_score_threshold,
            "reputation_percentile": self.reputation_percentile,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsensusResult":
        return cls(
            rule_id=data["rule_id"],
            consensus_fp_rate=float(data["consensus_fp_rate"]),
            trusted_count=int(data["trusted_count"]),
            total_contributors=int(data["total_contributors"]),
            total_event_count=int(data["total_event_count"]),
            calculated_at=from_iso(data["calculated_at"]),
            confidence=CalibrationConfidence.from_dict(data["confidence"]),
            filtering_applied=bool(data["filtering_applied"]),
            filter_rate=float(data["filter_rate"]),
            outliers_filtered=int(data["outliers_filtered"]),
            low_reputation_filtered=int(data["low_reputation_filtered"]),
            z_score_threshold=float(data["z_score_threshold"]),
            reputation_percentile=float(data["reputation_percentile"]),
        )


# =============================================================================
# Verification oracle
# =============================================================================


@dataclass
class VerificationResult:
    """What an external provider says about an organization."""
    verified: bool
    method: VerificationMethod
    metadata: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    verified_at: Optional[datetime] = None


def dataclass_to_dict(obj: Any) -> Dict[str, Any]:
    """Plain-dict view of a result dataclass (enums and datetimes flattened)."""

    def _convert(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return to_iso(value)
        if isinstance(value, dict):
            return {k: _convert(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_convert(v) for v in value]
        return value

    return _convert(asdict(obj))
