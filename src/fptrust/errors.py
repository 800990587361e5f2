"""
Error taxonomy for fptrust.

Every failure is a distinct, typed outcome carrying enough structured context
(org id, nonce prefix, reason) for audit. Nonces are never carried in full.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from fptrust.config.defaults import NONCE_LOG_PREFIX_CHARS


class ErrorCode(str, Enum):
    """Stable error codes shared by exceptions and returned outcomes."""
    IDENTITY_NOT_FOUND = "IDENTITY_NOT_FOUND"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    DUPLICATE_BINDING = "DUPLICATE_BINDING"
    BINDING_NOT_FOUND = "BINDING_NOT_FOUND"
    BINDING_ALREADY_REVOKED = "BINDING_ALREADY_REVOKED"
    NONCE_MISMATCH = "NONCE_MISMATCH"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    INSUFFICIENT_K_ANONYMITY = "INSUFFICIENT_K_ANONYMITY"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    EXTERNAL_VERIFICATION_FAILED = "EXTERNAL_VERIFICATION_FAILED"
    NO_ACTIVE_STAKE = "NO_ACTIVE_STAKE"
    AGGREGATION_CANCELLED = "AGGREGATION_CANCELLED"


def nonce_prefix(nonce: Optional[str]) -> Optional[str]:
    """Shorten a nonce for logs and error context."""
    if not nonce:
        return None
    return f"{nonce[:NONCE_LOG_PREFIX_CHARS]}..."


class TrustError(Exception):
    """Base class for all fptrust failures."""

    code: ErrorCode = ErrorCode.INSUFFICIENT_DATA

    def __init__(
        self,
        message: str,
        *,
        org_id: Optional[str] = None,
        nonce: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.org_id = org_id
        self.nonce_prefix = nonce_prefix(nonce)
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for audit records and API responses."""
        data: Dict[str, Any] = {"error": self.code.value, "message": self.message}
        if self.org_id is not None:
            data["org_id"] = self.org_id
        if self.nonce_prefix is not None:
            data["nonce_prefix"] = self.nonce_prefix
        if self.reason is not None:
            data["reason"] = self.reason
        return data


class IdentityNotFoundError(TrustError):
    code = ErrorCode.IDENTITY_NOT_FOUND


class DuplicateIdentityError(TrustError):
    code = ErrorCode.DUPLICATE_IDENTITY


class DuplicateBindingError(TrustError):
    code = ErrorCode.DUPLICATE_BINDING


class BindingNotFoundError(TrustError):
    code = ErrorCode.BINDING_NOT_FOUND


class BindingAlreadyRevokedError(TrustError):
    code = ErrorCode.BINDING_ALREADY_REVOKED


class NonceMismatchError(TrustError):
    code = ErrorCode.NONCE_MISMATCH


class ExternalVerificationError(TrustError):
    """Raised when a provider call fails; never treated as a passing check."""

    code = ErrorCode.EXTERNAL_VERIFICATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        kind: str = "API_ERROR",
        org_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, org_id=org_id, reason=reason)
        self.provider = provider
        self.kind = kind

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider
        data["kind"] = self.kind
        return data


class NoActiveStakeError(TrustError):
    code = ErrorCode.NO_ACTIVE_STAKE


class AggregationCancelledError(TrustError):
    """Raised instead of returning a partial aggregate."""

    code = ErrorCode.AGGREGATION_CANCELLED
