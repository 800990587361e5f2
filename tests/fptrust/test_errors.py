"""Tests for the error taxonomy."""

from fptrust.errors import (
    AggregationCancelledError,
    BindingNotFoundError,
    ErrorCode,
    ExternalVerificationError,
    TrustError,
    nonce_prefix,
)
from fptrust.trust.models import KAnonymityRefusal


def test_nonce_prefix():
    assert nonce_prefix("abcdef0123456789") == "abcdef01..."
    assert nonce_prefix(None) is None
    assert nonce_prefix("") is None


def test_error_to_dict_omits_unset_context():
    """Test the structured form of a typed error."""
    error = BindingNotFoundError("No nonce binding found for organization org-a", org_id="org-a")

    assert isinstance(error, TrustError)
    assert error.code == ErrorCode.BINDING_NOT_FOUND
    assert error.to_dict() == {
        "error": "BINDING_NOT_FOUND",
        "message": "No nonce binding found for organization org-a",
        "org_id": "org-a",
    }


def test_error_never_holds_full_nonce():
    error = AggregationCancelledError("cancelled", nonce="f" * 64, reason="timeout")
    assert error.nonce_prefix == "ffffffff..."
    assert "f" * 64 not in str(error.to_dict())


def test_external_verification_error_fields():
    error = ExternalVerificationError("Stripe API rate limit exceeded", provider="stripe", kind="RATE_LIMIT")
    data = error.to_dict()
    assert data["error"] == "EXTERNAL_VERIFICATION_FAILED"
    assert data["provider"] == "stripe"
    assert data["kind"] == "RATE_LIMIT"


def test_k_anonymity_refusal_shape():
    """Test the refusal body returned in place of an aggregate."""
    refusal = KAnonymityRefusal(required_k=10, actual_k=8, rule_id="rule-1")
    assert refusal.to_dict() == {
        "error": "INSUFFICIENT_K_ANONYMITY",
        "message": (
            "Insufficient data for privacy-preserving query. "
            "Requires at least 10 organizations, found 8."
        ),
        "required_k": 10,
        "actual_k": 8,
    }
