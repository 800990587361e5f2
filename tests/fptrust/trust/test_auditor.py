"""Tests for TrustAuditor."""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from fptrust.errors import DuplicateBindingError
from fptrust.trust.auditor import AuditLevel, TrustAuditor


@pytest.fixture
def audit_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "logs" / "audit.jsonl"


def read(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_parse_level():
    """Test level names are case-insensitive and validated."""
    assert AuditLevel.parse("warn") == AuditLevel.WARN
    assert AuditLevel.parse("DEBUG") == AuditLevel.DEBUG
    with pytest.raises(ValueError):
        AuditLevel.parse("verbose")


@pytest.mark.asyncio
async def test_disabled_without_path():
    """Test that an auditor without a path writes nothing and does not fail."""
    auditor = TrustAuditor()
    await auditor.log("anything", AuditLevel.ERROR, detail=1)


@pytest.mark.asyncio
async def test_level_filtering(audit_path):
    """Test that records below the configured level are dropped."""
    auditor = TrustAuditor(audit_path, level=AuditLevel.WARN)

    await auditor.log_binding_created("org-a", "a" * 64, True)
    await auditor.log_k_anonymity_refusal("rule-1", 10, 8)

    records = read(audit_path)
    assert [r["event"] for r in records] == ["k_anonymity_refusal"]
    assert records[0]["level"] == "warn"
    assert records[0]["required_k"] == 10
    assert records[0]["actual_k"] == 8

    auditor.set_level(AuditLevel.INFO)
    await auditor.log_binding_created("org-a", "a" * 64, True)
    assert len(read(audit_path)) == 2


@pytest.mark.asyncio
async def test_debug_sampling(audit_path):
    """Test that DEBUG records are sampled."""
    auditor = TrustAuditor(audit_path, level=AuditLevel.DEBUG, sample_rate=0.5)

    with patch("fptrust.trust.auditor.random.random", return_value=0.9):
        await auditor.log("noisy", AuditLevel.DEBUG)
    assert not audit_path.exists()

    with patch("fptrust.trust.auditor.random.random", return_value=0.1):
        await auditor.log("noisy", AuditLevel.DEBUG)
    assert [r["event"] for r in read(audit_path)] == ["noisy"]


@pytest.mark.asyncio
async def test_records_carry_prefixes_only(audit_path):
    """Test that nonces are truncated in every record."""
    auditor = TrustAuditor(audit_path, level=AuditLevel.INFO)
    old, new = "1" * 64, "2" * 64

    await auditor.log_binding_rotated("org-a", old, new, "scheduled")
    await auditor.log_error(DuplicateBindingError("dup", org_id="org-a", nonce=old))

    text = audit_path.read_text()
    assert old not in text and new not in text
    rotated, error = read(audit_path)
    assert rotated["old_nonce_prefix"] == "11111111..."
    assert error["error"] == "DUPLICATE_BINDING"
    assert error["nonce_prefix"] == "11111111..."


@pytest.mark.asyncio
async def test_filter_summary_counts_only(audit_path):
    """Test that filter summaries hold counts, not contributor hashes."""
    auditor = TrustAuditor(audit_path, level=AuditLevel.INFO)
    await auditor.log_filter_summary("rule-1", 12, 9, 1, 2, 0, 0.06)

    (record,) = read(audit_path)
    assert record["event"] == "filter_summary"
    assert record["total"] == 12
    assert record["trusted"] == 9
    assert set(record) == {
        "ts", "event", "level", "rule_id", "total", "trusted",
        "outliers", "low_reputation", "other", "consensus_fp_rate",
    }
