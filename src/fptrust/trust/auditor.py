"""
TrustAuditor - JSONL audit trail for security-relevant trust decisions.

Records carry nonce prefixes and counts only. Aggregate records never name
contributing organizations.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from enum import IntEnum
from pathlib import Path
from typing import Any, Optional

import aiofiles

from fptrust.config.defaults import AUDIT_DEFAULT_LEVEL, AUDIT_DEFAULT_SAMPLE_RATE
from fptrust.errors import TrustError, nonce_prefix

from .models import utcnow

logger = logging.getLogger(__name__)


class AuditLevel(IntEnum):
    """Audit event levels with numeric values for comparison."""
    DEBUG = 10
    INFO = 20
    WARN = 30
    ERROR = 40

    @classmethod
    def parse(cls, name: str) -> "AuditLevel":
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown audit level {name!r}")


class TrustAuditor:
    """
    Audit trust decisions with level control and async file writes.

    - DEBUG: per-call detail (sampled)
    - INFO: bindings, rotations, filter summaries
    - WARN: refusals and failed verifications
    - ERROR: errors only

    With no ``audit_path`` the auditor is disabled and every call is a no-op.
    """

    def __init__(
        self,
        audit_path: Optional[Path] = None,
        level: AuditLevel = AuditLevel[AUDIT_DEFAULT_LEVEL],
        sample_rate: float = AUDIT_DEFAULT_SAMPLE_RATE,
    ):
        self.audit_path = audit_path
        self.level = level
        self.sample_rate = sample_rate
        self._lock = asyncio.Lock()

    def set_level(self, level: AuditLevel) -> None:
        """Change audit level at runtime."""
        self.level = level

    async def log(
        self,
        event: str,
        level: AuditLevel = AuditLevel.DEBUG,
        **kwargs: Any,
    ) -> None:
        """Write one audit record if the level and sampling allow it."""
        if self.audit_path is None or level < self.level:
            return

        # DEBUG is high frequency
        if level == AuditLevel.DEBUG and random.random() > self.sample_rate:
            return

        self.audit_path.parent.mkdir(parents=True, exist_ok=True)

        record = {
            "ts": utcnow().isoformat(),
            "event": event,
            "level": level.name.lower(),
            **kwargs,
        }

        async with self._lock:
            try:
                async with aiofiles.open(self.audit_path, "a") as f:
                    await f.write(json.dumps(record, default=str) + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

    async def log_binding_created(self, org_id: str, nonce: str, is_new: bool) -> None:
        await self.log(
            "binding_created",
            AuditLevel.INFO,
            org_id=org_id,
            nonce_prefix=nonce_prefix(nonce),
            is_new=is_new,
        )

    async def log_binding_rotated(
        self, org_id: str, old_nonce: str, new_nonce: str, reason: str
    ) -> None:
        await self.log(
            "binding_rotated",
            AuditLevel.INFO,
            org_id=org_id,
            old_nonce_prefix=nonce_prefix(old_nonce),
            new_nonce_prefix=nonce_prefix(new_nonce),
            reason=reason,
        )

    async def log_binding_revoked(self, org_id: str, nonce: str, reason: str) -> None:
        await self.log(
            "binding_revoked",
            AuditLevel.INFO,
            org_id=org_id,
            nonce_prefix=nonce_prefix(nonce),
            reason=reason,
        )

    async def log_verification_failed(
        self, org_id: str, nonce: Optional[str], code: str, reason: Optional[str]
    ) -> None:
        await self.log(
            "verification_failed",
            AuditLevel.WARN,
            org_id=org_id,
            nonce_prefix=nonce_prefix(nonce),
            code=code,
            reason=reason,
        )

    async def log_error(self, error: TrustError) -> None:
        await self.log("trust_error", AuditLevel.ERROR, **error.to_dict())

    async def log_filter_summary(
        self,
        rule_id: str,
        total: int,
        trusted: int,
        outliers: int,
        low_reputation: int,
        other: int,
        consensus_fp_rate: float,
    ) -> None:
        """Counts only; contributor hashes stay out of the audit trail."""
        await self.log(
            "filter_summary",
            AuditLevel.INFO,
            rule_id=rule_id,
            total=total,
            trusted=trusted,
            outliers=outliers,
            low_reputation=low_reputation,
            other=other,
            consensus_fp_rate=consensus_fp_rate,
        )

    async def log_k_anonymity_refusal(
        self, rule_id: Optional[str], required_k: int, actual_k: int
    ) -> None:
        await self.log(
            "k_anonymity_refusal",
            AuditLevel.WARN,
            rule_id=rule_id,
            required_k=required_k,
            actual_k=actual_k,
        )

    async def log_stake_slashed(self, org_id: str, amount_usd: float, reason: str) -> None:
        await self.log(
            "stake_slashed",
            AuditLevel.WARN,
            org_id=org_id,
            amount_usd=amount_usd,
            reason=reason,
        )
