"""
SqliteTrustStore - Async SQLite backend for identities, bindings, reputation,
the contribution ledger and calibration results.

The one-active-binding rule is enforced by a partial unique index, so the
conditional create is a single INSERT that either lands or fails.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import aiosqlite

from fptrust.errors import BindingAlreadyRevokedError, DuplicateBindingError, nonce_prefix
from fptrust.trust.models import (
    ConsensusResult,
    ContributionRecord,
    NonceBinding,
    OrganizationIdentity,
    OrganizationReputation,
    StakePledge,
    StakeStatus,
    VerificationMethod,
    from_iso,
    to_iso,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS identities (
        org_id TEXT PRIMARY KEY,
        public_key TEXT NOT NULL,
        verification_method TEXT NOT NULL,
        verified_at TEXT NOT NULL,
        unique_nonce TEXT,
        github_org_id INTEGER,
        stripe_customer_id TEXT,
        domain_ownership TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_identity_stripe ON identities(stripe_customer_id)",
    """
    CREATE TABLE IF NOT EXISTS nonce_bindings (
        nonce TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        public_key TEXT NOT NULL,
        bound_at TEXT NOT NULL,
        verification_method TEXT NOT NULL,
        signature TEXT NOT NULL,
        revoked INTEGER NOT NULL DEFAULT 0,
        revoked_at TEXT,
        revocation_reason TEXT,
        previous_nonce TEXT,
        usage_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    # At most one live binding per org
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_binding_active
    ON nonce_bindings(org_id) WHERE revoked = 0
    """,
    "CREATE INDEX IF NOT EXISTS idx_binding_org ON nonce_bindings(org_id, bound_at)",
    """
    CREATE TABLE IF NOT EXISTS reputations (
        org_id TEXT PRIMARY KEY,
        reputation_score REAL NOT NULL,
        stake_pledge REAL NOT NULL DEFAULT 0.0,
        contribution_count INTEGER NOT NULL DEFAULT 0,
        flagged_count INTEGER NOT NULL DEFAULT 0,
        consistency_score REAL NOT NULL DEFAULT 0.5,
        age_score REAL NOT NULL DEFAULT 0.1,
        volume_score REAL NOT NULL DEFAULT 0.0,
        stake_status TEXT NOT NULL DEFAULT 'active',
        last_updated TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reputation_score ON reputations(reputation_score)",
    """
    CREATE TABLE IF NOT EXISTS stake_pledges (
        org_id TEXT PRIMARY KEY,
        amount_usd REAL NOT NULL,
        pledged_at TEXT NOT NULL,
        status TEXT NOT NULL,
        slash_reason TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contributions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        org_id TEXT NOT NULL,
        rule_id TEXT NOT NULL,
        contributed_fp_rate REAL NOT NULL,
        consensus_fp_rate REAL NOT NULL,
        event_count INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        deviation REAL NOT NULL DEFAULT 0.0,
        consistency_score REAL NOT NULL DEFAULT 0.0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_contrib_org ON contributions(org_id, timestamp)",
    # One ledger row per org, rule and reporting window
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_contrib_key
    ON contributions(org_id, rule_id, timestamp)
    """,
    """
    CREATE TABLE IF NOT EXISTS calibration_results (
        rule_id TEXT PRIMARY KEY,
        consensus_fp_rate REAL NOT NULL,
        trusted_count INTEGER NOT NULL,
        total_contributors INTEGER NOT NULL,
        total_event_count INTEGER NOT NULL,
        calculated_at TEXT NOT NULL,
        confidence TEXT NOT NULL,
        filtering_applied INTEGER NOT NULL,
        filter_rate REAL NOT NULL,
        outliers_filtered INTEGER NOT NULL,
        low_reputation_filtered INTEGER NOT NULL,
        z_score_threshold REAL NOT NULL,
        reputation_percentile REAL NOT NULL
    )
    """,
]

_BINDING_COLUMNS = (
    "nonce, org_id, public_key, bound_at, verification_method, signature, "
    "revoked, revoked_at, revocation_reason, previous_nonce, usage_count"
)


class SqliteTrustStore:
    """
    Async SQLite CRUD for trust data.

    Implements IdentityStoreAdapter, ReputationStoreAdapter,
    ContributionLedgerAdapter and CalibrationResultAdapter over one shared
    connection.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._connection: Optional[aiosqlite.Connection] = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create a shared connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(str(self.db_path))
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def initialize(self) -> None:
        """Create schema if not exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            conn = await self._get_connection()
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()
            logger.info(f"Initialized trust store at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def get_identity(self, org_id: str) -> Optional[OrganizationIdentity]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM identities WHERE org_id = ?", (org_id,))
        row = await cursor.fetchone()
        return self._row_to_identity(row) if row else None

    async def store_identity(self, identity: OrganizationIdentity) -> None:
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute(
                """
                INSERT INTO identities (
                    org_id, public_key, verification_method, verified_at,
                    unique_nonce, github_org_id, stripe_customer_id, domain_ownership
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(org_id) DO UPDATE SET
                    public_key = excluded.public_key,
                    verification_method = excluded.verification_method,
                    verified_at = excluded.verified_at,
                    unique_nonce = excluded.unique_nonce,
                    github_org_id = excluded.github_org_id,
                    stripe_customer_id = excluded.stripe_customer_id,
                    domain_ownership = excluded.domain_ownership
            """,
                (
                    identity.org_id,
                    identity.public_key,
                    VerificationMethod(identity.verification_method).value,
                    to_iso(identity.verified_at),
                    identity.unique_nonce,
                    identity.github_org_id,
                    identity.stripe_customer_id,
                    identity.domain_ownership,
                ),
            )
            await conn.commit()

    async def revoke_identity(self, org_id: str, reason: str) -> None:
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute("DELETE FROM identities WHERE org_id = ?", (org_id,))
            await conn.commit()
        logger.info(f"Revoked identity {org_id}: {reason}")

    async def get_identity_by_stripe_customer_id(
        self, customer_id: str
    ) -> Optional[OrganizationIdentity]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM identities WHERE stripe_customer_id = ? LIMIT 1",
            (customer_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_identity(row) if row else None

    async def list_stripe_verified_identities(self) -> List[OrganizationIdentity]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM identities WHERE verification_method = ? ORDER BY org_id",
            (VerificationMethod.STRIPE_CUSTOMER.value,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_identity(r) for r in rows]

    async def get_nonce_usage_count(self, org_id: str) -> int:
        binding = await self.get_nonce_binding(org_id)
        return binding.usage_count if binding else 0

    # ------------------------------------------------------------------
    # Nonce bindings
    # ------------------------------------------------------------------

    async def get_nonce_binding(self, org_id: str) -> Optional[NonceBinding]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"""
            SELECT {_BINDING_COLUMNS} FROM nonce_bindings
            WHERE org_id = ?
            ORDER BY bound_at DESC
            LIMIT 1
        """,
            (org_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_binding(row) if row else None

    async def get_nonce_binding_by_nonce(self, nonce: str) -> Optional[NonceBinding]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT {_BINDING_COLUMNS} FROM nonce_bindings WHERE nonce = ?", (nonce,)
        )
        row = await cursor.fetchone()
        return self._row_to_binding(row) if row else None

    async def store_nonce_binding(self, binding: NonceBinding) -> None:
        async with self._lock:
            conn = await self._get_connection()
            try:
                await conn.execute(
                    f"""
                    INSERT INTO nonce_bindings ({_BINDING_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(nonce) DO UPDATE SET
                        public_key = excluded.public_key,
                        bound_at = excluded.bound_at,
                        signature = excluded.signature,
                        revoked = excluded.revoked,
                        revoked_at = excluded.revoked_at,
                        revocation_reason = excluded.revocation_reason,
                        usage_count = excluded.usage_count
                """,
                    self._binding_params(binding),
                )
                await conn.commit()
            except sqlite3.IntegrityError as e:
                await conn.rollback()
                raise DuplicateBindingError(
                    f"Organization {binding.org_id} already has an active nonce binding",
                    org_id=binding.org_id,
                    nonce=binding.nonce,
                ) from e

    async def create_nonce_binding(self, binding: NonceBinding) -> None:
        async with self._lock:
            conn = await self._get_connection()
            try:
                await conn.execute(
                    f"""
                    INSERT INTO nonce_bindings ({_BINDING_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    self._binding_params(binding),
                )
                await conn.commit()
            except sqlite3.IntegrityError as e:
                await conn.rollback()
                raise DuplicateBindingError(
                    f"Organization {binding.org_id} already has an active nonce binding",
                    org_id=binding.org_id,
                    nonce=binding.nonce,
                ) from e
        logger.debug(f"Created binding {nonce_prefix(binding.nonce)} for {binding.org_id}")

    async def replace_nonce_binding(
        self, revoked: NonceBinding, replacement: NonceBinding
    ) -> None:
        async with self._lock:
            conn = await self._get_connection()
            cursor = await conn.execute(
                """
                UPDATE nonce_bindings
                SET revoked = 1, revoked_at = ?, revocation_reason = ?
                WHERE nonce = ? AND revoked = 0
            """,
                (to_iso(revoked.revoked_at), revoked.revocation_reason, revoked.nonce),
            )
            if cursor.rowcount == 0:
                await conn.rollback()
                raise BindingAlreadyRevokedError(
                    f"Nonce binding for organization {revoked.org_id} is already revoked",
                    org_id=revoked.org_id,
                    nonce=revoked.nonce,
                )
            try:
                await conn.execute(
                    f"""
                    INSERT INTO nonce_bindings ({_BINDING_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    self._binding_params(replacement),
                )
                await conn.commit()
            except sqlite3.IntegrityError as e:
                await conn.rollback()
                raise DuplicateBindingError(
                    f"Organization {replacement.org_id} already has an active nonce binding",
                    org_id=replacement.org_id,
                    nonce=replacement.nonce,
                ) from e

    async def increment_nonce_usage(self, nonce: str) -> Optional[int]:
        async with self._lock:
            conn = await self._get_connection()
            cursor = await conn.execute(
                """
                UPDATE nonce_bindings SET usage_count = usage_count + 1
                WHERE nonce = ? AND revoked = 0
            """,
                (nonce,),
            )
            if cursor.rowcount == 0:
                await conn.rollback()
                return None
            await conn.commit()
            cursor = await conn.execute(
                "SELECT usage_count FROM nonce_bindings WHERE nonce = ?", (nonce,)
            )
            row = await cursor.fetchone()
            return int(row["usage_count"])

    # ------------------------------------------------------------------
    # Reputation and stakes
    # ------------------------------------------------------------------

    async def get_reputation(self, org_id: str) -> Optional[OrganizationReputation]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM reputations WHERE org_id = ?", (org_id,))
        row = await cursor.fetchone()
        return OrganizationReputation.from_dict(dict(row)) if row else None

    async def update_reputation(self, reputation: OrganizationReputation) -> None:
        data = reputation.to_dict()
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute(
                """
                INSERT OR REPLACE INTO reputations (
                    org_id, reputation_score, stake_pledge, contribution_count,
                    flagged_count, consistency_score, age_score, volume_score,
                    stake_status, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    data["org_id"],
                    data["reputation_score"],
                    data["stake_pledge"],
                    data["contribution_count"],
                    data["flagged_count"],
                    data["consistency_score"],
                    data["age_score"],
                    data["volume_score"],
                    data["stake_status"],
                    data["last_updated"],
                ),
            )
            await conn.commit()

    async def get_stake_pledge(self, org_id: str) -> Optional[StakePledge]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM stake_pledges WHERE org_id = ?", (org_id,))
        row = await cursor.fetchone()
        return StakePledge.from_dict(dict(row)) if row else None

    async def update_stake_pledge(self, pledge: StakePledge) -> None:
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute(
                """
                INSERT OR REPLACE INTO stake_pledges (
                    org_id, amount_usd, pledged_at, status, slash_reason
                ) VALUES (?, ?, ?, ?, ?)
            """,
                (
                    pledge.org_id,
                    pledge.amount_usd,
                    to_iso(pledge.pledged_at),
                    StakeStatus(pledge.status).value,
                    pledge.slash_reason,
                ),
            )
            await conn.commit()

    async def list_reputations_by_score(
        self, min_score: float = 0.0, limit: int = 100
    ) -> List[OrganizationReputation]:
        """Reputations at or above min_score, highest first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM reputations
            WHERE reputation_score >= ?
            ORDER BY reputation_score DESC, org_id ASC
            LIMIT ?
        """,
            (min_score, limit),
        )
        rows = await cursor.fetchall()
        return [OrganizationReputation.from_dict(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Contribution ledger
    # ------------------------------------------------------------------

    async def append_contribution(self, record: ContributionRecord) -> None:
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute(
                """
                INSERT INTO contributions (
                    org_id, rule_id, contributed_fp_rate, consensus_fp_rate,
                    event_count, timestamp, deviation, consistency_score
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(org_id, rule_id, timestamp) DO UPDATE SET
                    contributed_fp_rate = excluded.contributed_fp_rate,
                    consensus_fp_rate = excluded.consensus_fp_rate,
                    event_count = excluded.event_count,
                    deviation = excluded.deviation,
                    consistency_score = excluded.consistency_score
            """,
                (
                    record.org_id,
                    record.rule_id,
                    record.contributed_fp_rate,
                    record.consensus_fp_rate,
                    record.event_count,
                    to_iso(record.timestamp),
                    record.deviation,
                    record.consistency_score,
                ),
            )
            await conn.commit()

    async def list_contributions(
        self, org_id: str, since: Optional[datetime] = None
    ) -> List[ContributionRecord]:
        conn = await self._get_connection()
        if since is None:
            cursor = await conn.execute(
                "SELECT * FROM contributions WHERE org_id = ? ORDER BY timestamp, id",
                (org_id,),
            )
        else:
            cursor = await conn.execute(
                """
                SELECT * FROM contributions
                WHERE org_id = ? AND timestamp >= ?
                ORDER BY timestamp, id
            """,
                (org_id, to_iso(since)),
            )
        rows = await cursor.fetchall()
        return [ContributionRecord.from_dict(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Calibration results
    # ------------------------------------------------------------------

    async def store_calibration_result(self, result: ConsensusResult) -> None:
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute(
                """
                INSERT OR REPLACE INTO calibration_results (
                    rule_id, consensus_fp_rate, trusted_count, total_contributors,
                    total_event_count, calculated_at, confidence, filtering_applied,
                    filter_rate, outliers_filtered, low_reputation_filtered,
                    z_score_threshold, reputation_percentile
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    result.rule_id,
                    result.consensus_fp_rate,
                    result.trusted_count,
                    result.total_contributors,
                    result.total_event_count,
                    to_iso(result.calculated_at),
                    json.dumps(result.confidence.to_dict()),
                    1 if result.filtering_applied else 0,
                    result.filter_rate,
                    result.outliers_filtered,
                    result.low_reputation_filtered,
                    result.z_score_threshold,
                    result.reputation_percentile,
                ),
            )
            await conn.commit()

    async def get_calibration_result(self, rule_id: str) -> Optional[ConsensusResult]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM calibration_results WHERE rule_id = ?", (rule_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_calibration_result(row) if row else None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_calibration_result(row: aiosqlite.Row) -> ConsensusResult:
        data = dict(row)
        data["confidence"] = json.loads(data["confidence"])
        return ConsensusResult.from_dict(data)

    @staticmethod
    def _binding_params(binding: NonceBinding) -> tuple:
        return (
            binding.nonce,
            binding.org_id,
            binding.public_key,
            to_iso(binding.bound_at),
            VerificationMethod(binding.verification_method).value,
            binding.signature,
            1 if binding.revoked else 0,
            to_iso(binding.revoked_at),
            binding.revocation_reason,
            binding.previous_nonce,
            binding.usage_count,
        )

    @staticmethod
    def _row_to_binding(row: aiosqlite.Row) -> NonceBinding:
        return NonceBinding(
            nonce=row["nonce"],
            org_id=row["org_id"],
            public_key=row["public_key"],
            bound_at=from_iso(row["bound_at"]),
            verification_method=VerificationMethod(row["verification_method"]),
            signature=row["signature"],
            revoked=bool(row["revoked"]),
            revoked_at=from_iso(row["revoked_at"]),
            revocation_reason=row["revocation_reason"],
            previous_nonce=row["previous_nonce"],
            usage_count=row["usage_count"],
        )

    @staticmethod
    def _row_to_identity(row: aiosqlite.Row) -> OrganizationIdentity:
        return OrganizationIdentity.from_dict(dict(row))
