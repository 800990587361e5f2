"""
JsonFileTrustStore - one JSON document per entity on the local filesystem.

Layout under the root directory:

    identities/<org>.json       OrganizationIdentity
    bindings/<nonce>.json       NonceBinding (every binding ever issued)
    heads/<org>.json            {"nonce": ...} most recent binding for the org
    active/<org>                nonce of the live binding; created exclusively
    reputations/<org>.json      OrganizationReputation
    stakes/<org>.json           StakePledge
    contributions/<org>.json    list of ContributionRecord
    calibration/<rule>.json     latest ConsensusResult for the rule

Documents are rewritten atomically (temp file, fsync, replace). The ``active``
marker is created with exclusive-create semantics so two writers cannot both
issue a first binding for the same org.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import quote

import aiofiles
import aiofiles.os

from fptrust.errors import BindingAlreadyRevokedError, DuplicateBindingError, nonce_prefix
from fptrust.trust.models import (
    ConsensusResult,
    ContributionRecord,
    NonceBinding,
    OrganizationIdentity,
    OrganizationReputation,
    StakePledge,
    VerificationMethod,
)

logger = logging.getLogger(__name__)

_SUBDIRS = (
    "identities", "bindings", "heads", "active", "reputations", "stakes", "contributions",
    "calibration",
)


def _fsync_dir(directory: Path) -> None:
    dir_fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


async def atomic_write_text(path: Path, content: str) -> None:
    """
    Write content to a file atomically with fsync for durability.

    The temp file lives in the target directory so the final replace is a
    same-filesystem rename.
    """
    temp_path = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    try:
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(content)
            await f.flush()
            os.fsync(f.fileno())
        await aiofiles.os.replace(temp_path, path)
        _fsync_dir(path.parent)
    except BaseException:
        if await aiofiles.os.path.exists(temp_path):
            await aiofiles.os.remove(temp_path)
        raise


async def atomic_write_json(path: Path, payload: Any) -> None:
    await atomic_write_text(path, json.dumps(payload, sort_keys=True))


async def _read_json(path: Path) -> Optional[Any]:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return json.loads(await f.read())
    except FileNotFoundError:
        return None


def _key(value: str) -> str:
    return quote(value, safe="")


class JsonFileTrustStore:
    """
    File-backed trust store.

    Implements IdentityStoreAdapter, ReputationStoreAdapter,
    ContributionLedgerAdapter and CalibrationResultAdapter with the same
    observable behaviour as SqliteTrustStore.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = asyncio.Lock()

    def _path(self, kind: str, key: str, suffix: str = ".json") -> Path:
        return self.root / kind / f"{_key(key)}{suffix}"

    async def initialize(self) -> None:
        for name in _SUBDIRS:
            await aiofiles.os.makedirs(self.root / name, exist_ok=True)
        logger.info(f"Initialized file trust store at {self.root}")

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def get_identity(self, org_id: str) -> Optional[OrganizationIdentity]:
        data = await _read_json(self._path("identities", org_id))
        return OrganizationIdentity.from_dict(data) if data else None

    async def store_identity(self, identity: OrganizationIdentity) -> None:
        async with self._lock:
            await atomic_write_json(self._path("identities", identity.org_id), identity.to_dict())

    async def revoke_identity(self, org_id: str, reason: str) -> None:
        async with self._lock:
            path = self._path("identities", org_id)
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.remove(path)
        logger.info(f"Revoked identity {org_id}: {reason}")

    async def _all_identities(self) -> List[OrganizationIdentity]:
        directory = self.root / "identities"
        identities = []
        for name in sorted(await aiofiles.os.listdir(directory)):
            if not name.endswith(".json") or name.startswith("."):
                continue
            data = await _read_json(directory / name)
            if data:
                identities.append(OrganizationIdentity.from_dict(data))
        return identities

    async def get_identity_by_stripe_customer_id(
        self, customer_id: str
    ) -> Optional[OrganizationIdentity]:
        for identity in await self._all_identities():
            if identity.stripe_customer_id == customer_id:
                return identity
        return None

    async def list_stripe_verified_identities(self) -> List[OrganizationIdentity]:
        identities = [
            i for i in await self._all_identities()
            if i.verification_method == VerificationMethod.STRIPE_CUSTOMER
        ]
        return sorted(identities, key=lambda i: i.org_id)

    async def get_nonce_usage_count(self, org_id: str) -> int:
        binding = await self.get_nonce_binding(org_id)
        return binding.usage_count if binding else 0

    # ------------------------------------------------------------------
    # Nonce bindings
    # ------------------------------------------------------------------

    async def get_nonce_binding(self, org_id: str) -> Optional[NonceBinding]:
        head = await _read_json(self._path("heads", org_id))
        if not head:
            return None
        return await self.get_nonce_binding_by_nonce(head["nonce"])

    async def get_nonce_binding_by_nonce(self, nonce: str) -> Optional[NonceBinding]:
        data = await _read_json(self._path("bindings", nonce))
        return NonceBinding.from_dict(data) if data else None

    async def _active_nonce(self, org_id: str) -> Optional[str]:
        try:
            async with aiofiles.open(self._path("active", org_id, ""), "r") as f:
                return (await f.read()).strip() or None
        except FileNotFoundError:
            return None

    async def _claim_active(self, binding: NonceBinding) -> None:
        marker = self._path("active", binding.org_id, "")
        try:
            async with aiofiles.open(marker, "x") as f:
                await f.write(binding.nonce)
        except FileExistsError as e:
            raise DuplicateBindingError(
                f"Organization {binding.org_id} already has an active nonce binding",
                org_id=binding.org_id,
                nonce=binding.nonce,
            ) from e

    async def _release_active(self, org_id: str, nonce: str) -> None:
        if await self._active_nonce(org_id) == nonce:
            await aiofiles.os.remove(self._path("active", org_id, ""))

    async def _write_binding(self, binding: NonceBinding, *, update_head: bool) -> None:
        await atomic_write_json(self._path("bindings", binding.nonce), binding.to_dict())
        if update_head:
            await atomic_write_json(self._path("heads", binding.org_id), {"nonce": binding.nonce})

    async def store_nonce_binding(self, binding: NonceBinding) -> None:
        async with self._lock:
            existing = await self.get_nonce_binding_by_nonce(binding.nonce)
            head = await self.get_nonce_binding(binding.org_id)
            if binding.revoked:
                await self._release_active(binding.org_id, binding.nonce)
            else:
                active = await self._active_nonce(binding.org_id)
                if active is None:
                    await self._claim_active(binding)
                elif active != binding.nonce:
                    raise DuplicateBindingError(
                        f"Organization {binding.org_id} already has an active nonce binding",
                        org_id=binding.org_id,
                        nonce=binding.nonce,
                    )
            update_head = existing is None and (head is None or binding.bound_at >= head.bound_at)
            await self._write_binding(binding, update_head=update_head)

    async def create_nonce_binding(self, binding: NonceBinding) -> None:
        async with self._lock:
            await self._claim_active(binding)
            try:
                await self._write_binding(binding, update_head=True)
            except BaseException:
                await self._release_active(binding.org_id, binding.nonce)
                raise
        logger.debug(f"Created binding {nonce_prefix(binding.nonce)} for {binding.org_id}")

    async def replace_nonce_binding(
        self, revoked: NonceBinding, replacement: NonceBinding
    ) -> None:
        async with self._lock:
            if await self._active_nonce(revoked.org_id) != revoked.nonce:
                raise BindingAlreadyRevokedError(
                    f"Nonce binding for organization {revoked.org_id} is already revoked",
                    org_id=revoked.org_id,
                    nonce=revoked.nonce,
                )
            stored = await self.get_nonce_binding_by_nonce(revoked.nonce)
            if stored is not None:
                stored.revoked = True
                stored.revoked_at = revoked.revoked_at
                stored.revocation_reason = revoked.revocation_reason
                revoked = stored
            await self._write_binding(revoked, update_head=False)
            await atomic_write_json(self._path("bindings", replacement.nonce), replacement.to_dict())
            await atomic_write_text(self._path("active", replacement.org_id, ""), replacement.nonce)
            await atomic_write_json(
                self._path("heads", replacement.org_id), {"nonce": replacement.nonce}
            )

    async def increment_nonce_usage(self, nonce: str) -> Optional[int]:
        async with self._lock:
            binding = await self.get_nonce_binding_by_nonce(nonce)
            if binding is None or binding.revoked:
                return None
            binding.usage_count += 1
            await self._write_binding(binding, update_head=False)
            return binding.usage_count

    # ------------------------------------------------------------------
    # Reputation and stakes
    # ------------------------------------------------------------------

    async def get_reputation(self, org_id: str) -> Optional[OrganizationReputation]:
        data = await _read_json(self._path("reputations", org_id))
        return OrganizationReputation.from_dict(data) if data else None

    async def update_reputation(self, reputation: OrganizationReputation) -> None:
        async with self._lock:
            await atomic_write_json(
                self._path("reputations", reputation.org_id), reputation.to_dict()
            )

    async def get_stake_pledge(self, org_id: str) -> Optional[StakePledge]:
        data = await _read_json(self._path("stakes", org_id))
        return StakePledge.from_dict(data) if data else None

    async def update_stake_pledge(self, pledge: StakePledge) -> None:
        async with self._lock:
            await atomic_write_json(self._path("stakes", pledge.org_id), pledge.to_dict())

    async def list_reputations_by_score(
        self, min_score: float = 0.0, limit: int = 100
    ) -> List[OrganizationReputation]:
        """Reputations at or above min_score, highest first."""
        directory = self.root / "reputations"
        reputations = []
        for name in await aiofiles.os.listdir(directory):
            if not name.endswith(".json") or name.startswith("."):
                continue
            data = await _read_json(directory / name)
            if data and data["reputation_score"] >= min_score:
                reputations.append(OrganizationReputation.from_dict(data))
        reputations.sort(key=lambda r: (-r.reputation_score, r.org_id))
        return reputations[:limit]

    # ------------------------------------------------------------------
    # Contribution ledger
    # ------------------------------------------------------------------

    async def append_contribution(self, record: ContributionRecord) -> None:
        async with self._lock:
            path = self._path("contributions", record.org_id)
            records = await _read_json(path) or []
            keys = [ContributionRecord.from_dict(r).key for r in records]
            # same key replaces in place
            if record.key in keys:
                records[keys.index(record.key)] = record.to_dict()
            else:
                records.append(record.to_dict())
            await atomic_write_json(path, records)

    async def list_contributions(
        self, org_id: str, since: Optional[datetime] = None
    ) -> List[ContributionRecord]:
        records = [
            ContributionRecord.from_dict(d)
            for d in await _read_json(self._path("contributions", org_id)) or []
        ]
        if since is not None:
            records = [r for r in records if r.timestamp >= since]
        # stable: equal timestamps keep append order
        return sorted(records, key=lambda r: r.timestamp)

    # ------------------------------------------------------------------
    # Calibration results
    # ------------------------------------------------------------------

    async def store_calibration_result(self, result: ConsensusResult) -> None:
        async with self._lock:
            await atomic_write_json(self._path("calibration", result.rule_id), result.to_dict())

    async def get_calibration_result(self, rule_id: str) -> Optional[ConsensusResult]:
        data = await _read_json(self._path("calibration", rule_id))
        return ConsensusResult.from_dict(data) if data else None
