"""
NonceBindingService - one active trust token per verified organization.

The one-active-binding rule is the anti-Sybil mechanism: a verified entity
cannot mint additional apparent reviewers while its current token is live.
Issuance relies on the adapter's conditional create, never on a separate
read-then-write.

Binding integrity is an HMAC-SHA256 over (nonce, org_id, public_key,
bound_at) keyed with the deployment's signing key.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional

from fptrust.config import env_str
from fptrust.config.defaults import NONCE_BYTES, ROTATION_REASON_PREFIX
from fptrust.errors import (
    BindingAlreadyRevokedError,
    BindingNotFoundError,
    DuplicateBindingError,
    ErrorCode,
    IdentityNotFoundError,
    NonceMismatchError,
    nonce_prefix,
)

if TYPE_CHECKING:
    from fptrust.storage.base import IdentityStoreAdapter

from .auditor import TrustAuditor
from .models import (
    NonceBinding,
    NonceBindingResult,
    NonceVerificationResult,
    OrganizationIdentity,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


def _same_nonce(presented: str, stored: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


@dataclass(frozen=True)
class NonceBindingConfig:
    signing_key: str = field(default="", repr=False)

    @classmethod
    def from_env(cls) -> "NonceBindingConfig":
        return cls(signing_key=env_str("SIGNING_KEY", ""))


class NonceBindingService:
    def __init__(
        self,
        store: IdentityStoreAdapter,
        config: NonceBindingConfig,
        auditor: Optional[TrustAuditor] = None,
    ):
        if not config.signing_key:
            raise ValueError("NonceBindingService requires a non-empty signing key")
        self.store = store
        self._key = config.signing_key.encode("utf-8")
        self.auditor = auditor or TrustAuditor()

    # ------------------------------------------------------------------
    # Integrity hash
    # ------------------------------------------------------------------

    def sign(self, nonce: str, org_id: str, public_key: str, bound_at: datetime) -> str:
        payload = "\n".join([nonce, org_id, public_key, to_iso(bound_at)])
        return hmac.new(self._key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_signature(self, binding: NonceBinding) -> bool:
        expected = self.sign(binding.nonce, binding.org_id, binding.public_key, binding.bound_at)
        return hmac.compare_digest(expected.encode("utf-8"), binding.signature.encode("utf-8"))

    async def _fresh_nonce(self) -> str:
        while True:
            nonce = secrets.token_hex(NONCE_BYTES)
            if await self.store.get_nonce_binding_by_nonce(nonce) is None:
                return nonce

    @staticmethod
    def _next_bound_at(previous: Optional[NonceBinding]) -> datetime:
        now = utcnow()
        if previous is not None and now <= previous.bound_at:
            # keeps rotation history strictly ordered under clock skew
            now = previous.bound_at + timedelta(microseconds=1)
        return now

    async def _build_binding(
        self,
        identity: OrganizationIdentity,
        public_key: str,
        previous: Optional[NonceBinding],
    ) -> NonceBinding:
        nonce = await self._fresh_nonce()
        bound_at = self._next_bound_at(previous)
        return NonceBinding(
            nonce=nonce,
            org_id=identity.org_id,
            public_key=public_key,
            bound_at=bound_at,
            verification_method=identity.verification_method,
            signature=self.sign(nonce, identity.org_id, public_key, bound_at),
            previous_nonce=previous.nonce if previous else None,
        )

    async def _require_identity(self, org_id: str) -> OrganizationIdentity:
        identity = await self.store.get_identity(org_id)
        if identity is None:
            raise IdentityNotFoundError(
                f"Organization {org_id} not found or not verified", org_id=org_id
            )
        return identity

    async def _require_binding(self, org_id: str) -> NonceBinding:
        binding = await self.store.get_nonce_binding(org_id)
        if binding is None:
            raise BindingNotFoundError(
                f"No nonce binding found for organization {org_id}", org_id=org_id
            )
        return binding

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def generate_and_bind_nonce(self, org_id: str, public_key: str) -> NonceBindingResult:
        """
        Issue a new trust token for a verified organization.

        A re-bind after revocation links back to the revoked binding and
        reports ``is_new=False``.

        Raises:
            IdentityNotFoundError: no verified identity for org_id
            DuplicateBindingError: the org already holds an active binding
        """
        identity = await self._require_identity(org_id)
        current = await self.store.get_nonce_binding(org_id)
        if current is not None and not current.revoked:
            raise DuplicateBindingError(
                f"Organization {org_id} already has an active nonce binding",
                org_id=org_id,
                nonce=current.nonce,
            )

        binding = await self._build_binding(identity, public_key, current)
        await self.store.create_nonce_binding(binding)

        identity.unique_nonce = binding.nonce
        await self.store.store_identity(identity)

        is_new = current is None
        logger.info(f"Bound nonce {nonce_prefix(binding.nonce)} to {org_id} (new={is_new})")
        await self.auditor.log_binding_created(org_id, binding.nonce, is_new)
        return NonceBindingResult(binding=binding, is_new=is_new, previous_binding=current)

    async def verify_binding(self, nonce: str, org_id: str) -> NonceVerificationResult:
        """
        Check a presented nonce against the org's current binding.

        A nonce from the org's own rotation history is reported as revoked,
        not as a mismatch.
        """
        result = await self._check_binding(nonce, org_id)
        if not result.valid:
            logger.warning(f"Binding check failed for {org_id}: {result.code.value}")
            await self.auditor.log_verification_failed(
                org_id, nonce, result.code.value, result.reason
            )
        return result

    async def _check_binding(self, nonce: str, org_id: str) -> NonceVerificationResult:
        current = await self.store.get_nonce_binding(org_id)
        if current is None:
            return NonceVerificationResult(
                valid=False,
                code=ErrorCode.BINDING_NOT_FOUND,
                reason=f"No nonce binding found for organization {org_id}",
            )

        if not _same_nonce(nonce, current.nonce):
            presented = await self.store.get_nonce_binding_by_nonce(nonce)
            if presented is not None and presented.org_id == org_id and presented.revoked:
                return NonceVerificationResult(
                    valid=False,
                    code=ErrorCode.BINDING_ALREADY_REVOKED,
                    reason=f"Nonce binding revoked: {presented.revocation_reason}",
                    binding=presented,
                )
            return NonceVerificationResult(
                valid=False,
                code=ErrorCode.NONCE_MISMATCH,
                reason="Nonce mismatch",
            )

        if current.revoked:
            return NonceVerificationResult(
                valid=False,
                code=ErrorCode.BINDING_ALREADY_REVOKED,
                reason=f"Nonce binding revoked: {current.revocation_reason}",
                binding=current,
            )

        if not self.verify_signature(current):
            return NonceVerificationResult(
                valid=False,
                code=ErrorCode.SIGNATURE_INVALID,
                reason="Invalid signature",
                binding=current,
            )

        return NonceVerificationResult(valid=True, binding=current)

    async def revoke_binding(self, org_id: str, reason: str) -> NonceBinding:
        """
        Raises:
            BindingNotFoundError: the org never had a binding
            BindingAlreadyRevokedError: the current binding is already revoked
        """
        binding = await self._require_binding(org_id)
        if binding.revoked:
            raise BindingAlreadyRevokedError(
                f"Nonce binding for organization {org_id} is already revoked",
                org_id=org_id,
                nonce=binding.nonce,
                reason=binding.revocation_reason,
            )

        revoked = replace(binding, revoked=True, revoked_at=utcnow(), revocation_reason=reason)
        await self.store.store_nonce_binding(revoked)

        logger.info(f"Revoked nonce {nonce_prefix(binding.nonce)} for {org_id}: {reason}")
        await self.auditor.log_binding_revoked(org_id, binding.nonce, reason)
        return revoked

    async def rotate_nonce(
        self,
        org_id: str,
        new_public_key: Optional[str] = None,
        reason: str = "manual rotation",
    ) -> NonceBindingResult:
        """
        Replace the active binding with a fresh one in a single adapter step.

        Raises:
            BindingNotFoundError: the org has no binding
            BindingAlreadyRevokedError: the current binding is revoked
        """
        current = await self._require_binding(org_id)
        if current.revoked:
            raise BindingAlreadyRevokedError(
                f"Cannot rotate revoked nonce for organization {org_id}",
                org_id=org_id,
                nonce=current.nonce,
            )
        identity = await self._require_identity(org_id)

        public_key = new_public_key or current.public_key
        replacement = await self._build_binding(identity, public_key, current)
        revoked = replace(
            current,
            revoked=True,
            revoked_at=replacement.bound_at,
            revocation_reason=f"{ROTATION_REASON_PREFIX}{reason}",
        )
        await self.store.replace_nonce_binding(revoked, replacement)

        identity.public_key = public_key
        identity.unique_nonce = replacement.nonce
        await self.store.store_identity(identity)

        logger.info(
            f"Rotated nonce for {org_id}: {nonce_prefix(current.nonce)} -> "
            f"{nonce_prefix(replacement.nonce)}"
        )
        await self.auditor.log_binding_rotated(org_id, current.nonce, replacement.nonce, reason)
        return NonceBindingResult(binding=replacement, is_new=False, previous_binding=revoked)

    async def increment_usage_count(self, nonce: str, org_id: str) -> int:
        """Bump the live binding's usage counter; returns the new count."""
        current = await self._require_binding(org_id)
        if not _same_nonce(nonce, current.nonce):
            raise NonceMismatchError(
                f"Nonce mismatch for organization {org_id}", org_id=org_id, nonce=nonce
            )
        if current.revoked:
            raise BindingAlreadyRevokedError(
                f"Nonce binding for organization {org_id} is already revoked",
                org_id=org_id,
                nonce=nonce,
            )

        count = await self.store.increment_nonce_usage(nonce)
        if count is None:
            # revoked between the read and the increment
            raise BindingAlreadyRevokedError(
                f"Nonce binding for organization {org_id} is already revoked",
                org_id=org_id,
                nonce=nonce,
            )
        return count

    async def get_rotation_history(self, org_id: str) -> List[NonceBinding]:
        """All bindings for the org, oldest first."""
        history: List[NonceBinding] = []
        seen = set()
        binding = await self.store.get_nonce_binding(org_id)
        while binding is not None and binding.nonce not in seen:
            seen.add(binding.nonce)
            history.append(binding)
            if not binding.previous_nonce:
                break
            binding = await self.store.get_nonce_binding_by_nonce(binding.previous_nonce)
        history.reverse()
        return history
