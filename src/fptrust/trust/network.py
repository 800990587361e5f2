"""
TrustNetwork - single entry point wiring every trust component.

Built from one immutable TrustSettings; owns the storage backends it creates.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fptrust.calibration.aggregator import CalibrationAggregator
from fptrust.calibration.consensus import ConsensusCalibrationStore
from fptrust.settings import TrustSettings
from fptrust.storage import SqliteFPEventStore, create_trust_adapters
from fptrust.storage.base import FPEventStore

from .auditor import AuditLevel, TrustAuditor
from .byzantine import ByzantineFilter
from .consistency import ConsistencyCalculator
from .identity import IdentityRegistry
from .models import NonceBindingResult, VerificationResult
from .nonce_binding import NonceBindingService
from .reputation import ReputationEngine
from .revenue import RevenueTrackingService
from .verification import PaymentProviderClient

logger = logging.getLogger(__name__)


class TrustNetwork:
    """
    Coordinates identity, binding, reputation and calibration.

    Use as an async context manager, or call initialize()/close().
    """

    def __init__(
        self,
        settings: TrustSettings,
        events: Optional[FPEventStore] = None,
        payments: Optional[PaymentProviderClient] = None,
    ):
        self.settings = settings
        self.adapters = create_trust_adapters(settings.backend, settings.data_dir)
        self.auditor = TrustAuditor(
            settings.audit_path,
            level=AuditLevel.parse(settings.audit_level),
            sample_rate=settings.audit_sample_rate,
        )

        self.identities = IdentityRegistry(self.adapters.identity, auditor=self.auditor)
        self.nonces = NonceBindingService(
            self.adapters.identity, settings.nonce, auditor=self.auditor
        )
        self.consistency = ConsistencyCalculator(settings.consistency)
        self.reputation = ReputationEngine(
            self.adapters.reputation,
            settings.reputation,
            consistency=self.consistency,
            auditor=self.auditor,
        )
        self.byzantine = ByzantineFilter(settings.byzantine)

        self.events: Any = events or SqliteFPEventStore(settings.fp_events_path)
        self.aggregator = CalibrationAggregator(
            self.events, settings.aggregator, auditor=self.auditor
        )
        self.calibration = ConsensusCalibrationStore(
            self.aggregator,
            self.reputation,
            self.adapters.ledger,
            self.adapters.calibration,
            byzantine=self.byzantine,
            auditor=self.auditor,
        )
        self.revenue: Optional[RevenueTrackingService] = (
            RevenueTrackingService(self.adapters.identity, payments) if payments is not None else None
        )

    async def initialize(self) -> None:
        await self.adapters.initialize()
        await self.events.initialize()
        logger.info(f"TrustNetwork initialized ({self.settings.backend} backend)")

    async def close(self) -> None:
        await self.adapters.close()
        await self.events.close()

    async def __aenter__(self) -> "TrustNetwork":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def onboard(
        self,
        org_id: str,
        public_key: str,
        verification: VerificationResult,
    ) -> NonceBindingResult:
        """Register a verified org, issue its first token and seed its reputation."""
        await self.identities.register_identity(org_id, public_key, verification)
        result = await self.nonces.generate_and_bind_nonce(org_id, public_key)
        await self.reputation.apply_verification(org_id, verification)
        return result
