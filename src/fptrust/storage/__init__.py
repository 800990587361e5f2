"""Storage backends for fptrust."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from fptrust.config.defaults import TRUST_DB_FILENAME

from .base import (
    CalibrationResultAdapter,
    ContributionLedgerAdapter,
    FPEventStore,
    IdentityStoreAdapter,
    ReputationStoreAdapter,
)
from .events import NoOpFPEventStore, SqliteFPEventStore
from .json_file import JsonFileTrustStore
from .sqlite import SqliteTrustStore

BACKENDS = ("sqlite", "file")


@dataclass
class TrustAdapters:
    """The trust-side adapters, all served by one backend object."""
    identity: IdentityStoreAdapter
    reputation: ReputationStoreAdapter
    ledger: ContributionLedgerAdapter
    calibration: CalibrationResultAdapter
    backend: Any

    async def initialize(self) -> None:
        await self.backend.initialize()

    async def close(self) -> None:
        await self.backend.close()


def create_trust_adapters(backend: str, location: Union[str, Path]) -> TrustAdapters:
    """
    Build the trust adapters for a backend.

    ``location`` is a directory for both backends; the SQLite backend keeps its
    database file inside it.
    """
    location = Path(location)
    if backend == "sqlite":
        store: Any = SqliteTrustStore(location / TRUST_DB_FILENAME)
    elif backend == "file":
        store = JsonFileTrustStore(location)
    else:
        raise ValueError(f"Unknown storage backend {backend!r}; expected one of {BACKENDS}")
    return TrustAdapters(
        identity=store, reputation=store, ledger=store, calibration=store, backend=store
    )


__all__ = [
    "BACKENDS",
    "CalibrationResultAdapter",
    "ContributionLedgerAdapter",
    "FPEventStore",
    "IdentityStoreAdapter",
    "JsonFileTrustStore",
    "NoOpFPEventStore",
    "ReputationStoreAdapter",
    "SqliteFPEventStore",
    "SqliteTrustStore",
    "TrustAdapters",
    "create_trust_adapters",
]
