"""
TrustSettings - one immutable bundle of every component config.

``load_settings`` reads an optional ``.env`` file with python-dotenv, then
builds each config from ``FPTRUST_*`` variables. Values already present in
the process environment win over the file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from dotenv import find_dotenv, load_dotenv

from fptrust.calibration.aggregator import AggregatorConfig
from fptrust.config import env_float, env_str
from fptrust.config.defaults import (
    AUDIT_DEFAULT_LEVEL,
    AUDIT_DEFAULT_SAMPLE_RATE,
    AUDIT_LOG_FILENAME,
    DATA_DIR_NAME,
    FP_EVENTS_DB_FILENAME,
)
from fptrust.trust.byzantine import ByzantineFilterConfig
from fptrust.trust.consistency import ConsistencyConfig
from fptrust.trust.nonce_binding import NonceBindingConfig
from fptrust.trust.reputation import ReputationConfig
from fptrust.trust.verification import GitHubVerificationConfig, StripeVerificationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrustSettings:
    data_dir: Path = Path(DATA_DIR_NAME)
    backend: str = "sqlite"
    audit_level: str = AUDIT_DEFAULT_LEVEL
    audit_sample_rate: float = AUDIT_DEFAULT_SAMPLE_RATE
    nonce: NonceBindingConfig = field(default_factory=NonceBindingConfig)
    consistency: ConsistencyConfig = field(default_factory=ConsistencyConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    byzantine: ByzantineFilterConfig = field(default_factory=ByzantineFilterConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    stripe: StripeVerificationConfig = field(default_factory=StripeVerificationConfig)
    github: GitHubVerificationConfig = field(default_factory=GitHubVerificationConfig)

    @property
    def audit_path(self) -> Path:
        return self.data_dir / AUDIT_LOG_FILENAME

    @property
    def fp_events_path(self) -> Path:
        return self.data_dir / FP_EVENTS_DB_FILENAME

    @classmethod
    def from_env(cls) -> "TrustSettings":
        return cls(
            data_dir=Path(env_str("DATA_DIR", DATA_DIR_NAME)),
            backend=env_str("BACKEND", "sqlite"),
            audit_level=env_str("AUDIT_LEVEL", AUDIT_DEFAULT_LEVEL),
            audit_sample_rate=env_float("AUDIT_SAMPLE_RATE", AUDIT_DEFAULT_SAMPLE_RATE),
            nonce=NonceBindingConfig.from_env(),
            consistency=ConsistencyConfig.from_env(),
            reputation=ReputationConfig.from_env(),
            byzantine=ByzantineFilterConfig.from_env(),
            aggregator=AggregatorConfig.from_env(),
            stripe=StripeVerificationConfig.from_env(),
            github=GitHubVerificationConfig.from_env(),
        )


def load_settings(env_file: Optional[Union[str, Path]] = None) -> TrustSettings:
    """Load ``env_file`` (or a ``.env`` found from the cwd) and build settings."""
    if env_file is not None:
        loaded = load_dotenv(env_file, override=False)
    else:
        loaded = load_dotenv(find_dotenv(usecwd=True), override=False)
    if loaded:
        logger.debug(f"Loaded environment from {env_file or '.env'}")
    return TrustSettings.from_env()
