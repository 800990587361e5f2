"""Privacy-gated calibration: k-anonymity aggregation and consensus FP rates."""

from .aggregator import AggregatorConfig, CalibrationAggregator
from .consensus import ConsensusCalibrationStore, contributions_from_events

__all__ = [
    "AggregatorConfig",
    "CalibrationAggregator",
    "ConsensusCalibrationStore",
    "contributions_from_events",
]
