"""
fptrust - privacy-preserving, Sybil-resistant false-positive-rate consensus.

Organizations earn a single nonce binding through external verification,
contribute per-rule FP rates, and receive a reputation-weighted consensus
that is only ever released for rules backed by at least k organizations.
"""

__version__ = "0.1.0"
