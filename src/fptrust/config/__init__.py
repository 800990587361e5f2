"""Configuration for fptrust: central defaults plus environment readers."""

from __future__ import annotations

from .env import env_bool, env_float, env_int, env_str

__all__ = [
    "env_bool",
    "env_float",
    "env_int",
    "env_str",
]
