"""Pytest configuration for fptrust tests."""
import sys
from pathlib import Path

# tests run against the working tree, ahead of any installed copy
SRC_DIR = Path(__file__).resolve().parent.parent / "src"
sys.path.insert(0, str(SRC_DIR))
