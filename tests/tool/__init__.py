"""Test helpers for flux-release tools."""

from pathlib import Path

TESTDATA_DIR = Path("tests/testdata/podinfo")
