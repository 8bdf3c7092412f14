"""Shared fixtures for the ledger test suite."""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ledger.config import FraudConfig
from ledger.dedup_oracle import InMemoryDedupOracle
from ledger.heuristics import ValidationProof
from ledger.registry import ChainRegistry


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# Accurate GPS fix so location never adds a penalty unless a test asks for it.
GOOD_PROOF = ValidationProof(ocr_confidence=0.95, location_accuracy=15.0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    return InMemoryDedupOracle()


@pytest.fixture
def config():
    return FraudConfig(
        max_speed_kmh=150,
        hard_speed_ceiling_kmh=300,
        reject_threshold=3.0,
        suspension_threshold=10.0,
    )


@pytest.fixture
def registry(oracle, config, clock):
    return ChainRegistry(oracle=oracle, config=config, clock=clock)
