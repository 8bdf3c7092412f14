"""
GreenKarma Oracle: Chain Registry
=================================

Maps vehicle identifiers to their VehicleChain. Construct one per process
(or per test) and hand it to the HTTP layer; there is no module global.

Only key insertion takes the registry lock. Each chain serializes its own
appends, so different vehicles proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .block import utcnow
from .chain import DEFAULT_APP_SOURCE, Clock, IntegrityReport, ReadingResult, VehicleChain
from .config import DEFAULT_CONFIG, FraudConfig
from .dedup_oracle import CrossAppDedupOracle, InMemoryDedupOracle
from .errors import ChainNotFoundError, DuplicateChainError
from .heuristics import ValidationProof

logger = logging.getLogger("greenkarma.registry")


@dataclass
class ReadingSubmission:
    odometer_km:        int
    image_fingerprint:  str
    device_fingerprint: str
    location:           Optional[str]   = None
    proof:              ValidationProof = field(default_factory=ValidationProof)


class ChainRegistry:

    def __init__(
        self,
        oracle:     Optional[CrossAppDedupOracle] = None,
        config:     FraudConfig = DEFAULT_CONFIG,
        clock:      Clock       = utcnow,
        app_source: str         = DEFAULT_APP_SOURCE,
    ):
        self.oracle     = oracle if oracle is not None else InMemoryDedupOracle()
        self.config     = config
        self.app_source = app_source
        self._clock     = clock
        self._chains: dict[str, VehicleChain] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, vehicle_id: str) -> bool:
        return vehicle_id in self._chains

    def __len__(self) -> int:
        return len(self._chains)

    def vehicle_ids(self) -> list[str]:
        return list(self._chains)

    async def create_chain(self, vehicle_id: str) -> VehicleChain:
        async with self._lock:
            if vehicle_id in self._chains:
                raise DuplicateChainError(vehicle_id)
            chain = VehicleChain(
                vehicle_id, self.oracle, config=self.config, clock=self._clock, app_source=self.app_source,
            )
            self._chains[vehicle_id] = chain
        logger.info(f"[REGISTRY] Chain created for {vehicle_id}")
        return chain

    def get_chain(self, vehicle_id: str) -> Optional[VehicleChain]:
        return self._chains.get(vehicle_id)

    def _require(self, vehicle_id: str) -> VehicleChain:
        chain = self._chains.get(vehicle_id)
        if chain is None:
            raise ChainNotFoundError(vehicle_id)
        return chain

    async def add_reading(self, vehicle_id: str, reading: ReadingSubmission) -> ReadingResult:
        chain = self._require(vehicle_id)
        return await chain.add_reading(
            reading.odometer_km,
            reading.image_fingerprint,
            reading.location,
            reading.device_fingerprint,
            proof=reading.proof,
        )

    def summarize(self, vehicle_id: str) -> dict[str, Any]:
        return self._require(vehicle_id).summarize()

    def verify_integrity(self, vehicle_id: str) -> IntegrityReport:
        return self._require(vehicle_id).verify_integrity()

    async def reactivate(self, vehicle_id: str, operator: str) -> VehicleChain:
        chain = self._require(vehicle_id)
        await chain.reactivate(operator)
        return chain

    # ── Persistence hand-off ───────────────────────────────────────────────────
    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {vid: chain.to_dict() for vid, chain in self._chains.items()}

    async def restore(self, snapshot: dict[str, dict[str, Any]]) -> None:
        async with self._lock:
            for vehicle_id in snapshot:
                if vehicle_id in self._chains:
                    raise DuplicateChainError(vehicle_id)
            for vehicle_id, data in snapshot.items():
                self._chains[vehicle_id] = VehicleChain.from_dict(
                    data, self.oracle, config=self.config, clock=self._clock, app_source=self.app_source,
                )
        logger.info(f"[REGISTRY] Restored {len(snapshot)} chain(s)")
