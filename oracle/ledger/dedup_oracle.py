"""
GreenKarma Oracle: Cross-App Dedup Oracle
=========================================

Answers one question for the heuristics: has this exact reading
(vehicle, km, time window) already been claimed by another application?

The "public chain" is a lookup table keyed by a SHA-256 reading
fingerprint, not a consensus network. Two backends:

  - InMemoryDedupOracle : single process, used by tests and local runs
  - RedisDedupOracle    : shared between app instances via redis.asyncio
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import DEDUP_WINDOW_SECONDS
from .errors import CrossAppClaimError, OracleUnavailableError

logger = logging.getLogger("greenkarma.dedup")

NETWORK_ID       = "green-karma-network"
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "0x742d35Cc3d5d1212CF2345235a23F12FA1213AB8")


@dataclass
class DedupRecord:
    exists:  bool
    source:  Optional[str]      = None
    seen_at: Optional[datetime] = None
    tx_hash: Optional[str]      = None


def reading_fingerprint(
    vehicle_id:     str,
    odometer_km:    int,
    timestamp:      datetime,
    window_seconds: int = DEDUP_WINDOW_SECONDS,
) -> str:
    """SHA-256 over (vehicle, km, start of the timestamp window)."""
    epoch        = int(timestamp.timestamp())
    window_start = epoch - (epoch % window_seconds)
    data = f"{vehicle_id.strip().upper()}-{odometer_km}-{window_start}"
    return hashlib.sha256(data.encode()).hexdigest()


def _make_tx_hash(fingerprint: str, metadata: dict[str, Any]) -> str:
    tx_data = json.dumps({"fingerprint": fingerprint, **metadata}, sort_keys=True, default=str)
    return "0x" + hashlib.sha256(f"{tx_data}{time.time_ns()}".encode()).hexdigest()


def _existing_claim(fingerprint: str, existing: dict[str, Any], metadata: dict[str, Any]) -> str:
    """tx_hash of an earlier claim by the same source; a foreign claim raises."""
    if existing.get("source") != metadata.get("source"):
        raise CrossAppClaimError(fingerprint, existing.get("source") or "unknown", existing.get("tx_hash") or "")
    return existing["tx_hash"]


def _entry_to_record(entry: Optional[dict[str, Any]]) -> DedupRecord:
    if not entry:
        return DedupRecord(exists=False)
    return DedupRecord(
        exists  = True,
        source  = entry.get("source"),
        seen_at = datetime.fromisoformat(entry["seen_at"]) if entry.get("seen_at") else None,
        tx_hash = entry.get("tx_hash"),
    )


class CrossAppDedupOracle(ABC):
    """Async lookup/record interface. Transport failures raise OracleUnavailableError."""

    @abstractmethod
    async def check(self, fingerprint: str) -> DedupRecord:
        ...

    @abstractmethod
    async def record(self, fingerprint: str, metadata: dict[str, Any]) -> str:
        """
        Store a claim and return its transaction hash.

        Re-recording a claim already held by the same source returns the
        existing hash. A claim held by a different source raises
        CrossAppClaimError (the fingerprint was taken after check()).
        """

    @abstractmethod
    async def verify_transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def entries_for_vehicle(self, vehicle_id: str) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def network_status(self) -> dict[str, Any]:
        ...


class InMemoryDedupOracle(CrossAppDedupOracle):

    def __init__(self):
        self._entries: dict[str, dict[str, Any]] = {}
        self._tx_index: dict[str, str] = {}

    async def check(self, fingerprint: str) -> DedupRecord:
        return _entry_to_record(self._entries.get(fingerprint))

    async def record(self, fingerprint: str, metadata: dict[str, Any]) -> str:
        existing = self._entries.get(fingerprint)
        if existing:
            return _existing_claim(fingerprint, existing, metadata)
        tx_hash = _make_tx_hash(fingerprint, metadata)
        self._entries[fingerprint] = {
            **metadata,
            "seen_at": datetime.now(timezone.utc).isoformat(),
            "tx_hash": tx_hash,
        }
        self._tx_index[tx_hash] = fingerprint
        logger.info(f"[DEDUP] Recorded {fingerprint[:12]}… from {metadata.get('source')} tx={tx_hash[:14]}…")
        return tx_hash

    async def verify_transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        fingerprint = self._tx_index.get(tx_hash)
        if fingerprint is None:
            return None
        return {"fingerprint": fingerprint, **self._entries[fingerprint]}

    async def entries_for_vehicle(self, vehicle_id: str) -> list[dict[str, Any]]:
        vid = vehicle_id.strip().upper()
        return [
            {"fingerprint": fp, **entry}
            for fp, entry in self._entries.items()
            if str(entry.get("vehicle_id", "")).strip().upper() == vid
        ]

    async def network_status(self) -> dict[str, Any]:
        return {
            "network":          NETWORK_ID,
            "backend":          "memory",
            "connected":        True,
            "contract_address": CONTRACT_ADDRESS,
            "block_height":     len(self._entries),
        }


class RedisDedupOracle(CrossAppDedupOracle):

    KEY_PREFIX = "greenkarma:dedup"

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisDedupOracle":
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    def _fp_key(self, fingerprint: str) -> str:
        return f"{self.KEY_PREFIX}:fp:{fingerprint}"

    def _tx_key(self, tx_hash: str) -> str:
        return f"{self.KEY_PREFIX}:tx:{tx_hash}"

    def _vehicle_key(self, vehicle_id: str) -> str:
        return f"{self.KEY_PREFIX}:vehicle:{vehicle_id.strip().upper()}"

    async def check(self, fingerprint: str) -> DedupRecord:
        try:
            raw = await self._redis.get(self._fp_key(fingerprint))
        except RedisError as e:
            logger.warning(f"[DEDUP] Redis lookup failed: {e}")
            raise OracleUnavailableError(str(e)) from e
        return _entry_to_record(json.loads(raw) if raw else None)

    async def record(self, fingerprint: str, metadata: dict[str, Any]) -> str:
        tx_hash = _make_tx_hash(fingerprint, metadata)
        entry = {
            **metadata,
            "seen_at": datetime.now(timezone.utc).isoformat(),
            "tx_hash": tx_hash,
        }
        try:
            created = await self._redis.set(self._fp_key(fingerprint), json.dumps(entry, default=str), nx=True)
            if not created:
                raw = await self._redis.get(self._fp_key(fingerprint))
                return _existing_claim(fingerprint, json.loads(raw) if raw else {}, metadata)
            await self._redis.set(self._tx_key(tx_hash), fingerprint)
            if metadata.get("vehicle_id"):
                await self._redis.sadd(self._vehicle_key(metadata["vehicle_id"]), fingerprint)
            await self._redis.incr(f"{self.KEY_PREFIX}:height")
        except RedisError as e:
            logger.warning(f"[DEDUP] Redis record failed: {e}")
            raise OracleUnavailableError(str(e)) from e
        return tx_hash

    async def verify_transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        try:
            fingerprint = await self._redis.get(self._tx_key(tx_hash))
            if not fingerprint:
                return None
            raw = await self._redis.get(self._fp_key(fingerprint))
        except RedisError as e:
            raise OracleUnavailableError(str(e)) from e
        if not raw:
            return None
        return {"fingerprint": fingerprint, **json.loads(raw)}

    async def entries_for_vehicle(self, vehicle_id: str) -> list[dict[str, Any]]:
        try:
            fingerprints = sorted(await self._redis.smembers(self._vehicle_key(vehicle_id)))
            if not fingerprints:
                return []
            raws = await self._redis.mget([self._fp_key(fp) for fp in fingerprints])
        except RedisError as e:
            raise OracleUnavailableError(str(e)) from e
        return [{"fingerprint": fp, **json.loads(raw)} for fp, raw in zip(fingerprints, raws) if raw]

    async def network_status(self) -> dict[str, Any]:
        status = {
            "network":          NETWORK_ID,
            "backend":          "redis",
            "connected":        False,
            "contract_address": CONTRACT_ADDRESS,
            "block_height":     None,
        }
        try:
            await self._redis.ping()
            height = await self._redis.get(f"{self.KEY_PREFIX}:height")
        except RedisError as e:
            logger.warning(f"[DEDUP] Redis ping failed: {e}")
            return status
        status["connected"]    = True
        status["block_height"] = int(height or 0)
        return status
