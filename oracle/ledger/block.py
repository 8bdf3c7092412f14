"""
GreenKarma Oracle: Ledger Block
===============================

One immutable, hash-linked record of a single odometer reading.

The hash is SHA-256 over a canonical JSON serialization of every other
field (sorted keys, compact separators, ISO-8601 timestamp), so changing
any field, including previous_hash, changes the digest.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional

GENESIS_PREVIOUS_HASH = "0" * 64


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Block:
    index:              int
    previous_hash:      str
    timestamp:          datetime
    odometer_km:        int
    image_fingerprint:  str
    location:           Optional[str]
    device_fingerprint: str
    fraud_score:        float
    hash:               str = ""

    def hashable_fields(self) -> dict[str, Any]:
        return {
            "index":              self.index,
            "previous_hash":      self.previous_hash,
            "timestamp":          self.timestamp.isoformat(),
            "odometer_km":        self.odometer_km,
            "image_fingerprint":  self.image_fingerprint,
            "location":           self.location,
            "device_fingerprint": self.device_fingerprint,
            "fraud_score":        self.fraud_score,
        }

    def compute_hash(self) -> str:
        """Re-derive the digest from the stored fields (ignores ``self.hash``)."""
        canonical = json.dumps(self.hashable_fields(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def is_genesis(self) -> bool:
        return self.index == 0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        """
        Rebuild a stored block exactly as persisted.
        The stored hash is kept as-is so tampered records stay detectable.
        """
        return cls(
            index              = int(data["index"]),
            previous_hash      = data["previous_hash"],
            timestamp          = datetime.fromisoformat(data["timestamp"]),
            odometer_km        = int(data["odometer_km"]),
            image_fingerprint  = data["image_fingerprint"],
            location           = data.get("location"),
            device_fingerprint = data["device_fingerprint"],
            fraud_score        = float(data["fraud_score"]),
            hash               = data["hash"],
        )


def create_block(
    index:              int,
    previous_hash:      str,
    odometer_km:        int,
    image_fingerprint:  str,
    location:           Optional[str],
    device_fingerprint: str,
    fraud_score:        float,
    timestamp:          Optional[datetime] = None,
) -> Block:
    unsigned = Block(
        index              = index,
        previous_hash      = previous_hash,
        timestamp          = timestamp or utcnow(),
        odometer_km        = odometer_km,
        image_fingerprint  = image_fingerprint,
        location           = location,
        device_fingerprint = device_fingerprint,
        fraud_score        = float(fraud_score),
    )
    return replace(unsigned, hash=unsigned.compute_hash())
