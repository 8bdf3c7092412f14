"""
GreenKarma Oracle: Carbon Rewards
=================================

Reward = CO2 saved × rate, where CO2 saved = distance × 0.12 kg/km.
The first accepted reading for a vehicle is credited a fixed baseline
distance, since there is no earlier reading to diff against.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from .block import utcnow

CO2_KG_PER_KM        = float(os.getenv("REWARD_CO2_KG_PER_KM", "0.12"))
REWARD_PER_KG_CO2    = float(os.getenv("REWARD_PER_KG_CO2", "2.0"))
FIRST_READING_KM     = int(os.getenv("REWARD_FIRST_READING_KM", "100"))


@dataclass
class RewardRecord:
    vehicle_id:   str
    km:           int
    distance_km:  int
    co2_saved:    float
    reward_given: float
    block_hash:   str
    tx_hash:      Optional[str]   = None
    image_hash:   Optional[str]   = None
    fraud_score:  float           = 0.0
    timestamp:    datetime        = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


def compute_reward(previous_km: Optional[int], km: int) -> tuple[int, float, float]:
    """Returns (distance_km, co2_saved_kg, reward)."""
    distance = FIRST_READING_KM if previous_km is None else km - previous_km
    if distance < 0:
        raise ValueError(f"odometer went backwards: {previous_km} -> {km}")
    co2 = round(distance * CO2_KG_PER_KM, 4)
    return distance, co2, round(co2 * REWARD_PER_KG_CO2, 4)


class RewardBook:
    """In-memory reward records, one list per vehicle (oldest first)."""

    def __init__(self):
        self._records: dict[str, list[RewardRecord]] = {}

    def last(self, vehicle_id: str) -> Optional[RewardRecord]:
        records = self._records.get(vehicle_id)
        return records[-1] if records else None

    def add(self, record: RewardRecord) -> RewardRecord:
        self._records.setdefault(record.vehicle_id, []).append(record)
        return record

    def history(self, vehicle_id: str) -> list[RewardRecord]:
        return list(reversed(self._records.get(vehicle_id, [])))

    def totals(self, vehicle_id: str, now: Optional[datetime] = None) -> dict[str, float]:
        now = now or utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        records = self._records.get(vehicle_id, [])
        last = records[-1] if records else None
        return {
            "total_balance":   round(sum(r.reward_given for r in records), 4),
            "total_co2_saved": round(sum(r.co2_saved for r in records), 4),
            "monthly_reward":  round(sum(r.reward_given for r in records if r.timestamp >= month_start), 4),
            "total_distance":  last.km if last else 0,
        }
