"""
GreenKarma Oracle: Vehicle Chain
================================

Append-only, hash-linked history of one vehicle's odometer readings.

State machine: ACTIVE → SUSPENDED inside add_reading once the cumulative
fraud score reaches the suspension threshold. Nothing in the engine moves a
chain back; reactivate() exists for the administrative endpoint only.

Rejected submissions never become blocks, but their score is still added
to the cumulative total and they are kept in ``rejected_attempts`` for
audit (they feed ``fraud_alerts`` in the summary).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .block import GENESIS_PREVIOUS_HASH, Block, create_block, utcnow
from .config import DEFAULT_CONFIG, FraudConfig
from .dedup_oracle import CrossAppDedupOracle
from .errors import CrossAppClaimError, OracleUnavailableError
from .heuristics import MSG_CROSS_APP, MSG_ORACLE_UNAVAILABLE, ValidationProof, assess_reading

logger = logging.getLogger("greenkarma.chain")

MSG_CHAIN_SUSPENDED = "chain suspended"
DEFAULT_APP_SOURCE  = "GreenKarma"

Clock = Callable[[], datetime]


@dataclass
class ReadingResult:
    success:     bool
    block:       Optional[Block] = None
    fraud_alert: Optional[str]   = None
    score:       float           = 0.0
    reasons:     list[str]       = field(default_factory=list)
    tx_hash:     Optional[str]   = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success":     self.success,
            "block":       self.block.to_dict() if self.block else None,
            "fraud_alert": self.fraud_alert,
            "score":       self.score,
            "reasons":     list(self.reasons),
            "tx_hash":     self.tx_hash,
        }


@dataclass
class IntegrityFinding:
    block_index: int
    kind:        str   # bad_index | bad_genesis_link | hash_mismatch | broken_link | km_not_increasing
    message:     str


@dataclass
class IntegrityReport:
    is_valid: bool
    errors:   list[str]              = field(default_factory=list)
    findings: list[IntegrityFinding] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": list(self.errors)}


@dataclass
class RejectedAttempt:
    timestamp:         datetime
    odometer_km:       int
    image_fingerprint: str
    score:             float
    reasons:           list[str]
    alert:             Optional[str]

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RejectedAttempt":
        return cls(
            timestamp         = datetime.fromisoformat(data["timestamp"]),
            odometer_km       = int(data["odometer_km"]),
            image_fingerprint = data["image_fingerprint"],
            score             = float(data["score"]),
            reasons           = list(data.get("reasons", [])),
            alert             = data.get("alert"),
        )


def risk_level(fraud_score: float) -> str:
    if fraud_score == 0:
        return "LOW"
    if fraud_score <= 2:
        return "MEDIUM"
    return "HIGH"


class VehicleChain:

    def __init__(
        self,
        vehicle_id: str,
        oracle:     CrossAppDedupOracle,
        config:     FraudConfig = DEFAULT_CONFIG,
        clock:      Clock       = utcnow,
        app_source: str         = DEFAULT_APP_SOURCE,
    ):
        self.vehicle_id = vehicle_id
        self.config     = config
        self.app_source = app_source
        self._oracle    = oracle
        self._clock     = clock
        self._lock      = asyncio.Lock()

        self.blocks: list[Block] = []
        self.rejected_attempts: list[RejectedAttempt] = []
        self.cumulative_fraud_score: float = 0.0
        self.is_active: bool = True
        self.suspended_at: Optional[datetime] = None
        self.last_valid_km: int = 0

    def __len__(self) -> int:
        return len(self.blocks)

    def __repr__(self) -> str:
        state = "active" if self.is_active else "suspended"
        return f"<VehicleChain {self.vehicle_id} blocks={len(self.blocks)} score={self.cumulative_fraud_score} {state}>"

    # ── Append path ────────────────────────────────────────────────────────────
    async def add_reading(
        self,
        odometer_km:        int,
        image_fingerprint:  str,
        location:           Optional[str],
        device_fingerprint: str,
        proof:              Optional[ValidationProof] = None,
    ) -> ReadingResult:
        async with self._lock:
            if not self.is_active:
                logger.info(f"[CHAIN] {self.vehicle_id} rejected km={odometer_km}: suspended")
                return ReadingResult(success=False, fraud_alert=MSG_CHAIN_SUSPENDED, reasons=["chain_suspended"])

            now = self._clock()
            verdict = await assess_reading(
                vehicle_id         = self.vehicle_id,
                odometer_km        = odometer_km,
                image_fingerprint  = image_fingerprint,
                device_fingerprint = device_fingerprint,
                proof              = proof,
                blocks             = self.blocks,
                last_valid_km      = self.last_valid_km,
                now                = now,
                oracle             = self._oracle,
                app_source         = self.app_source,
                config             = self.config,
            )

            if verdict.oracle_unavailable:
                return ReadingResult(success=False, fraud_alert=verdict.alert, reasons=verdict.reasons)

            if not verdict.accepted:
                return self._reject(now, odometer_km, image_fingerprint, verdict.score, verdict.reasons, verdict.alert)

            try:
                tx_hash = await self._oracle.record(verdict.fingerprint, {
                    "source":      self.app_source,
                    "vehicle_id":  self.vehicle_id,
                    "odometer_km": odometer_km,
                    "timestamp":   now.isoformat(),
                })
            except CrossAppClaimError as e:
                # claimed by another app after the lookup passed
                logger.info(f"[CHAIN] {self.vehicle_id} km={odometer_km} lost claim to {e.source} tx={e.tx_hash[:14]}")
                return self._reject(
                    now, odometer_km, image_fingerprint,
                    round(verdict.score + self.config.cross_app_penalty, 3),
                    verdict.reasons + ["cross_app_duplicate"],
                    f"{MSG_CROSS_APP}: reading already used by {e.source}",
                )
            except OracleUnavailableError as e:
                logger.warning(f"[CHAIN] {self.vehicle_id} could not record claim: {e}")
                return ReadingResult(
                    success=False, fraud_alert=MSG_ORACLE_UNAVAILABLE,
                    reasons=verdict.reasons + ["oracle_unavailable"],
                )

            previous_hash = self.blocks[-1].hash if self.blocks else GENESIS_PREVIOUS_HASH
            block = create_block(
                index              = len(self.blocks),
                previous_hash      = previous_hash,
                odometer_km        = odometer_km,
                image_fingerprint  = image_fingerprint,
                location           = location,
                device_fingerprint = device_fingerprint,
                fraud_score        = verdict.score,
                timestamp          = now,
            )
            self.blocks.append(block)
            self.last_valid_km = odometer_km
            self._accumulate(verdict.score, now)
            logger.info(
                f"[CHAIN] {self.vehicle_id} block #{block.index} km={odometer_km} "
                f"score={verdict.score} hash={block.hash[:12]}…"
            )
            return ReadingResult(
                success=True, block=block, score=verdict.score, reasons=verdict.reasons, tx_hash=tx_hash,
            )

    def _reject(
        self,
        now:               datetime,
        odometer_km:       int,
        image_fingerprint: str,
        score:             float,
        reasons:           list[str],
        alert:             Optional[str],
    ) -> ReadingResult:
        self.rejected_attempts.append(RejectedAttempt(
            timestamp         = now,
            odometer_km       = odometer_km,
            image_fingerprint = image_fingerprint,
            score             = score,
            reasons           = list(reasons),
            alert             = alert,
        ))
        self._accumulate(score, now)
        return ReadingResult(success=False, fraud_alert=alert, score=score, reasons=list(reasons))

    def _accumulate(self, score: float, now: datetime) -> None:
        self.cumulative_fraud_score = round(self.cumulative_fraud_score + score, 3)
        if self.is_active and self.cumulative_fraud_score >= self.config.suspension_threshold:
            self.is_active    = False
            self.suspended_at = now
            logger.warning(
                f"[CHAIN] {self.vehicle_id} SUSPENDED: cumulative fraud score "
                f"{self.cumulative_fraud_score} >= {self.config.suspension_threshold}"
            )

    async def reactivate(self, operator: str) -> None:
        """Administrative Suspended → Active transition; resets the score."""
        async with self._lock:
            logger.warning(
                f"[CHAIN] {self.vehicle_id} reactivated by {operator} "
                f"(score was {self.cumulative_fraud_score})"
            )
            self.is_active              = True
            self.suspended_at           = None
            self.cumulative_fraud_score = 0.0

    # ── Verification ───────────────────────────────────────────────────────────
    def verify_integrity(self) -> IntegrityReport:
        findings: list[IntegrityFinding] = []

        for i, block in enumerate(self.blocks):
            if block.index != i:
                findings.append(IntegrityFinding(i, "bad_index", f"Block {i}: stored index {block.index}"))

            recomputed = block.compute_hash()
            if recomputed != block.hash:
                findings.append(IntegrityFinding(i, "hash_mismatch", f"Block {i}: stored hash does not match its contents"))

            if i == 0:
                if block.previous_hash != GENESIS_PREVIOUS_HASH:
                    findings.append(IntegrityFinding(0, "bad_genesis_link", "Block 0: genesis previous hash is not zero"))
                continue

            prev = self.blocks[i - 1]
            if block.previous_hash != prev.compute_hash():
                findings.append(IntegrityFinding(i, "broken_link", f"Block {i}: previous hash does not match block {i - 1}"))
            if block.odometer_km <= prev.odometer_km:
                findings.append(IntegrityFinding(
                    i, "km_not_increasing",
                    f"Block {i}: odometer {block.odometer_km} not greater than {prev.odometer_km}",
                ))

        if findings:
            logger.warning(f"[CHAIN] {self.vehicle_id} integrity check found {len(findings)} problem(s)")
        return IntegrityReport(
            is_valid = not findings,
            errors   = [f.message for f in findings],
            findings = findings,
        )

    def summarize(self) -> dict[str, Any]:
        return {
            "vehicle_id":      self.vehicle_id,
            "total_blocks":    len(self.blocks),
            "valid_readings":  sum(1 for b in self.blocks if b.fraud_score == 0),
            "fraud_alerts":    len(self.rejected_attempts),
            "fraud_score":     self.cumulative_fraud_score,
            "risk_level":      risk_level(self.cumulative_fraud_score),
            "is_active":       self.is_active,
            "last_valid_km":   self.last_valid_km,
            "chain_integrity": self.verify_integrity().to_dict(),
        }

    # ── Snapshot / restore ─────────────────────────────────────────────────────
    def to_dict(self) -> dict[str, Any]:
        return {
            "vehicle_id":             self.vehicle_id,
            "blocks":                 [b.to_dict() for b in self.blocks],
            "rejected_attempts":      [r.to_dict() for r in self.rejected_attempts],
            "cumulative_fraud_score": self.cumulative_fraud_score,
            "is_active":              self.is_active,
            "suspended_at":           self.suspended_at.isoformat() if self.suspended_at else None,
            "last_valid_km":          self.last_valid_km,
        }

    @classmethod
    def from_dict(
        cls,
        data:       dict[str, Any],
        oracle:     CrossAppDedupOracle,
        config:     FraudConfig = DEFAULT_CONFIG,
        clock:      Clock       = utcnow,
        app_source: str         = DEFAULT_APP_SOURCE,
    ) -> "VehicleChain":
        """Restore without validation; run verify_integrity() to audit the result."""
        chain = cls(data["vehicle_id"], oracle, config=config, clock=clock, app_source=app_source)
        chain.blocks                 = [Block.from_dict(b) for b in data.get("blocks", [])]
        chain.rejected_attempts      = [RejectedAttempt.from_dict(r) for r in data.get("rejected_attempts", [])]
        chain.cumulative_fraud_score = float(data.get("cumulative_fraud_score", 0.0))
        chain.is_active              = bool(data.get("is_active", True))
        chain.last_valid_km          = int(data.get("last_valid_km", 0))
        suspended_at = data.get("suspended_at")
        chain.suspended_at = datetime.fromisoformat(suspended_at) if suspended_at else None
        return chain
