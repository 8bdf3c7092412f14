"""
GreenKarma Oracle: Odometer Fraud Heuristics
============================================

Scores a candidate reading against the vehicle's chain history.

Checks, in evaluation order:
  1. Duplicate image     (hard)  same photo fingerprint already on this chain
  2. Monotonicity        (hard)  reading must exceed the last valid km
  3. Speed plausibility  (soft → hard) implied average speed since last block
  4. Device consistency  (soft)  device differs from the previous block
  5. Location accuracy   (soft)  accuracy missing or coarse
  6. OCR confidence      (soft)  text recognition unsure of the digits
  7. Image quality       (soft)  photo too small to read reliably
  8. Cross-app duplicate (hard)  same reading claimed by another application

A hard failure stops evaluation. Soft penalties accumulate; a non-genesis
reading whose total exceeds the reject threshold is rejected. The genesis
reading only runs checks 1, 5, 6, 7 and 8 and never fails on score alone.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional, Sequence

from .block import Block
from .config import DEFAULT_CONFIG, FraudConfig
from .dedup_oracle import CrossAppDedupOracle, reading_fingerprint
from .errors import OracleUnavailableError

logger = logging.getLogger("greenkarma.heuristics")

MSG_NOT_INCREASING    = "reading not greater than last recorded value"
MSG_IMAGE_REUSED      = "image reused"
MSG_IMPOSSIBLE_SPEED  = "impossible speed"
MSG_CROSS_APP         = "cross-app duplicate"
MSG_ORACLE_UNAVAILABLE = "validation unavailable, retry later"


class Verdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


# ── Structured submission metadata ─────────────────────────────────────────────
@dataclass
class ImageMetadata:
    width:     int
    height:    int
    format:    Optional[str] = None
    has_exif:  bool          = False
    byte_size: int           = 0


@dataclass
class ValidationProof:
    ocr_confidence:    Optional[float]         = None   # 0.0–1.0
    location_accuracy: Optional[float]         = None   # metres, None = not supplied
    image_metadata:    Optional[ImageMetadata] = None


@dataclass
class CheckResult:
    name:    str
    penalty: float
    hard:    bool = False
    message: str  = ""


@dataclass
class FraudVerdict:
    verdict:            Verdict
    score:              float
    reasons:            list[str]     = field(default_factory=list)
    alert:              Optional[str] = None
    hard_failure:       bool          = False
    oracle_unavailable: bool          = False
    fingerprint:        Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPT

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["verdict"] = self.verdict.value
        return d


# ══════════════════════════════════════════════════════════════════════════════
#  Individual checks. Each returns None when the check does not fire.
# ══════════════════════════════════════════════════════════════════════════════

def check_monotonicity(odometer_km: int, last_valid_km: int, config: FraudConfig = DEFAULT_CONFIG) -> Optional[CheckResult]:
    if odometer_km > last_valid_km:
        return None
    return CheckResult("monotonicity", config.monotonicity_penalty, hard=True, message=MSG_NOT_INCREASING)


def check_duplicate_image(image_fingerprint: str, blocks: Sequence[Block], config: FraudConfig = DEFAULT_CONFIG) -> Optional[CheckResult]:
    key = image_fingerprint.lower()
    if any(b.image_fingerprint.lower() == key for b in blocks):
        return CheckResult("duplicate_image", config.duplicate_image_penalty, hard=True, message=MSG_IMAGE_REUSED)
    return None


def implied_speed_kmh(odometer_km: int, last_block: Block, now: datetime, min_elapsed_seconds: float) -> float:
    elapsed = max((now - last_block.timestamp).total_seconds(), min_elapsed_seconds)
    return (odometer_km - last_block.odometer_km) / (elapsed / 3600.0)


def check_speed(odometer_km: int, last_block: Block, now: datetime, config: FraudConfig = DEFAULT_CONFIG) -> Optional[CheckResult]:
    speed = implied_speed_kmh(odometer_km, last_block, now, config.min_elapsed_seconds)
    if speed > config.hard_speed_ceiling_kmh:
        return CheckResult(
            "impossible_speed", config.impossible_speed_penalty, hard=True,
            message=f"{MSG_IMPOSSIBLE_SPEED} ({speed:.0f} km/h)",
        )
    if speed > config.max_speed_kmh:
        overshoot = (speed - config.max_speed_kmh) / config.max_speed_kmh
        return CheckResult(
            "excessive_speed", round(config.speed_penalty_weight * overshoot, 3),
            message=f"implied speed {speed:.0f} km/h above {config.max_speed_kmh:.0f} km/h",
        )
    return None


def check_device(device_fingerprint: str, last_block: Block, config: FraudConfig = DEFAULT_CONFIG) -> Optional[CheckResult]:
    if device_fingerprint == last_block.device_fingerprint:
        return None
    return CheckResult("device_mismatch", config.device_mismatch_penalty, message="device changed since last reading")


def check_location(location_accuracy: Optional[float], config: FraudConfig = DEFAULT_CONFIG) -> Optional[CheckResult]:
    if location_accuracy is None:
        return CheckResult("low_location_accuracy", config.location_penalty, message="location missing")
    if location_accuracy > config.coarse_location_meters:
        return CheckResult(
            "low_location_accuracy", config.location_penalty,
            message=f"location accuracy {location_accuracy:.0f} m",
        )
    return None


def check_ocr(ocr_confidence: Optional[float], config: FraudConfig = DEFAULT_CONFIG) -> Optional[CheckResult]:
    if ocr_confidence is None or ocr_confidence >= config.min_ocr_confidence:
        return None
    return CheckResult("low_ocr_confidence", config.ocr_penalty, message=f"OCR confidence {ocr_confidence:.2f}")


def check_image_quality(image_metadata: Optional[ImageMetadata], config: FraudConfig = DEFAULT_CONFIG) -> Optional[CheckResult]:
    if image_metadata is None:
        return None
    if min(image_metadata.width, image_metadata.height) >= config.min_image_side_px:
        return None
    return CheckResult(
        "low_image_quality", config.image_quality_penalty,
        message=f"image {image_metadata.width}x{image_metadata.height} px",
    )


async def check_cross_app(
    oracle:      CrossAppDedupOracle,
    fingerprint: str,
    app_source:  str,
    config:      FraudConfig = DEFAULT_CONFIG,
) -> Optional[CheckResult]:
    """Raises OracleUnavailableError when the lookup itself fails."""
    record = await oracle.check(fingerprint)
    if not record.exists or record.source == app_source:
        return None
    return CheckResult(
        "cross_app_duplicate", config.cross_app_penalty, hard=True,
        message=f"{MSG_CROSS_APP}: reading already used by {record.source}",
    )


# ══════════════════════════════════════════════════════════════════════════════
#  Combined assessment
# ══════════════════════════════════════════════════════════════════════════════

def _local_checks(
    odometer_km:        int,
    image_fingerprint:  str,
    device_fingerprint: str,
    proof:              ValidationProof,
    blocks:             Sequence[Block],
    last_valid_km:      int,
    now:                datetime,
    config:             FraudConfig,
) -> Iterator[Optional[CheckResult]]:
    # lazy, so a hard failure skips everything after it
    is_genesis = not blocks
    yield check_duplicate_image(image_fingerprint, blocks, config)
    if not is_genesis:
        yield check_monotonicity(odometer_km, last_valid_km, config)
        yield check_speed(odometer_km, blocks[-1], now, config)
        yield check_device(device_fingerprint, blocks[-1], config)
    yield check_location(proof.location_accuracy, config)
    yield check_ocr(proof.ocr_confidence, config)
    yield check_image_quality(proof.image_metadata, config)


async def assess_reading(
    *,
    vehicle_id:         str,
    odometer_km:        int,
    image_fingerprint:  str,
    device_fingerprint: str,
    proof:              Optional[ValidationProof],
    blocks:             Sequence[Block],
    last_valid_km:      int,
    now:                datetime,
    oracle:             CrossAppDedupOracle,
    app_source:         str,
    config:             FraudConfig = DEFAULT_CONFIG,
) -> FraudVerdict:
    proof   = proof or ValidationProof()
    reasons: list[str] = []
    score   = 0.0

    for result in _local_checks(
        odometer_km, image_fingerprint, device_fingerprint, proof, blocks, last_valid_km, now, config,
    ):
        if result is None:
            continue
        reasons.append(result.name)
        score += result.penalty
        if result.hard:
            logger.info(f"[FRAUD] {vehicle_id} km={odometer_km} hard fail: {result.name}")
            return FraudVerdict(Verdict.REJECT, round(score, 3), reasons, result.message, hard_failure=True)
        logger.debug(f"[FRAUD] {vehicle_id} soft penalty {result.name} +{result.penalty}")

    score = round(score, 3)
    if blocks and score > config.reject_threshold:
        reasons.append("score_threshold")
        logger.info(f"[FRAUD] {vehicle_id} km={odometer_km} score {score} > {config.reject_threshold}")
        return FraudVerdict(
            Verdict.REJECT, score, reasons,
            f"fraud score {score:.2f} exceeds threshold {config.reject_threshold:.2f}",
        )

    fingerprint = reading_fingerprint(vehicle_id, odometer_km, now, config.dedup_window_seconds)
    try:
        result = await check_cross_app(oracle, fingerprint, app_source, config)
    except OracleUnavailableError as e:
        logger.warning(f"[FRAUD] {vehicle_id} dedup oracle unavailable: {e}")
        return FraudVerdict(
            Verdict.REJECT, 0.0, reasons + ["oracle_unavailable"], MSG_ORACLE_UNAVAILABLE,
            oracle_unavailable=True, fingerprint=fingerprint,
        )
    if result is not None:
        reasons.append(result.name)
        score = round(score + result.penalty, 3)
        logger.info(f"[FRAUD] {vehicle_id} km={odometer_km} cross-app duplicate")
        return FraudVerdict(Verdict.REJECT, score, reasons, result.message, hard_failure=True, fingerprint=fingerprint)

    return FraudVerdict(Verdict.ACCEPT, score, reasons, fingerprint=fingerprint)
