"""
GreenKarma Oracle: Fraud Engine Configuration
=============================================

Every threshold and penalty weight used by the heuristics lives here.
Defaults come from the environment once at import time; tests and callers
that need different numbers construct their own FraudConfig.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


# ── Environment defaults ──────────────────────────────────────────────────────
MAX_SPEED_KMH           = float(os.getenv("FRAUD_MAX_SPEED_KMH", "150"))
HARD_SPEED_CEILING_KMH  = float(os.getenv("FRAUD_HARD_SPEED_KMH", "300"))
MIN_ELAPSED_SECONDS     = float(os.getenv("FRAUD_MIN_ELAPSED_SEC", "60"))
REJECT_THRESHOLD        = float(os.getenv("FRAUD_REJECT_THRESHOLD", "3.0"))
SUSPENSION_THRESHOLD    = float(os.getenv("FRAUD_SUSPENSION_THRESHOLD", "10.0"))
COARSE_LOCATION_METERS  = float(os.getenv("FRAUD_COARSE_LOCATION_M", "100"))
MIN_OCR_CONFIDENCE      = float(os.getenv("FRAUD_MIN_OCR_CONFIDENCE", "0.6"))
MIN_IMAGE_SIDE_PX       = int(os.getenv("FRAUD_MIN_IMAGE_SIDE_PX", "200"))
DEDUP_WINDOW_SECONDS    = int(os.getenv("FRAUD_DEDUP_WINDOW_SEC", "86400"))   # 24h


@dataclass(frozen=True)
class FraudConfig:
    # Speed plausibility
    max_speed_kmh:           float = MAX_SPEED_KMH
    hard_speed_ceiling_kmh:  float = HARD_SPEED_CEILING_KMH
    min_elapsed_seconds:     float = MIN_ELAPSED_SECONDS

    # Verdict / lifecycle thresholds
    reject_threshold:        float = REJECT_THRESHOLD
    suspension_threshold:    float = SUSPENSION_THRESHOLD

    # Soft-check cutoffs
    coarse_location_meters:  float = COARSE_LOCATION_METERS
    min_ocr_confidence:      float = MIN_OCR_CONFIDENCE
    min_image_side_px:       int   = MIN_IMAGE_SIDE_PX
    dedup_window_seconds:    int   = DEDUP_WINDOW_SECONDS

    # Penalty weights
    monotonicity_penalty:    float = 2.0
    duplicate_image_penalty: float = 5.0
    impossible_speed_penalty: float = 5.0
    speed_penalty_weight:    float = 2.0   # multiplied by overshoot ratio
    device_mismatch_penalty: float = 1.0
    location_penalty:        float = 0.5
    ocr_penalty:             float = 0.5
    image_quality_penalty:   float = 0.5
    cross_app_penalty:       float = 5.0

    def __post_init__(self):
        if self.hard_speed_ceiling_kmh < self.max_speed_kmh:
            raise ValueError(
                f"hard_speed_ceiling_kmh ({self.hard_speed_ceiling_kmh}) must be "
                f">= max_speed_kmh ({self.max_speed_kmh})"
            )
        if self.reject_threshold <= 0 or self.suspension_threshold <= 0:
            raise ValueError("reject_threshold and suspension_threshold must be positive")
        if self.dedup_window_seconds <= 0:
            raise ValueError(f"dedup_window_seconds must be positive, got {self.dedup_window_seconds}")


DEFAULT_CONFIG = FraudConfig()
