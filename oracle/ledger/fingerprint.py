"""
GreenKarma Oracle: Submission Fingerprints
==========================================

Turns raw request material into the opaque values the chain consumes:
image fingerprint, device fingerprint, image metadata and location accuracy.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import json
import logging
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

from .heuristics import ImageMetadata

logger = logging.getLogger("greenkarma.fingerprint")


def image_fingerprint(data: Union[bytes, str]) -> str:
    """SHA-256 of the photo bytes (or of the image URL when no bytes were sent)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def device_fingerprint(user_agent: str, ip: str) -> str:
    return hashlib.sha256(f"{user_agent.strip()}|{ip.strip()}".encode()).hexdigest()[:32]


def decode_image_base64(payload: Optional[str]) -> Optional[bytes]:
    """Accepts raw base64 or a ``data:image/...;base64,`` URL from the camera canvas."""
    if not payload:
        return None
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"[FINGERPRINT] Failed to decode image_base64: {e}")
        return None


def extract_image_metadata(image_bytes: Optional[bytes]) -> Optional[ImageMetadata]:
    if not image_bytes:
        return None
    try:
        img = Image.open(io.BytesIO(image_bytes))
        has_exif = bool(img.getexif())
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"[FINGERPRINT] Not a decodable image: {e}")
        return None
    return ImageMetadata(
        width     = img.width,
        height    = img.height,
        format    = img.format,
        has_exif  = has_exif,
        byte_size = len(image_bytes),
    )


def parse_location_accuracy(location: Optional[str]) -> Optional[float]:
    """
    Location arrives as the browser geolocation JSON string,
    e.g. '{"lat": 12.97, "lng": 77.59, "accuracy": 18}'.
    Returns accuracy in metres, or None when it is missing or unreadable.
    """
    if not location:
        return None
    try:
        data = json.loads(location)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    accuracy = data.get("accuracy")
    if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)) or accuracy < 0:
        return None
    return float(accuracy)
