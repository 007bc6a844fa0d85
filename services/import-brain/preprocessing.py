"""Page image preparation before vision extraction.

Scanned and photographed pages are decoded, bounded in size, lighting
normalized and re-encoded as JPEG. Each step degrades gracefully: an image
OpenCV cannot read (GIF, corrupt data) is passed through unchanged.
"""

import logging

import cv2
import numpy as np

from config import settings

logger = logging.getLogger(__name__)

JPEG_QUALITY = 90


def prepare_page(image_bytes: bytes, max_edge: int | None = None) -> bytes:
    """Return JPEG bytes ready for inference, or the input if it cannot be decoded."""
    img = _decode(image_bytes)
    if img is None:
        logger.warning("preprocessing: could not decode page image (%d bytes), sending as-is", len(image_bytes))
        return image_bytes

    img = _bound_size(img, max_edge if max_edge is not None else settings.IMAGE_MAX_EDGE)
    img = _normalize_lighting(img)
    return _encode(img, fallback=image_bytes)


def _decode(image_bytes: bytes) -> np.ndarray | None:
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    if arr.size == 0:
        return None
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)


def _bound_size(img: np.ndarray, max_edge: int) -> np.ndarray:
    """Downscale so the longest edge is at most max_edge; never upscale."""
    h, w = img.shape[:2]
    longest = max(h, w)
    if longest <= max_edge:
        return img
    scale = max_edge / longest
    size = (max(1, round(w * scale)), max(1, round(h * scale)))
    return cv2.resize(img, size, interpolation=cv2.INTER_AREA)


def _normalize_lighting(img: np.ndarray) -> np.ndarray:
    """CLAHE on the lightness channel evens out shadows on phone photos."""
    try:
        lab = cv2.cvtColor(img, cv2.COLOR_BGR2LAB)
        lightness, a_channel, b_channel = cv2.split(lab)
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        lab = cv2.merge([clahe.apply(lightness), a_channel, b_channel])
        return cv2.cvtColor(lab, cv2.COLOR_LAB2BGR)
    except cv2.error as e:
        logger.warning("preprocessing: lighting normalization failed: %s", e)
        return img


def _encode(img: np.ndarray, fallback: bytes) -> bytes:
    success, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
    if not success:
        logger.warning("preprocessing: JPEG encode failed, sending original bytes")
        return fallback
    return buf.tobytes()
