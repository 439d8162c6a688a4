"""
QR extraction from an uploaded image.

Pillow decodes the buffer and produces 8-bit luminance; OpenCV locates the
candidate codes and decodes the first one.
"""

from __future__ import annotations

import io
import unicodedata

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

_ALLOWED_CONTROL = {"\t", "\n", "\r"}


class ScanError(Exception):
    """A scan that ended without text; the message is the user-facing reason."""


def load_luma(data: bytes) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            return np.asarray(image.convert("L"), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
        raise ScanError(str(e) or "cannot decode image") from e


def _candidates(detector: cv2.QRCodeDetector, luma: np.ndarray) -> list:
    found, points = detector.detectMulti(luma)
    if found and points is not None and len(points):
        return list(points)
    found, points = detector.detect(luma)
    if found and points is not None:
        return [points.reshape(-1, 2)]
    return []


def _as_text(decoded: str) -> str:
    if any(unicodedata.category(ch) == "Cc" and ch not in _ALLOWED_CONTROL for ch in decoded):
        raise ScanError("not representable as text")
    return decoded


def scan_qr(data: bytes) -> str:
    luma = load_luma(data)

    detector = cv2.QRCodeDetector()
    try:
        candidates = _candidates(detector, luma)
    except cv2.error as e:
        raise ScanError("no code found") from e
    if not candidates:
        raise ScanError("no code found")

    # decode wants a single-contour (1, N, 2) array
    corners = np.asarray(candidates[0], dtype=np.float32).reshape(1, -1, 2)
    try:
        decoded = detector.decode(luma, corners)[0]
    except cv2.error as e:
        raise ScanError("decode failed") from e
    if not decoded:
        raise ScanError("decode failed")
    return _as_text(decoded)
