"""
Thumbnail Generation

Produces the small preview images stored next to each accepted capture
during enrollment. A thumbnail is the face region cropped from the frame,
resized to a square and JPEG-encoded as a data URL, so it can travel
inside the JSON progress checkpoint.

Failure is never fatal to a capture: make_thumbnail() returns None and the
capture is kept without a preview.
"""

import base64
import logging
from typing import Optional, Sequence

import cv2
import numpy as np

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/jpeg;base64,"


def crop_region(frame: np.ndarray, bbox: Optional[Sequence[float]]) -> np.ndarray:
    """
    Crop a bounding box out of a frame, clamped to the image bounds.

    Args:
        frame: Image as (H, W, 3) BGR or (H, W) grayscale array.
        bbox: (x1, y1, x2, y2) in pixels, or None for the whole frame.

    Returns:
        The cropped region (a view into the frame).

    Raises:
        ValueError: If the clamped box is empty.
    """
    if bbox is None:
        return frame

    h, w = frame.shape[:2]
    x1, y1, x2, y2 = (int(round(v)) for v in bbox)

    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(w, x2), min(h, y2)

    if x2 <= x1 or y2 <= y1:
        raise ValueError(f"Bounding box {tuple(bbox)} is outside the {w}x{h} frame")

    return frame[y1:y2, x1:x2]


def make_thumbnail(
    frame: np.ndarray,
    bbox: Optional[Sequence[float]] = None,
    size: int = 64,
    quality: int = 70,
) -> Optional[str]:
    """
    Build a square JPEG thumbnail of the face region.

    Args:
        frame: Source frame (BGR).
        bbox: Face bounding box (x1, y1, x2, y2); None resizes the whole frame.
        size: Thumbnail edge length in pixels.
        quality: JPEG quality (0-100).

    Returns:
        "data:image/jpeg;base64,..." string, or None if anything fails.
    """
    try:
        region = crop_region(np.asarray(frame), bbox)
        resized = cv2.resize(region, (size, size), interpolation=cv2.INTER_AREA)
        ok, buffer = cv2.imencode(".jpg", resized, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
        if not ok:
            logger.warning("Thumbnail JPEG encoding failed")
            return None
    except (cv2.error, ValueError, TypeError, IndexError) as e:
        logger.warning(f"Thumbnail generation failed: {e}")
        return None

    return DATA_URL_PREFIX + base64.b64encode(buffer.tobytes()).decode("ascii")


def decode_thumbnail(data_url: Optional[str]) -> Optional[np.ndarray]:
    """Decode a thumbnail data URL back into a BGR image, or None if it is not one."""
    if not isinstance(data_url, str) or not data_url.startswith(DATA_URL_PREFIX):
        return None

    try:
        raw = base64.b64decode(data_url[len(DATA_URL_PREFIX):])
        return cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_COLOR)
    except (cv2.error, ValueError) as e:
        logger.debug(f"Undecodable thumbnail: {e}")
        return None
