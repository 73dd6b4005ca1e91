"""
Tests for thumbnail generation.

Run with: pytest tests/test_thumbnails.py -v
"""

import os
import sys
import pytest
import numpy as np

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceid.thumbnails import (
    DATA_URL_PREFIX,
    crop_region,
    decode_thumbnail,
    make_thumbnail,
)


@pytest.fixture
def frame():
    """640x480 BGR frame with a bright square where the face would be."""
    img = np.zeros((480, 640, 3), dtype=np.uint8)
    img[100:300, 200:400] = 255
    return img


class TestCropRegion:
    """Tests for crop_region()."""

    def test_crop_inside_frame(self, frame):
        region = crop_region(frame, (200, 100, 400, 300))
        assert region.shape == (200, 200, 3)

    def test_crop_clamped_to_frame(self, frame):
        region = crop_region(frame, (-50, -50, 100, 100))
        assert region.shape == (100, 100, 3)

    def test_no_bbox_returns_frame(self, frame):
        assert crop_region(frame, None) is frame

    def test_box_outside_frame_raises(self, frame):
        with pytest.raises(ValueError):
            crop_region(frame, (700, 500, 800, 600))


class TestMakeThumbnail:
    """Tests for make_thumbnail()."""

    def test_data_url(self, frame):
        thumbnail = make_thumbnail(frame, (200, 100, 400, 300))

        assert thumbnail is not None
        assert thumbnail.startswith(DATA_URL_PREFIX)

    def test_decoded_size(self, frame):
        decoded = decode_thumbnail(make_thumbnail(frame, (200, 100, 400, 300), size=32))

        assert decoded.shape == (32, 32, 3)
        # The crop is the white square
        assert decoded.mean() > 200

    def test_whole_frame_without_bbox(self, frame):
        decoded = decode_thumbnail(make_thumbnail(frame))
        assert decoded.shape == (64, 64, 3)

    def test_failure_returns_none(self, frame):
        assert make_thumbnail(frame, (700, 500, 800, 600)) is None
        assert make_thumbnail(np.zeros((0, 0, 3), dtype=np.uint8)) is None

    def test_decode_rejects_other_strings(self):
        assert decode_thumbnail("") is None
        assert decode_thumbnail("data:image/png;base64,AAAA") is None

    def test_decode_rejects_corrupt_payload(self):
        assert decode_thumbnail(None) is None
        assert decode_thumbnail(DATA_URL_PREFIX + "A") is None
        assert decode_thumbnail(DATA_URL_PREFIX + "AAAA") is None
