"""
Tests for the vector_ops module.

This test suite verifies:
- Embedding coercion and validation
- Euclidean distance (single pair and one-to-many)
- Mean embedding

Run with: pytest tests/test_vector_ops.py -v
"""

import os
import sys
import pytest
import numpy as np

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceid.errors import InvalidInputError
from faceid.vector_ops import (
    distances_to,
    euclidean_distance,
    mean_embedding,
    to_embedding,
)


class TestToEmbedding:
    """Tests for to_embedding()."""

    def test_list_becomes_float32_vector(self):
        emb = to_embedding([1, 2, 3])

        assert emb.dtype == np.float32
        assert emb.shape == (3,)

    def test_returns_copy(self):
        source = np.array([1.0, 2.0], dtype=np.float32)
        emb = to_embedding(source)
        emb[0] = 99.0

        assert source[0] == 1.0

    @pytest.mark.parametrize("bad", [[], [[1.0, 2.0]], [float("nan"), 1.0], ["a", "b"]])
    def test_invalid_values_raise(self, bad):
        with pytest.raises(InvalidInputError):
            to_embedding(bad)

    def test_invalid_input_is_value_error(self):
        """InvalidInputError doubles as ValueError for generic handlers."""
        with pytest.raises(ValueError):
            to_embedding([])


class TestEuclideanDistance:
    """Tests for euclidean_distance()."""

    def test_identical_vectors(self):
        assert euclidean_distance([0.5, 0.5], [0.5, 0.5]) == 0.0

    def test_known_distance(self):
        assert euclidean_distance([0, 0], [3, 4]) == pytest.approx(5.0)

    def test_symmetric(self):
        a, b = [1.0, -2.0, 0.5], [0.0, 1.0, 2.0]
        assert euclidean_distance(a, b) == pytest.approx(euclidean_distance(b, a))

    def test_length_mismatch_raises(self):
        with pytest.raises(InvalidInputError):
            euclidean_distance([1.0, 2.0], [1.0, 2.0, 3.0])


class TestDistancesTo:
    """Tests for distances_to()."""

    def test_row_order_preserved(self):
        refs = np.array([[0.0, 0.0], [3.0, 4.0], [1.0, 0.0]])
        d = distances_to([0.0, 0.0], refs)

        np.testing.assert_allclose(d, [0.0, 5.0, 1.0])

    def test_empty_matrix(self):
        d = distances_to([1.0, 2.0], np.empty((0, 2)))
        assert d.shape == (0,)

    def test_length_mismatch_raises(self):
        with pytest.raises(InvalidInputError):
            distances_to([1.0, 2.0, 3.0], np.zeros((2, 2)))

    def test_non_matrix_raises(self):
        with pytest.raises(InvalidInputError):
            distances_to([1.0], np.zeros(3))


class TestMeanEmbedding:
    """Tests for mean_embedding()."""

    def test_mean_of_two(self):
        mean = mean_embedding([[1.0, 0.0], [3.0, 0.0]])

        np.testing.assert_allclose(mean, [2.0, 0.0])
        assert mean.dtype == np.float32

    def test_single_embedding_is_itself(self):
        mean = mean_embedding([np.array([0.25, -0.5], dtype=np.float32)])
        np.testing.assert_allclose(mean, [0.25, -0.5])

    def test_empty_returns_none(self):
        assert mean_embedding([]) is None

    def test_mixed_lengths_raise(self):
        with pytest.raises(InvalidInputError):
            mean_embedding([[1.0, 2.0], [1.0]])
