"""
Tests for the Matching Module

These tests verify that:
1. MatchIndex classifies queries as matched / no_match / unknown
2. Confidence follows the exponential decay of the distance
3. Top-k ranking returns one entry per identity, closest first
4. Invalid gallery records are skipped without aborting the load
5. Enrolling a user and querying with a sample finds that user
"""

import os
import sys
import math
import tempfile
import shutil
import pytest
import numpy as np

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceid.enrollment import Detection, EnrollmentSession
from faceid.errors import InvalidImportFormatError, InvalidInputError
from faceid.matching import (
    LinearScanBackend,
    MatchIndex,
    MatchStatus,
    distance_to_confidence,
)
from faceid.template_store import IdentityTemplate, TemplateStore


# ============================================================
# Test Fixtures
# ============================================================

def make_template(user_id, descriptors, mean=None, name=None, registered_at=0):
    return IdentityTemplate(
        user_id=user_id,
        user_name=name or user_id,
        descriptors=np.asarray(descriptors, dtype=np.float32),
        mean_descriptor=mean,
        registered_at=registered_at,
    )


@pytest.fixture
def default_config():
    """Default configuration for the match index."""
    return {
        "match_threshold": 0.6,
        "high_confidence_threshold": 0.4,
        "use_mean_descriptor": True,
    }


@pytest.fixture
def gallery():
    """Four identities spread along the first axis."""
    return [
        make_template("alice", [[0.0, 0.0]], mean=[0.0, 0.0]),
        make_template("bob", [[1.0, 0.0]], mean=[1.0, 0.0]),
        make_template("carol", [[2.0, 0.0]], mean=[2.0, 0.0]),
        make_template("dave", [[3.0, 0.0]], mean=[3.0, 0.0]),
    ]


@pytest.fixture
def index(default_config, gallery):
    idx = MatchIndex(default_config)
    idx.load(gallery)
    return idx


@pytest.fixture
def temp_store():
    temp_dir = tempfile.mkdtemp()
    store = TemplateStore(
        storage_dir=os.path.join(temp_dir, "templates"),
        db_path=os.path.join(temp_dir, "test.sqlite"),
    )

    yield store

    store.close()
    shutil.rmtree(temp_dir)


# ============================================================
# Best match
# ============================================================

class TestFindBestMatch:
    """Tests for MatchIndex.find_best_match()."""

    def test_empty_index_unknown(self, default_config):
        outcome = MatchIndex(default_config).find_best_match([0.0, 0.0])

        assert outcome.status == MatchStatus.UNKNOWN
        assert outcome.confidence == 0.0
        assert math.isinf(outcome.distance)
        assert outcome.user is None

    def test_none_query_unknown(self, index):
        outcome = index.find_best_match(None)

        assert outcome.status == MatchStatus.UNKNOWN
        assert index.get_stats()["total_queries"] == 0

    def test_identical_query(self, index):
        outcome = index.find_best_match([1.0, 0.0])

        assert outcome.status == MatchStatus.MATCHED
        assert outcome.is_match
        assert outcome.user.user_id == "bob"
        assert outcome.distance == 0.0
        assert outcome.confidence == 100.0
        assert outcome.is_high_confidence

    def test_distance_equal_to_threshold_is_no_match(self):
        idx = MatchIndex({"match_threshold": 0.5})
        idx.load([make_template("alice", [[0.0, 0.0]])])

        outcome = idx.find_best_match([0.5, 0.0])

        assert outcome.status == MatchStatus.NO_MATCH
        assert outcome.distance == pytest.approx(0.5)
        assert outcome.confidence == 0.0
        assert outcome.user is None

    def test_match_below_threshold_not_high_confidence(self, index):
        outcome = index.find_best_match([0.5, 0.0])

        assert outcome.status == MatchStatus.MATCHED
        assert outcome.distance == pytest.approx(0.5)
        assert not outcome.is_high_confidence
        assert outcome.confidence == pytest.approx(math.exp(-0.5 / 0.6) * 100.0)

    def test_far_query_no_match(self, index):
        outcome = index.find_best_match([10.0, 10.0])

        assert outcome.status == MatchStatus.NO_MATCH
        assert outcome.confidence == 0.0

    def test_length_mismatch_raises(self, index):
        with pytest.raises(InvalidInputError):
            index.find_best_match([0.0, 0.0, 0.0])

    def test_tie_goes_to_first_loaded(self, default_config):
        idx = MatchIndex(default_config)
        idx.load([
            make_template("first", [[1.0, 1.0]]),
            make_template("second", [[1.0, 1.0]]),
        ])

        assert idx.find_best_match([1.0, 1.0]).user.user_id == "first"

    def test_exact_query_not_representable_in_float32(self):
        idx = MatchIndex({"use_mean_descriptor": False})
        idx.load([IdentityTemplate("u1", "U", [[0.1, 0.2, 0.3]])])

        outcome = idx.find_best_match([0.1, 0.2, 0.3])

        assert outcome.status == MatchStatus.MATCHED
        assert outcome.distance == 0.0
        assert outcome.confidence == 100.0

    def test_non_finite_query_raises(self, index):
        with pytest.raises(InvalidInputError):
            index.find_best_match([float("nan"), 0.0])


# ============================================================
# Top-k
# ============================================================

class TestFindTopMatches:
    """Tests for MatchIndex.find_top_matches()."""

    def test_size_and_order(self, index):
        top = index.find_top_matches([0.9, 0.0], k=3)

        assert [m.user.user_id for m in top] == ["bob", "alice", "carol"]
        distances = [m.distance for m in top]
        assert distances == sorted(distances)

    def test_k_larger_than_gallery(self, index):
        assert len(index.find_top_matches([0.0, 0.0], k=10)) == 4

    def test_one_entry_per_identity(self):
        idx = MatchIndex({"use_mean_descriptor": False})
        idx.load([
            make_template("alice", [[0.0, 0.0], [0.1, 0.0], [0.2, 0.0]]),
            make_template("bob", [[1.0, 0.0]]),
        ])

        top = idx.find_top_matches([0.0, 0.0], k=3)

        assert [m.user.user_id for m in top] == ["alice", "bob"]
        assert top[0].distance == 0.0

    def test_is_match_flag(self, index):
        top = index.find_top_matches([0.0, 0.0], k=2)

        assert top[0].is_match
        assert top[0].confidence == 100.0
        assert not top[1].is_match

    def test_empty_cases(self, index, default_config):
        assert index.find_top_matches([0.0, 0.0], k=0) == []
        assert index.find_top_matches(None) == []
        assert MatchIndex(default_config).find_top_matches([0.0, 0.0]) == []

    def test_default_k(self, index):
        assert len(index.find_top_matches([0.0, 0.0])) == 3

    def test_exact_query_not_representable_in_float32(self):
        idx = MatchIndex({"use_mean_descriptor": False})
        idx.load([
            IdentityTemplate("u1", "U", [[0.1, 0.2, 0.3]]),
            IdentityTemplate("u2", "V", [[0.7, 0.2, 0.3]]),
        ])

        top = idx.find_top_matches([0.1, 0.2, 0.3], k=2)

        assert top[0].user.user_id == "u1"
        assert top[0].distance == 0.0
        assert top[0].confidence == 100.0


# ============================================================
# Loading
# ============================================================

class TestLoad:
    """Tests for gallery loading."""

    def test_mean_mode_indexes_one_row_per_identity(self):
        template = make_template("alice", [[0.0, 0.0], [1.0, 0.0]], mean=[0.5, 0.0])

        mean_index = MatchIndex({"use_mean_descriptor": True})
        mean_index.load([template])
        all_index = MatchIndex({"use_mean_descriptor": False})
        all_index.load([template])

        assert mean_index.descriptor_count == 1
        assert all_index.descriptor_count == 2
        assert mean_index.find_best_match([0.0, 0.0]).distance == pytest.approx(0.5)
        assert all_index.find_best_match([0.0, 0.0]).distance == 0.0

    def test_mean_mode_falls_back_to_descriptors(self):
        idx = MatchIndex({"use_mean_descriptor": True})
        idx.load([make_template("alice", [[0.0, 0.0], [1.0, 0.0]])])

        assert idx.descriptor_count == 2

    def test_invalid_records_skipped(self, default_config):
        idx = MatchIndex(default_config)
        count = idx.load([
            {"id": "", "descriptors": [[0.0, 0.0]]},
            {"id": "empty", "descriptors": []},
            {"id": "good", "name": "Good", "descriptors": [[0.0, 0.0]]},
            {"id": "wrong_dim", "descriptors": [[0.0, 0.0, 0.0]]},
            {"id": "ragged", "descriptors": [[0.0, 0.0], [1.0]]},
            {"name": "no id", "descriptors": [[1.0, 1.0]]},
            {"id": "good", "descriptors": [[5.0, 5.0]]},
            {"id": "also_good", "descriptors": [[2.0, 2.0]], "meanDescriptor": [2.0, 2.0]},
        ])

        assert count == 2
        assert [u.user_id for u in idx.get_registered_users()] == ["good", "also_good"]
        assert idx.find_best_match([0.0, 0.0]).user.user_name == "Good"

    def test_load_replaces_previous_gallery(self, index):
        index.load([make_template("zed", [[9.0, 9.0]])])

        assert index.user_count == 1
        assert index.find_best_match([9.0, 9.0]).user.user_id == "zed"

    def test_load_empty_gallery(self, index):
        assert index.load([]) == 0
        assert not index.is_ready()
        assert index.find_best_match([0.0, 0.0]).status == MatchStatus.UNKNOWN

    def test_load_from_json(self, default_config):
        idx = MatchIndex(default_config)
        count = idx.load_from_json(
            '[{"id": "u1", "name": "One", "descriptors": [[0.5, 0.5]], '
            '"meanDescriptor": [0.5, 0.5], "registeredAt": 1}]'
        )

        assert count == 1
        assert idx.get_registered_users()[0].has_mean_descriptor

    def test_load_from_bad_json_keeps_index(self, index):
        with pytest.raises(InvalidImportFormatError):
            index.load_from_json('{"id": "not an array"}')

        assert index.user_count == 4

    def test_load_from_storage(self, temp_store, gallery, default_config):
        for t in gallery:
            temp_store.save_user(t)

        idx = MatchIndex(default_config)

        assert idx.load_from_storage(temp_store) == 4
        assert idx.is_ready()


# ============================================================
# Confidence and statistics
# ============================================================

class TestConfidence:
    """Tests for distance_to_confidence()."""

    def test_zero_distance(self):
        assert distance_to_confidence(0.0, 0.6) == 100.0

    def test_distance_at_threshold(self):
        assert distance_to_confidence(0.6, 0.6) == pytest.approx(100.0 / math.e)

    def test_monotonic(self):
        values = [distance_to_confidence(d, 0.6) for d in (0.0, 0.1, 0.5, 1.0, 5.0)]
        assert values == sorted(values, reverse=True)
        assert all(0.0 <= v <= 100.0 for v in values)

    def test_non_positive_threshold(self):
        assert distance_to_confidence(0.1, 0.0) == 0.0


class TestStats:
    """Tests for query counters."""

    def test_match_rate(self, index):
        assert index.get_stats()["match_rate"] is None

        index.find_best_match([0.0, 0.0])
        index.find_best_match([10.0, 10.0])
        stats = index.get_stats()

        assert stats["total_queries"] == 2
        assert stats["successful_queries"] == 1
        assert stats["match_rate"] == 50.0
        assert stats["user_count"] == 4
        assert stats["descriptor_count"] == 4
        assert stats["last_query_latency_ms"] >= 0.0

    def test_clear(self, index):
        index.find_best_match([0.0, 0.0])
        index.clear()
        stats = index.get_stats()

        assert stats["total_queries"] == 0
        assert stats["user_count"] == 0
        assert index.find_best_match([0.0, 0.0]).status == MatchStatus.UNKNOWN


class TestBackend:
    """Tests for the nearest-neighbor backend seam."""

    def test_custom_backend_used(self, gallery):
        class CountingBackend(LinearScanBackend):
            calls = 0

            def distances(self, index, query):
                CountingBackend.calls += 1
                return super().distances(index, query)

        idx = MatchIndex({}, backend=CountingBackend())
        idx.load(gallery)
        outcome = idx.find_best_match([2.0, 0.0])

        assert CountingBackend.calls == 1
        assert outcome.user.user_id == "carol"


# ============================================================
# Integration: enroll then identify
# ============================================================

class TestEnrollThenMatch:
    """Enroll an identity through a session, then identify it."""

    def test_enrolled_user_is_matched(self, temp_store):
        session = EnrollmentSession(
            {"capture_interval_ms": 0, "similarity_threshold": 0.001},
            storage=temp_store,
        )
        session.start("u1", "User One")

        for embedding in ([1.0, 0.0], [1.0, 0.01], [1.0, -0.01]):
            result = session.process_detection(Detection(confidence=0.95, embedding=embedding))
            assert result.accepted

        session.finish_early()

        idx = MatchIndex({"match_threshold": 0.6})
        idx.load_from_storage(temp_store)
        outcome = idx.find_best_match([1.0, 0.0])

        assert outcome.status == MatchStatus.MATCHED
        assert outcome.user.user_id == "u1"
        assert outcome.user.descriptor_count == 3
        assert outcome.distance == pytest.approx(0.0, abs=1e-6)
        assert outcome.confidence == pytest.approx(100.0, abs=1e-3)
