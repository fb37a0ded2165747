"""Tests for similarity scoring and match ranking."""
import numpy as np
import pytest

from facesearch.core.exceptions import DimensionMismatchError
from facesearch.domain.entities.video import VideoCandidate, VideoMatch
from facesearch.services.similarity import (
    best_match,
    filter_matches,
    rank_matches,
    similarity,
    statistics,
)
from tests.conftest import make_face, user_vector, vector_with_score


def match(video_id: str, score: float, site: str = "site-a") -> VideoMatch:
    candidate = VideoCandidate(
        id=video_id,
        title=video_id,
        page_url=f"https://example.com/{video_id}",
        thumbnail_url=f"https://example.com/{video_id}.jpg",
        source_site=site,
    )
    return VideoMatch(candidate=candidate, best_similarity=score)


class TestSimilarity:
    """Cosine similarity mapped into [0, 1]."""

    def test_identical_vectors_score_one(self):
        v = user_vector()
        assert similarity(v, v) == pytest.approx(1.0)

    def test_known_score(self):
        base = user_vector()
        assert similarity(base, vector_with_score(base, 0.83)) == pytest.approx(0.83, abs=1e-9)

    def test_symmetric(self):
        base = user_vector()
        other = vector_with_score(base, 0.4)
        assert similarity(base, other) == pytest.approx(similarity(other, base))

    def test_opposite_vectors_clamped_to_zero(self):
        v = user_vector()
        assert similarity(v, -v) == 0.0

    def test_zero_vector_scores_zero(self):
        assert similarity(np.zeros(4), np.ones(4)) == 0.0

    def test_dimension_mismatch_raises(self):
        with pytest.raises(DimensionMismatchError):
            similarity(np.ones(4), np.ones(5))


class TestBestMatch:
    """Scoring the faces of one thumbnail."""

    def test_keeps_faces_at_or_above_floor(self):
        base = user_vector()
        strong = make_face(vector_with_score(base, 0.9, seed=1))
        weak = make_face(vector_with_score(base, 0.05, seed=2))

        kept, best = best_match(base, [strong, weak], floor=0.1)

        assert kept == [strong]
        assert best == 0.9

    def test_best_score_is_rounded(self):
        base = user_vector()
        face = make_face(vector_with_score(base, 0.87654))
        _, best = best_match(base, [face], floor=0.1)
        assert best == 0.88

    def test_no_face_reaches_floor(self):
        base = user_vector()
        kept, best = best_match(base, [make_face(-base)], floor=0.1)
        assert kept == []
        assert best is None

    def test_empty_faces(self):
        assert best_match(user_vector(), [], floor=0.1) == ([], None)


class TestFilterAndRank:
    """Threshold filtering and result ordering."""

    def test_filter_is_inclusive(self):
        matches = [match("a", 0.7), match("b", 0.69), match("c", 0.95)]
        assert [m.candidate.id for m in filter_matches(matches, 0.7)] == ["a", "c"]

    def test_rank_by_score_then_site_then_id(self):
        matches = [
            match("b", 0.8, site="zeta"),
            match("a", 0.8, site="alpha"),
            match("c", 0.9, site="zeta"),
            match("a", 0.8, site="zeta"),
        ]
        ranked = rank_matches(matches)
        assert [(m.candidate.source_site, m.candidate.id) for m in ranked] == [
            ("zeta", "c"),
            ("alpha", "a"),
            ("zeta", "a"),
            ("zeta", "b"),
        ]

    def test_filter_after_raise_is_subset(self):
        matches = [match(str(i), score) for i, score in enumerate([0.2, 0.5, 0.75, 0.9])]
        loose = {m.candidate.id for m in filter_matches(matches, 0.3)}
        strict = {m.candidate.id for m in filter_matches(matches, 0.8)}
        assert strict <= loose


class TestStatistics:
    """Aggregates over visible matches."""

    def test_empty(self):
        stats = statistics([])
        assert stats.total_matches == 0
        assert stats.average_score == 0.0

    def test_buckets_and_extremes(self):
        stats = statistics([match("a", 0.95), match("b", 0.85), match("c", 0.75), match("d", 0.5)])
        assert stats.total_matches == 4
        assert stats.highest_score == 0.95
        assert stats.lowest_score == 0.5
        assert stats.average_score == 0.76
        assert stats.distribution.model_dump() == {"excellent": 1, "good": 1, "fair": 1, "poor": 1}
