"""Similarity scoring between face embeddings.

Scores are cosine similarities clamped into [0, 1]. Every score that leaves
this module through ``best_match`` or ``statistics`` is rounded to two
decimals so callers cannot recover fine-grained embedding geometry.
"""
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, Field

from facesearch.core.exceptions import DimensionMismatchError
from facesearch.domain.entities.face import FaceDetection
from facesearch.domain.entities.video import VideoMatch

SCORE_DECIMALS = 2

# Lower bounds of the score buckets reported in statistics
EXCELLENT_SCORE = 0.9
GOOD_SCORE = 0.8
FAIR_SCORE = 0.7


class ScoreDistribution(BaseModel):
    excellent: int = 0
    good: int = 0
    fair: int = 0
    poor: int = 0


class MatchStatistics(BaseModel):
    """Aggregate view over a list of scored matches."""
    total_matches: int = 0
    average_score: float = 0.0
    highest_score: float = 0.0
    lowest_score: float = 0.0
    distribution: ScoreDistribution = Field(default_factory=ScoreDistribution)


def similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two embeddings mapped into [0, 1].

    Zero-magnitude vectors score 0 and negative cosines are clamped to 0.

    Raises:
        DimensionMismatchError: If the embeddings differ in length
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.size != b.size:
        raise DimensionMismatchError(
            f"Cannot compare embeddings of length {a.size} and {b.size}",
            details={"left": int(a.size), "right": int(b.size)},
        )

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    cosine = float(np.dot(a, b)) / (norm_a * norm_b)
    return min(1.0, max(0.0, cosine))


def meets(score: float, threshold: float) -> bool:
    return score >= threshold


def round_score(score: float) -> float:
    return round(float(score), SCORE_DECIMALS)


def best_match(
    user_embedding: np.ndarray,
    faces: Sequence[FaceDetection],
    floor: float,
) -> Tuple[List[FaceDetection], Optional[float]]:
    """Score thumbnail faces against the user embedding.

    Args:
        user_embedding: Embedding of the user's face
        faces: Faces detected in one thumbnail
        floor: Coarse floor; faces scoring below it are dropped

    Returns:
        The faces at or above the floor, and the best rounded score among
        them (None when no face reaches the floor)
    """
    kept = []
    best = None
    for face in faces:
        score = similarity(user_embedding, face.embedding)
        if not meets(score, floor):
            continue
        kept.append(face)
        if best is None or score > best:
            best = score
    return kept, (round_score(best) if best is not None else None)


def filter_matches(matches: Sequence[VideoMatch], threshold: float) -> List[VideoMatch]:
    """Matches whose best score meets the threshold, in input order."""
    return [
        match for match in matches
        if match.best_similarity is not None and meets(match.best_similarity, threshold)
    ]


def rank_matches(matches: Sequence[VideoMatch]) -> List[VideoMatch]:
    """Sort by score descending, then source site, then candidate id."""
    return sorted(
        matches,
        key=lambda m: (-(m.best_similarity or 0.0), m.candidate.source_site, m.candidate.id),
    )


def statistics(matches: Sequence[VideoMatch]) -> MatchStatistics:
    scores = [m.best_similarity for m in matches if m.best_similarity is not None]
    if not scores:
        return MatchStatistics()

    buckets: Dict[str, int] = {"excellent": 0, "good": 0, "fair": 0, "poor": 0}
    for score in scores:
        if score >= EXCELLENT_SCORE:
            buckets["excellent"] += 1
        elif score >= GOOD_SCORE:
            buckets["good"] += 1
        elif score >= FAIR_SCORE:
            buckets["fair"] += 1
        else:
            buckets["poor"] += 1

    return MatchStatistics(
        total_matches=len(scores),
        average_score=round_score(sum(scores) / len(scores)),
        highest_score=round_score(max(scores)),
        lowest_score=round_score(min(scores)),
        distribution=ScoreDistribution(**buckets),
    )
