"""
Similarity scoring and ranking for profile matches.

Every catalog code gets one score: the best cosine similarity between
the query (as photographed, and mirrored left-to-right) and any of that
code's reference vectors (the catalog embedding plus up to two user
exemplars). The score keeps track of which comparison won so callers
can tell a mirrored match or a user-exemplar match apart.

Codes are then ordered by score, highest first. Ties keep corpus order.
"""

import os
import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from .errors import InvalidEmbeddingError

logger = logging.getLogger(__name__)

# Presentation threshold for "high confidence" (e.g. a color change).
# Crossing it never triggers any action on its own.
HIGH_CONFIDENCE_THRESHOLD = float(os.environ.get("HIGH_CONFIDENCE_THRESHOLD", "0.85"))


class MatchSource(enum.Enum):
    """Which comparison produced a candidate's score."""
    CATALOG_ORIGINAL = "catalog_original"
    CATALOG_MIRRORED = "catalog_mirrored"
    USER_EXEMPLAR = "user_exemplar"
    USER_EXEMPLAR_MIRRORED = "user_exemplar_mirrored"
    MANUAL = "manual"

    @property
    def mirrored(self) -> bool:
        return self in (MatchSource.CATALOG_MIRRORED, MatchSource.USER_EXEMPLAR_MIRRORED)


@dataclass(frozen=True)
class MatchCandidate:
    """One ranked catalog code. Recomputed per query, never persisted."""
    code: str
    score: float
    matched_against: MatchSource
    image: Optional[str] = None

    @property
    def is_flipped(self) -> bool:
        return self.matched_against.mirrored

    @property
    def high_confidence(self) -> bool:
        return is_high_confidence(self.score)


def validate_embedding(vector) -> np.ndarray:
    """
    Coerce a vector to float32 and reject malformed ones.

    Args:
        vector: Sequence or array of numbers.

    Returns:
        One-dimensional float32 array.

    Raises:
        InvalidEmbeddingError: If the vector is empty, not 1-D, not
            numeric, or contains NaN/Inf.
    """
    try:
        arr = np.asarray(vector, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidEmbeddingError(f"Embedding is not numeric: {e}") from e

    if arr.ndim != 1:
        raise InvalidEmbeddingError(f"Embedding must be 1-D, got shape {arr.shape}")
    if arr.size == 0:
        raise InvalidEmbeddingError("Embedding is empty")
    if not np.all(np.isfinite(arr)):
        raise InvalidEmbeddingError("Embedding contains NaN or Inf")
    return arr


def cosine_similarity(a, b) -> float:
    """
    Cosine similarity dot(a, b) / (|a| * |b|).

    Defined as 0.0 when either vector has zero norm, so a degenerate
    vector can never put NaN into a ranking.

    Raises:
        ValueError: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise ValueError(f"Vector length mismatch: {a.shape[0]} vs {b.shape[0]}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, similarity))


def is_high_confidence(score: float, threshold: float = None) -> bool:
    """True when score is strictly above the high-confidence threshold."""
    threshold = HIGH_CONFIDENCE_THRESHOLD if threshold is None else threshold
    return score > threshold


def rank_candidates(codes: Sequence[str],
                    original_scores: np.ndarray,
                    mirrored_scores: Optional[np.ndarray] = None,
                    input_vector: Optional[np.ndarray] = None,
                    flipped_vector: Optional[np.ndarray] = None,
                    exemplars: Optional[Dict[str, list]] = None,
                    limit: int = 5,
                    images: Optional[Sequence[str]] = None) -> List[MatchCandidate]:
    """
    Combine per-code scores and return the top `limit` candidates.

    Per code, starting from the catalog score of the original query:
        1. the mirrored catalog score replaces it if strictly greater
        2. for each user exemplar in order, the original then mirrored
           query score replaces it if strictly greater

    Args:
        codes: Catalog codes in corpus order.
        original_scores: Cosine similarity of the query to each catalog
            embedding, aligned with codes.
        mirrored_scores: Same for the mirrored query (optional).
        input_vector: Query embedding, needed to score exemplars.
        flipped_vector: Mirrored query embedding (optional).
        exemplars: Map of code -> list of UserExemplar (or anything with
            an `embedding` attribute). Codes absent from the corpus are
            ignored, as are exemplars whose dimension differs from the
            query.
        limit: Number of candidates to return.
        images: Optional catalog image paths aligned with codes.

    Returns:
        Candidates sorted by score descending, ties in corpus order.
    """
    n = len(codes)
    if n == 0 or limit <= 0:
        return []

    best = np.asarray(original_scores, dtype=np.float64).copy()
    if best.shape != (n,):
        raise ValueError(f"Expected {n} scores, got shape {best.shape}")
    sources = [MatchSource.CATALOG_ORIGINAL] * n

    if mirrored_scores is not None:
        mirrored = np.asarray(mirrored_scores, dtype=np.float64)
        for i in np.nonzero(mirrored > best)[0]:
            best[i] = mirrored[i]
            sources[i] = MatchSource.CATALOG_MIRRORED

    if exemplars and input_vector is not None:
        position = {code: i for i, code in enumerate(codes)}
        dim = np.asarray(input_vector).size
        for code, exemplar_set in exemplars.items():
            i = position.get(code)
            if i is None or not exemplar_set:
                continue
            for exemplar in exemplar_set:
                size = np.asarray(exemplar.embedding).size
                if size != dim:
                    logger.warning(
                        f"Skipping exemplar {getattr(exemplar, 'image', '?')} for {code}: "
                        f"dimension {size} doesn't match query dimension {dim}"
                    )
                    continue
                score = cosine_similarity(input_vector, exemplar.embedding)
                if score > best[i]:
                    best[i] = score
                    sources[i] = MatchSource.USER_EXEMPLAR
                if flipped_vector is not None:
                    score = cosine_similarity(flipped_vector, exemplar.embedding)
                    if score > best[i]:
                        best[i] = score
                        sources[i] = MatchSource.USER_EXEMPLAR_MIRRORED

    # Stable sort keeps corpus order between equal scores
    order = np.argsort(-best, kind="stable")[:limit]

    return [
        MatchCandidate(
            code=codes[i],
            score=float(best[i]),
            matched_against=sources[i],
            image=images[i] if images is not None else None,
        )
        for i in order
    ]


def rank_of(candidates: Sequence[MatchCandidate], code: str) -> Optional[int]:
    """1-based rank of `code` in a candidate list, or None if absent."""
    for rank, candidate in enumerate(candidates, start=1):
        if candidate.code == code:
            return rank
    return None
