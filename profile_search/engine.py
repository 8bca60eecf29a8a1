"""
Visual profile search engine.

Ranks catalog codes against a photographed part:
    1. Embed the query image as captured
    2. Embed its left-right mirror (the part seen from its other face)
    3. Flat cosine scan of both vectors against the catalog corpus
    4. Let user-contributed exemplars raise a code's score
    5. Stable sort, return the top K with the query embedding

The extractor and corpus are loaded once through MatchingResources and
shared by every query; the corpus is read-only here.
"""

import os
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

from .corpus import EmbeddingCorpus
from .errors import ExtractorUnavailableError
from .preprocessing import flip_horizontally
from .scoring import MatchCandidate, rank_candidates, validate_embedding

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = int(os.environ.get("MATCH_LIMIT", "5"))


def default_extractor_factory():
    from .extractor import MobileNetExtractor
    return MobileNetExtractor()


class MatchingResources:
    """
    Load-once handle for the feature extractor and embedding corpus.

    `ensure_loaded` is idempotent and safe under concurrent callers:
    the first caller loads, the others wait on the same lock and get
    the same instances. A failed load is not cached, so a later call
    retries.
    """

    def __init__(self,
                 embeddings_path: str,
                 extractor_factory: Callable[[], object] = None):
        """
        Args:
            embeddings_path: Embedding store file written by the indexer.
            extractor_factory: Zero-argument callable returning an object
                with `embed(image)`. Defaults to MobileNetExtractor.
        """
        self.embeddings_path = embeddings_path
        self.extractor_factory = extractor_factory or default_extractor_factory
        self._lock = threading.Lock()
        self._extractor = None
        self._corpus: Optional[EmbeddingCorpus] = None

    @property
    def loaded(self) -> bool:
        return self._extractor is not None and self._corpus is not None

    def ensure_loaded(self):
        """
        Load the extractor and corpus if not done yet.

        Returns:
            Tuple of (extractor, corpus).

        Raises:
            ExtractorUnavailableError: If the model factory fails.
            CorpusUnavailableError: If the embedding store can't be read.
        """
        if self.loaded:
            return self._extractor, self._corpus

        with self._lock:
            if self._extractor is None:
                logger.info("Loading feature extractor...")
                try:
                    self._extractor = self.extractor_factory()
                except Exception as e:
                    raise ExtractorUnavailableError(f"Feature extractor failed to load: {e}") from e

            if self._corpus is None:
                logger.info(f"Loading embeddings from {self.embeddings_path}")
                self._corpus = EmbeddingCorpus.load(self.embeddings_path)

        return self._extractor, self._corpus


@dataclass(frozen=True)
class MatchResult:
    """Ranked candidates plus the query embedding (kept for exemplar commits)."""
    matches: List[MatchCandidate]
    input_vector: np.ndarray
    flipped_vector: Optional[np.ndarray] = None


class SimilarityEngine:
    """
    Ranks catalog codes for a query image.

    Queries never return a partial ranking: both embeddings are computed
    before anything is scored. Given fixed embeddings, corpus and
    exemplars, results are deterministic.
    """

    def __init__(self, resources: MatchingResources):
        self.resources = resources

    def find_matches(self,
                     query_image: np.ndarray,
                     limit: int = None,
                     exemplars: Optional[Dict[str, list]] = None,
                     mirror: bool = True) -> MatchResult:
        """
        Search the catalog for a photographed part.

        Args:
            query_image: RGB image already cropped and resized to the
                extractor geometry (see preprocessing.prepare_query).
            limit: Number of candidates to return. Defaults to DEFAULT_LIMIT.
            exemplars: Optional map of code -> list of UserExemplar.
            mirror: Also score the left-right mirrored query.

        Returns:
            MatchResult with up to `limit` candidates, best first.

        Raises:
            ExtractorUnavailableError: If the extractor can't be loaded.
            CorpusUnavailableError: If the corpus can't be loaded.
        """
        limit = DEFAULT_LIMIT if limit is None else limit
        extractor, corpus = self.resources.ensure_loaded()

        # One embed at a time: original first, then mirror
        input_vector = validate_embedding(extractor.embed(query_image))
        flipped_vector = None
        if mirror:
            flipped_vector = validate_embedding(extractor.embed(flip_horizontally(query_image)))

        matches = self.rank_vectors(corpus, input_vector, flipped_vector, exemplars, limit)

        if matches:
            top = matches[0]
            logger.info(
                f"Search complete: {len(corpus)} codes -> {len(matches)} results, "
                f"top {top.code} ({top.score:.4f}, {top.matched_against.value})"
            )
        else:
            logger.info(f"Search complete: {len(corpus)} codes -> no results")

        return MatchResult(matches=matches, input_vector=input_vector,
                           flipped_vector=flipped_vector)

    @staticmethod
    def rank_vectors(corpus: EmbeddingCorpus,
                     input_vector: np.ndarray,
                     flipped_vector: Optional[np.ndarray] = None,
                     exemplars: Optional[Dict[str, list]] = None,
                     limit: int = None) -> List[MatchCandidate]:
        """Rank the corpus for already-computed query embeddings."""
        limit = DEFAULT_LIMIT if limit is None else limit
        if len(corpus) == 0:
            return []

        original_scores = corpus.score_all(input_vector)
        mirrored_scores = None
        if flipped_vector is not None:
            mirrored_scores = corpus.score_all(flipped_vector)

        return rank_candidates(
            corpus.codes,
            original_scores,
            mirrored_scores,
            input_vector=input_vector,
            flipped_vector=flipped_vector,
            exemplars=exemplars,
            limit=limit,
            images=corpus.images,
        )
