"""
Embedding store persistence and flat similarity scan.

The store file is a JSON array of records:
    {"code": str, "image": str, "embedding": [float, ...]}

Readers key by code; the file carries no ordering guarantee, but the
in-memory corpus keeps file order so ranking ties are reproducible.

Scoring is an exact flat inner-product scan (FAISS IndexFlatIP) over
L2-normalized vectors, i.e. cosine similarity against every record.
Catalog-scale corpora stay well inside flat-scan latency.
"""

import os
import json
import logging
import tempfile
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import faiss
import numpy as np

from .errors import CorpusUnavailableError, InvalidEmbeddingError
from .scoring import validate_embedding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEmbeddingRecord:
    """One catalog image's embedding. Immutable once indexed."""
    code: str
    image: str
    embedding: np.ndarray

    def to_json(self) -> dict:
        return {
            "code": self.code,
            "image": self.image,
            "embedding": [float(x) for x in self.embedding],
        }


def record_from_json(entry: dict) -> CatalogEmbeddingRecord:
    """
    Parse one store entry.

    Raises:
        ValueError: If a field is missing or has the wrong type.
        InvalidEmbeddingError: If the embedding is malformed.
    """
    if not isinstance(entry, dict):
        raise ValueError(f"Record must be an object, got {type(entry).__name__}")
    missing = [k for k in ("code", "image", "embedding") if k not in entry]
    if missing:
        raise ValueError(f"Record missing fields: {', '.join(missing)}")
    code = entry["code"]
    if not isinstance(code, str) or not code:
        raise ValueError(f"Record code must be a non-empty string, got {code!r}")

    return CatalogEmbeddingRecord(
        code=code,
        image=str(entry["image"]),
        embedding=validate_embedding(entry["embedding"]),
    )


def read_store(path: str, strict: bool = True) -> List[CatalogEmbeddingRecord]:
    """
    Read every record of an embedding store file.

    Args:
        path: Embedding store file.
        strict: Fail on the first malformed record. When False,
            malformed records are logged and dropped.

    Raises:
        CorpusUnavailableError: If the file is missing, unreadable, not
            a JSON array, or (when strict) any record is malformed.
    """
    if not os.path.exists(path):
        raise CorpusUnavailableError(f"Embedding store not found: {path}", path=path)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            entries = json.load(f)
    except (OSError, ValueError) as e:
        raise CorpusUnavailableError(f"Could not read embedding store {path}: {e}", path=path) from e

    if not isinstance(entries, list):
        raise CorpusUnavailableError(
            f"Embedding store {path} must hold a JSON array, got {type(entries).__name__}",
            path=path,
        )

    records = []
    for i, entry in enumerate(entries):
        try:
            records.append(record_from_json(entry))
        except (ValueError, InvalidEmbeddingError) as e:
            if strict:
                raise CorpusUnavailableError(f"Corrupt record #{i} in {path}: {e}", path=path) from e
            logger.warning(f"Dropping corrupt record #{i} in {path}: {e}")

    return records


def write_store(path: str, records: Iterable[CatalogEmbeddingRecord]) -> int:
    """
    Atomically write records to an embedding store file.

    The data goes to a temporary file in the same directory first and
    then replaces the target, so an interrupted write leaves the
    previous store intact.

    Returns:
        Number of records written.
    """
    payload = [r.to_json() for r in records]
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=".embeddings-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(payload, f)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    return len(payload)


def _l2_normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    # Zero rows stay zero: their inner product with anything is 0
    safe = np.where(norms > 0, norms, 1.0)
    return (matrix / safe).astype(np.float32)


class EmbeddingCorpus:
    """
    Read-only in-memory view of the embedding store.

    Holds codes, image paths and embeddings in file order, plus a flat
    FAISS inner-product index over the normalized embeddings.
    """

    def __init__(self, records: List[CatalogEmbeddingRecord]):
        seen = set()
        unique = []
        for record in records:
            if record.code in seen:
                logger.warning(f"Duplicate code in embedding store, keeping first: {record.code}")
                continue
            seen.add(record.code)
            unique.append(record)

        self.codes: List[str] = [r.code for r in unique]
        self.images: List[str] = [r.image for r in unique]
        self._position: Dict[str, int] = {code: i for i, code in enumerate(self.codes)}

        if unique:
            dims = {r.embedding.shape[0] for r in unique}
            if len(dims) != 1:
                raise CorpusUnavailableError(
                    f"Embedding store mixes dimensions: {sorted(dims)}"
                )
            self.dim = dims.pop()
            self.embeddings = np.vstack([r.embedding for r in unique]).astype(np.float32)
            self.index = faiss.IndexFlatIP(self.dim)
            self.index.add(_l2_normalize_rows(self.embeddings))
        else:
            self.dim = 0
            self.embeddings = np.zeros((0, 0), dtype=np.float32)
            self.index = None

        logger.info(f"Embedding corpus ready: {len(self.codes)} codes, {self.dim}d")

    @classmethod
    def load(cls, path: str) -> "EmbeddingCorpus":
        """Load a corpus from a store file (raises CorpusUnavailableError)."""
        return cls(read_store(path))

    def __len__(self) -> int:
        return len(self.codes)

    def __contains__(self, code: str) -> bool:
        return code in self._position

    def embedding_for(self, code: str) -> Optional[np.ndarray]:
        """Catalog embedding for a code, or None if the code is not indexed."""
        i = self._position.get(code)
        return None if i is None else self.embeddings[i]

    def score_all(self, query: np.ndarray) -> np.ndarray:
        """
        Cosine similarity of a query vector to every record.

        Args:
            query: Query embedding with the corpus dimension.

        Returns:
            Float array aligned with self.codes, values in [-1, 1].
            A zero query scores 0 against everything.

        Raises:
            ValueError: If the query dimension doesn't match the corpus.
        """
        if self.index is None:
            return np.zeros(0, dtype=np.float32)

        q = np.asarray(query, dtype=np.float32).reshape(1, -1)
        if q.shape[1] != self.dim:
            raise ValueError(
                f"Query dimension {q.shape[1]} doesn't match "
                f"corpus dimension {self.dim}"
            )

        q = _l2_normalize_rows(q)
        n = self.index.ntotal
        distances, indices = self.index.search(q, n)

        # FAISS returns neighbors by score; put them back in corpus order
        scores = np.zeros(n, dtype=np.float32)
        scores[indices[0]] = distances[0]
        return np.clip(scores, -1.0, 1.0)
