"""
User-contributed exemplars.

When a user confirms a match, the captured photo and its embedding are
kept as an extra reference for that catalog code. Each code keeps at
most MAX_EXEMPLARS_PER_CODE exemplars; adding another evicts the oldest.

Exemplars are shared between devices through an ExemplarSync backend
(upload photo, save metadata, fetch all, subscribe to inserts).
Concurrent commits to the same code resolve last-arrival-wins; there is
no merge.
"""

import os
import json
import time
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

from .preprocessing import encode_jpeg
from .scoring import validate_embedding

logger = logging.getLogger(__name__)

MAX_EXEMPLARS_PER_CODE = 2

JPEG_QUALITY = int(os.environ.get("EXEMPLAR_JPEG_QUALITY", "90"))


@dataclass(frozen=True)
class UserExemplar:
    """A user photo of a catalog part and its embedding."""
    embedding: np.ndarray
    image: str


class ExemplarRegistry:
    """
    Per-code FIFO sets of user exemplars, in oldest-to-newest order.

    All mutations are read-modify-write under a lock. Adding an exemplar
    whose image URL is already present for the code is a no-op, so a
    local commit echoed back by the sync subscription isn't duplicated.
    """

    def __init__(self, max_per_code: int = MAX_EXEMPLARS_PER_CODE):
        self.max_per_code = max_per_code
        self._sets: Dict[str, List[UserExemplar]] = {}
        self._lock = threading.Lock()

    def add(self, code: str, exemplar: UserExemplar) -> List[UserExemplar]:
        """
        Append an exemplar to a code's set, evicting the oldest if full.

        Returns:
            The code's exemplar set after the insert.

        Raises:
            InvalidEmbeddingError: If the embedding is malformed.
        """
        exemplar = UserExemplar(validate_embedding(exemplar.embedding), exemplar.image)
        with self._lock:
            current = list(self._sets.get(code, []))
            if any(e.image == exemplar.image for e in current):
                return current
            current.append(exemplar)
            evicted = current[:-self.max_per_code]
            current = current[-self.max_per_code:]
            self._sets[code] = current

        if evicted:
            logger.info(f"Evicted {len(evicted)} old exemplar(s) for {code}")
        return list(current)

    def get(self, code: str) -> List[UserExemplar]:
        with self._lock:
            return list(self._sets.get(code, []))

    def as_map(self) -> Dict[str, List[UserExemplar]]:
        """Snapshot of all sets, suitable for SimilarityEngine.find_matches."""
        with self._lock:
            return {code: list(s) for code, s in self._sets.items()}

    def replace_from_rows(self, rows: List[dict]) -> int:
        """
        Rebuild every set from sync rows.

        Rows are newest-first (as fetch_all returns them); each code keeps
        its most recent exemplars, stored oldest-to-newest. Malformed
        rows are logged and skipped.

        Returns:
            Number of exemplars kept.
        """
        newest_first: Dict[str, List[UserExemplar]] = {}
        for row in rows:
            try:
                code = row["code"]
                exemplar = UserExemplar(validate_embedding(row["embedding"]), row["image_url"])
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed exemplar row: {e}")
                continue
            bucket = newest_first.setdefault(code, [])
            if len(bucket) < self.max_per_code and all(e.image != exemplar.image for e in bucket):
                bucket.append(exemplar)

        with self._lock:
            self._sets = {code: list(reversed(b)) for code, b in newest_first.items()}
            kept = sum(len(b) for b in self._sets.values())

        logger.info(f"Loaded {kept} user exemplars for {len(newest_first)} codes")
        return kept

    def __len__(self) -> int:
        with self._lock:
            return len(self._sets)

    def __contains__(self, code: str) -> bool:
        with self._lock:
            return bool(self._sets.get(code))


class ExemplarSync(ABC):
    """Transport for sharing exemplars between devices."""

    @abstractmethod
    def upload(self, code: str, image_bytes: bytes) -> str:
        """Store a JPEG photo and return its public URL."""

    @abstractmethod
    def save_metadata(self, code: str, image_url: str, embedding: List[float]) -> dict:
        """Persist one exemplar row and notify subscribers. Returns the row."""

    @abstractmethod
    def fetch_all(self) -> List[dict]:
        """All rows, newest first: {code, image_url, embedding, created_at}."""

    @abstractmethod
    def subscribe(self, on_insert: Callable[[dict], None]) -> Callable[[], None]:
        """Register an insert callback. Returns an unsubscribe callable."""


class LocalExemplarSync(ExemplarSync):
    """
    File-backed sync for a single machine.

    Photos go to <root>/captures/<code>/<code>_<millis>.jpg and rows to
    <root>/user_captures.json. Subscribers in this process are notified
    on every insert.
    """

    def __init__(self, root_dir: str):
        self.root_dir = os.path.abspath(root_dir)
        self.metadata_path = os.path.join(self.root_dir, "user_captures.json")
        os.makedirs(self.root_dir, exist_ok=True)
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[dict], None]] = []

    def upload(self, code: str, image_bytes: bytes) -> str:
        directory = os.path.join(self.root_dir, "captures", code)
        os.makedirs(directory, exist_ok=True)

        millis = int(time.time() * 1000)
        path = os.path.join(directory, f"{code}_{millis}.jpg")
        while os.path.exists(path):
            millis += 1
            path = os.path.join(directory, f"{code}_{millis}.jpg")

        with open(path, 'wb') as f:
            f.write(image_bytes)
        return "/" + os.path.relpath(path, self.root_dir).replace(os.sep, "/")

    def _read_rows(self) -> List[dict]:
        if not os.path.exists(self.metadata_path):
            return []
        with open(self.metadata_path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _write_rows(self, rows: List[dict]):
        fd, tmp_path = tempfile.mkstemp(prefix=".captures-", suffix=".tmp", dir=self.root_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(rows, f)
            os.replace(tmp_path, self.metadata_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def save_metadata(self, code: str, image_url: str, embedding: List[float]) -> dict:
        with self._lock:
            rows = self._read_rows()
            row = {
                "code": code,
                "image_url": image_url,
                "embedding": [float(x) for x in embedding],
                "created_at": time.time(),
                "seq": len(rows),
            }
            rows.append(row)
            self._write_rows(rows)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            callback(row)
        return row

    def fetch_all(self) -> List[dict]:
        with self._lock:
            rows = self._read_rows()
        return sorted(rows, key=lambda r: (r.get("created_at", 0), r.get("seq", 0)), reverse=True)

    def subscribe(self, on_insert: Callable[[dict], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(on_insert)

        def unsubscribe():
            with self._lock:
                if on_insert in self._subscribers:
                    self._subscribers.remove(on_insert)

        return unsubscribe


class ExemplarCommitter:
    """
    Commits confirmed captures and keeps a registry in step with the sync.

    `attach()` loads every existing row and subscribes to inserts from
    other devices; `commit()` uploads, saves, and inserts locally.
    """

    def __init__(self, registry: ExemplarRegistry, sync: ExemplarSync):
        self.registry = registry
        self.sync = sync
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self) -> int:
        """Load all synced exemplars and start following inserts."""
        kept = self.registry.replace_from_rows(self.sync.fetch_all())
        if self._unsubscribe is None:
            self._unsubscribe = self.sync.subscribe(self._on_insert)
        return kept

    def detach(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_insert(self, row: dict):
        try:
            exemplar = UserExemplar(validate_embedding(row["embedding"]), row["image_url"])
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring malformed synced exemplar: {e}")
            return
        self.registry.add(row["code"], exemplar)

    def commit(self, code: str, embedding, image: np.ndarray) -> List[UserExemplar]:
        """
        Attach a captured (embedding, photo) pair to a catalog code.

        Args:
            code: Catalog code the user confirmed or entered.
            embedding: Embedding of the full-resolution capture.
            image: RGB photo to upload.

        Returns:
            The code's exemplar set after the commit.
        """
        vector = validate_embedding(embedding)
        image_url = self.sync.upload(code, encode_jpeg(image, JPEG_QUALITY))
        self.sync.save_metadata(code, image_url, vector.tolist())
        exemplars = self.registry.add(code, UserExemplar(vector, image_url))
        logger.info(f"Committed exemplar for {code}: {image_url}")
        return exemplars
