"""
Live comparison of a camera stream against one pinned reference.

While the user lines up a part, each available frame is cropped to its
central square, downsampled, embedded and scored against a single
target embedding (the catalog vector of the chosen code, or one of its
user exemplars). Scores are advisory: nothing is committed from here.
Committing uses the last full-resolution frame, see embed_capture().

One worker thread does the scoring, so at most one embed() call is in
flight and a new pass only starts after the previous score has been
published (or failed). A threading.Event is the cancellation token,
checked before each embed() and again before publishing; a score that
resolves after stop() is dropped.
"""

import os
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import cv2
import numpy as np

from .preprocessing import DEFAULT_CROP_FRACTION, downsample_preview, prepare_query
from .scoring import cosine_similarity, is_high_confidence, validate_embedding

logger = logging.getLogger(__name__)

PREVIEW_SIZE = int(os.environ.get("LIVE_PREVIEW_SIZE", "160"))
POLL_INTERVAL = float(os.environ.get("LIVE_POLL_INTERVAL", "0.05"))


class CameraFrameSource:
    """Frame source over an OpenCV capture device. Frames come out RGB."""

    def __init__(self, device=0):
        self.capture = cv2.VideoCapture(device)
        if not self.capture.isOpened():
            self.capture.release()
            raise RuntimeError(f"Could not open camera: {device}")

    def read(self) -> Optional[np.ndarray]:
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def release(self):
        self.capture.release()


@dataclass(frozen=True)
class LiveScore:
    """One published comparison score."""
    score: float
    high_confidence: bool
    frame_index: int


def resolve_target_embedding(corpus, code: str,
                             exemplars: Optional[dict] = None,
                             exemplar_index: Optional[int] = None) -> np.ndarray:
    """
    Pick the embedding a live comparison is pinned to.

    Args:
        corpus: EmbeddingCorpus holding the catalog vectors.
        code: Catalog code being confirmed.
        exemplars: Optional map of code -> list of UserExemplar.
        exemplar_index: Pin to this user exemplar instead of the
            catalog vector.

    Raises:
        KeyError: If the code (or the requested exemplar) doesn't exist.
    """
    if exemplar_index is not None:
        exemplar_set = (exemplars or {}).get(code) or []
        if not 0 <= exemplar_index < len(exemplar_set):
            raise KeyError(f"No user exemplar #{exemplar_index} for code {code}")
        return validate_embedding(exemplar_set[exemplar_index].embedding)

    embedding = corpus.embedding_for(code)
    if embedding is None:
        raise KeyError(f"Code not in embedding corpus: {code}")
    return embedding


def embed_capture(extractor, frame: np.ndarray,
                  crop_fraction: float = None):
    """
    Embed a full-resolution captured frame for searching or committing.

    Returns:
        Tuple of (query_image, embedding).
    """
    query_image = prepare_query(frame, crop_fraction)
    return query_image, validate_embedding(extractor.embed(query_image))


class LiveComparison:
    """
    Background loop scoring live frames against a pinned embedding.

    Usage:
        session = LiveComparison(extractor, target, CameraFrameSource(), on_score=ui.update)
        session.start()
        ...
        session.stop()   # no further scores are published after this returns
    """

    def __init__(self,
                 extractor,
                 target_embedding,
                 source,
                 on_score: Optional[Callable[[LiveScore], None]] = None,
                 crop_fraction: float = None,
                 preview_size: int = None,
                 poll_interval: float = None):
        """
        Args:
            extractor: Object with `embed(image) -> vector`.
            target_embedding: Pinned reference vector.
            source: Frame source with `read() -> frame or None` and `release()`.
            on_score: Called with each LiveScore from the worker thread.
            crop_fraction: Central square fraction. Defaults to DEFAULT_CROP_FRACTION.
            preview_size: Preview side before extractor resizing.
            poll_interval: Seconds to wait when no frame is available.
        """
        self.extractor = extractor
        self.target = validate_embedding(target_embedding)
        self.source = source
        self.on_score = on_score
        self.crop_fraction = DEFAULT_CROP_FRACTION if crop_fraction is None else crop_fraction
        self.preview_size = preview_size or PREVIEW_SIZE
        self.poll_interval = POLL_INTERVAL if poll_interval is None else poll_interval

        self.latest: Optional[LiveScore] = None
        self.last_frame: Optional[np.ndarray] = None

        self._cancel = threading.Event()
        self._publish_lock = threading.RLock()
        self._release_lock = threading.Lock()
        self._released = False
        self._thread: Optional[threading.Thread] = None
        self._frames_scored = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start(self):
        """Start the scoring thread. A session can only be started once."""
        if self._thread is not None:
            raise RuntimeError("Live comparison already started")
        if self._cancel.is_set():
            raise RuntimeError("Live comparison was stopped")
        self._thread = threading.Thread(target=self._run, name="live-comparison", daemon=True)
        self._thread.start()
        logger.info("Live comparison started")

    def stop(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Cancel the loop.

        After this returns no further score is published. The frame
        source is released by the worker as soon as any in-flight
        embed() returns (immediately when the loop was never started).

        Args:
            wait: Join the worker thread.
            timeout: Join timeout in seconds.
        """
        with self._publish_lock:
            self._cancel.set()

        if self._thread is None:
            self._release_source()
        elif wait and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
        logger.info(f"Live comparison stopped after {self._frames_scored} scores")

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def capture(self):
        """
        Embed the last full-resolution frame for an exemplar commit.

        Returns:
            Tuple of (query_image, embedding), or None if no frame has
            been read yet.
        """
        frame = self.last_frame
        if frame is None:
            return None
        return embed_capture(self.extractor, frame, self.crop_fraction)

    def _release_source(self):
        with self._release_lock:
            if self._released:
                return
            self._released = True
        self.source.release()
        logger.debug("Frame source released")

    def _run(self):
        try:
            while not self._cancel.is_set():
                frame = self.source.read()
                if frame is None:
                    self._cancel.wait(self.poll_interval)
                    continue
                self.last_frame = frame

                if self._cancel.is_set():
                    break

                try:
                    preview = downsample_preview(frame, self.crop_fraction, self.preview_size)
                    score = cosine_similarity(self.extractor.embed(preview), self.target)
                except Exception as e:
                    logger.warning(f"Live scoring failed, retrying on next frame: {e}")
                    self._cancel.wait(self.poll_interval)
                    continue

                with self._publish_lock:
                    if self._cancel.is_set():
                        logger.debug("Dropping score computed after cancellation")
                        break
                    self._frames_scored += 1
                    result = LiveScore(
                        score=score,
                        high_confidence=is_high_confidence(score),
                        frame_index=self._frames_scored,
                    )
                    self.latest = result
                    logger.debug(f"Live score #{result.frame_index}: {score:.4f}")
                    if self.on_score is not None:
                        try:
                            self.on_score(result)
                        except Exception:
                            logger.exception("Live score callback failed")
        except Exception:
            logger.exception("Live comparison loop crashed")
        finally:
            self._release_source()
