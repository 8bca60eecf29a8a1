"""
Incremental construction of the catalog embedding store.

Walks a directory of catalog photos, embeds every image whose code
(file name without extension) is not in the store yet, and appends one
record per new code. Runs are resumable: the store is flushed to disk
every FLUSH_EVERY new records, and a re-run skips every code already
present, so an interrupted run loses at most one batch and never
duplicates a record.
"""

import os
import logging
from typing import List, Optional

from .corpus import CatalogEmbeddingRecord, read_store, write_store
from .errors import CorpusUnavailableError, InvalidEmbeddingError
from .preprocessing import load_image, resize_for_extractor
from .scoring import validate_embedding

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp'}

# Flush cadence, in newly embedded records
FLUSH_EVERY = int(os.environ.get("INDEX_FLUSH_EVERY", "20"))


def code_for_path(path: str) -> str:
    """Catalog code of an image file: its base name without extension."""
    return os.path.splitext(os.path.basename(path))[0]


def scan_images(image_dir: str) -> List[str]:
    """
    Recursively list supported image files under a directory.

    Returns:
        Sorted absolute paths. Empty if the directory doesn't exist.
    """
    if not os.path.isdir(image_dir):
        logger.warning(f"Image directory not found: {image_dir}")
        return []

    files = []
    for root, _, names in os.walk(image_dir):
        for name in names:
            if os.path.splitext(name)[1].lower() in IMAGE_EXTENSIONS:
                files.append(os.path.abspath(os.path.join(root, name)))
    return sorted(files)


def public_path(path: str, public_root: str) -> str:
    """Path stored in a record: '/'-prefixed, POSIX, relative to public_root."""
    rel = os.path.relpath(path, public_root)
    return '/' + rel.replace(os.sep, '/')


def _load_existing(output_path: str) -> List[CatalogEmbeddingRecord]:
    if not os.path.exists(output_path):
        return []
    try:
        records = read_store(output_path, strict=False)
    except CorpusUnavailableError as e:
        logger.warning(f"Could not parse existing store, starting fresh: {e}")
        return []
    logger.info(f"Loaded {len(records)} existing embeddings")
    return records


def build_embeddings(image_dir: str,
                     output_path: str,
                     extractor,
                     public_root: Optional[str] = None,
                     flush_every: Optional[int] = None) -> dict:
    """
    Build or extend the embedding store from a directory of catalog images.

    Process:
        1. Load the existing store (malformed records are dropped, an
           unreadable file is discarded)
        2. Scan image_dir for supported images
        3. Skip codes already in the store or already seen this run
        4. Decode, resize to extractor geometry, embed, append
        5. Flush every `flush_every` new records, and once at the end

    A file that fails to decode or embed is logged and skipped; it never
    aborts the run.

    Args:
        image_dir: Directory containing catalog images (searched recursively).
        output_path: Embedding store file to read and extend.
        extractor: Object with `embed(image) -> vector`.
        public_root: Root the stored image paths are relative to.
            Defaults to the parent of image_dir.
        flush_every: Flush cadence. Defaults to FLUSH_EVERY.

    Returns:
        Dict with 'success', 'total', 'processed', 'skipped', 'errors',
        'records' and 'output_path'.
    """
    flush_every = flush_every or FLUSH_EVERY
    image_dir = os.path.abspath(image_dir)
    public_root = os.path.abspath(public_root or os.path.dirname(image_dir))

    records = _load_existing(output_path)
    known_codes = {r.code for r in records}
    # Every record in a store shares one dimension
    expected_dim = records[0].embedding.shape[0] if records else None

    files = scan_images(image_dir)
    pending = []
    skipped = 0
    for path in files:
        code = code_for_path(path)
        if code in known_codes:
            skipped += 1
            continue
        pending.append(path)

    logger.info(f"Found {len(files)} images, {len(pending)} need processing")

    processed = 0
    errors = 0
    for path in pending:
        code = code_for_path(path)
        if code in known_codes:
            logger.warning(f"Duplicate code {code}, skipping {path}")
            skipped += 1
            continue

        try:
            image = resize_for_extractor(load_image(path))
            embedding = validate_embedding(extractor.embed(image))
            if expected_dim is not None and embedding.shape[0] != expected_dim:
                raise InvalidEmbeddingError(
                    f"Embedding dimension {embedding.shape[0]} doesn't match "
                    f"store dimension {expected_dim}"
                )
        except Exception as e:
            logger.error(f"Failed to process {path}: {e}")
            errors += 1
            continue

        records.append(CatalogEmbeddingRecord(
            code=code,
            image=public_path(path, public_root),
            embedding=embedding,
        ))
        known_codes.add(code)
        expected_dim = embedding.shape[0]
        processed += 1

        if processed % flush_every == 0:
            write_store(output_path, records)
            logger.info(
                f"Saved progress: {len(records)}/{len(files)} ({processed} new)"
            )

    if processed or not os.path.exists(output_path):
        write_store(output_path, records)

    logger.info(
        f"Index built: {processed} new, {skipped} skipped, {errors} errors, "
        f"{len(records)} records in {output_path}"
    )

    return {
        "success": processed > 0 or errors == 0,
        "total": len(files),
        "processed": processed,
        "skipped": skipped,
        "errors": errors,
        "records": len(records),
        "output_path": output_path,
    }
