"""Tests for incremental embedding store construction."""

import json
import os

import cv2
import numpy as np
import pytest

from profile_search.corpus import read_store
from profile_search.index_builder import (
    build_embeddings, code_for_path, public_path, scan_images,
)

from conftest import ThumbnailExtractor


def write_image(path, seed):
    rng = np.random.RandomState(seed)
    img = rng.randint(0, 255, (40, 60, 3), dtype=np.uint8)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    assert cv2.imwrite(str(path), img)


@pytest.fixture
def image_dir(tmp_path):
    root = tmp_path / "public" / "images"
    write_image(root / "10008.jpg", 1)
    write_image(root / "10010.png", 2)
    write_image(root / "perfiles" / "P20001.jpg", 3)
    write_image(root / "perfiles" / "P20002.webp", 4)
    (root / "notes.txt").write_text("not an image")
    return root


class FailingExtractor(ThumbnailExtractor):
    """Fails on selected calls (1-based)."""

    def __init__(self, fail_on=()):
        super().__init__()
        self.fail_on = set(fail_on)

    def embed(self, image):
        if self.calls + 1 in self.fail_on:
            self.calls += 1
            raise RuntimeError("backbone exploded")
        return super().embed(image)


class InterruptingExtractor(ThumbnailExtractor):
    """Raises KeyboardInterrupt on the nth call, simulating a killed run."""

    def __init__(self, stop_at):
        super().__init__()
        self.stop_at = stop_at

    def embed(self, image):
        if self.calls + 1 == self.stop_at:
            raise KeyboardInterrupt
        return super().embed(image)


class TestScanning:
    """Tests for image discovery and naming."""

    def test_recursive_allow_list(self, image_dir):
        names = sorted(os.path.basename(p) for p in scan_images(str(image_dir)))
        assert names == ["10008.jpg", "10010.png", "P20001.jpg", "P20002.webp"]

    def test_missing_dir(self, tmp_path):
        assert scan_images(str(tmp_path / "nope")) == []

    def test_code_is_base_name(self):
        assert code_for_path("/x/y/10.008.jpg") == "10.008"
        assert code_for_path("/x/P20001.WEBP") == "P20001"

    def test_public_path(self, tmp_path):
        path = os.path.join(str(tmp_path), "images", "perfiles", "A.jpg")
        assert public_path(path, str(tmp_path)) == "/images/perfiles/A.jpg"


class TestBuildEmbeddings:
    """Tests for the indexer run."""

    def test_builds_one_record_per_code(self, image_dir, tmp_path):
        output = str(tmp_path / "public" / "embeddings.json")
        summary = build_embeddings(str(image_dir), output, ThumbnailExtractor())

        assert summary["success"]
        assert summary["total"] == 4
        assert summary["processed"] == 4
        assert summary["errors"] == 0

        records = read_store(output)
        assert sorted(r.code for r in records) == ["10008", "10010", "P20001", "P20002"]
        images = {r.code: r.image for r in records}
        assert images["P20001"] == "/images/perfiles/P20001.jpg"
        assert all(r.embedding.shape == (64,) for r in records)

    def test_idempotent(self, image_dir, tmp_path):
        output = str(tmp_path / "embeddings.json")
        build_embeddings(str(image_dir), output, ThumbnailExtractor())
        first = {r.code: r.embedding for r in read_store(output)}

        extractor = ThumbnailExtractor()
        summary = build_embeddings(str(image_dir), output, extractor)
        second = {r.code: r.embedding for r in read_store(output)}

        assert extractor.calls == 0
        assert summary["processed"] == 0
        assert summary["skipped"] == 4
        assert first.keys() == second.keys()
        assert all(np.array_equal(first[c], second[c]) for c in first)

    def test_resumable_after_interruption(self, image_dir, tmp_path):
        full = str(tmp_path / "full.json")
        build_embeddings(str(image_dir), full, ThumbnailExtractor())

        resumed = str(tmp_path / "resumed.json")
        with pytest.raises(KeyboardInterrupt):
            build_embeddings(str(image_dir), resumed, InterruptingExtractor(stop_at=4),
                             flush_every=2)
        assert len(read_store(resumed)) == 2

        extractor = ThumbnailExtractor()
        build_embeddings(str(image_dir), resumed, extractor, flush_every=2)
        assert extractor.calls == 2

        expected = {r.code: r.embedding for r in read_store(full)}
        actual = {r.code: r.embedding for r in read_store(resumed)}
        assert expected.keys() == actual.keys()
        assert all(np.allclose(expected[c], actual[c]) for c in expected)

    def test_failure_skips_file_and_continues(self, image_dir, tmp_path):
        output = str(tmp_path / "embeddings.json")
        summary = build_embeddings(str(image_dir), output, FailingExtractor(fail_on=[2]))

        assert summary["success"]
        assert summary["errors"] == 1
        assert summary["processed"] == 3
        assert len(read_store(output)) == 3

        # The failed code is picked up on the next run
        summary = build_embeddings(str(image_dir), output, ThumbnailExtractor())
        assert summary["processed"] == 1
        assert len(read_store(output)) == 4

    def test_undecodable_file_skipped(self, image_dir, tmp_path):
        (image_dir / "broken.jpg").write_bytes(b"garbage")
        output = str(tmp_path / "embeddings.json")
        summary = build_embeddings(str(image_dir), output, ThumbnailExtractor())
        assert summary["errors"] == 1
        assert "broken" not in {r.code for r in read_store(output)}

    def test_nan_embedding_not_stored(self, image_dir, tmp_path):
        class NanExtractor:
            def embed(self, image):
                return np.array([np.nan, 1.0], dtype=np.float32)

        output = str(tmp_path / "embeddings.json")
        summary = build_embeddings(str(image_dir), output, NanExtractor())
        assert summary["processed"] == 0
        assert summary["errors"] == 4
        assert not summary["success"]
        assert read_store(output) == []

    def test_duplicate_code_across_folders(self, image_dir, tmp_path):
        write_image(image_dir / "perfiles" / "10008.png", 9)
        output = str(tmp_path / "embeddings.json")
        build_embeddings(str(image_dir), output, ThumbnailExtractor())
        codes = [r.code for r in read_store(output)]
        assert codes.count("10008") == 1

    def test_corrupt_existing_store_restarts(self, image_dir, tmp_path):
        output = tmp_path / "embeddings.json"
        output.write_text("{not json")
        summary = build_embeddings(str(image_dir), str(output), ThumbnailExtractor())
        assert summary["processed"] == 4
        assert len(json.loads(output.read_text())) == 4

    def test_periodic_flush(self, image_dir, tmp_path, monkeypatch):
        import profile_search.index_builder as index_builder

        writes = []
        real_write = index_builder.write_store

        def counting_write(path, records):
            writes.append(len(records))
            return real_write(path, records)

        monkeypatch.setattr(index_builder, "write_store", counting_write)
        build_embeddings(str(image_dir), str(tmp_path / "e.json"), ThumbnailExtractor(),
                         flush_every=2)
        assert writes == [2, 4, 4]

    def test_dimension_change_rejected(self, image_dir, tmp_path):
        class WideExtractor(ThumbnailExtractor):
            def embed(self, image):
                return np.tile(super().embed(image), 2)

        output = str(tmp_path / "embeddings.json")
        write_image(image_dir / "extra" / "A.png", 7)
        build_embeddings(str(image_dir / "extra"), output, ThumbnailExtractor())

        summary = build_embeddings(str(image_dir), output, WideExtractor())

        assert summary["processed"] == 0
        assert summary["errors"] == 4
        assert not summary["success"]
        records = read_store(output)
        assert [r.code for r in records] == ["A"]
        assert {r.embedding.shape[0] for r in records} == {64}

    def test_malformed_record_keeps_rest_of_store(self, image_dir, tmp_path):
        output = tmp_path / "embeddings.json"
        kept = [{"code": f"GONE{i}", "image": f"/images/GONE{i}.jpg",
                 "embedding": [float(i + 1)] * 64} for i in range(3)]
        output.write_text(json.dumps(kept + [{"code": "BAD", "image": "/x.jpg", "embedding": []}]))

        summary = build_embeddings(str(image_dir), str(output), ThumbnailExtractor())

        codes = {r.code for r in read_store(str(output))}
        assert summary["processed"] == 4
        assert {"GONE0", "GONE1", "GONE2"} <= codes
        assert "BAD" not in codes
        assert len(codes) == 7
