"""Tests for manual code entry."""

import numpy as np

from profile_search.exemplars import ExemplarCommitter, ExemplarRegistry, LocalExemplarSync
from profile_search.linking import (
    commit_manual_entry, link_manual_code, match_manual_code, normalize_code,
)
from profile_search.scoring import MatchSource


class TestNormalizeCode:
    """Tests for numeric-core normalization."""

    def test_strips_dots(self):
        assert normalize_code("10.008") == "10008"

    def test_strips_letters(self):
        assert normalize_code("P10008X") == "10008"

    def test_strips_whitespace(self):
        assert normalize_code(" 10 008 ") == "10008"

    def test_keeps_other_separators(self):
        assert normalize_code("10-008") == "10-008"


class TestLinkManualCode:
    """Tests for resolving typed codes."""

    def test_variants_reconcile(self):
        codes = ["10.008", "20.001"]
        for entry in ("10.008", "10008", "P10008"):
            assert match_manual_code(entry, codes) == ["10.008"]

    def test_single_match_commits_directly(self):
        result = link_manual_code("10008", ["10.008", "20.001"])
        assert result.code == "10.008"
        assert result.candidates == []
        assert not result.ambiguous
        assert result.found

    def test_ambiguous_returns_candidates(self):
        result = link_manual_code("10.008", ["10008", "P10008X", "20001"])
        assert result.code is None
        assert result.ambiguous
        assert [c.code for c in result.candidates] == ["10008", "P10008X"]
        assert all(c.score == 1.0 for c in result.candidates)
        assert all(c.matched_against is MatchSource.MANUAL for c in result.candidates)

    def test_no_match(self):
        result = link_manual_code("99999", ["10008"])
        assert result.code is None
        assert result.candidates == []
        assert not result.found

    def test_entry_without_digits_matches_nothing(self):
        assert match_manual_code("abc", ["X", "Y.Z"]) == []


class TestCommitManualEntry:
    """Tests for committing a capture via a typed code."""

    def test_commits_unambiguous(self, tmp_path, red_square_image):
        registry = ExemplarRegistry()
        committer = ExemplarCommitter(registry, LocalExemplarSync(str(tmp_path)))

        result = commit_manual_entry(committer, "10008", ["10.008"],
                                     np.array([1.0, 0.0]), red_square_image)
        assert result.code == "10.008"
        assert len(registry.get("10.008")) == 1

    def test_ambiguous_does_not_commit(self, tmp_path, red_square_image):
        registry = ExemplarRegistry()
        sync = LocalExemplarSync(str(tmp_path))
        committer = ExemplarCommitter(registry, sync)

        result = commit_manual_entry(committer, "10.008", ["10008", "P10008X"],
                                     np.array([1.0, 0.0]), red_square_image)
        assert result.ambiguous
        assert len(registry) == 0
        assert sync.fetch_all() == []
