"""
Manual linking of a capture to a typed catalog code.

Users type codes loosely ("10.008", "10008", "P10008"), so the typed
entry and every catalog code are reduced to their numeric core by
stripping dots, whitespace and letters. One hit is linked directly;
several hits are returned as candidates (score 1.0) for the user to
pick from, never guessed.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .scoring import MatchCandidate, MatchSource

logger = logging.getLogger(__name__)

MANUAL_SCORE = 1.0


def normalize_code(code: str) -> str:
    """Numeric core of a code: drop dots, whitespace and letters."""
    return "".join(ch for ch in code if not (ch.isalpha() or ch.isspace() or ch == "."))


def match_manual_code(entry: str, codes: Iterable[str]) -> List[str]:
    """
    Catalog codes whose numeric core equals the entry's.

    Returns:
        Matching codes in catalog order. Empty when the entry has no
        numeric core.
    """
    target = normalize_code(entry)
    if not target:
        return []
    return [code for code in codes if normalize_code(code) == target]


@dataclass(frozen=True)
class ManualLinkResult:
    """Outcome of a manual entry: one code to commit, or candidates to pick from."""
    entry: str
    code: Optional[str] = None
    candidates: List[MatchCandidate] = field(default_factory=list)

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1

    @property
    def found(self) -> bool:
        return self.code is not None or bool(self.candidates)


def link_manual_code(entry: str, codes: Iterable[str]) -> ManualLinkResult:
    """Resolve a typed code against the catalog."""
    matches = match_manual_code(entry, codes)

    if not matches:
        logger.info(f"Manual code {entry!r} matches no catalog code")
        return ManualLinkResult(entry=entry)
    if len(matches) == 1:
        return ManualLinkResult(entry=entry, code=matches[0])

    logger.info(f"Manual code {entry!r} is ambiguous: {', '.join(matches)}")
    return ManualLinkResult(
        entry=entry,
        candidates=[
            MatchCandidate(code=code, score=MANUAL_SCORE, matched_against=MatchSource.MANUAL)
            for code in matches
        ],
    )


def commit_manual_entry(committer, entry: str, codes: Iterable[str],
                        embedding, image) -> ManualLinkResult:
    """
    Link a capture to a typed code, committing only when unambiguous.

    Args:
        committer: ExemplarCommitter used for the commit.
        entry: Code as typed by the user.
        codes: Catalog codes.
        embedding: Embedding of the captured frame.
        image: Captured RGB photo.

    Returns:
        The link result; `code` is set only when a commit happened.
    """
    result = link_manual_code(entry, codes)
    if result.code is not None:
        committer.commit(result.code, embedding, image)
    return result
