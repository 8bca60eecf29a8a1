"""
Catalog reference list and image path resolution.

The catalog is a JSON array of {code, image, category}. Matching only
needs the codes; the rest is for display and search.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reference:
    code: str
    image: str = ""
    category: str = ""


def load_catalog(path: str) -> List[Reference]:
    """
    Load the catalog reference list.

    Entries without a code are skipped with a warning.

    Raises:
        OSError: If the file can't be read.
        ValueError: If the file isn't a JSON array.
    """
    with open(path, 'r', encoding='utf-8') as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError(f"Catalog {path} must hold a JSON array")

    references = []
    for entry in entries:
        code = entry.get("code") if isinstance(entry, dict) else None
        if not code:
            logger.warning(f"Skipping catalog entry without code: {entry!r}")
            continue
        references.append(Reference(
            code=str(code),
            image=str(entry.get("image") or ""),
            category=str(entry.get("category") or ""),
        ))

    logger.info(f"Loaded {len(references)} catalog references from {path}")
    return references


def normalize_search_code(code: str) -> str:
    """Lower-cased code without dots or whitespace ("10.008" -> "10008")."""
    return "".join(ch for ch in code if ch != "." and not ch.isspace()).lower()


def filter_references(references: List[Reference],
                      term: str,
                      search_in_category: bool = True) -> List[Reference]:
    """
    Text search over the catalog.

    A reference matches when its code contains the term, its normalized
    code contains the normalized term, or (optionally) its category
    contains the term. Case-insensitive; a blank term returns everything.
    """
    if not term.strip():
        return list(references)

    term_lower = term.lower().strip()
    normalized = normalize_search_code(term)

    return [
        ref for ref in references
        if term_lower in ref.code.lower()
        or normalized in normalize_search_code(ref.code)
        or (search_in_category and term_lower in ref.category.lower())
    ]


def resolve_candidate_paths(code: str,
                            priority: str = "jpg",
                            user_image: Optional[str] = None) -> List[str]:
    """
    Ordered image URIs to try for a code until one loads.

    Args:
        code: Catalog code.
        priority: Preferred extension, "jpg" or "bmp".
        user_image: A user exemplar photo, tried first when given.

    Raises:
        ValueError: On an unknown priority.
    """
    if priority not in ("jpg", "bmp"):
        raise ValueError(f"Unknown image priority: {priority}")
    first, second = ("jpg", "bmp") if priority == "jpg" else ("bmp", "jpg")

    paths = [
        f"/images/perfiles/{code}.{first}",
        f"/images/perfiles/{code}.{second}",
        f"/images/{code}.{first}",
        f"/images/{code}.{second}",
    ]
    if user_image:
        paths.insert(0, user_image)
    return paths
