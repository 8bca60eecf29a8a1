"""
Offline entry points.

    profile-search index --images public/images --output public/embeddings.json
    profile-search match photo.jpg --embeddings public/embeddings.json --target 10.008
"""

import sys
import argparse
import logging

from .engine import MatchingResources, SimilarityEngine, default_extractor_factory
from .errors import ExtractorUnavailableError, ProfileSearchError
from .index_builder import build_embeddings
from .preprocessing import load_image, prepare_query
from .scoring import rank_of

logger = logging.getLogger(__name__)


def _index(args) -> int:
    try:
        extractor = default_extractor_factory()
    except Exception as e:
        raise ExtractorUnavailableError(f"Feature extractor failed to load: {e}") from e
    summary = build_embeddings(
        args.images, args.output, extractor,
        public_root=args.public_root, flush_every=args.flush_every,
    )
    print(
        f"{summary['records']} records in {summary['output_path']} "
        f"({summary['processed']} new, {summary['skipped']} skipped, {summary['errors']} errors)"
    )
    return 0 if summary["success"] else 1


def _match(args) -> int:
    engine = SimilarityEngine(MatchingResources(args.embeddings))
    try:
        query = prepare_query(load_image(args.image), args.crop)
    except ValueError as e:
        logger.error(f"Could not prepare query image {args.image}: {e}")
        return 2

    # Ranking the whole corpus when a target is given so its rank is known
    limit = None
    if args.target:
        _, corpus = engine.resources.ensure_loaded()
        limit = len(corpus)
    result = engine.find_matches(query, limit=limit or args.limit, mirror=not args.no_mirror)

    for i, match in enumerate(result.matches[:args.limit], start=1):
        flag = " (mirrored)" if match.is_flipped else ""
        print(f"#{i}: {match.code} (Score: {match.score:.4f}){flag}")

    if args.target:
        rank = rank_of(result.matches, args.target)
        if rank is None:
            print(f"TARGET '{args.target}' NOT FOUND in embeddings.")
        else:
            score = result.matches[rank - 1].score
            print(f"TARGET '{args.target}' found at rank #{rank} with score {score:.4f}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="profile-search",
                                     description="Visual reference matching for profile catalogs")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser("index", help="Build or extend the embedding store")
    p_index.add_argument("--images", required=True, help="Folder with catalog images")
    p_index.add_argument("--output", required=True, help="Embedding store JSON file")
    p_index.add_argument("--public-root", default=None,
                         help="Root for stored image paths (default: parent of --images)")
    p_index.add_argument("--flush-every", type=int, default=None, help="Flush cadence")
    p_index.set_defaults(func=_index)

    p_match = sub.add_parser("match", help="Rank catalog codes for one photo")
    p_match.add_argument("image", help="Photo of the part")
    p_match.add_argument("--embeddings", required=True, help="Embedding store JSON file")
    p_match.add_argument("--limit", type=int, default=10, help="Results to print")
    p_match.add_argument("--crop", type=float, default=None, help="Central crop fraction")
    p_match.add_argument("--no-mirror", action="store_true", help="Skip mirrored matching")
    p_match.add_argument("--target", default=None, help="Report the rank of this code")
    p_match.set_defaults(func=_match)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except ProfileSearchError as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
