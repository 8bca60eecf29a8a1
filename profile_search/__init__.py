"""
profile_search: visual reference matching for profile catalogs.

Identifies a photographed part (profile/extrusion) by comparing its
image embedding, as captured and mirrored, against precomputed catalog
embeddings and user-contributed exemplars.

Modules:
    engine          SimilarityEngine and load-once MatchingResources
    scoring         Cosine similarity, candidate ranking
    corpus          Embedding store I/O and flat similarity scan
    index_builder   Incremental embedding store construction
    extractor       MobileNetV2 feature extractor
    preprocessing   Decoding, cropping, resizing, mirroring
    live            Live camera comparison loop
    exemplars       User exemplar sets and cross-device sync
    linking         Manual code entry and disambiguation
    catalog         Catalog references and image path resolution
    cli             Offline index/match commands
"""

__version__ = "1.0.0"
