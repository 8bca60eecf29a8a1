"""
Exceptions raised by the profile matching pipeline.

Load-time failures (extractor, corpus) are fatal for matching and must
reach the caller as errors, never as an empty result list. An empty
match list only ever means the query ran and nothing ranked.
"""


class ProfileSearchError(Exception):
    """Base exception for all profile_search errors."""
    pass


class ExtractorUnavailableError(ProfileSearchError):
    """
    The feature extractor could not be loaded.

    Raised when:
    - Backbone weights are missing or fail to download
    - The model factory raises during construction
    """
    pass


class CorpusUnavailableError(ProfileSearchError):
    """
    The embedding store could not be loaded.

    Raised when:
    - The store file does not exist or cannot be read
    - The file is not a JSON array of records
    - A record is missing code/image/embedding
    - Embeddings are malformed or have inconsistent dimensions
    """

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class InvalidEmbeddingError(ProfileSearchError, ValueError):
    """An embedding is empty, not one-dimensional, or contains NaN/Inf."""
    pass
