from mongodb_mcp.search.embeddings import (
    VectorSearchEmbeddingsManager,
    is_number,
    namespace_key,
    validation_error_for_document,
)
from mongodb_mcp.search.providers import (
    DEFAULT_VOYAGE_MODEL,
    EmbeddingsProvider,
    VoyageEmbeddingsProvider,
    get_embeddings_provider,
)

__all__ = [
    "DEFAULT_VOYAGE_MODEL",
    "EmbeddingsProvider",
    "VectorSearchEmbeddingsManager",
    "VoyageEmbeddingsProvider",
    "get_embeddings_provider",
    "is_number",
    "namespace_key",
    "validation_error_for_document",
]
