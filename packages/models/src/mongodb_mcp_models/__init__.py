"""Shared Pydantic models for mongodb-mcp."""

from mongodb_mcp_models.connection import AtlasClusterConnectionInfo
from mongodb_mcp_models.exports import AvailableExport, JSONExportFormat
from mongodb_mcp_models.search import (
    EmbeddingValidationFailure,
    EmbeddingValidationFailureKind,
    Quantization,
    Similarity,
    VectorFieldIndexDefinition,
)

__version__ = "0.1.0"

__all__ = [
    # Connection
    "AtlasClusterConnectionInfo",
    # Exports
    "AvailableExport",
    "JSONExportFormat",
    # Vector search
    "EmbeddingValidationFailure",
    "EmbeddingValidationFailureKind",
    "Quantization",
    "Similarity",
    "VectorFieldIndexDefinition",
]
