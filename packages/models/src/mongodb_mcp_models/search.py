"""Vector search index models."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Quantization(str, Enum):
    NONE = "none"
    SCALAR = "scalar"
    BINARY = "binary"


class Similarity(str, Enum):
    EUCLIDEAN = "euclidean"
    COSINE = "cosine"
    DOT_PRODUCT = "dotProduct"


class VectorFieldIndexDefinition(BaseModel):
    """A single `vector` field of a vector search index definition."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    type: Literal["vector"] = "vector"
    path: str = Field(..., description="Dotted path of the embedding field")
    num_dimensions: int = Field(..., alias="numDimensions", gt=0)
    quantization: Quantization = Quantization.NONE
    similarity: Similarity = Similarity.EUCLIDEAN


EmbeddingValidationFailureKind = Literal["not-a-vector", "dimension-mismatch", "not-numeric"]


class EmbeddingValidationFailure(BaseModel):
    """A document field that does not match its vector index definition."""

    path: str
    expected_num_dimensions: int
    actual_num_dimensions: int | Literal["unknown"] = "unknown"
    error: EmbeddingValidationFailureKind = "not-a-vector"

    def describe(self) -> str:
        return (
            f"- Field {self.path} is an embedding with {self.expected_num_dimensions} dimensions,"
            f" and the provided value is not compatible. Actual dimensions: {self.actual_num_dimensions},"
            f" Error: {self.error}"
        )
