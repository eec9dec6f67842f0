"""Validate documents against the vector search indexes of their collection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from bson.binary import Binary, BinaryVectorDtype
from bson.decimal128 import Decimal128
from mongodb_mcp_models import EmbeddingValidationFailure, VectorFieldIndexDefinition
from pydantic import ValidationError as PydanticValidationError

from mongodb_mcp.config import Settings
from mongodb_mcp.connection.manager import CONNECTION_CLOSE
from mongodb_mcp.connection.state import ConnectionStateConnected
from mongodb_mcp.errors import (
    NoEmbeddingsProviderError,
    SearchNotSupportedError,
    ValidationError,
    VectorSearchIndexNotFoundError,
)
from mongodb_mcp.search.providers import (
    DEFAULT_VOYAGE_MODEL,
    EmbeddingsProvider,
    get_embeddings_provider,
)

if TYPE_CHECKING:
    from mongodb_mcp.connection.manager import ConnectionManager

logger = logging.getLogger(__name__)

VECTOR_SEARCH_INDEX_TYPE = "vectorSearch"


def namespace_key(database: str, collection: str) -> str:
    return f"{database}.{collection}"


def is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float, Decimal128))


def _underlying_vector(value: Any) -> Sequence[Any] | None:
    if isinstance(value, Binary):
        try:
            vector = value.as_vector()
        except ValueError:
            return None
        if vector.dtype == BinaryVectorDtype.PACKED_BIT:
            # One element per bit, minus the padding in the last byte
            return [0] * (len(vector.data) * 8 - vector.padding)
        return vector.data
    if isinstance(value, (list, tuple)):
        return value
    return None


def _walk(document: Any, path: str) -> tuple[bool, Any]:
    ref = document
    for part in path.split("."):
        if isinstance(ref, Mapping) and part in ref:
            ref = ref[part]
        elif isinstance(ref, list) and part.isdigit() and int(part) < len(ref):
            ref = ref[int(part)]
        else:
            return False, None
    return True, ref


def validation_error_for_document(
    definition: VectorFieldIndexDefinition, document: Mapping[str, Any]
) -> EmbeddingValidationFailure | None:
    """Check one document field against its index definition.

    A document without the field is valid; the index simply skips it.
    """
    found, value = _walk(document, definition.path)
    if not found:
        return None

    vector = _underlying_vector(value)
    if vector is None:
        return EmbeddingValidationFailure(
            path=definition.path,
            expected_num_dimensions=definition.num_dimensions,
            error="not-a-vector",
        )
    if len(vector) != definition.num_dimensions:
        return EmbeddingValidationFailure(
            path=definition.path,
            expected_num_dimensions=definition.num_dimensions,
            actual_num_dimensions=len(vector),
            error="dimension-mismatch",
        )
    if not all(is_number(element) for element in vector):
        return EmbeddingValidationFailure(
            path=definition.path,
            expected_num_dimensions=definition.num_dimensions,
            actual_num_dimensions=len(vector),
            error="not-numeric",
        )
    return None


class VectorSearchEmbeddingsManager:
    """Per-namespace cache of vector index fields for the current connection.

    The whole cache is dropped whenever the connection closes, since the next
    connection may point at a cluster with different indexes.
    """

    def __init__(
        self,
        settings: Settings,
        connection_manager: ConnectionManager,
        embeddings: dict[str, list[VectorFieldIndexDefinition]] | None = None,
        embeddings_provider: EmbeddingsProvider | None = None,
    ):
        self._settings = settings
        self._connection_manager = connection_manager
        self._embeddings_provider = embeddings_provider or get_embeddings_provider(settings)
        self._embeddings: dict[str, list[VectorFieldIndexDefinition]] = (
            embeddings if embeddings is not None else {}
        )
        connection_manager.events.on(CONNECTION_CLOSE, self._on_connection_close)

    def _on_connection_close(self, *_: Any) -> None:
        self._embeddings.clear()

    def cleanup_embeddings_for_namespace(self, database: str, collection: str) -> None:
        self._embeddings.pop(namespace_key(database, collection), None)

    def cached_namespaces(self) -> list[str]:
        return list(self._embeddings)

    async def _search_enabled_state(self) -> ConnectionStateConnected | None:
        state = self._connection_manager.current_connection_state
        if isinstance(state, ConnectionStateConnected) and await state.is_search_supported():
            return state
        return None

    async def index_exists(self, database: str, collection: str, index_name: str) -> bool:
        state = await self._search_enabled_state()
        if state is None:
            return False
        indexes = await state.service_provider.get_search_indexes(database, collection, index_name)
        return len(indexes) >= 1

    async def embeddings_for_namespace(
        self, database: str, collection: str
    ) -> list[VectorFieldIndexDefinition]:
        """Vector fields indexed on ``database.collection``.

        Empty when not connected, when search is unsupported, or when
        validation is turned off.
        """
        state = await self._search_enabled_state()
        if state is None or not self._settings.embeddings_validation:
            return []

        key = namespace_key(database, collection)
        cached = self._embeddings.get(key)
        if cached is not None:
            return cached

        indexes = await state.service_provider.get_search_indexes(database, collection)
        fields: list[VectorFieldIndexDefinition] = []
        for index in indexes:
            if index.get("type") != VECTOR_SEARCH_INDEX_TYPE:
                continue
            for field in (index.get("latestDefinition") or {}).get("fields") or []:
                if not isinstance(field, Mapping) or field.get("type") != "vector":
                    continue
                try:
                    fields.append(VectorFieldIndexDefinition.model_validate(field))
                except PydanticValidationError as e:
                    logger.debug(f"Skipping malformed vector field in {key}: {e}")

        # The connection may have closed while listing indexes
        if self._connection_manager.current_connection_state is state:
            self._embeddings[key] = fields
        return fields

    async def find_fields_with_wrong_embeddings(
        self, database: str, collection: str, document: Mapping[str, Any]
    ) -> list[EmbeddingValidationFailure]:
        if not self._settings.embeddings_validation:
            return []
        definitions = await self.embeddings_for_namespace(database, collection)
        failures = []
        for definition in definitions:
            failure = validation_error_for_document(definition, document)
            if failure is not None:
                failures.append(failure)
        return failures

    async def assert_fields_have_correct_embeddings(
        self, database: str, collection: str, documents: Sequence[Mapping[str, Any]]
    ) -> None:
        """Raise one ``ValidationError`` listing every incompatible embedding in ``documents``."""
        results = await asyncio.gather(
            *(self.find_fields_with_wrong_embeddings(database, collection, doc) for doc in documents)
        )
        failures = [failure for result in results for failure in result]
        if failures:
            raise ValidationError("\n".join(failure.describe() for failure in failures))

    async def generate_embeddings(
        self,
        raw_values: Sequence[str],
        embedding_parameters: Mapping[str, Any] | None = None,
        input_type: str = "query",
    ) -> list[list[Any]]:
        """Embed ``raw_values`` with the configured provider.

        ``embedding_parameters`` may name a ``model``; the rest is passed to
        the provider and overrides ``input_type``.

        Raises:
            SearchNotSupportedError: Not connected to a cluster with search support.
            NoEmbeddingsProviderError: No provider is configured.
        """
        if await self._search_enabled_state() is None:
            raise SearchNotSupportedError("Atlas Search is not supported in this cluster.")
        if self._embeddings_provider is None:
            raise NoEmbeddingsProviderError("No embeddings provider configured.")

        parameters: dict[str, Any] = {
            "input_type": input_type,
            "output_dimension": self._settings.vector_search_dimensions,
            **(embedding_parameters or {}),
        }
        model = parameters.pop("model", None) or DEFAULT_VOYAGE_MODEL
        return await self._embeddings_provider.embed(model, list(raw_values), parameters)

    async def assert_vector_search_index_exists(
        self, database: str, collection: str, path: str
    ) -> None:
        definitions = await self.embeddings_for_namespace(database, collection)
        if not any(definition.path == path for definition in definitions):
            raise VectorSearchIndexNotFoundError(
                f'No Vector Search index found for path "{path}" in namespace '
                f'"{namespace_key(database, collection)}"'
            )
