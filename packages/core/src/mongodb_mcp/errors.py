"""Error taxonomy shared by the connection, exports and search layers."""

from enum import IntEnum


class ErrorCode(IntEnum):
    NOT_CONNECTED = 1_000_000
    MISCONFIGURED_CONNECTION_STRING = 1_000_001
    AUTH_FLOW_FAILED = 1_000_002
    SEARCH_NOT_SUPPORTED = 1_000_004
    NO_EMBEDDINGS_PROVIDER_CONFIGURED = 1_000_005
    VECTOR_SEARCH_INDEX_NOT_FOUND = 1_000_006
    VECTOR_SEARCH_INVALID_QUERY = 1_000_007
    EXPORT_CONFLICT = 1_000_100
    EXPORT_NOT_FOUND = 1_000_101
    EXPORT_IN_PROGRESS = 1_000_102
    EXPORTS_CLOSED = 1_000_103


class MongoMCPError(Exception):
    """Base error carrying a stable code for the tool layer."""

    code: ErrorCode = ErrorCode.NOT_CONNECTED

    def __init__(self, message: str, code: ErrorCode | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(MongoMCPError):
    """The connection target is malformed; the user has to fix the input."""

    code = ErrorCode.MISCONFIGURED_CONNECTION_STRING


class NotConnectedError(MongoMCPError):
    """No live connection is available for the requested operation."""

    code = ErrorCode.NOT_CONNECTED


class AuthFlowError(MongoMCPError):
    """An OIDC device or browser login failed or is still pending."""

    code = ErrorCode.AUTH_FLOW_FAILED


class ResourceExhaustedError(MongoMCPError):
    """An export could not be created or found."""


class ExportExistsError(ResourceExhaustedError):
    code = ErrorCode.EXPORT_CONFLICT


class ExportNotFoundError(ResourceExhaustedError):
    code = ErrorCode.EXPORT_NOT_FOUND


class ExportInProgressError(ResourceExhaustedError):
    code = ErrorCode.EXPORT_IN_PROGRESS


class ExportsClosedError(MongoMCPError):
    code = ErrorCode.EXPORTS_CLOSED


class ValidationError(MongoMCPError):
    """One or more documents carry embeddings incompatible with their vector index."""

    code = ErrorCode.VECTOR_SEARCH_INVALID_QUERY


class SearchNotSupportedError(MongoMCPError):
    code = ErrorCode.SEARCH_NOT_SUPPORTED


class VectorSearchIndexNotFoundError(MongoMCPError):
    code = ErrorCode.VECTOR_SEARCH_INDEX_NOT_FOUND


class NoEmbeddingsProviderError(MongoMCPError):
    code = ErrorCode.NO_EMBEDDINGS_PROVIDER_CONFIGURED
