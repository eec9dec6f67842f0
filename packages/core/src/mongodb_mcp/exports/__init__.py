from mongodb_mcp.exports.manager import (
    CLOSED,
    EXPORT_AVAILABLE,
    EXPORT_EXPIRED,
    ExportsManager,
    ExportStatus,
    ReadExportResult,
    StoredExport,
    decode_and_normalize,
    ensure_extension,
    export_uri,
    is_export_expired,
)

__all__ = [
    "CLOSED",
    "EXPORT_AVAILABLE",
    "EXPORT_EXPIRED",
    "ExportStatus",
    "ExportsManager",
    "ReadExportResult",
    "StoredExport",
    "decode_and_normalize",
    "ensure_extension",
    "export_uri",
    "is_export_expired",
]
