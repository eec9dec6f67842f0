"""Configuration for mongodb-mcp."""

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mongodb_mcp.logs import redact


def _default_exports_path() -> str:
    return str(Path.home() / ".mongodb-mcp" / "exports")


class Settings(BaseSettings):
    """Application settings loaded from MDB_MCP_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MDB_MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # Connection
    # ==========================================================================

    connection_string: str = Field(
        default="",
        description="Connection string opened on startup (optional)",
    )
    connect_timeout_ms: int = Field(
        default=30_000,
        gt=0,
        description="Maximum time to wait for a non-OIDC connection to be established",
    )
    browser: str = Field(
        default="",
        description="Browser used for OIDC logins; when set, the verification page is opened",
    )

    # ==========================================================================
    # Exports
    # ==========================================================================

    exports_path: str = Field(
        default_factory=_default_exports_path,
        description="Folder to store exported data files",
    )
    export_timeout_ms: int = Field(
        default=300_000,
        gt=0,
        description="Time after which an export is expired and eligible for cleanup",
    )
    export_cleanup_interval_ms: int = Field(
        default=120_000,
        gt=0,
        description="Time between export cleanup cycles",
    )

    # ==========================================================================
    # Vector search
    # ==========================================================================

    embeddings_validation: bool = Field(
        default=True,
        description="When false, documents are not checked against vector index dimensions",
    )
    voyage_api_key: str = Field(
        default="",
        description="Voyage AI API key; enables generating embeddings from text",
    )
    voyage_api_url: str = Field(
        default="https://api.voyageai.com/v1/embeddings",
        description="Voyage AI embeddings endpoint",
    )
    vector_search_dimensions: int = Field(
        default=1024,
        gt=0,
        description="Default number of dimensions for generated embeddings",
    )

    # ==========================================================================
    # MCP server
    # ==========================================================================

    transport: Literal["stdio", "http"] = Field(
        default="stdio",
        description="MCP transport: 'stdio' for local, 'http' for remote",
    )
    http_host: str = Field(default="127.0.0.1", description="Host to bind MCP HTTP server")
    http_port: int = Field(default=3000, description="Port for MCP HTTP server")
    http_path: str = Field(default="/mcp", description="Path for MCP HTTP endpoint")
    log_level: str = Field(default="INFO", description="Root log level")
    idle_timeout_ms: int = Field(
        default=600_000,
        gt=0,
        description="Time after which an idle client session is closed",
    )
    session_cleanup_interval_ms: int = Field(
        default=60_000,
        gt=0,
        description="Time between idle session sweeps",
    )

    @field_validator("exports_path")
    @classmethod
    def expand_exports_path(cls, value: str) -> str:
        return str(Path(value).expanduser())

    def redacted(self) -> dict[str, Any]:
        """Settings safe to show to a client."""
        data = self.model_dump()
        if data["connection_string"]:
            data["connection_string"] = redact(data["connection_string"], None)
        if data["voyage_api_key"]:
            data["voyage_api_key"] = "<secret>"
        return data


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset cached settings (useful for testing)."""
    global _settings
    _settings = None
