"""Exported data models."""

from enum import Enum

from pydantic import BaseModel, Field


class JSONExportFormat(str, Enum):
    """Extended JSON flavour used when serializing exported documents."""

    RELAXED = "relaxed"
    CANONICAL = "canonical"


class AvailableExport(BaseModel):
    """Public projection of an export that is ready to be read."""

    export_name: str = Field(..., description="Normalized export name, including extension")
    export_title: str = Field(..., description="Human readable title")
    export_uri: str = Field(..., description="exported-data:// resource URI")
    export_path: str = Field(..., description="Location of the export on disk")
