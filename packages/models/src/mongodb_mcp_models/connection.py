"""Managed cluster connection models."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AtlasClusterConnectionInfo(BaseModel):
    """Identifies a managed cluster reached through a provisioned temporary user."""

    model_config = ConfigDict(frozen=True)

    project_id: str = Field(..., description="Project (group) id owning the cluster")
    cluster_name: str = Field(..., description="Cluster name inside the project")
    username: str = Field(..., description="Temporary database user created for this connection")
    expiry_date: datetime = Field(..., description="When the temporary user is deleted remotely")
