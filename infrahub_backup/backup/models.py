"""Data models for backup/restore operations."""

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TASK_MANAGER_COMPONENT = "task-manager-db"
TASK_MANAGER_DUMP = "prefect.dump"


class Neo4jEdition(str, Enum):
    COMMUNITY = "community"
    ENTERPRISE = "enterprise"


class EditionInfo(BaseModel):
    """Outcome of probing the running database edition."""

    model_config = ConfigDict(frozen=True)

    edition: Neo4jEdition
    detection_error: Optional[str] = None

    @property
    def is_community(self) -> bool:
        return self.edition == Neo4jEdition.COMMUNITY

    @property
    def detected(self) -> bool:
        return self.detection_error is None


class BackupMetadata(BaseModel):
    """Contents of ``backup_information.json``; field aliases are the wire format."""

    model_config = ConfigDict(populate_by_name=True)

    backup_id: str = Field(..., alias="backupID", description="Archive filename without extension")
    created_at: datetime = Field(..., alias="createdAt")
    tool_version: str = Field(..., alias="toolVersion")
    infrahub_version: str = Field(..., alias="infrahubVersion")
    neo4j_edition: Neo4jEdition = Field(..., alias="neo4jEdition")
    components: List[str] = Field(default_factory=list)
    checksums: Dict[str, str] = Field(
        default_factory=dict, description="Relative path to lowercase SHA-256 hex digest"
    )

    @field_validator("neo4j_edition", mode="before")
    @classmethod
    def normalize_edition(cls, v):
        """Edition names are case-insensitive on read."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def includes_task_manager(self) -> bool:
        """Either the component tag or a dump checksum marks the workflow store as included."""
        return TASK_MANAGER_COMPONENT in self.components or TASK_MANAGER_DUMP in self.checksums

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=4)


class BackupResult(BaseModel):
    """Outcome of a completed backup."""

    backup_path: Path
    size_bytes: int
    metadata: BackupMetadata
    s3_key: Optional[str] = None
