"""Configuration management for infrahub-backup."""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .exceptions import ConfigurationError


NEO4J_BACKUP_METADATA_CHOICES = ("all", "users", "roles", "none")
LOG_FORMATS = ("text", "json")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Neo4jConfig:
    """Credentials and options for the graph database."""
    username: str = "neo4j"
    password: str = "admin"
    database: str = "neo4j"
    backup_metadata: str = "all"  # all, users, roles, none

    @classmethod
    def from_env(cls) -> 'Neo4jConfig':
        """Create config from environment variables."""
        return cls(
            username=os.getenv("INFRAHUB_DB_USERNAME", "neo4j"),
            password=os.getenv("INFRAHUB_DB_PASSWORD", "admin"),
            database=os.getenv("INFRAHUB_DB_DATABASE", "neo4j"),
            backup_metadata=os.getenv("INFRAHUB_DB_BACKUP_METADATA", "all"),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.backup_metadata not in NEO4J_BACKUP_METADATA_CHOICES:
            raise ValueError(
                f"backup_metadata must be one of {NEO4J_BACKUP_METADATA_CHOICES}, got {self.backup_metadata}"
            )

    @property
    def shell_env(self) -> Dict[str, str]:
        """Environment read by ``cypher-shell`` in place of ``-u``/``-p`` flags."""
        return {"NEO4J_USERNAME": self.username, "NEO4J_PASSWORD": self.password}


@dataclass(frozen=True)
class TaskManagerDBConfig:
    """Connection settings for the task manager (Prefect) PostgreSQL database."""
    username: str = "postgres"
    password: str = "postgres"
    database: str = "prefect"

    @classmethod
    def from_env(cls) -> 'TaskManagerDBConfig':
        """Create config from environment variables."""
        return cls(
            username=os.getenv("INFRAHUB_TASK_MANAGER_DB_USERNAME", "postgres"),
            password=os.getenv("INFRAHUB_TASK_MANAGER_DB_PASSWORD", "postgres"),
            database=os.getenv("INFRAHUB_TASK_MANAGER_DB_DATABASE", "prefect"),
        )


@dataclass(frozen=True)
class S3Config:
    """Object storage destination for finished backups."""
    bucket: Optional[str] = None
    endpoint: Optional[str] = None  # set for MinIO and other S3-compatible services
    region: str = "us-east-1"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'S3Config':
        """Create config from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET") or None,
            endpoint=os.getenv("S3_ENDPOINT") or None,
            region=os.getenv("S3_REGION") or "us-east-1",
            access_key_id=os.getenv("S3_ACCESS_KEY_ID") or None,
            secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY") or None,
        )

    def validate(self) -> None:
        """Ensure everything needed for an upload is present.

        Raises:
            ConfigurationError: Naming the first missing setting
        """
        if not self.bucket:
            raise ConfigurationError("S3 bucket not configured (set S3_BUCKET environment variable)")
        if not self.access_key_id:
            raise ConfigurationError("S3 access key ID not configured (set S3_ACCESS_KEY_ID environment variable)")
        if not self.secret_access_key:
            raise ConfigurationError("S3 secret key not configured (set S3_SECRET_ACCESS_KEY environment variable)")


@dataclass(frozen=True)
class InfrahubOpsConfig:
    """Top-level configuration, built once at startup and passed explicitly."""
    backup_dir: str = "./infrahub_backups"
    compose_project: Optional[str] = None
    k8s_namespace: Optional[str] = None
    s3_upload: bool = False
    log_format: str = "text"
    quiesce_delay: float = 10.0
    task_wait_timeout: float = 300.0
    watchdog_asset_dir: Optional[str] = None

    neo4j: Neo4jConfig = field(default_factory=Neo4jConfig)
    task_manager_db: TaskManagerDBConfig = field(default_factory=TaskManagerDBConfig)
    s3: S3Config = field(default_factory=S3Config)

    @classmethod
    def from_env(cls) -> 'InfrahubOpsConfig':
        """Create complete config from environment variables."""
        return cls(
            backup_dir=os.getenv("INFRAHUB_BACKUP_DIR", "./infrahub_backups"),
            compose_project=os.getenv("INFRAHUB_PROJECT") or None,
            k8s_namespace=os.getenv("INFRAHUB_K8S_NAMESPACE") or None,
            s3_upload=_env_bool("INFRAHUB_S3_UPLOAD"),
            log_format=os.getenv("INFRAHUB_LOG_FORMAT", "text").lower(),
            quiesce_delay=float(os.getenv("INFRAHUB_QUIESCE_DELAY", "10")),
            task_wait_timeout=float(os.getenv("INFRAHUB_TASK_WAIT_TIMEOUT", "300")),
            watchdog_asset_dir=os.getenv("INFRAHUB_WATCHDOG_DIR") or None,
            neo4j=Neo4jConfig.from_env(),
            task_manager_db=TaskManagerDBConfig.from_env(),
            s3=S3Config.from_env(),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.quiesce_delay < 0:
            raise ValueError(f"quiesce_delay must be non-negative, got {self.quiesce_delay}")
        if self.task_wait_timeout <= 0:
            raise ValueError(f"task_wait_timeout must be positive, got {self.task_wait_timeout}")
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format}")
