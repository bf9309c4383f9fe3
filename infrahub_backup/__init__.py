"""Backup and restore tooling for Infrahub deployments."""

__version__ = "1.1.0"
__author__ = "Infrahub Ops"
__url__ = "https://github.com/opsmill/infrahub-backup"

from .config import InfrahubOpsConfig
from .backup import BackupManager
from .environment import EnvironmentFactory, ExecOptions, ExecutionBackend

__all__ = [
    "InfrahubOpsConfig",
    "BackupManager",
    "EnvironmentFactory",
    "ExecOptions",
    "ExecutionBackend",
]
