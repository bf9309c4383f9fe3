"""Backup and restore of Infrahub graph and task manager databases."""

from .manager import BackupManager
from .models import BackupMetadata, BackupResult, EditionInfo, Neo4jEdition

__all__ = ["BackupManager", "BackupMetadata", "BackupResult", "EditionInfo", "Neo4jEdition"]
