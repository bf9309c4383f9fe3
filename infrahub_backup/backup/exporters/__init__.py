"""Service exporters for backup/restore operations."""

from .neo4j_exporter import Neo4jExporter
from .taskmanager_exporter import TaskManagerExporter
from .watchdog import ProcessController

__all__ = ["Neo4jExporter", "TaskManagerExporter", "ProcessController"]
