"""Execution backends for Docker Compose and Kubernetes deployments."""

from .base import ExecOptions, ExecutionBackend
from .factory import EnvironmentFactory

__all__ = ["ExecOptions", "ExecutionBackend", "EnvironmentFactory"]
