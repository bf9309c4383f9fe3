"""Execution backend contract shared by Docker Compose and Kubernetes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..exceptions import AmbiguousEnvironmentError, EnvironmentNotFoundError


@dataclass
class ExecOptions:
    """Per-call options for a command run inside a service."""
    user: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


class ExecutionBackend(ABC):
    """Run commands and move files inside the services of one deployment.

    The orchestration code only ever talks to this interface, so backup and
    restore behave the same whichever orchestrator manages the deployment.
    """

    name: str = "base"

    @property
    @abstractmethod
    def info(self) -> str:
        """Resolved target identifier (compose project or namespace)."""

    @abstractmethod
    async def detect(self) -> None:
        """Locate the target deployment. Calling it again is a no-op."""

    @abstractmethod
    async def exec(self, service: str, command: Sequence[str], opts: Optional[ExecOptions] = None) -> str:
        """Run ``command`` inside ``service`` and return its output."""

    @abstractmethod
    async def exec_stream(self, service: str, command: Sequence[str], opts: Optional[ExecOptions] = None) -> str:
        """Like :meth:`exec`, logging output as it is produced."""

    @abstractmethod
    async def copy_to(self, service: str, src: str, dest: str) -> None:
        """Copy a local file or directory into ``service``."""

    @abstractmethod
    async def copy_from(self, service: str, src: str, dest: str) -> None:
        """Copy a file or directory out of ``service`` to the local filesystem."""

    @abstractmethod
    async def start(self, *services: str) -> None:
        pass

    @abstractmethod
    async def stop(self, *services: str) -> None:
        pass

    @abstractmethod
    async def is_running(self, service: str) -> bool:
        pass


def select_single_target(candidates: List[str], kind: str, hint: str) -> str:
    """Pick the only discovered deployment target.

    Raises:
        EnvironmentNotFoundError: If there are no candidates
        AmbiguousEnvironmentError: If there is more than one
    """
    if not candidates:
        raise EnvironmentNotFoundError(f"no Infrahub {kind} found")
    if len(candidates) > 1:
        raise AmbiguousEnvironmentError(kind, candidates, hint)
    return candidates[0]
