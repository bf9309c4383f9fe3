"""Backend factory: pick and detect the execution backend for a deployment."""

import shutil
from typing import Callable, Dict, List, Optional, Tuple, Type

from .._executor import CommandExecutor
from .._utils import logger
from ..config import InfrahubOpsConfig
from ..exceptions import CommandError, EnvironmentNotFoundError, PrerequisiteError
from .base import ExecutionBackend


class EnvironmentFactory:
    """Factory for creating execution backends with registration and detection."""

    _backends: Dict[str, Callable[[], Type[ExecutionBackend]]] = {}

    ALLOWED_BACKENDS = {"docker", "kubernetes"}
    # Auto-detection order when no target is configured
    DETECTION_ORDER = ("docker", "kubernetes")
    BACKEND_CLIS = {"docker": "docker", "kubernetes": "kubectl"}

    def __init__(self, config: InfrahubOpsConfig, executor: Optional[CommandExecutor] = None):
        self.config = config
        self.executor = executor or CommandExecutor()

    @classmethod
    def register_backend(cls, name: str, backend_loader: Callable[[], Type[ExecutionBackend]]) -> None:
        """Register an execution backend.

        Args:
            name: Backend name (must be in ALLOWED_BACKENDS)
            backend_loader: Function that returns the backend class

        Raises:
            ValueError: If backend name not in allowed list
        """
        if name not in cls.ALLOWED_BACKENDS:
            raise ValueError(f"Backend {name} not in allowed backends: {cls.ALLOWED_BACKENDS}")
        cls._backends[name] = backend_loader

    def create_backend(self, name: str) -> ExecutionBackend:
        """Instantiate (without detecting) the named backend."""
        if name not in self._backends:
            _register_backends()
            if name not in self._backends:
                raise ValueError(f"Unknown backend: {name}. Available: {list(self._backends.keys())}")
        backend_class = self._backends[name]()
        return backend_class(self.config, self.executor)

    def check_prerequisites(self) -> None:
        """Require at least one orchestrator CLI on PATH."""
        if not any(shutil.which(cli) for cli in self.BACKEND_CLIS.values()):
            raise PrerequisiteError("neither docker nor kubectl is available on PATH")

    async def detect_environment(self) -> ExecutionBackend:
        """Return the detected backend for the configured or discovered deployment.

        An explicit namespace selects Kubernetes, an explicit project selects
        Docker Compose. Otherwise each backend is tried in DETECTION_ORDER and
        the first that finds exactly one deployment wins. Ambiguity is never
        resolved by falling through to the next backend.
        """
        self.check_prerequisites()

        if self.config.k8s_namespace:
            return await self._detect("kubernetes")
        if self.config.compose_project:
            return await self._detect("docker")

        for name in self.DETECTION_ORDER:
            if shutil.which(self.BACKEND_CLIS[name]) is None:
                continue
            try:
                return await self._detect(name)
            except (EnvironmentNotFoundError, PrerequisiteError, CommandError) as err:
                logger.debug(f"No Infrahub deployment found with {name}: {err}")

        raise EnvironmentNotFoundError(
            "no Infrahub deployment found (set INFRAHUB_PROJECT or INFRAHUB_K8S_NAMESPACE)"
        )

    async def _detect(self, name: str) -> ExecutionBackend:
        backend = self.create_backend(name)
        await backend.detect()
        logger.info(f"Detected {backend.name} environment: {backend.info}")
        return backend

    async def list_environments(self) -> Tuple[List[str], List[str]]:
        """List Docker Compose projects and Kubernetes namespaces running Infrahub.

        A missing or failing CLI yields an empty list for that backend.
        """
        from .docker import list_docker_projects
        from .kubernetes import list_kubernetes_namespaces

        results = []
        for lister in (list_docker_projects, list_kubernetes_namespaces):
            try:
                results.append(await lister(self.executor))
            except (CommandError, PrerequisiteError) as err:
                logger.debug(f"Environment listing failed: {err}")
                results.append([])
        return results[0], results[1]


def _register_backends():
    """Register built-in backends with lazy loaders."""

    def load_docker():
        from .docker import DockerComposeBackend
        return DockerComposeBackend

    def load_kubernetes():
        from .kubernetes import KubernetesBackend
        return KubernetesBackend

    EnvironmentFactory.register_backend("docker", load_docker)
    EnvironmentFactory.register_backend("kubernetes", load_kubernetes)


_register_backends()
