"""Kubernetes execution backend driven through ``kubectl``."""

import shlex
from typing import Dict, List, Optional, Sequence

from .._executor import CommandExecutor
from .._utils import logger, non_empty_lines
from ..config import InfrahubOpsConfig
from ..exceptions import CommandError, EnvironmentNotFoundError, PrerequisiteError, ServiceResolutionError
from .base import ExecOptions, ExecutionBackend, select_single_target

INFRAHUB_SELECTOR = "app.kubernetes.io/name=infrahub"

POD_NAMES_JSONPATH = 'jsonpath={range .items[*]}{.metadata.name}{"\\n"}{end}'
POD_PHASES_JSONPATH = 'jsonpath={range .items[*]}{.status.phase}{"\\n"}{end}'
POD_NAME_PHASE_JSONPATH = 'jsonpath={range .items[*]}{.metadata.name}{";"}{.status.phase}{"\\n"}{end}'
POD_NAMESPACES_JSONPATH = 'jsonpath={range .items[*]}{.metadata.namespace}{"\\n"}{end}'

# Chart-specific labels, tried before the generic candidates
SERVICE_SELECTORS: Dict[str, List[str]] = {
    "database": ["app.kubernetes.io/name=neo4j"],
    "task-manager-db": ["app.kubernetes.io/name=postgresql"],
    "cache": ["app.kubernetes.io/name=redis"],
    "message-queue": ["app.kubernetes.io/name=rabbitmq"],
    "task-worker": ["app.kubernetes.io/component=infrahub-task-worker"],
    "task-manager": ["app.kubernetes.io/component=task-manager"],
}


def pod_selectors(service: str) -> List[str]:
    """Label selector candidates for a logical service, in priority order."""
    candidates = [
        *SERVICE_SELECTORS.get(service, []),
        f"app.kubernetes.io/component={service}",
        f"app.kubernetes.io/name={service}",
        f"app={service}",
    ]
    return list(dict.fromkeys(candidates))


def prepare_command(command: Sequence[str], opts: Optional[ExecOptions]) -> List[str]:
    """Apply env overrides and user switch; ``kubectl exec`` supports neither."""
    final = list(command)
    if opts is None:
        return final
    if opts.env:
        final = ["env", *[f"{key}={value}" for key, value in opts.env.items()], *final]
    if opts.user:
        final = ["su", "-s", "/bin/sh", opts.user, "-c", shlex.join(final)]
    return final


async def list_kubernetes_namespaces(executor: CommandExecutor) -> List[str]:
    """List namespaces running Infrahub pods."""
    output = await executor.run_command(
        "kubectl", "get", "pods", "-A", "-l", INFRAHUB_SELECTOR, "-o", POD_NAMESPACES_JSONPATH
    )
    return sorted(set(non_empty_lines(output)))


class KubernetesBackend(ExecutionBackend):
    """Target an Infrahub deployment running in a Kubernetes namespace."""

    name = "kubernetes"

    def __init__(self, config: InfrahubOpsConfig, executor: CommandExecutor):
        self.config = config
        self.executor = executor
        self.namespace: Optional[str] = None
        self._pod_cache: Dict[str, str] = {}
        self._controller_cache: Dict[str, str] = {}

    @property
    def info(self) -> str:
        return self.namespace or ""

    async def detect(self) -> None:
        if self.namespace:
            return

        try:
            await self.executor.run_command_quiet("kubectl", "version", "--client")
        except (CommandError, PrerequisiteError) as err:
            raise PrerequisiteError(f"kubectl CLI not available: {err}") from err

        if self.config.k8s_namespace:
            namespace = self.config.k8s_namespace
            try:
                await self.executor.run_command(
                    "kubectl", "get", "pods", "-n", namespace, "-l", INFRAHUB_SELECTOR
                )
            except CommandError as err:
                raise EnvironmentNotFoundError(f"failed to verify namespace {namespace}: {err}") from err
            self.namespace = namespace
        else:
            namespaces = await list_kubernetes_namespaces(self.executor)
            self.namespace = select_single_target(namespaces, "Kubernetes namespace", "INFRAHUB_K8S_NAMESPACE")

        logger.info(f"Using Kubernetes namespace: {self.namespace}")

    async def _first_match(self, resource: str, service: str, output_format: str) -> Optional[str]:
        """Resolve ``service`` to one resource name: first non-empty selector wins,
        then a substring match over every resource in the namespace."""
        for selector in pod_selectors(service):
            try:
                output = await self.executor.run_command(
                    "kubectl", "get", resource, "-n", self.namespace, "-l", selector, "-o", output_format
                )
            except CommandError:
                continue
            names = non_empty_lines(output)
            if names:
                return names[0]

        output = await self.executor.run_command(
            "kubectl", "get", resource, "-n", self.namespace, "-o", output_format
        )
        for name in non_empty_lines(output):
            if service in name.rsplit("/", 1)[-1]:
                return name
        return None

    async def _pod_for_service(self, service: str) -> str:
        pod = self._pod_cache.get(service)
        if pod:
            return pod

        pod = await self._first_match("pods", service, POD_NAMES_JSONPATH)
        if pod is None:
            raise ServiceResolutionError(f"no pods found for service {service} in namespace {self.namespace}")
        self._pod_cache[service] = pod
        return pod

    async def _controller_for_service(self, service: str) -> str:
        controller = self._controller_cache.get(service)
        if controller:
            return controller

        controller = await self._first_match("deployments,statefulsets", service, "name")
        if controller is None:
            raise ServiceResolutionError(
                f"no deployment or statefulset found for service {service} in namespace {self.namespace}"
            )
        self._controller_cache[service] = controller
        return controller

    async def _exec_args(self, service: str, command: Sequence[str], opts: Optional[ExecOptions]) -> List[str]:
        pod = await self._pod_for_service(service)
        return ["exec", "-n", self.namespace, pod, "--", *prepare_command(command, opts)]

    async def exec(self, service: str, command: Sequence[str], opts: Optional[ExecOptions] = None) -> str:
        args = await self._exec_args(service, command, opts)
        try:
            return await self.executor.run_command("kubectl", *args)
        except CommandError as err:
            raise CommandError(command, err.returncode, err.output, service=service) from err

    async def exec_stream(self, service: str, command: Sequence[str], opts: Optional[ExecOptions] = None) -> str:
        args = await self._exec_args(service, command, opts)
        try:
            return await self.executor.run_command_with_stream("kubectl", *args)
        except CommandError as err:
            raise CommandError(command, err.returncode, err.output, service=service) from err

    async def copy_to(self, service: str, src: str, dest: str) -> None:
        pod = await self._pod_for_service(service)
        await self.executor.run_command("kubectl", "cp", src, f"{self.namespace}/{pod}:{dest}")

    async def copy_from(self, service: str, src: str, dest: str) -> None:
        pod = await self._pod_for_service(service)
        await self.executor.run_command("kubectl", "cp", f"{self.namespace}/{pod}:{src}", dest)

    async def _scale(self, services: Sequence[str], replicas: int) -> None:
        for service in services:
            controller = await self._controller_for_service(service)
            logger.debug(f"Scaling {controller} to {replicas} replica(s)")
            await self.executor.run_command(
                "kubectl", "scale", "-n", self.namespace, controller, f"--replicas={replicas}"
            )

    async def start(self, *services: str) -> None:
        await self._scale(services, 1)

    async def stop(self, *services: str) -> None:
        await self._scale(services, 0)

    async def _pod_phases(self, service: str) -> List[str]:
        for selector in pod_selectors(service):
            try:
                output = await self.executor.run_command(
                    "kubectl", "get", "pods", "-n", self.namespace, "-l", selector, "-o", POD_PHASES_JSONPATH
                )
            except CommandError:
                continue
            phases = non_empty_lines(output)
            if phases:
                return phases

        output = await self.executor.run_command(
            "kubectl", "get", "pods", "-n", self.namespace, "-o", POD_NAME_PHASE_JSONPATH
        )
        phases = []
        for line in non_empty_lines(output):
            parts = line.split(";")
            if len(parts) == 2 and service in parts[0]:
                phases.append(parts[1])
        return phases

    async def is_running(self, service: str) -> bool:
        phases = await self._pod_phases(service)
        return any(phase.lower() == "running" for phase in phases)
