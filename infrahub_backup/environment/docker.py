"""Docker Compose execution backend."""

from typing import Dict, List, Optional, Sequence

from .._executor import CommandExecutor
from .._utils import logger, non_empty_lines
from ..config import InfrahubOpsConfig
from ..exceptions import CommandError, EnvironmentNotFoundError, PrerequisiteError, ServiceResolutionError
from .base import ExecOptions, ExecutionBackend, select_single_target

INFRAHUB_SERVICE_LABEL = "com.docker.compose.service=infrahub-server"


async def list_docker_projects(executor: CommandExecutor) -> List[str]:
    """List compose projects that contain an Infrahub server container."""
    output = await executor.run_command(
        "docker", "ps", "-a",
        "--filter", f"label={INFRAHUB_SERVICE_LABEL}",
        "--format", '{{.Label "com.docker.compose.project"}}',
    )
    return sorted(set(non_empty_lines(output)))


class DockerComposeBackend(ExecutionBackend):
    """Target an Infrahub deployment managed by ``docker compose``."""

    name = "docker"

    def __init__(self, config: InfrahubOpsConfig, executor: CommandExecutor):
        self.config = config
        self.executor = executor
        self.project: Optional[str] = None
        self._container_cache: Dict[str, str] = {}

    @property
    def info(self) -> str:
        return self.project or ""

    async def detect(self) -> None:
        if self.project:
            return

        try:
            await self.executor.run_command_quiet("docker", "compose", "version")
        except (CommandError, PrerequisiteError) as err:
            raise PrerequisiteError(f"docker compose CLI not available: {err}") from err

        projects = await list_docker_projects(self.executor)

        if self.config.compose_project:
            if self.config.compose_project not in projects:
                raise EnvironmentNotFoundError(
                    f"Docker Compose project {self.config.compose_project} does not run Infrahub"
                )
            self.project = self.config.compose_project
        else:
            self.project = select_single_target(projects, "Docker Compose project", "INFRAHUB_PROJECT")

        logger.info(f"Using Docker Compose project: {self.project}")

    def _compose(self, *args: str) -> List[str]:
        return ["compose", "-p", self.project, *args]

    async def _container_for_service(self, service: str) -> str:
        container = self._container_cache.get(service)
        if container:
            return container

        output = await self.executor.run_command("docker", *self._compose("ps", "-q", "--all", service))
        containers = non_empty_lines(output)
        if not containers:
            raise ServiceResolutionError(
                f"no container found for service {service} in project {self.project}"
            )
        self._container_cache[service] = containers[0]
        return containers[0]

    async def _exec_args(self, service: str, command: Sequence[str], opts: Optional[ExecOptions]) -> List[str]:
        container = await self._container_for_service(service)
        args = ["exec"]
        if opts is not None:
            if opts.user:
                args += ["--user", opts.user]
            # values are read from the docker client environment, keeping them off the argv
            for key in opts.env:
                args += ["-e", key]
        return [*args, container, *command]

    async def exec(self, service: str, command: Sequence[str], opts: Optional[ExecOptions] = None) -> str:
        args = await self._exec_args(service, command, opts)
        try:
            return await self.executor.run_command("docker", *args, env=opts.env if opts else None)
        except CommandError as err:
            raise CommandError(command, err.returncode, err.output, service=service) from err

    async def exec_stream(self, service: str, command: Sequence[str], opts: Optional[ExecOptions] = None) -> str:
        args = await self._exec_args(service, command, opts)
        try:
            return await self.executor.run_command_with_stream("docker", *args, env=opts.env if opts else None)
        except CommandError as err:
            raise CommandError(command, err.returncode, err.output, service=service) from err

    async def copy_to(self, service: str, src: str, dest: str) -> None:
        container = await self._container_for_service(service)
        await self.executor.run_command("docker", "cp", src, f"{container}:{dest}")

    async def copy_from(self, service: str, src: str, dest: str) -> None:
        container = await self._container_for_service(service)
        await self.executor.run_command("docker", "cp", f"{container}:{src}", dest)

    async def start(self, *services: str) -> None:
        if services:
            await self.executor.run_command("docker", *self._compose("start", *services))

    async def stop(self, *services: str) -> None:
        if services:
            await self.executor.run_command("docker", *self._compose("stop", *services))

    async def is_running(self, service: str) -> bool:
        output = await self.executor.run_command(
            "docker", *self._compose("ps", "--status", "running", "--services")
        )
        return service in non_empty_lines(output)
