"""Pause and resume the Neo4j Community process through a helper watchdog.

Community edition has no administrative stop/start, so an offline dump or
load needs the server process stopped by signal. A small static helper is
copied into the database container first so the container survives while
the server is down. Once the process has been signalled it is always sent
SIGCONT again, on every exit path.
"""

import contextlib
from contextlib import asynccontextmanager
from importlib import resources
from pathlib import Path
from typing import AsyncIterator, Optional

from ..._utils import logger, wait_until
from ...environment.base import ExecutionBackend
from ...exceptions import CommandError, InfrahubOpsError, OperationTimeoutError, WatchdogError

DATABASE_SERVICE = "database"

NEO4J_PID_FILE = "/var/lib/neo4j/run/neo4j.pid"
REMOTE_WATCHDOG_BINARY = "/tmp/infrahubops-watchdog"
REMOTE_WATCHDOG_READY = "/tmp/infrahubops-watchdog.ready"
REMOTE_WATCHDOG_LOG = "/tmp/infrahubops-watchdog.log"

WATCHDOG_INIT_TIMEOUT = 5.0
PROCESS_STOP_TIMEOUT = 120.0

WATCHDOG_ASSETS = {
    "amd64": "neo4j-watchdog-linux-amd64",
    "arm64": "neo4j-watchdog-linux-arm64",
}
ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

# /proc/<pid>/stat states that mean the server is no longer running
STOPPED_STATES = {"Z", "X", "x", "T", "t"}


def parse_pid(raw: str) -> str:
    """Validate PID file content.

    Raises:
        WatchdogError: If the content is empty or not an integer
    """
    pid = raw.strip()
    if not pid:
        raise WatchdogError("neo4j pid file is empty")
    try:
        value = int(pid)
    except ValueError as err:
        raise WatchdogError(f"invalid pid {pid!r} in neo4j pid file") from err
    if value <= 0:
        raise WatchdogError(f"invalid pid {pid!r} in neo4j pid file")
    return str(value)


def process_state(stat: str) -> Optional[str]:
    """State letter from a /proc/<pid>/stat line, or None when the process is gone."""
    stat = stat.strip()
    if not stat:
        return None
    # The command name is parenthesised and may itself contain spaces
    fields = stat.rsplit(")", 1)[-1].split()
    return fields[0] if fields else None


class ProcessController:
    """Suspend the Neo4j server process for the duration of an offline operation."""

    def __init__(
        self,
        backend: ExecutionBackend,
        asset_dir: Optional[str] = None,
        readiness_timeout: float = WATCHDOG_INIT_TIMEOUT,
        stop_timeout: float = PROCESS_STOP_TIMEOUT,
        poll_interval: float = 0.5,
    ):
        self.backend = backend
        self.asset_dir = asset_dir
        self.readiness_timeout = readiness_timeout
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval

    async def read_pid(self) -> str:
        try:
            output = await self.backend.exec(DATABASE_SERVICE, ["cat", NEO4J_PID_FILE])
        except CommandError as err:
            raise WatchdogError(f"failed to read neo4j pid file: {err}") from err
        return parse_pid(output)

    async def detect_architecture(self) -> str:
        try:
            output = await self.backend.exec(DATABASE_SERVICE, ["uname", "-m"])
        except CommandError as err:
            raise WatchdogError(f"failed to detect neo4j architecture: {err}") from err
        arch = output.strip()
        if not arch:
            raise WatchdogError("empty architecture string")
        return arch

    def watchdog_asset(self, arch: str):
        """Context manager yielding a local path to the helper binary for ``arch``."""
        goarch = ARCH_ALIASES.get(arch.lower())
        if goarch is None:
            raise WatchdogError(f"unsupported neo4j architecture: {arch}")
        name = WATCHDOG_ASSETS[goarch]

        if self.asset_dir:
            path = Path(self.asset_dir) / name
            if not path.is_file():
                raise WatchdogError(f"watchdog binary not found: {path}")
            return contextlib.nullcontext(path)

        resource = resources.files(__package__).joinpath("watchdog_bin", name)
        if not resource.is_file():
            raise WatchdogError(f"no bundled watchdog binary for architecture {goarch}")
        return resources.as_file(resource)

    async def _remote_file_exists(self, path: str) -> bool:
        try:
            await self.backend.exec(DATABASE_SERVICE, ["test", "-f", path])
        except CommandError:
            return False
        return True

    async def _process_stopped(self, pid: str) -> bool:
        output = await self.backend.exec(
            DATABASE_SERVICE, ["sh", "-c", f"cat /proc/{pid}/stat 2>/dev/null || true"]
        )
        return process_state(output) in (None, *STOPPED_STATES)

    async def deploy_watchdog(self) -> None:
        """Copy, launch and wait for the helper to report ready.

        Raises:
            WatchdogError: If any step fails or the ready marker does not appear in time
        """
        arch = await self.detect_architecture()

        with self.watchdog_asset(arch) as local_binary:
            try:
                await self.backend.copy_to(DATABASE_SERVICE, str(local_binary), REMOTE_WATCHDOG_BINARY)
            except InfrahubOpsError as err:
                raise WatchdogError(f"failed to deploy watchdog binary: {err}") from err

        try:
            await self.backend.exec(DATABASE_SERVICE, ["chmod", "+x", REMOTE_WATCHDOG_BINARY])
        except CommandError as err:
            raise WatchdogError(f"failed to mark watchdog executable: {err}") from err

        try:
            await self.backend.exec(DATABASE_SERVICE, ["rm", "-f", REMOTE_WATCHDOG_READY, REMOTE_WATCHDOG_LOG])
        except CommandError as err:
            logger.debug(f"Could not clear watchdog markers: {err}")

        launch = f"nohup {REMOTE_WATCHDOG_BINARY} --ready-file {REMOTE_WATCHDOG_READY} >{REMOTE_WATCHDOG_LOG} 2>&1 &"
        try:
            await self.backend.exec(DATABASE_SERVICE, ["sh", "-c", launch])
        except CommandError as err:
            raise WatchdogError(f"failed to start watchdog: {err}") from err

        try:
            await wait_until(
                lambda: self._remote_file_exists(REMOTE_WATCHDOG_READY),
                self.readiness_timeout,
                self.poll_interval,
                "watchdog ready marker",
            )
        except OperationTimeoutError as err:
            raise WatchdogError(f"watchdog failed to initialize: {err}") from err

    async def stop_process(self, pid: str) -> None:
        try:
            await self.backend.exec(DATABASE_SERVICE, ["kill", pid])
        except CommandError as err:
            raise WatchdogError(f"failed to stop neo4j: {err}") from err

        logger.info("Waiting for Neo4j process to stop...")
        try:
            await wait_until(
                lambda: self._process_stopped(pid),
                self.stop_timeout,
                self.poll_interval,
                f"neo4j process {pid} to stop",
            )
        except OperationTimeoutError as err:
            raise WatchdogError(str(err)) from err

    async def resume_process(self, pid: str) -> None:
        try:
            await self.backend.exec(DATABASE_SERVICE, ["kill", "-CONT", pid])
        except CommandError as err:
            raise WatchdogError(f"failed to resume neo4j process (pid {pid}): {err}") from err

    async def remove_artifacts(self) -> None:
        try:
            await self.backend.exec(
                DATABASE_SERVICE,
                ["rm", "-f", REMOTE_WATCHDOG_BINARY, REMOTE_WATCHDOG_READY, REMOTE_WATCHDOG_LOG],
            )
        except CommandError as err:
            logger.debug(f"Failed to remove watchdog artifacts: {err}")

    @asynccontextmanager
    async def suspended(self) -> AsyncIterator[str]:
        """Stop the Neo4j process for the body of the ``async with`` block.

        Yields the server PID. On exit the watchdog artifacts are removed and
        SIGCONT is sent to the PID. A resume failure is raised only when the
        body succeeded; otherwise it is logged and the body's error wins.
        """
        pid = await self.read_pid()

        try:
            await self.deploy_watchdog()
        except BaseException:
            await self.remove_artifacts()
            raise

        failed = False
        try:
            await self.stop_process(pid)
            yield pid
        except BaseException:
            failed = True
            raise
        finally:
            await self.remove_artifacts()
            try:
                await self.resume_process(pid)
            except WatchdogError as err:
                logger.error(f"Failed to send SIGCONT to neo4j (pid {pid}): {err}")
                if not failed:
                    raise
