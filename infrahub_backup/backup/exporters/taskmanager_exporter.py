"""Task manager (Prefect) PostgreSQL dump and restore."""

from pathlib import Path

from ..._utils import logger
from ...config import TaskManagerDBConfig
from ...environment.base import ExecOptions, ExecutionBackend
from ...exceptions import CommandError, InfrahubOpsError

TASK_MANAGER_DB_SERVICE = "task-manager-db"
DUMP_BASENAME = "infrahubops_prefect.dump"

WRITABLE_DIR_SCRIPT = (
    'for d in /tmp /var/tmp "$PGDATA"; do '
    'if [ -n "$d" ] && [ -d "$d" ] && [ -w "$d" ]; then echo "$d"; exit 0; fi; '
    'done; exit 1'
)
RUNNING_TASKS_QUERY = (
    "SELECT count(*) FROM flow_run "
    "WHERE state_type IN ('RUNNING', 'PENDING', 'CANCELLING')"
)


class TaskManagerExporter:
    """``pg_dump``/``pg_restore`` of the task manager database."""

    def __init__(self, backend: ExecutionBackend, config: TaskManagerDBConfig):
        self.backend = backend
        self.config = config

    @property
    def pg_opts(self) -> ExecOptions:
        return ExecOptions(env={"PGPASSWORD": self.config.password})

    async def writable_temp_dir(self) -> str:
        try:
            output = await self.backend.exec(TASK_MANAGER_DB_SERVICE, ["sh", "-c", WRITABLE_DIR_SCRIPT])
        except CommandError as err:
            logger.debug(f"Could not find a writable directory, using /tmp: {err}")
            return "/tmp"
        return output.strip() or "/tmp"

    async def _remove_remote(self, path: str) -> None:
        try:
            await self.backend.exec(TASK_MANAGER_DB_SERVICE, ["rm", "-f", path])
        except CommandError as err:
            logger.warning(f"Failed to remove temporary postgres dump: {err}")

    async def count_running_tasks(self) -> int:
        output = await self.backend.exec(
            TASK_MANAGER_DB_SERVICE,
            [
                "psql", "-h", "localhost",
                "-U", self.config.username,
                "-d", self.config.database,
                "-tA", "-c", RUNNING_TASKS_QUERY,
            ],
            self.pg_opts,
        )
        try:
            return int(output.strip() or 0)
        except ValueError as err:
            raise InfrahubOpsError(f"unexpected running task count from task manager: {output!r}") from err

    async def backup(self, backup_dir: Path) -> Path:
        """Dump the database to ``backup_dir/prefect.dump``."""
        logger.info("Backing up PostgreSQL database...")

        dump_file = f"{await self.writable_temp_dir()}/{DUMP_BASENAME}"
        local_path = backup_dir / "prefect.dump"

        try:
            await self.backend.exec(
                TASK_MANAGER_DB_SERVICE,
                [
                    "pg_dump", "-Fc",
                    "-h", "localhost",
                    "-U", self.config.username,
                    "-d", self.config.database,
                    "-f", dump_file,
                ],
                self.pg_opts,
            )
            await self.backend.copy_from(TASK_MANAGER_DB_SERVICE, dump_file, str(local_path))
        finally:
            await self._remove_remote(dump_file)

        logger.info("PostgreSQL backup completed")
        return local_path

    async def restore(self, dump_path: Path) -> None:
        logger.info("Restoring PostgreSQL database...")

        await self.backend.start(TASK_MANAGER_DB_SERVICE)

        dump_file = f"{await self.writable_temp_dir()}/{DUMP_BASENAME}"
        await self.backend.copy_to(TASK_MANAGER_DB_SERVICE, str(dump_path), dump_file)
        try:
            await self.backend.exec(
                TASK_MANAGER_DB_SERVICE,
                [
                    "pg_restore",
                    "-h", "localhost",
                    "-d", "postgres",
                    "-U", self.config.username,
                    "--clean", "--create",
                    dump_file,
                ],
                self.pg_opts,
            )
        finally:
            await self._remove_remote(dump_file)

        logger.info("PostgreSQL restore completed")
