"""Neo4j backup/restore through ``neo4j-admin`` inside the database service."""

import shlex
from pathlib import Path
from typing import List, Optional

from ..._utils import logger
from ...config import Neo4jConfig
from ...environment.base import ExecOptions, ExecutionBackend
from ...exceptions import CommandError
from ..models import Neo4jEdition
from .watchdog import ProcessController

DATABASE_SERVICE = "database"

NEO4J_TEMP_BACKUP_DIR = "/tmp/infrahubops"
NEO4J_REMOTE_WORK_DIR = "/tmp/infrahubops-dump"
NEO4J_METADATA_SCRIPT = "/data/scripts/neo4j/restore_metadata.cypher"


class Neo4jExporter:
    """Back up and restore the Infrahub graph database.

    Enterprise edition uses the online ``neo4j-admin database backup`` and
    ``restore`` commands. Community edition has neither, so the server is
    suspended through :class:`ProcessController` around an offline ``dump``
    or ``load``.
    """

    def __init__(self, backend: ExecutionBackend, config: Neo4jConfig, controller: ProcessController):
        self.backend = backend
        self.config = config
        self.controller = controller
        self.neo4j_opts = ExecOptions(user="neo4j")
        # credentials go through the environment so they never show up in command errors
        self.shell_opts = ExecOptions(env=config.shell_env)
        self.replay_opts = ExecOptions(user="neo4j", env=config.shell_env)

    async def _exec(self, command: List[str], opts: Optional[ExecOptions] = None) -> str:
        return await self.backend.exec(DATABASE_SERVICE, command, opts)

    async def _cleanup(self, command: List[str], what: str) -> None:
        try:
            await self._exec(command)
        except CommandError as err:
            logger.warning(f"Failed to remove {what}: {err}")

    async def _system_statement(self, statement: str) -> str:
        return await self._exec(["cypher-shell", "-d", "system", statement], self.shell_opts)

    async def backup(self, backup_dir: Path, edition: Neo4jEdition) -> Path:
        """Write the database backup into ``backup_dir/database``.

        Returns:
            The local database directory
        """
        database_dir = backup_dir / "database"
        if edition == Neo4jEdition.COMMUNITY:
            await self._backup_community(database_dir)
        else:
            await self._backup_enterprise(database_dir)
        return database_dir

    async def _backup_enterprise(self, database_dir: Path) -> None:
        logger.info("Backing up Neo4j database (Enterprise Edition online backup)...")

        await self._exec(["mkdir", "-p", NEO4J_TEMP_BACKUP_DIR])
        try:
            await self.backend.exec_stream(
                DATABASE_SERVICE,
                [
                    "neo4j-admin", "database", "backup",
                    "--expand-commands",
                    f"--include-metadata={self.config.backup_metadata}",
                    f"--to-path={NEO4J_TEMP_BACKUP_DIR}",
                    self.config.database,
                ],
            )
            await self.backend.copy_from(DATABASE_SERVICE, NEO4J_TEMP_BACKUP_DIR, str(database_dir))
        finally:
            await self._cleanup(["rm", "-rf", NEO4J_TEMP_BACKUP_DIR], "temporary Neo4j backup directory")

        logger.info("Neo4j backup completed")

    async def _backup_community(self, database_dir: Path) -> None:
        logger.info("Backing up Neo4j database (Community Edition offline dump)...")

        dump_filename = f"{self.config.database}.dump"
        database_dir.mkdir(parents=True, exist_ok=True)

        async with self.controller.suspended():
            await self._exec(["mkdir", "-p", NEO4J_REMOTE_WORK_DIR])
            try:
                await self.backend.exec_stream(
                    DATABASE_SERVICE,
                    [
                        "neo4j-admin", "database", "dump",
                        "--overwrite-destination=true",
                        f"--to-path={NEO4J_REMOTE_WORK_DIR}",
                        self.config.database,
                    ],
                )
                await self.backend.copy_from(
                    DATABASE_SERVICE,
                    f"{NEO4J_REMOTE_WORK_DIR}/{dump_filename}",
                    str(database_dir / dump_filename),
                )
            finally:
                await self._cleanup(["rm", "-rf", NEO4J_REMOTE_WORK_DIR], "temporary Neo4j dump directory")

        logger.info("Neo4j dump completed")

    async def restore(self, backup_dir: Path, edition: Neo4jEdition, migrate_format: bool = False) -> None:
        """Restore from ``backup_dir/database`` with the procedure for ``edition``."""
        await self.backend.copy_to(DATABASE_SERVICE, str(backup_dir / "database"), NEO4J_TEMP_BACKUP_DIR)
        try:
            await self._exec(["chown", "-R", "neo4j:neo4j", NEO4J_TEMP_BACKUP_DIR])
            if edition == Neo4jEdition.COMMUNITY:
                await self._restore_community(migrate_format)
            else:
                await self._restore_enterprise(migrate_format)
        finally:
            await self._cleanup(["rm", "-rf", NEO4J_TEMP_BACKUP_DIR], "temporary Neo4j backup data")

    async def _migrate_format(self) -> None:
        await self.backend.exec_stream(
            DATABASE_SERVICE,
            ["neo4j-admin", "database", "migrate", "--to-format=block", self.config.database],
            self.neo4j_opts,
        )

    async def _restore_enterprise(self, migrate_format: bool) -> None:
        logger.info("Restoring Neo4j database (Enterprise Edition)...")

        await self._system_statement(f"stop database {self.config.database}")

        await self.backend.exec_stream(
            DATABASE_SERVICE,
            [
                "neo4j-admin", "database", "restore",
                "--expand-commands",
                "--overwrite-destination=true",
                f"--from-path={NEO4J_TEMP_BACKUP_DIR}",
                self.config.database,
            ],
            self.neo4j_opts,
        )

        if migrate_format:
            await self._migrate_format()

        replay = (
            f"cat {NEO4J_METADATA_SCRIPT} | cypher-shell"
            f" -d system --param {shlex.quote(f'database => {self.config.database!r}')}"
        )
        await self._exec(["sh", "-c", replay], self.replay_opts)

        await self._system_statement(f"start database {self.config.database}")
        logger.info("Neo4j database restored")

    async def _restore_community(self, migrate_format: bool) -> None:
        logger.info("Restoring Neo4j database (Community Edition dump)...")

        async with self.controller.suspended():
            await self.backend.exec_stream(
                DATABASE_SERVICE,
                [
                    "neo4j-admin", "database", "load",
                    "--overwrite-destination=true",
                    f"--from-path={NEO4J_TEMP_BACKUP_DIR}",
                    self.config.database,
                ],
                self.neo4j_opts,
            )
            if migrate_format:
                await self._migrate_format()

        logger.info("Neo4j dump restored successfully")
