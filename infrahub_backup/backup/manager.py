"""Backup and restore orchestration for Infrahub deployments."""

import asyncio
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, List, Optional, Union

from .._utils import format_bytes, logger
from ..config import InfrahubOpsConfig
from ..environment.base import ExecutionBackend
from ..exceptions import (
    InfrahubOpsError,
    IntegrityError,
    PrerequisiteError,
    RestoreStepError,
    ServiceRestartError,
)
from .edition import EditionDetector, reconcile_restore_edition
from .exporters import Neo4jExporter, ProcessController, TaskManagerExporter
from .models import (
    TASK_MANAGER_COMPONENT,
    TASK_MANAGER_DUMP,
    BackupMetadata,
    BackupResult,
    EditionInfo,
)
from .s3 import S3Uploader
from .tasks import RunningTaskMonitor
from .utils import (
    METADATA_FILENAME,
    backup_id_from_filename,
    compute_checksum,
    compute_directory_checksums,
    create_archive,
    extract_archive,
    load_metadata,
    save_metadata,
    unique_backup_path,
    verify_checksums,
)

# Application tier stopped around offline database work; the database
# services themselves keep running.
APP_SERVICES = ("infrahub-server", "task-worker", "task-manager")
# Restarted at the end of a restore once the database is back
RESTART_SERVICES = ("infrahub-server", "task-worker")
DEPENDENCY_SERVICES = ("message-queue", "cache", "task-manager")

VERSION_COMMAND = ["python", "-c", "import importlib.metadata as m; print(m.version('infrahub'))"]
PURGE_QUEUES = (
    "rabbitmqctl list_queues --quiet --no-table-headers name"
    " | xargs -r -n1 rabbitmqctl purge_queue"
)


class BackupManager:
    """Orchestrate backup and restore of the graph and task manager databases.

    Only the :class:`ExecutionBackend` interface is used to reach the
    deployment, so the same sequence runs on Docker Compose and Kubernetes.
    """

    def __init__(
        self,
        config: InfrahubOpsConfig,
        backend: ExecutionBackend,
        uploader: Optional[S3Uploader] = None,
        process_controller: Optional[ProcessController] = None,
    ):
        """Initialize backup manager.

        Args:
            config: Configuration built at startup
            backend: Execution backend for the target deployment
            uploader: Object storage uploader, created from ``config.s3`` when needed
            process_controller: Watchdog controller for Community edition
        """
        self.config = config
        self.backend = backend
        self.backup_dir = Path(config.backup_dir)
        self.uploader = uploader

        controller = process_controller or ProcessController(backend, asset_dir=config.watchdog_asset_dir)
        self.edition_detector = EditionDetector(backend, config.neo4j)
        self.neo4j = Neo4jExporter(backend, config.neo4j, controller)
        self.task_manager = TaskManagerExporter(backend, config.task_manager_db)
        self.task_monitor = RunningTaskMonitor(self.task_manager, timeout=config.task_wait_timeout)

    async def create_backup(
        self,
        force: bool = False,
        exclude_task_manager: bool = False,
        s3_upload: Optional[bool] = None,
    ) -> BackupResult:
        """Create full backup archive of the deployment.

        Args:
            force: Skip the running-task check
            exclude_task_manager: Leave the task manager database out
            s3_upload: Upload the archive afterwards; defaults to ``config.s3_upload``

        Returns:
            BackupResult describing the local archive

        Raises:
            ServiceRestartError: Archive is valid but stopped services did not restart
            S3UploadError: Archive is valid but the upload failed
        """
        await self.backend.detect()

        edition_info = await self.edition_detector.detect()
        if edition_info.detected:
            logger.info(f"Detected Neo4j {edition_info.edition.value} edition")
        else:
            logger.warning(f"Could not determine Neo4j edition: {edition_info.detection_error}")

        if edition_info.is_community:
            logger.warning(
                "Neo4j Community Edition detected; Infrahub services will be stopped "
                "and restarted before the backup begins."
            )
            logger.warning(
                f"Waiting {self.config.quiesce_delay:g} seconds to allow the user to abort... CTRL+C to cancel."
            )
            await asyncio.sleep(self.config.quiesce_delay)

        version = await self._get_infrahub_version()

        if not force:
            logger.info("Checking for running tasks before backup...")
            await self.task_monitor.wait_for_idle()

        stopped: List[str] = []
        if edition_info.is_community:
            stopped = await self._stop_app_services()

        backup_path = unique_backup_path(self.backup_dir)
        try:
            metadata, size = await self._write_backup(backup_path, edition_info, version, exclude_task_manager)
        except BaseException:
            if stopped:
                await self._restart_services(stopped, backup_path=None)
            raise

        if stopped:
            await self._restart_services(stopped, backup_path=backup_path)

        result = BackupResult(backup_path=backup_path, size_bytes=size, metadata=metadata)

        upload = self.config.s3_upload if s3_upload is None else s3_upload
        if upload:
            uploader = self.uploader or S3Uploader(self.config.s3)
            result.s3_key = await uploader.upload(backup_path)

        return result

    async def _write_backup(
        self,
        backup_path: Path,
        edition_info: EditionInfo,
        version: str,
        exclude_task_manager: bool,
    ):
        """Stage the backup in a private temporary directory and archive it."""
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise IntegrityError(f"cannot create backup directory {self.backup_dir}: {err}") from err
        logger.info(f"Creating backup: {backup_path.name}")

        with tempfile.TemporaryDirectory(prefix="infrahub_backup_") as work_dir:
            staging = Path(work_dir) / "backup"
            staging.mkdir()

            await self.neo4j.backup(staging, edition_info.edition)

            if exclude_task_manager:
                logger.info("Skipping task manager database backup as requested")
            else:
                await self.task_manager.backup(staging)

            checksums = compute_directory_checksums(staging / "database", relative_to=staging)
            if not exclude_task_manager:
                dump_path = staging / TASK_MANAGER_DUMP
                if not dump_path.is_file():
                    raise IntegrityError("task manager database dump missing from backup")
                try:
                    checksums[TASK_MANAGER_DUMP] = compute_checksum(dump_path)
                except OSError as err:
                    raise IntegrityError(f"failed to calculate checksum for {TASK_MANAGER_DUMP}: {err}") from err

            metadata = BackupMetadata(
                backup_id=backup_id_from_filename(backup_path.name),
                created_at=datetime.now(timezone.utc),
                tool_version=self._get_version(),
                infrahub_version=version,
                neo4j_edition=edition_info.edition,
                components=[] if exclude_task_manager else [TASK_MANAGER_COMPONENT],
                checksums=checksums,
            )
            save_metadata(metadata, staging / METADATA_FILENAME)

            logger.info("Creating backup archive...")
            size = create_archive(staging, backup_path)

        logger.info(f"Backup created: {backup_path}")
        logger.info(f"Backup size: {format_bytes(size)}")
        return metadata, size

    async def restore_backup(
        self,
        backup_file: Union[str, Path],
        exclude_task_manager: bool = False,
        migrate_format: bool = False,
    ) -> BackupMetadata:
        """Restore a deployment from a backup archive.

        Every validation (metadata, edition compatibility, checksums, task
        manager dump presence) runs before anything on the live deployment
        is touched.

        Args:
            backup_file: Path to the ``.tar.gz`` archive
            exclude_task_manager: Do not restore the task manager database
            migrate_format: Migrate the restored store to block format

        Returns:
            The metadata of the restored backup

        Raises:
            RestoreStepError: A step failed after the application was stopped
        """
        backup_file = Path(backup_file)
        if not backup_file.is_file():
            raise PrerequisiteError(f"backup file not found: {backup_file}")

        await self.backend.detect()

        with tempfile.TemporaryDirectory(prefix="infrahub_restore_") as work_dir:
            work_dir = Path(work_dir)
            staging = work_dir / "backup"

            logger.info(f"Restoring from backup: {backup_file}")
            logger.info("Extracting backup archive...")
            extract_archive(backup_file, work_dir)

            metadata = load_metadata(staging / METADATA_FILENAME)
            logger.info(f"Backup metadata:\n{metadata.to_json()}")

            live_edition = await self.edition_detector.detect()
            edition = reconcile_restore_edition(metadata.neo4j_edition, live_edition)

            restore_task_manager = self._task_manager_restore_plan(metadata, staging, exclude_task_manager)

            verify_checksums(staging, metadata.checksums, skip={TASK_MANAGER_DUMP})
            if restore_task_manager:
                verify_checksums(staging, {TASK_MANAGER_DUMP: metadata.checksums[TASK_MANAGER_DUMP]})

            # Destructive steps start here
            await self._wipe_transient_data()
            await self._stop_app_services()

            if restore_task_manager:
                await self._restore_step(
                    "task-manager-db-restore", self.task_manager.restore(staging / TASK_MANAGER_DUMP)
                )
            else:
                logger.info("Skipping task manager database restore step")

            await self._restore_step("restart-dependencies", self.backend.start(*DEPENDENCY_SERVICES))
            await self._restore_step("database-restore", self.neo4j.restore(staging, edition, migrate_format))

            logger.info("Restarting Infrahub services...")
            await self._restore_step("restart-app", self.backend.start(*RESTART_SERVICES))

        logger.info("Restore completed successfully")
        logger.info("Infrahub should be available shortly")
        return metadata

    def _task_manager_restore_plan(self, metadata: BackupMetadata, staging: Path, exclude: bool) -> bool:
        """Decide whether the task manager database is restored.

        Raises:
            IntegrityError: Metadata lists the dump but it is absent, or its checksum is missing
        """
        included = metadata.includes_task_manager
        dump_exists = (staging / TASK_MANAGER_DUMP).is_file()

        if not included:
            logger.info("Backup does not include task manager database; skipping restore")
            return False
        if exclude:
            logger.info("Skipping task manager database restore as requested")
            return False
        if not dump_exists:
            raise IntegrityError("backup metadata includes task manager database but prefect.dump is missing")
        if TASK_MANAGER_DUMP not in metadata.checksums:
            raise IntegrityError("missing checksum for prefect.dump in metadata")

        logger.info("Task manager database dump detected; will restore")
        return True

    async def _restore_step(self, step: str, operation: Awaitable) -> None:
        try:
            await operation
        except InfrahubOpsError as err:
            logger.error(f"Restore step '{step}' failed: {err}")
            raise RestoreStepError(step, err) from err

    async def _stop_app_services(self) -> List[str]:
        """Stop running application services, returning those that were stopped.

        If stopping fails part way, the already stopped services are started
        again before the error is raised.
        """
        stopped: List[str] = []
        try:
            for service in APP_SERVICES:
                if not await self.backend.is_running(service):
                    continue
                logger.info(f"Stopping {service}...")
                await self.backend.stop(service)
                stopped.append(service)
        except InfrahubOpsError as err:
            if stopped:
                try:
                    await self.backend.start(*stopped)
                except InfrahubOpsError as start_err:
                    logger.warning(f"Failed to restart services after stop error: {start_err}")
            raise InfrahubOpsError(f"failed to stop application services: {err}") from err
        return stopped

    async def _restart_services(self, services: List[str], backup_path: Optional[Path]) -> None:
        """Start services stopped for a backup.

        With ``backup_path`` set the backup itself succeeded and a restart
        failure is raised; without it the failure is only logged so the
        backup error is reported.
        """
        try:
            await self.backend.start(*services)
        except InfrahubOpsError as err:
            logger.error(f"Failed to restart services after backup: {err}")
            if backup_path is not None:
                raise ServiceRestartError(
                    f"backup created at {backup_path} but services failed to restart: {err}",
                    backup_path=backup_path,
                ) from err

    async def _wipe_transient_data(self) -> None:
        """Flush cache and purge message queues; failures are logged only."""
        logger.info("Wiping transient data...")
        try:
            await self.backend.exec("cache", ["redis-cli", "FLUSHALL"])
        except InfrahubOpsError as err:
            logger.warning(f"Failed to flush cache: {err}")
        try:
            await self.backend.exec("message-queue", ["sh", "-c", PURGE_QUEUES])
        except InfrahubOpsError as err:
            logger.warning(f"Failed to purge message queues: {err}")

    async def _get_infrahub_version(self) -> str:
        try:
            output = await self.backend.exec("infrahub-server", VERSION_COMMAND)
        except InfrahubOpsError as err:
            logger.warning(f"Could not determine Infrahub version: {err}")
            return "unknown"
        return output.strip() or "unknown"

    def _get_version(self) -> str:
        from .. import __version__
        return __version__
