"""Tests for BackupManager backup and restore orchestration."""

import hashlib
import json
import tarfile
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from infrahub_backup.backup.exporters import ProcessController
from infrahub_backup.backup.manager import APP_SERVICES, BackupManager
from infrahub_backup.backup.models import Neo4jEdition
from infrahub_backup.backup.utils import create_archive, extract_archive
from infrahub_backup.exceptions import (
    CommandError,
    EditionMismatchError,
    IntegrityError,
    PrerequisiteError,
    RestoreStepError,
    RunningTasksError,
    ServiceRestartError,
)
from tests.fakes import FakeBackend


def _manager(config, backend, **kwargs):
    controller = ProcessController(
        backend, asset_dir=config.watchdog_asset_dir, readiness_timeout=0.2, poll_interval=0.01
    )
    manager = BackupManager(config, backend, process_controller=controller, **kwargs)
    manager.task_monitor.poll_interval = 0.01
    return manager


def _rewrite_archive(archive, work_dir, mutate):
    """Extract ``archive``, let ``mutate`` edit the staging tree, then repack in place."""
    extract_archive(archive, work_dir)
    mutate(work_dir / "backup")
    archive.unlink()
    create_archive(work_dir / "backup", archive)


def _read_member(archive, name):
    with tarfile.open(archive, "r:gz") as tar:
        return tar.extractfile(name).read()


def _stopped(backend):
    return [service for kind, service, _ in backend.calls if kind == "stop"]


def _started(backend):
    return [service for kind, service, _ in backend.calls if kind == "start"]


@pytest_asyncio.fixture
async def community_backup(ops_config):
    backend = FakeBackend()
    return await _manager(ops_config, backend).create_backup()


# Backup


@pytest.mark.asyncio
async def test_community_backup_end_to_end(ops_config):
    """Community backup stops the app, dumps both stores and restarts the app."""
    backend = FakeBackend()
    manager = _manager(ops_config, backend)

    result = await manager.create_backup()

    archive = result.backup_path
    assert archive.exists()
    assert archive.parent == manager.backup_dir
    assert archive.name.startswith("infrahub_backup_") and archive.name.endswith(".tar.gz")
    assert result.size_bytes == archive.stat().st_size

    with tarfile.open(archive, "r:gz") as tar:
        names = set(tar.getnames())
    assert {"backup/database/neo4j.dump", "backup/prefect.dump", "backup/backup_information.json"} <= names
    assert all(name == "backup" or name.startswith("backup/") for name in names)

    metadata = json.loads(_read_member(archive, "backup/backup_information.json"))
    assert metadata["neo4jEdition"] == "community"
    assert metadata["components"] == ["task-manager-db"]
    assert metadata["backupID"] == archive.name[: -len(".tar.gz")]
    assert metadata["infrahubVersion"] == "1.2.3"
    assert set(metadata["checksums"]) == {"database/neo4j.dump", "prefect.dump"}

    for relative_path, digest in metadata["checksums"].items():
        assert hashlib.sha256(_read_member(archive, f"backup/{relative_path}")).hexdigest() == digest

    assert _stopped(backend) == list(APP_SERVICES)
    assert _started(backend) == [",".join(APP_SERVICES)]
    assert set(APP_SERVICES) <= backend.running
    assert backend.resumed


@pytest.mark.asyncio
async def test_enterprise_backup_keeps_services_running(ops_config):
    backend = FakeBackend(edition="enterprise")

    result = await _manager(ops_config, backend).create_backup()

    assert result.metadata.neo4j_edition == Neo4jEdition.ENTERPRISE
    assert "database/neo4j-2024.backup" in result.metadata.checksums
    assert _stopped(backend) == []
    assert not backend.ran("kill")


@pytest.mark.asyncio
async def test_backup_without_edition_uses_enterprise_procedure(ops_config):
    backend = FakeBackend(edition=None)

    result = await _manager(ops_config, backend).create_backup()

    assert result.metadata.neo4j_edition == Neo4jEdition.ENTERPRISE
    assert backend.ran("neo4j-admin database backup")


@pytest.mark.asyncio
async def test_backup_excluding_task_manager(ops_config):
    backend = FakeBackend()

    result = await _manager(ops_config, backend).create_backup(exclude_task_manager=True)

    assert result.metadata.components == []
    assert "prefect.dump" not in result.metadata.checksums
    assert not backend.ran("pg_dump")
    with tarfile.open(result.backup_path, "r:gz") as tar:
        assert "backup/prefect.dump" not in tar.getnames()


@pytest.mark.asyncio
async def test_running_tasks_block_backup(ops_config):
    backend = FakeBackend()
    backend.running_tasks = [5] * 1000
    manager = _manager(ops_config, backend)

    with pytest.raises(RunningTasksError, match="use --force"):
        await manager.create_backup()

    assert _stopped(backend) == []
    assert not manager.backup_dir.exists() or not any(manager.backup_dir.iterdir())


@pytest.mark.asyncio
async def test_force_skips_running_task_check(ops_config):
    backend = FakeBackend()
    backend.running_tasks = [5]

    await _manager(ops_config, backend).create_backup(force=True)

    assert not backend.ran("psql")


@pytest.mark.asyncio
async def test_backup_failure_restarts_stopped_services(ops_config):
    backend = FakeBackend()
    backend.fail("task-manager-db", "pg_dump")
    manager = _manager(ops_config, backend)

    with pytest.raises(CommandError):
        await manager.create_backup()

    assert set(APP_SERVICES) <= backend.running
    assert backend.resumed
    assert not any(manager.backup_dir.glob("*.tar.gz"))
    assert not any(manager.backup_dir.glob(".*.partial"))


@pytest.mark.asyncio
async def test_restart_failure_reports_valid_archive(ops_config):
    """The archive survives a failed restart and its path is on the error."""
    backend = FakeBackend()
    backend.start_failures = {"infrahub-server"}

    with pytest.raises(ServiceRestartError) as exc_info:
        await _manager(ops_config, backend).create_backup()

    archive = exc_info.value.backup_path
    assert archive.exists()
    with tarfile.open(archive, "r:gz") as tar:
        assert "backup/backup_information.json" in tar.getnames()


@pytest.mark.asyncio
async def test_backups_in_the_same_second_do_not_overwrite(ops_config, monkeypatch):
    monkeypatch.setattr(
        "infrahub_backup.backup.utils.generate_backup_filename",
        lambda now=None: "infrahub_backup_20240101_120000.tar.gz",
    )
    manager = _manager(ops_config, FakeBackend())

    first = await manager.create_backup()
    second = await manager.create_backup()

    assert first.backup_path.name == "infrahub_backup_20240101_120000.tar.gz"
    assert second.backup_path.name == "infrahub_backup_20240101_120000_1.tar.gz"
    assert second.metadata.backup_id == "infrahub_backup_20240101_120000_1"
    assert first.backup_path.stat().st_size == first.size_bytes
    assert len(list(manager.backup_dir.glob("*.tar.gz"))) == 2


@pytest.mark.asyncio
async def test_unusable_backup_dir_is_reported_and_services_restarted(ops_config, tmp_path):
    (tmp_path / "backups").write_text("not a directory")
    backend = FakeBackend()

    with pytest.raises(IntegrityError, match="cannot create backup directory"):
        await _manager(ops_config, backend).create_backup()

    assert _stopped(backend) == list(APP_SERVICES)
    assert set(APP_SERVICES) <= backend.running


@pytest.mark.asyncio
async def test_s3_upload_records_key(ops_config):
    backend = FakeBackend()
    uploader = MagicMock()
    uploader.upload = AsyncMock(return_value="infrahub_backup.tar.gz")

    result = await _manager(ops_config, backend, uploader=uploader).create_backup(s3_upload=True)

    uploader.upload.assert_awaited_once_with(result.backup_path)
    assert result.s3_key == "infrahub_backup.tar.gz"


@pytest.mark.asyncio
async def test_s3_upload_disabled_by_default(ops_config):
    uploader = MagicMock()
    uploader.upload = AsyncMock()

    await _manager(ops_config, FakeBackend(), uploader=uploader).create_backup()

    uploader.upload.assert_not_called()


# Restore


@pytest.mark.asyncio
async def test_restore_round_trip(ops_config, community_backup):
    backend = FakeBackend()

    metadata = await _manager(ops_config, backend).restore_backup(community_backup.backup_path)

    assert metadata == community_backup.metadata
    texts = [f"{kind}:{text}" for kind, _, text in backend.calls]
    flush_at = texts.index("exec:redis-cli FLUSHALL")
    first_stop = next(i for i, text in enumerate(texts) if text.startswith("stop:"))
    pg_restore_at = next(i for i, text in enumerate(texts) if "pg_restore" in text)
    load_at = next(i for i, text in enumerate(texts) if "neo4j-admin database load" in text)
    assert flush_at < first_stop < pg_restore_at < load_at
    assert _started(backend)[-2:] == ["message-queue,cache,task-manager", "infrahub-server,task-worker"]
    assert {"infrahub-server", "task-worker", "task-manager"} <= backend.running
    assert backend.resumed


@pytest.mark.asyncio
async def test_restore_excluding_task_manager(ops_config, community_backup):
    backend = FakeBackend()

    await _manager(ops_config, backend).restore_backup(community_backup.backup_path, exclude_task_manager=True)

    assert not backend.ran("pg_restore")
    assert backend.ran("neo4j-admin database load")


@pytest.mark.asyncio
async def test_restore_with_format_migration(ops_config, community_backup):
    backend = FakeBackend()

    await _manager(ops_config, backend).restore_backup(community_backup.backup_path, migrate_format=True)

    assert backend.ran("neo4j-admin database migrate --to-format=block neo4j")


@pytest.mark.asyncio
async def test_restore_checksum_mismatch_is_not_destructive(ops_config, community_backup, tmp_path):
    def tamper(staging):
        (staging / "database" / "neo4j.dump").write_bytes(b"corrupted")

    _rewrite_archive(community_backup.backup_path, tmp_path / "rewrite", tamper)
    backend = FakeBackend()

    with pytest.raises(IntegrityError, match="checksum mismatch for database/neo4j.dump"):
        await _manager(ops_config, backend).restore_backup(community_backup.backup_path)

    assert _stopped(backend) == []
    assert not backend.ran("FLUSHALL")
    assert not backend.ran("kill")


@pytest.mark.asyncio
async def test_restore_missing_task_manager_dump(ops_config, community_backup, tmp_path):
    def drop_dump(staging):
        (staging / "prefect.dump").unlink()

    _rewrite_archive(community_backup.backup_path, tmp_path / "rewrite", drop_dump)
    backend = FakeBackend()

    with pytest.raises(IntegrityError, match="prefect.dump is missing"):
        await _manager(ops_config, backend).restore_backup(community_backup.backup_path)
    assert _stopped(backend) == []

    await _manager(ops_config, backend).restore_backup(community_backup.backup_path, exclude_task_manager=True)
    assert not backend.ran("pg_restore")


@pytest.mark.asyncio
async def test_restore_enterprise_backup_onto_community_fails(ops_config):
    enterprise = FakeBackend(edition="enterprise")
    result = await _manager(ops_config, enterprise).create_backup()
    backend = FakeBackend(edition="community")

    with pytest.raises(EditionMismatchError):
        await _manager(ops_config, backend).restore_backup(result.backup_path)

    assert _stopped(backend) == []
    assert not backend.ran("FLUSHALL")


@pytest.mark.asyncio
async def test_restore_community_backup_onto_enterprise(ops_config, community_backup):
    backend = FakeBackend(edition="enterprise")

    await _manager(ops_config, backend).restore_backup(community_backup.backup_path)

    assert backend.ran("neo4j-admin database load")
    assert not backend.ran("neo4j-admin database restore")


@pytest.mark.asyncio
async def test_restore_database_failure_leaves_app_stopped(ops_config, community_backup):
    """A failure after the app was stopped names the step and does not restart the app."""
    backend = FakeBackend()
    backend.fail("database", "neo4j-admin database load")

    with pytest.raises(RestoreStepError) as exc_info:
        await _manager(ops_config, backend).restore_backup(community_backup.backup_path)

    assert exc_info.value.step == "database-restore"
    assert "database-restore" in str(exc_info.value)
    assert "infrahub-server" not in backend.running
    assert "infrahub-server,task-worker" not in _started(backend)
    assert backend.resumed


@pytest.mark.asyncio
async def test_restore_missing_file(ops_config, tmp_path):
    with pytest.raises(PrerequisiteError, match="backup file not found"):
        await _manager(ops_config, FakeBackend()).restore_backup(tmp_path / "missing.tar.gz")


@pytest.mark.asyncio
async def test_restore_archive_without_metadata(ops_config, tmp_path):
    staging = tmp_path / "staging"
    (staging / "database").mkdir(parents=True)
    archive = tmp_path / "no_metadata.tar.gz"
    create_archive(staging, archive)
    backend = FakeBackend()

    with pytest.raises(IntegrityError, match="missing metadata"):
        await _manager(ops_config, backend).restore_backup(archive)

    assert _stopped(backend) == []
