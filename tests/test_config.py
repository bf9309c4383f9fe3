"""Tests for configuration loading and validation."""

import dataclasses

import pytest

from infrahub_backup.config import InfrahubOpsConfig, Neo4jConfig, S3Config, TaskManagerDBConfig
from infrahub_backup.exceptions import ConfigurationError

ENV_VARS = (
    "INFRAHUB_DB_USERNAME", "INFRAHUB_DB_PASSWORD", "INFRAHUB_DB_DATABASE", "INFRAHUB_DB_BACKUP_METADATA",
    "INFRAHUB_TASK_MANAGER_DB_USERNAME", "INFRAHUB_TASK_MANAGER_DB_PASSWORD", "INFRAHUB_TASK_MANAGER_DB_DATABASE",
    "S3_BUCKET", "S3_ENDPOINT", "S3_REGION", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY",
    "INFRAHUB_BACKUP_DIR", "INFRAHUB_PROJECT", "INFRAHUB_K8S_NAMESPACE", "INFRAHUB_S3_UPLOAD",
    "INFRAHUB_LOG_FORMAT", "INFRAHUB_QUIESCE_DELAY", "INFRAHUB_TASK_WAIT_TIMEOUT", "INFRAHUB_WATCHDOG_DIR",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    def test_defaults_from_empty_env(self, clean_env):
        config = InfrahubOpsConfig.from_env()

        assert config == InfrahubOpsConfig()
        assert config.backup_dir == "./infrahub_backups"
        assert config.compose_project is None
        assert config.k8s_namespace is None
        assert config.s3_upload is False
        assert config.quiesce_delay == 10.0
        assert config.neo4j == Neo4jConfig(username="neo4j", password="admin", database="neo4j", backup_metadata="all")
        assert config.task_manager_db == TaskManagerDBConfig(username="postgres", password="postgres", database="prefect")
        assert config.s3.region == "us-east-1"


class TestFromEnv:
    def test_reads_every_setting(self, clean_env):
        clean_env.setenv("INFRAHUB_DB_USERNAME", "admin")
        clean_env.setenv("INFRAHUB_DB_PASSWORD", "s3cret")
        clean_env.setenv("INFRAHUB_DB_BACKUP_METADATA", "roles")
        clean_env.setenv("INFRAHUB_TASK_MANAGER_DB_PASSWORD", "pg")
        clean_env.setenv("INFRAHUB_BACKUP_DIR", "/backups")
        clean_env.setenv("INFRAHUB_PROJECT", "lab")
        clean_env.setenv("INFRAHUB_K8S_NAMESPACE", "prod")
        clean_env.setenv("INFRAHUB_S3_UPLOAD", "true")
        clean_env.setenv("INFRAHUB_LOG_FORMAT", "JSON")
        clean_env.setenv("INFRAHUB_QUIESCE_DELAY", "0")
        clean_env.setenv("INFRAHUB_WATCHDOG_DIR", "/opt/watchdog")
        clean_env.setenv("S3_BUCKET", "bucket")
        clean_env.setenv("S3_ENDPOINT", "http://minio:9000")

        config = InfrahubOpsConfig.from_env()

        assert config.neo4j.username == "admin"
        assert config.neo4j.password == "s3cret"
        assert config.neo4j.backup_metadata == "roles"
        assert config.task_manager_db.password == "pg"
        assert config.backup_dir == "/backups"
        assert config.compose_project == "lab"
        assert config.k8s_namespace == "prod"
        assert config.s3_upload is True
        assert config.log_format == "json"
        assert config.quiesce_delay == 0
        assert config.watchdog_asset_dir == "/opt/watchdog"
        assert config.s3.bucket == "bucket"
        assert config.s3.endpoint == "http://minio:9000"

    def test_empty_strings_are_unset(self, clean_env):
        clean_env.setenv("INFRAHUB_PROJECT", "")
        clean_env.setenv("S3_REGION", "")

        config = InfrahubOpsConfig.from_env()

        assert config.compose_project is None
        assert config.s3.region == "us-east-1"


class TestValidation:
    def test_invalid_backup_metadata(self):
        with pytest.raises(ValueError, match="backup_metadata must be one of"):
            Neo4jConfig(backup_metadata="everything")

    def test_negative_quiesce_delay(self):
        with pytest.raises(ValueError, match="quiesce_delay must be non-negative"):
            InfrahubOpsConfig(quiesce_delay=-1)

    def test_task_wait_timeout_positive(self):
        with pytest.raises(ValueError, match="task_wait_timeout must be positive"):
            InfrahubOpsConfig(task_wait_timeout=0)

    def test_log_format(self):
        with pytest.raises(ValueError, match="log_format must be one of"):
            InfrahubOpsConfig(log_format="xml")

    def test_replace_revalidates(self):
        with pytest.raises(ValueError):
            dataclasses.replace(InfrahubOpsConfig(), log_format="yaml")

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            InfrahubOpsConfig().backup_dir = "/elsewhere"


class TestS3Validation:
    def test_complete(self):
        S3Config(bucket="b", access_key_id="id", secret_access_key="secret").validate()

    @pytest.mark.parametrize(
        "config, variable",
        [
            (S3Config(access_key_id="id", secret_access_key="secret"), "S3_BUCKET"),
            (S3Config(bucket="b", secret_access_key="secret"), "S3_ACCESS_KEY_ID"),
            (S3Config(bucket="b", access_key_id="id"), "S3_SECRET_ACCESS_KEY"),
        ],
    )
    def test_missing_setting_named(self, config, variable):
        with pytest.raises(ConfigurationError, match=variable):
            config.validate()
