"""Command-line entry point for infrahub-backup."""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import List, Optional

from . import __version__
from ._utils import logger
from .backup import BackupManager
from .config import InfrahubOpsConfig, LOG_FORMATS
from .environment import EnvironmentFactory
from .exceptions import InfrahubOpsError, S3UploadError, ServiceRestartError


class JsonFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(log_format: str = "text", level: int = logging.INFO) -> None:
    """Attach an app-managed handler to the package logger."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="infrahub-backup",
        description="Back up and restore Infrahub deployments on Docker Compose or Kubernetes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--project", help="Target specific Docker Compose project")
    parser.add_argument("--k8s-namespace", help="Target Kubernetes namespace")
    parser.add_argument("--backup-dir", help="Backup directory")
    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        help="Log output format (can also set INFRAHUB_LOG_FORMAT)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a backup of the Infrahub deployment")
    create.add_argument("--force", action="store_true", help="Skip the running task check")
    create.add_argument(
        "--exclude-task-manager",
        action="store_true",
        help="Do not back up the task manager database",
    )
    create.add_argument(
        "--s3-upload",
        action="store_true",
        default=None,
        help="Upload backup to S3 (requires S3_* env vars)",
    )
    create.add_argument(
        "--neo4j-metadata",
        choices=("all", "users", "roles", "none"),
        help="Metadata included in Enterprise online backups",
    )

    restore = subparsers.add_parser("restore", help="Restore Infrahub from a backup archive")
    restore.add_argument("backup_file", help="Path to the backup .tar.gz archive")
    restore.add_argument(
        "--exclude-task-manager",
        action="store_true",
        help="Do not restore the task manager database",
    )
    restore.add_argument(
        "--restore-migrate-format",
        action="store_true",
        help="Migrate the restored Neo4j store to block format",
    )

    environment = subparsers.add_parser("environment", help="Environment detection and management")
    env_commands = environment.add_subparsers(dest="env_command", required=True)
    env_commands.add_parser("detect", help="Detect the active deployment environment")
    env_commands.add_parser("list", help="List available Infrahub deployment targets")

    return parser


def apply_arguments(config: InfrahubOpsConfig, args: argparse.Namespace) -> InfrahubOpsConfig:
    """Overlay command-line flags on the environment configuration."""
    overrides = {}
    if args.project:
        overrides["compose_project"] = args.project
    if args.k8s_namespace:
        overrides["k8s_namespace"] = args.k8s_namespace
    if args.backup_dir:
        overrides["backup_dir"] = args.backup_dir
    if args.log_format:
        overrides["log_format"] = args.log_format
    if getattr(args, "s3_upload", None) is not None:
        overrides["s3_upload"] = args.s3_upload
    if getattr(args, "neo4j_metadata", None):
        overrides["neo4j"] = dataclasses.replace(config.neo4j, backup_metadata=args.neo4j_metadata)
    return dataclasses.replace(config, **overrides) if overrides else config


async def _list_environments(factory: EnvironmentFactory) -> None:
    docker_projects, k8s_namespaces = await factory.list_environments()
    if not docker_projects and not k8s_namespaces:
        logger.info("No Infrahub deployments detected")
        return
    if docker_projects:
        logger.info("Docker Compose projects:")
        for project in docker_projects:
            print(f"  {project}")
    if k8s_namespaces:
        logger.info("Kubernetes namespaces:")
        for namespace in k8s_namespaces:
            print(f"  {namespace}")


async def run(config: InfrahubOpsConfig, args: argparse.Namespace) -> None:
    factory = EnvironmentFactory(config)

    if args.command == "environment":
        if args.env_command == "list":
            await _list_environments(factory)
        else:
            await factory.detect_environment()
        return

    backend = await factory.detect_environment()
    manager = BackupManager(config, backend)

    if args.command == "create":
        result = await manager.create_backup(
            force=args.force,
            exclude_task_manager=args.exclude_task_manager,
        )
        logger.info(f"Backup available at {result.backup_path}")
    elif args.command == "restore":
        await manager.restore_backup(
            args.backup_file,
            exclude_task_manager=args.exclude_task_manager,
            migrate_format=args.restore_migrate_format,
        )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = apply_arguments(InfrahubOpsConfig.from_env(), args)
    except ValueError as err:
        parser.error(str(err))

    configure_logging(config.log_format, logging.DEBUG if args.debug else logging.INFO)

    try:
        asyncio.run(run(config, args))
    except (ServiceRestartError, S3UploadError) as err:
        logger.error(str(err))
        logger.error(f"The local backup file is valid: {err.backup_path}")
        return 1
    except InfrahubOpsError as err:
        logger.error(str(err))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
