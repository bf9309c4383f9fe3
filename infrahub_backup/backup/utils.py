"""Integrity and archive helpers for backup/restore operations."""

import hashlib
import json
import os
import tarfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from .._utils import logger
from ..exceptions import IntegrityError
from .models import BackupMetadata

ARCHIVE_ROOT = "backup"
ARCHIVE_SUFFIX = ".tar.gz"
METADATA_FILENAME = "backup_information.json"


def compute_checksum(file_path: Path) -> str:
    """Compute SHA-256 checksum of file.

    Args:
        file_path: Path to file

    Returns:
        Lowercase hex digest
    """
    sha256 = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)

    return sha256.hexdigest()


def compute_directory_checksums(directory: Path, relative_to: Path) -> Dict[str, str]:
    """Checksum every file below ``directory``.

    Keys are POSIX paths relative to ``relative_to``. Any unreadable file
    aborts the whole computation; nothing is silently left out.

    Raises:
        IntegrityError: If the directory is missing or a file cannot be read
    """
    if not directory.is_dir():
        raise IntegrityError(f"backup directory not found: {directory}")

    checksums = {}
    for file_path in sorted(directory.rglob("*")):
        if file_path.is_dir():
            continue
        relative_path = file_path.relative_to(relative_to).as_posix()
        try:
            checksums[relative_path] = compute_checksum(file_path)
        except OSError as err:
            raise IntegrityError(f"failed to calculate checksum for {relative_path}: {err}") from err
    return checksums


def verify_checksums(root: Path, checksums: Dict[str, str], skip: Iterable[str] = ()) -> None:
    """Verify every recorded checksum against the files under ``root``.

    Raises:
        IntegrityError: On a key outside ``root``, the first missing file or digest mismatch
    """
    skipped = set(skip)
    resolved_root = root.resolve()
    for relative_path in sorted(checksums):
        if relative_path in skipped:
            continue
        if PurePosixPath(relative_path).is_absolute():
            raise IntegrityError(f"invalid path in backup checksums: {relative_path}")
        file_path = (root / relative_path).resolve()
        if resolved_root not in file_path.parents:
            raise IntegrityError(f"invalid path in backup checksums: {relative_path}")
        if not file_path.is_file():
            raise IntegrityError(f"missing backup file: {relative_path}")
        expected = checksums[relative_path].lower()
        try:
            actual = compute_checksum(file_path)
        except OSError as err:
            raise IntegrityError(f"failed to calculate checksum for {relative_path}: {err}") from err
        if actual != expected:
            raise IntegrityError(
                f"checksum mismatch for {relative_path}: expected {expected}, got {actual}"
            )


def generate_backup_filename(now: Optional[datetime] = None) -> str:
    """Backup filename in format: infrahub_backup_YYYYMMDD_HHMMSS.tar.gz"""
    now = now or datetime.now(timezone.utc)
    return f"infrahub_backup_{now.strftime('%Y%m%d_%H%M%S')}{ARCHIVE_SUFFIX}"


def backup_id_from_filename(filename: str) -> str:
    if filename.endswith(ARCHIVE_SUFFIX):
        return filename[: -len(ARCHIVE_SUFFIX)]
    return filename


def unique_backup_path(directory: Path, now: Optional[datetime] = None) -> Path:
    """Path for a new archive in ``directory`` that does not exist yet.

    Backups started within the same second get ``_1``, ``_2``... appended
    to the timestamped name.
    """
    filename = generate_backup_filename(now)
    candidate = directory / filename
    counter = 1
    while candidate.exists():
        candidate = directory / f"{backup_id_from_filename(filename)}_{counter}{ARCHIVE_SUFFIX}"
        counter += 1
    return candidate


def create_archive(source_dir: Path, output_path: Path) -> int:
    """Create a gzip tarball of ``source_dir`` with every entry under ``backup/``.

    The archive is written next to ``output_path`` under a hidden partial
    name and renamed into place only once complete. An existing archive
    at ``output_path`` is never replaced.

    Returns:
        Size of created archive in bytes

    Raises:
        IntegrityError: If ``output_path`` exists or the archive cannot be written
    """
    if output_path.exists():
        raise IntegrityError(f"backup archive already exists: {output_path}")

    logger.info(f"Creating archive: {output_path}")
    partial_path = output_path.with_name(f".{output_path.name}.partial")

    try:
        with tarfile.open(partial_path, "w:gz") as tar:
            tar.add(source_dir, arcname=ARCHIVE_ROOT)
        os.replace(partial_path, output_path)
    except (tarfile.TarError, OSError) as err:
        raise IntegrityError(f"failed to create backup archive {output_path}: {err}") from err
    finally:
        if partial_path.exists():
            partial_path.unlink()

    archive_size = output_path.stat().st_size
    logger.info(f"Archive created: {archive_size:,} bytes")
    return archive_size


def extract_archive(archive_path: Path, output_dir: Path) -> None:
    """Extract a backup tarball, refusing members that escape ``output_dir``.

    Raises:
        IntegrityError: If the archive cannot be read or contains unsafe paths
    """
    logger.info(f"Extracting archive: {archive_path} to {output_dir}")
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
            for member in members:
                path = PurePosixPath(member.name)
                if path.is_absolute() or ".." in path.parts:
                    raise IntegrityError(f"unsafe path in backup archive: {member.name}")
                if member.issym() or member.islnk():
                    raise IntegrityError(f"links are not allowed in backup archive: {member.name}")
            tar.extractall(output_dir, members=members)
    except (tarfile.TarError, OSError, EOFError) as err:
        raise IntegrityError(f"failed to extract backup: {err}") from err

    logger.info("Archive extracted successfully")


def save_metadata(metadata: BackupMetadata, output_path: Path) -> None:
    output_path.write_text(metadata.to_json(), encoding="utf-8")
    logger.debug(f"Metadata saved: {output_path}")


def load_metadata(metadata_path: Path) -> BackupMetadata:
    """Load and validate ``backup_information.json``.

    Raises:
        IntegrityError: If the file is missing or cannot be parsed
    """
    if not metadata_path.is_file():
        raise IntegrityError("invalid backup file: missing metadata")

    try:
        data = json.loads(metadata_path.read_text(encoding="utf-8"))
        return BackupMetadata.model_validate(data)
    except (OSError, ValueError, ValidationError) as err:
        raise IntegrityError(f"failed to parse metadata: {err}") from err
