"""Exception hierarchy for backup and restore operations."""

import shlex
from pathlib import Path
from typing import List, Optional, Sequence


class InfrahubOpsError(Exception):
    """Base exception for all backup/restore errors."""
    pass


class PrerequisiteError(InfrahubOpsError):
    """A required CLI tool or input file is missing."""
    pass


class ConfigurationError(InfrahubOpsError):
    pass


class EnvironmentNotFoundError(InfrahubOpsError):
    """No Infrahub deployment could be located."""
    pass


class AmbiguousEnvironmentError(InfrahubOpsError):
    def __init__(self, kind: str, candidates: List[str], hint: str):
        self.candidates = list(candidates)
        super().__init__(
            f"multiple {kind}s found: {', '.join(self.candidates)} (set {hint})"
        )


class CommandError(InfrahubOpsError):
    """An external command exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        output: str = "",
        service: Optional[str] = None,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        self.service = service
        location = f" in service {service}" if service else ""
        message = f"command `{shlex.join(self.command)}`{location} exited with status {returncode}"
        if output.strip():
            message += f"\nOutput: {output.strip()}"
        super().__init__(message)


class ServiceResolutionError(InfrahubOpsError):
    """A logical service could not be mapped to a container or pod."""
    pass


class OperationTimeoutError(InfrahubOpsError):
    pass


class EditionMismatchError(InfrahubOpsError):
    pass


class WatchdogError(InfrahubOpsError):
    """The database process could not be paused or resumed."""
    pass


class IntegrityError(InfrahubOpsError):
    """Backup archive is incomplete, unparseable or fails checksum validation."""
    pass


class RunningTasksError(InfrahubOpsError):
    pass


class RestoreStepError(InfrahubOpsError):
    """A restore step failed after the application services were stopped.

    No rollback is attempted; the application tier stays stopped.
    """

    def __init__(self, step: str, cause: Exception):
        self.step = step
        super().__init__(
            f"restore failed during step '{step}': {cause} "
            "(application services remain stopped; manual recovery required)"
        )


class ServiceRestartError(InfrahubOpsError):
    """The backup archive is valid but quiesced services did not restart."""

    def __init__(self, message: str, backup_path: Path):
        self.backup_path = backup_path
        super().__init__(message)


class S3UploadError(InfrahubOpsError):
    """The backup archive is valid locally but could not be uploaded."""

    def __init__(self, message: str, backup_path: Path):
        self.backup_path = backup_path
        super().__init__(message)
