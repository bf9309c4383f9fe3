"""Neo4j edition detection and restore-time edition reconciliation."""

from .._utils import logger
from ..config import Neo4jConfig
from ..environment.base import ExecOptions, ExecutionBackend
from ..exceptions import EditionMismatchError, InfrahubOpsError
from .models import EditionInfo, Neo4jEdition

DATABASE_SERVICE = "database"
EDITION_QUERY = "CALL dbms.components() YIELD edition RETURN edition"


def classify_edition(output: str) -> Neo4jEdition:
    """Anything that does not report community is treated as enterprise."""
    if Neo4jEdition.COMMUNITY.value in output.lower():
        return Neo4jEdition.COMMUNITY
    return Neo4jEdition.ENTERPRISE


class EditionDetector:
    """Determine which Neo4j edition the database service runs."""

    def __init__(self, backend: ExecutionBackend, config: Neo4jConfig):
        self.backend = backend
        self.config = config

    async def detect(self) -> EditionInfo:
        """Query the server edition. Never raises; failures are recorded on the result."""
        command = ["cypher-shell", "--format", "plain", EDITION_QUERY]
        try:
            output = await self.backend.exec(DATABASE_SERVICE, command, ExecOptions(env=self.config.shell_env))
        except InfrahubOpsError as err:
            return EditionInfo(edition=Neo4jEdition.ENTERPRISE, detection_error=str(err))
        return EditionInfo(edition=classify_edition(output))


def reconcile_restore_edition(backup_edition: Neo4jEdition, live: EditionInfo) -> Neo4jEdition:
    """Choose the restore procedure from the recorded and the live edition.

    Community backups always use the community procedure; enterprise
    backups cannot go onto a community server. If the live edition could
    not be detected, the community procedure is used.

    Raises:
        EditionMismatchError: Enterprise backup onto a community server
    """
    if not live.detected:
        logger.warning(
            f"Could not detect Neo4j edition during restore; defaulting to community workflow: {live.detection_error}"
        )
        return Neo4jEdition.COMMUNITY

    if backup_edition == Neo4jEdition.COMMUNITY and live.edition == Neo4jEdition.ENTERPRISE:
        edition = Neo4jEdition.COMMUNITY
    elif backup_edition == Neo4jEdition.ENTERPRISE and live.edition == Neo4jEdition.COMMUNITY:
        raise EditionMismatchError("cannot restore Enterprise backup on Community edition Neo4j")
    else:
        edition = live.edition

    logger.info(f"Detected Neo4j {live.edition.value} edition; using {edition.value} restore procedure")
    return edition
