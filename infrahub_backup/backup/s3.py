"""Upload finished backup archives to S3-compatible object storage."""

from pathlib import Path
from typing import Optional

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .._utils import format_bytes, logger
from ..config import S3Config
from ..exceptions import ConfigurationError, S3UploadError


class S3Uploader:
    """Single-request upload of a local archive, keyed by its filename."""

    def __init__(self, config: S3Config, session: Optional[aioboto3.Session] = None):
        self.config = config
        self.session = session or aioboto3.Session()

    def _client_kwargs(self) -> dict:
        kwargs = {
            "region_name": self.config.region,
            "aws_access_key_id": self.config.access_key_id,
            "aws_secret_access_key": self.config.secret_access_key,
        }
        if self.config.endpoint:
            # MinIO and most S3-compatible services need path-style addressing
            logger.debug("Configuring S3 compatibility mode for non-AWS endpoint")
            kwargs["endpoint_url"] = self.config.endpoint
            kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})
        return kwargs

    async def upload(self, backup_path: Path) -> str:
        """Upload ``backup_path`` and return the object key.

        A single PutObject either stores the whole archive or nothing.

        Raises:
            S3UploadError: On configuration or transfer failure; the local archive is untouched
        """
        key = backup_path.name
        try:
            self.config.validate()
            size = backup_path.stat().st_size
            logger.info(
                f"Uploading backup to S3 (bucket={self.config.bucket}, "
                f"endpoint={self.config.endpoint or 'aws'}, region={self.config.region}, "
                f"key={key}, size={format_bytes(size)})"
            )
            async with self.session.client("s3", **self._client_kwargs()) as s3:
                with open(backup_path, "rb") as body:
                    await s3.put_object(
                        Bucket=self.config.bucket,
                        Key=key,
                        Body=body,
                        ContentLength=size,
                        ContentType="application/gzip",
                    )
        except (ConfigurationError, BotoCoreError, ClientError, OSError) as err:
            raise S3UploadError(
                f"failed to upload backup to S3: {err} (local backup is still available at {backup_path})",
                backup_path=backup_path,
            ) from err

        logger.info(f"Backup successfully uploaded to S3: s3://{self.config.bucket}/{key}")
        return key
