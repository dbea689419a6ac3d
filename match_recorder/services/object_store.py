"""S3-compatible object storage for finished recordings."""

import logging
import os
from datetime import datetime, timezone

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from match_recorder.models.config import StorageConfig
from match_recorder.services.interfaces import StoredObject

logger = logging.getLogger(__name__)

# 100 MB multipart threshold / chunk size for large uploads
_MULTIPART_THRESHOLD = 100 * 1024 * 1024
_MULTIPART_CHUNKSIZE = 100 * 1024 * 1024


class ObjectStoreError(Exception):
    """Exception raised when the object store rejects or cannot serve a request."""
    pass


class S3ObjectStore:
    """ObjectStore implementation for any S3-compatible endpoint.

    Path-style addressing is used so that non-AWS providers work unchanged.
    """

    def __init__(self, config: StorageConfig, client=None):
        if not config.is_configured:
            raise ObjectStoreError("Object storage bucket is not configured")

        self.config = config
        self.bucket = config.bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )
        self._transfer_config = TransferConfig(
            multipart_threshold=_MULTIPART_THRESHOLD,
            multipart_chunksize=_MULTIPART_CHUNKSIZE,
            max_concurrency=2,
        )
        logger.info(f"Object store initialized: {self.bucket}")

    def object_url(self, key: str) -> str:
        """Canonical (unsigned) URL of an object."""
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.config.region}.amazonaws.com/{key}"

    def put(self, key: str, local_path: str, content_type: str) -> StoredObject:
        """Upload a local file, using multipart for large files.

        Raises:
            ObjectStoreError: If the file is unreadable or the upload is rejected
        """
        try:
            size = os.path.getsize(local_path)
        except OSError as e:
            raise ObjectStoreError(f"Local file is not readable: {local_path} - {e}")

        logger.info(f"Uploading {os.path.basename(local_path)} ({size / (1024 * 1024):.1f} MB) -> s3://{self.bucket}/{key}")
        try:
            self._client.upload_file(
                local_path,
                self.bucket,
                key,
                Config=self._transfer_config,
                ExtraArgs={
                    "ContentType": content_type,
                    "Metadata": {
                        "original-name": os.path.basename(local_path),
                        "upload-timestamp": datetime.now(timezone.utc).isoformat(),
                        "file-size": str(size),
                    },
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Upload to s3://{self.bucket}/{key} failed: {e}")

        logger.info(f"Upload complete: {key}")
        return StoredObject(key=key, url=self.object_url(key), size=size)

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
            logger.info(f"Deleted object: {key}")
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Failed to delete s3://{self.bucket}/{key}: {e}")

    def presigned_url(self, key: str, ttl_seconds: int, operation: str = "get_object") -> str:
        try:
            url = self._client.generate_presigned_url(
                ClientMethod=operation,
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Failed to presign {key}: {e}")
        logger.info(f"Generated presigned URL for {key} (expires in {ttl_seconds}s)")
        return url
