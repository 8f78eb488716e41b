import io
import logging
from dataclasses import dataclass
from functools import lru_cache

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import StorageError
from ..settings import settings

logger = logging.getLogger("recipebox.storage")


@dataclass
class PutResult:
    key: str
    size: int


class S3CompatStore:
    """Private S3-compatible bucket; objects are only reachable through signed URLs."""

    def __init__(
        self,
        endpoint_url: str,
        region_name: str,
        access_key_id: str,
        secret_access_key: str,
        bucket: str,
        signed_url_expiry_sec: int = 300,
    ):
        self.bucket = bucket
        self.signed_url_expiry_sec = signed_url_expiry_sec
        self.s3 = boto3.client(
            service_name="s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region_name,
        )

    def put_bytes(self, *, key: str, content_type: str, data: bytes) -> PutResult:
        if ".." in key:
            raise StorageError("Invalid storage key")
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=io.BytesIO(data), ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to upload {key}: {e}")
            raise StorageError("Failed to upload image.") from e
        logger.info(f"Stored {len(data)} bytes at {key}")
        return PutResult(key=key, size=len(data))

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to delete {key}: {e}")
            raise StorageError("Failed to delete image file.") from e
        logger.info(f"Deleted {key}")

    def signed_url(self, key: str, expires_in: int | None = None) -> str:
        """Time-limited GET URL for a private object; empty string if signing fails."""
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in or self.signed_url_expiry_sec,
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to sign URL for {key}: {e}")
            return ""

    def healthcheck(self) -> bool:
        try:
            self.s3.head_bucket(Bucket=self.bucket)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Object store healthcheck failed: {e}")
            return False


@lru_cache(maxsize=1)
def get_store() -> S3CompatStore:
    return S3CompatStore(
        endpoint_url=settings.object_store_endpoint,
        region_name=settings.object_store_region,
        access_key_id=settings.object_store_access_key_id,
        secret_access_key=settings.object_store_secret_access_key,
        bucket=settings.object_store_bucket,
        signed_url_expiry_sec=settings.signed_url_expiry_sec,
    )
