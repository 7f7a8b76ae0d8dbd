"""S3-compatible remote object store."""

import asyncio
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from media_relay.core.config import Settings
from media_relay.core.errors import ConfigurationError, UpstreamFetchError
from media_relay.core.logging import get_logger
from media_relay.storage.retry import with_retry

logger = get_logger()

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_TRANSIENT_CODES = {"500", "502", "503", "504", "SlowDown", "RequestTimeout"}


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code") in _TRANSIENT_CODES
    return True


class S3ObjectStore:
    """Remote object store reached through boto3.

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, bucket: str, public_domain: str, client: Any):
        self.bucket = bucket
        self.public_domain = public_domain.rstrip("/")
        self.client = client

    @classmethod
    def from_settings(cls, config: Settings) -> "S3ObjectStore":
        """Build a store from settings.

        Raises:
            ConfigurationError: If bucket, credentials or public domain are missing
        """
        if not config.remote_store_configured:
            raise ConfigurationError("Remote object store is not configured")

        client = boto3.client(
            "s3",
            endpoint_url=config.S3_ENDPOINT_URL,
            aws_access_key_id=config.S3_ACCESS_KEY_ID,
            aws_secret_access_key=config.S3_SECRET_ACCESS_KEY,
            region_name=config.S3_REGION,
            config=BotoConfig(connect_timeout=10, read_timeout=60, retries={"max_attempts": 1}),
        )
        logger.info(
            "remote_store_configured",
            bucket=config.S3_BUCKET_NAME,
            endpoint=config.S3_ENDPOINT_URL,
        )
        return cls(
            bucket=str(config.S3_BUCKET_NAME),
            public_domain=str(config.S3_PUBLIC_DOMAIN),
            client=client,
        )

    def public_url(self, key: str) -> str:
        return f"https://{self.public_domain}/{key}"

    @with_retry(retry_on=(ClientError, EndpointConnectionError), should_retry=_is_transient)
    async def _head(self, key: str) -> dict[str, Any]:
        return await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)

    async def exists(self, key: str) -> bool:
        """Check whether an object exists.

        Raises:
            UpstreamFetchError: For failures other than a missing object
        """
        try:
            await self._head(key)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return False
            raise UpstreamFetchError(f"Remote store lookup failed for {key}: {code}") from e
        except BotoCoreError as e:
            raise UpstreamFetchError(f"Remote store unreachable: {e}") from e

    @with_retry(retry_on=(ClientError, EndpointConnectionError), should_retry=_is_transient)
    async def _put(
        self, key: str, data: bytes, content_type: str, metadata: dict[str, str]
    ) -> None:
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            Metadata=metadata,
        )

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Upload bytes and return the public URL.

        Raises:
            UpstreamFetchError: If the upload fails after retries
        """
        # Object metadata must be ASCII strings
        clean_metadata = {
            str(k): str(v).encode("ascii", "ignore").decode()
            for k, v in (metadata or {}).items()
            if v is not None
        }
        try:
            await self._put(key, data, content_type, clean_metadata)
        except (ClientError, BotoCoreError) as e:
            raise UpstreamFetchError(f"Remote store upload failed for {key}: {e}") from e

        url = self.public_url(key)
        logger.info(
            "remote_store_uploaded",
            key=key,
            size_mb=round(len(data) / (1024 * 1024), 2),
            url=url,
        )
        return url

    async def get(self, key: str) -> bytes:
        """Download an object.

        Raises:
            UpstreamFetchError: If the object cannot be read
        """
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=key
            )
            return await asyncio.to_thread(response["Body"].read)
        except (ClientError, BotoCoreError) as e:
            raise UpstreamFetchError(f"Remote store download failed for {key}: {e}") from e
