"""Object storage access for scans and report attachments.

The orchestration core only ever needs time-limited read URLs; it never holds
storage credentials itself.
"""

import asyncio
import logging
from typing import Protocol
from urllib.parse import urlparse

from app.config import AWS_REGION, AWS_S3_BUCKET_NAME, SIGNED_URL_EXPIRY_SECONDS

try:  # Optional: only required when AWS_S3_BUCKET_NAME is set
    import boto3  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    boto3 = None

logger = logging.getLogger(__name__)


def extract_file_key(url: str) -> str | None:
    """Return the object key of an S3 URL, or None for non-URLs."""
    parsed = urlparse(url or "")
    if not parsed.scheme or not parsed.netloc:
        return None
    key = parsed.path.lstrip("/")
    return key or None


class ObjectStorage(Protocol):
    async def signed_view_url(self, url: str) -> str: ...


class PassthroughStorage:
    """Used when no bucket is configured: URLs are already readable."""

    async def signed_view_url(self, url: str) -> str:
        return url


class S3ObjectStorage:
    def __init__(
        self,
        bucket: str,
        region: str = AWS_REGION,
        expires_in: int = SIGNED_URL_EXPIRY_SECONDS,
        client=None,
    ) -> None:
        if client is None:
            if boto3 is None:
                raise RuntimeError(
                    "AWS_S3_BUCKET_NAME is set but boto3 is not installed. "
                    "Install boto3 or unset AWS_S3_BUCKET_NAME."
                )
            client = boto3.client("s3", region_name=region)
        self._client = client
        self.bucket = bucket
        self.expires_in = expires_in

    async def signed_view_url(self, url: str) -> str:
        key = extract_file_key(url)
        if not key:
            return url
        # boto3 signs locally but is synchronous; keep it off the event loop.
        return await asyncio.to_thread(
            self._client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.expires_in,
        )


def build_storage() -> ObjectStorage:
    if AWS_S3_BUCKET_NAME:
        logger.info("Using S3 bucket %s for signed scan URLs", AWS_S3_BUCKET_NAME)
        return S3ObjectStorage(AWS_S3_BUCKET_NAME)
    return PassthroughStorage()
