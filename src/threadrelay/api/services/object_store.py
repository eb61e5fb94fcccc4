"""
Image uploads to S3.

Uploaded images are stored under ``ai/images/<uuid>.<ext>`` and referenced
from messages by their public URL.
"""

from __future__ import annotations

import asyncio
import functools
import uuid

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError

from threadrelay.api.middleware.exception_handlers import UploadError, ValidationException
from threadrelay.core.constants import ALLOWED_IMAGE_TYPES, IMAGE_KEY_PREFIX, MAX_IMAGE_SIZE
from threadrelay.models.error_models import ErrorCode
from threadrelay.utils.logger import logger
from threadrelay.utils.metrics import image_uploads_total

if TYPE_CHECKING:
    from threadrelay.core.constants import Settings


@dataclass(frozen=True)
class UploadedObject:
    url: str
    key: str


def validate_image(data: bytes, content_type: str | None) -> str:
    """Check type and size of an uploaded image and return its file extension.

    Raises:
        ValidationException: Empty, unsupported or oversized image
    """
    if not data:
        raise ValidationException(ErrorCode.FIELD_REQUIRED, params={"field": "image"})
    ext = ALLOWED_IMAGE_TYPES.get((content_type or "").lower())
    if ext is None:
        raise ValidationException(
            ErrorCode.UNSUPPORTED_IMAGE_TYPE,
            params={"allowed": ", ".join(ALLOWED_IMAGE_TYPES)},
        )
    if len(data) > MAX_IMAGE_SIZE:
        raise ValidationException(ErrorCode.IMAGE_TOO_LARGE, params={"max_mb": MAX_IMAGE_SIZE // (1024 * 1024)})
    return ext


class ObjectStore:
    """Uploads images with per-attempt timeouts and exponential backoff."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazy-initialize boto3 client."""
        if self._client is None:
            import boto3

            client_kwargs: dict[str, Any] = {
                "service_name": "s3",
                "region_name": self.settings.s3_region,
            }

            # Only pass explicit credentials if configured (allows fallback to AWS profile/SSO)
            if self.settings.aws_access_key_id:
                client_kwargs["aws_access_key_id"] = self.settings.aws_access_key_id
            if self.settings.aws_secret_access_key:
                client_kwargs["aws_secret_access_key"] = self.settings.aws_secret_access_key

            if self.settings.s3_endpoint:
                client_kwargs["endpoint_url"] = self.settings.s3_endpoint

            self._client = boto3.client(**client_kwargs)
        return self._client

    @property
    def bucket(self) -> str:
        return str(self.settings.s3_bucket)

    def public_url(self, key: str) -> str:
        region = self.settings.s3_region
        if self.settings.s3_endpoint:
            return f"{self.settings.s3_endpoint.rstrip('/')}/{self.bucket}/{key}"
        if self.settings.s3_use_path_style:
            return f"https://s3.{region}.amazonaws.com/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{key}"

    async def upload(self, data: bytes, content_type: str) -> UploadedObject:
        """Validate and upload an image.

        Raises:
            ValidationException: The image failed validation
            UploadError: ``S3_TIMEOUT`` if the last attempt timed out,
                ``S3_UPLOAD_FAILED`` otherwise
        """
        ext = validate_image(data, content_type)
        if not self.settings.s3_bucket:
            raise UploadError(ErrorCode.S3_UPLOAD_FAILED, cause=RuntimeError("s3_bucket is not configured"))

        key = f"{IMAGE_KEY_PREFIX}/{uuid.uuid4()}.{ext}"
        put = functools.partial(
            self._get_client().put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

        loop = asyncio.get_running_loop()
        attempts = self.settings.s3_max_retries
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(loop.run_in_executor(None, put), timeout=self.settings.s3_request_timeout)
            except (TimeoutError, BotoCoreError, ClientError) as e:  # noqa: PERF203
                last_error = e
                logger.warning(f"S3 upload attempt {attempt}/{attempts} for {key} failed: {e!r}")
                if attempt < attempts:
                    await asyncio.sleep(self.settings.s3_retry_base_delay * 2 ** (attempt - 1))
                continue

            url = self.public_url(key)
            image_uploads_total.labels(outcome="success").inc()
            logger.info(f"S3 upload succeeded for {key} (attempt {attempt})")
            return UploadedObject(url=url, key=key)

        if isinstance(last_error, TimeoutError):
            image_uploads_total.labels(outcome="timeout").inc()
            raise UploadError(ErrorCode.S3_TIMEOUT, cause=last_error)
        image_uploads_total.labels(outcome="failed").inc()
        raise UploadError(ErrorCode.S3_UPLOAD_FAILED, cause=last_error)
