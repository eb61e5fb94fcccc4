"""Tests for image uploads to S3."""

from __future__ import annotations

import time

from typing import Any
from unittest.mock import MagicMock

import pytest

from botocore.exceptions import ClientError, EndpointConnectionError

from threadrelay.api.middleware.exception_handlers import UploadError, ValidationException
from threadrelay.api.services.object_store import ObjectStore, validate_image
from threadrelay.core.constants import MAX_IMAGE_SIZE
from threadrelay.models.error_models import ErrorCode

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _client_error() -> ClientError:
    return ClientError({"Error": {"Code": "SlowDown", "Message": "Reduce your request rate"}}, "PutObject")


def _store(settings: Any, client: MagicMock, **overrides: Any) -> ObjectStore:
    store = ObjectStore(settings.model_copy(update=overrides))
    store._client = client
    return store


class TestValidateImage:
    @pytest.mark.parametrize(
        ("content_type", "ext"),
        [("image/jpeg", "jpg"), ("image/PNG", "png"), ("image/gif", "gif"), ("image/webp", "webp")],
    )
    def test_allowed_types(self, content_type: str, ext: str) -> None:
        assert validate_image(PNG, content_type) == ext

    def test_empty(self) -> None:
        with pytest.raises(ValidationException) as exc_info:
            validate_image(b"", "image/png")
        assert exc_info.value.code == ErrorCode.FIELD_REQUIRED

    def test_unsupported(self) -> None:
        with pytest.raises(ValidationException) as exc_info:
            validate_image(PNG, "image/svg+xml")
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_IMAGE_TYPE
        assert "image/webp" in exc_info.value.message_for("en")

    def test_too_large(self) -> None:
        validate_image(b"\x00" * MAX_IMAGE_SIZE, "image/png")

        with pytest.raises(ValidationException) as exc_info:
            validate_image(b"\x00" * (MAX_IMAGE_SIZE + 1), "image/png")
        assert exc_info.value.code == ErrorCode.IMAGE_TOO_LARGE


class TestPublicUrl:
    def test_virtual_hosted(self, settings: Any) -> None:
        store = _store(settings, MagicMock())

        assert store.public_url("ai/images/a.png") == (
            "https://relay-test-bucket.s3.eu-west-1.amazonaws.com/ai/images/a.png"
        )

    def test_path_style(self, settings: Any) -> None:
        store = _store(settings, MagicMock(), s3_use_path_style=True)

        assert store.public_url("ai/images/a.png") == (
            "https://s3.eu-west-1.amazonaws.com/relay-test-bucket/ai/images/a.png"
        )

    def test_custom_endpoint(self, settings: Any) -> None:
        store = _store(settings, MagicMock(), s3_endpoint="http://localhost:9000/")

        assert store.public_url("ai/images/a.png") == "http://localhost:9000/relay-test-bucket/ai/images/a.png"


class TestUpload:
    @pytest.mark.asyncio
    async def test_success(self, settings: Any) -> None:
        client = MagicMock()
        store = _store(settings, client)

        uploaded = await store.upload(PNG, "image/png")

        assert uploaded.key.startswith("ai/images/")
        assert uploaded.key.endswith(".png")
        assert uploaded.url.endswith(uploaded.key)
        client.put_object.assert_called_once_with(
            Bucket="relay-test-bucket", Key=uploaded.key, Body=PNG, ContentType="image/png"
        )

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, settings: Any) -> None:
        client = MagicMock()
        client.put_object.side_effect = [_client_error(), EndpointConnectionError(endpoint_url="s3"), None]
        store = _store(settings, client)

        uploaded = await store.upload(PNG, "image/png")

        assert client.put_object.call_count == 3
        assert uploaded.key.startswith("ai/images/")

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, settings: Any) -> None:
        client = MagicMock()
        client.put_object.side_effect = _client_error()
        store = _store(settings, client)

        with pytest.raises(UploadError) as exc_info:
            await store.upload(PNG, "image/png")

        assert exc_info.value.code == ErrorCode.S3_UPLOAD_FAILED
        assert client.put_object.call_count == 3

    @pytest.mark.asyncio
    async def test_timeout_on_last_attempt(self, settings: Any) -> None:
        client = MagicMock()
        client.put_object.side_effect = lambda **kwargs: time.sleep(0.2)
        store = _store(settings, client, s3_max_retries=1, s3_request_timeout=0.05)

        with pytest.raises(UploadError) as exc_info:
            await store.upload(PNG, "image/png")

        assert exc_info.value.code == ErrorCode.S3_TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_bucket(self, settings: Any) -> None:
        client = MagicMock()
        store = _store(settings, client, s3_bucket=None)

        with pytest.raises(UploadError) as exc_info:
            await store.upload(PNG, "image/png")

        assert exc_info.value.code == ErrorCode.S3_UPLOAD_FAILED
        client.put_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_image_is_not_uploaded(self, settings: Any) -> None:
        client = MagicMock()
        store = _store(settings, client)

        with pytest.raises(ValidationException):
            await store.upload(b"plain", "text/plain")

        client.put_object.assert_not_called()
