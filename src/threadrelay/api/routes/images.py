"""Image upload endpoint."""

from __future__ import annotations

from fastapi import APIRouter, File, UploadFile

from threadrelay.api.dependencies import Objects
from threadrelay.api.middleware.request_context import get_request_id
from threadrelay.core.constants import MAX_IMAGE_SIZE
from threadrelay.models.api_models import UploadImageResponse

router = APIRouter()


@router.post(
    "/upload-image",
    status_code=201,
    response_model=UploadImageResponse,
    summary="Upload an image",
    description="Store a JPEG, PNG, GIF or WebP image of at most 2 MB and return its public URL.",
    responses={
        400: {"description": "Missing, unsupported or oversized image"},
        502: {"description": "Upload failed after retries"},
        504: {"description": "Upload timed out"},
    },
)
async def upload_image(objects: Objects, image: UploadFile = File(...)) -> UploadImageResponse:
    # One byte over the limit is enough to reject without reading the rest
    data = await image.read(MAX_IMAGE_SIZE + 1)
    uploaded = await objects.upload(data, image.content_type or "")
    return UploadImageResponse(url=uploaded.url, key=uploaded.key, request_id=get_request_id())
