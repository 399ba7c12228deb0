"""
Object store endpoints for image and video payloads.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from ephemera.api.deps import get_object_store
from ephemera.core.logging import get_logger
from ephemera.core.object_store import LocalObjectStore, ObjectStoreError
from ephemera.schemas.message import ErrorResponse, MediaUploadResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/media", tags=["Media"])


@router.post(
    "",
    response_model=MediaUploadResponse,
    status_code=201,
    responses={415: {"model": ErrorResponse, "description": "Unsupported media"}},
    summary="Upload media",
    description="Upload raw image/video bytes; the Content-Type header names the format."
)
async def upload_media(
    request: Request,
    store: Annotated[LocalObjectStore, Depends(get_object_store)],
) -> MediaUploadResponse:
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    try:
        key = store.put(body, content_type)
    except ObjectStoreError as e:
        logger.warning(f"Media upload rejected: {e}")
        raise HTTPException(status_code=415, detail=str(e))

    return MediaUploadResponse(
        key=key,
        url=store.url_for(key),
        content_type=content_type.split(";")[0].strip().lower(),
        size=len(body),
    )


@router.get(
    "/{key}",
    response_class=Response,
    responses={404: {"model": ErrorResponse, "description": "Unknown key"}},
    summary="Fetch media",
)
async def fetch_media(
    key: str,
    store: Annotated[LocalObjectStore, Depends(get_object_store)],
) -> Response:
    try:
        data, content_type = store.get(key)
    except ObjectStoreError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return Response(content=data, media_type=content_type)
