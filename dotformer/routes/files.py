# dotformer/routes/files.py
import mimetypes
import uuid
from pathlib import PurePosixPath
from urllib.parse import quote
from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool
from dotformer.config import settings
from dotformer.errors import NotFound
from dotformer.schemas import TransformRequest, TransformResponse, UploadResponse
from dotformer.services import Services, get_services
from dotformer.tracking import UsageTracker, track_usage

router = APIRouter(prefix="/v1", tags=["files"])


def new_source_id(account_id: str, filename: str) -> str:
    """Fresh ``{account_id}/{uuid}.{ext}`` name for an upload.

    The client's filename only contributes its extension; every upload gets
    its own stem and therefore its own transformed keys.
    """
    suffix = PurePosixPath(filename).suffix.lower()
    return f"{account_id}/{uuid.uuid4().hex}{suffix}"


def owned_source_id(account_id: str, source_id: str) -> str:
    """Source ids are namespaced by account; foreign ids look missing."""
    if not source_id.startswith(f"{account_id}/"):
        raise NotFound(f"Source not found: {source_id}")
    return source_id


@router.put("/files/{filename}", response_model=UploadResponse)
async def upload_file(
    filename: str,
    request: Request,
    tracker: UsageTracker = Depends(track_usage("upload")),
    services: Services = Depends(get_services),
):
    """Store a source image under a new id in the caller's namespace."""
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty upload")
    if len(body) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail=f"Upload exceeds {settings.max_upload_bytes} bytes")

    source_id = new_source_id(tracker.account_id, filename)
    content_type = (
        request.headers.get("content-type")
        or mimetypes.guess_type(filename)[0]
        or "application/octet-stream"
    )
    tracker.resource_id = source_id
    tracker.byte_size = len(body)

    url = await run_in_threadpool(
        services.source_store.put,
        source_id,
        body,
        content_type,
        None,
        {"original-filename": quote(filename)},
    )
    return UploadResponse(source_id=source_id, filename=filename, size=len(body), url=url)


@router.post("/transform", response_model=TransformResponse)
def transform(
    request: TransformRequest,
    tracker: UsageTracker = Depends(track_usage("transform")),
    services: Services = Depends(get_services),
):
    """Resolve a transformation, serving it from the cache when possible."""
    source_id = owned_source_id(tracker.account_id, request.source_id)
    tracker.resource_id = source_id

    result = services.transform_cache().resolve(source_id, request.options.as_options())

    return TransformResponse(
        source_id=source_id,
        key=result.key,
        url=result.url,
        cached=result.cache_hit,
    )
