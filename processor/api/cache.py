"""
Cache API Router

GET /cache/{content_hash}/original   stream the stored original
GET /cache/{content_hash}/metadata   original sidecar + every known artifact
GET /cache/{content_hash}/{preset}   stream one derived artifact (404 until produced)

Blobs uploaded under an ownerContext are only served to callers sending
the same context in X-Owner-Context; anyone else gets the same 404 as an
unknown hash. Blobs uploaded without a context are served to everyone.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header
from fastapi.responses import FileResponse

from processor.api.dependencies import Artifacts, Originals
from processor.core.errors import NotFoundError
from processor.schemas.processing import (
    ArtifactMetaResponse,
    CacheMetadataResponse,
    ErrorResponse,
    OriginalMetaResponse,
)
from processor.storage.content_store import ContentStore
from processor.storage.paths import validate_preset

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cache", tags=["Cache"])

_NOT_FOUND = {404: {"model": ErrorResponse, "description": "Unknown content hash or artifact"}}

OwnerContext = Annotated[str | None, Header(alias="X-Owner-Context")]


async def _ensure_access(originals: ContentStore, content_hash: str, owner_context: str | None) -> None:
    if not await originals.tenant_has_access(content_hash, owner_context):
        logger.info("Cache access refused | hash=%s context=%s", content_hash, owner_context)
        raise NotFoundError("Content not found")


@router.get("/{content_hash}/original", summary="Original bytes", responses=_NOT_FOUND)
async def get_original(content_hash: str, originals: Originals, owner_context: OwnerContext = None) -> FileResponse:
    await _ensure_access(originals, content_hash, owner_context)
    meta = await originals.get_metadata(content_hash)
    path = await originals.original_path(content_hash)
    return FileResponse(
        path,
        media_type=meta.mime_type,
        headers={"X-Content-Hash": meta.content_hash},
    )


@router.get(
    "/{content_hash}/metadata",
    response_model=CacheMetadataResponse,
    summary="Metadata for the original and all artifacts",
    responses=_NOT_FOUND,
)
async def get_metadata(
    content_hash: str,
    originals: Originals,
    artifacts: Artifacts,
    owner_context: OwnerContext = None,
) -> CacheMetadataResponse:
    await _ensure_access(originals, content_hash, owner_context)
    meta = await originals.get_metadata(content_hash)
    presets = await artifacts.list_metadata(meta.content_hash)
    return CacheMetadataResponse(
        content_hash=meta.content_hash,
        original=OriginalMetaResponse.from_meta(meta),
        presets={name: ArtifactMetaResponse.from_meta(item) for name, item in sorted(presets.items())},
    )


@router.get("/{content_hash}/{preset}", summary="Derived artifact", responses=_NOT_FOUND)
async def get_artifact(
    content_hash: str,
    preset: str,
    originals: Originals,
    artifacts: Artifacts,
    owner_context: OwnerContext = None,
) -> FileResponse:
    validate_preset(preset)
    await _ensure_access(originals, content_hash, owner_context)
    path = await artifacts.artifact_path(content_hash, preset)
    meta = await artifacts.get_artifact_meta(content_hash, preset)
    return FileResponse(
        path,
        media_type=meta.mime_type if meta else "application/octet-stream",
        headers={"X-Content-Hash": content_hash.lower()},
    )
