"""
Upload API Router
POST /upload
POST /upload/multiple

Request lifecycle:
  1. Multipart parse: file + ownerEntityId (+ originalName, uploadedBy, ownerContext)
  2. Type sniffing from magic bytes, size ceiling
  3. Content Store write (dedup on identical bytes)
  4. Ingest job enqueued and published to the broker
  5. 202 with contentHash and the enqueued job handles
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, File, Form, Header, HTTPException, UploadFile, status

from processor.api.dependencies import Uploads
from processor.core.errors import ProcessorError, ValidationError
from processor.schemas.processing import (
    ErrorResponse,
    MultiUploadResponse,
    UploadErrors,
    UploadItemResult,
    UploadResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Upload"])


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a file for processing",
    description=(
        "Stores the bytes content-addressed (identical uploads are deduplicated) "
        "and enqueues asynchronous processing for the owner entity."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Empty file or missing ownerEntityId"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        415: {"model": ErrorResponse, "description": "Unsupported file type"},
        503: {"model": ErrorResponse, "description": "Processing queue is full"},
        507: {"model": ErrorResponse, "description": "Storage is full"},
    },
)
async def upload_file(
    uploads:         Uploads,
    file:            Annotated[UploadFile, File(description="File to store and process")],
    owner_entity_id: Annotated[str, Form(alias="ownerEntityId")] = "",
    original_name:   Annotated[str | None, Form(alias="originalName")] = None,
    uploaded_by:     Annotated[str | None, Form(alias="uploadedBy")] = None,
    owner_context:   Annotated[str | None, Form(alias="ownerContext")] = None,
    trace_id:        Annotated[str | None, Header(alias="X-Trace-ID")] = None,
) -> UploadResponse:
    return await uploads.upload(
        file,
        owner_entity_id,
        original_name=original_name,
        uploaded_by=uploaded_by,
        owner_context=owner_context,
        trace_id=trace_id,
    )


MAX_FILES_PER_REQUEST = 10


@router.post(
    "/upload/multiple",
    response_model=MultiUploadResponse,
    summary="Upload several files for one owner",
    description=(
        "Runs each file through the single-file upload path. A rejected file is "
        "reported in its own entry and does not fail the others."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "No files, too many files or missing ownerEntityId"},
    },
)
async def upload_files(
    uploads:         Uploads,
    files:           Annotated[list[UploadFile], File(description="Files to store and process")],
    owner_entity_id: Annotated[str, Form(alias="ownerEntityId")] = "",
    uploaded_by:     Annotated[str | None, Form(alias="uploadedBy")] = None,
    owner_context:   Annotated[str | None, Form(alias="ownerContext")] = None,
    trace_id:        Annotated[str | None, Header(alias="X-Trace-ID")] = None,
) -> MultiUploadResponse:
    if not owner_entity_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UploadErrors.missing_owner().model_dump(),
        )
    if not files:
        raise ValidationError("No files provided", field="files")
    if len(files) > MAX_FILES_PER_REQUEST:
        raise ValidationError(f"At most {MAX_FILES_PER_REQUEST} files per request", field="files")

    results: list[UploadItemResult] = []
    for file in files:
        name = file.filename or "upload"
        try:
            accepted = await uploads.upload(
                file,
                owner_entity_id,
                uploaded_by=uploaded_by,
                owner_context=owner_context,
                trace_id=trace_id,
            )
        except HTTPException as exc:
            logger.info("Upload item rejected | file=%s status=%d", name, exc.status_code)
            error = ErrorResponse.model_validate(exc.detail)
        except ProcessorError as exc:
            logger.warning("Upload item failed | file=%s code=%s message=%s", name, exc.code, exc.message)
            error = UploadErrors.from_processor_error(exc)
        else:
            results.append(UploadItemResult.from_upload(accepted))
            continue
        results.append(UploadItemResult(original_name=name, success=False, error=error))

    logger.info(
        "Multiple upload done | owner=%s files=%d failed=%d",
        owner_entity_id, len(results), sum(not item.success for item in results),
    )
    return MultiUploadResponse(files=results)
