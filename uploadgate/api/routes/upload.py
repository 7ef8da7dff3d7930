"""Upload endpoint.

Endpoints
---------
POST /upload
    Accepts a single multipart field named ``file`` and runs it through the
    admission gate.

Status mapping
--------------
=====  ==========================================================
200    accepted and stored
400    no file field, or an unusable filename
403    rejected by any pipeline stage (extension misses included)
409    accepted, but the destination name is already taken
413    larger than ``UPLOADGATE_MAX_UPLOAD_BYTES``
500    policy document unavailable, or staging/commit I/O failure
=====  ==========================================================

Response bodies are always ``{"message", "reason", "stage"}``.  Inspector
output and exception text are logged, never returned.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse

from uploadgate.api.dependencies import get_admission_service
from uploadgate.core.policy import ConfigError
from uploadgate.core.staging import (
    DestinationExistsError,
    InvalidUploadError,
    StagingError,
    UploadTooLargeError,
)
from uploadgate.schemas.upload import UploadResponse
from uploadgate.services.admission import AdmissionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["upload"])


def _reply(status_code: int, message: str, reason: str | None = None, stage: str | None = None) -> JSONResponse:
    body = UploadResponse(message=message, reason=reason, stage=stage)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post(
    "/upload",
    response_model=UploadResponse,
    responses={
        400: {"model": UploadResponse},
        403: {"model": UploadResponse},
        409: {"model": UploadResponse},
        413: {"model": UploadResponse},
        500: {"model": UploadResponse},
    },
)
async def upload_file(
    file: UploadFile | None = File(default=None),
    service: AdmissionService = Depends(get_admission_service),
) -> JSONResponse:
    """Stage, inspect, and either store or reject one uploaded file."""
    if file is None or not file.filename:
        return _reply(400, "A file must be uploaded in the 'file' field")

    try:
        result = await service.admit(file.file, file.filename)
    except InvalidUploadError as exc:
        logger.info("Upload refused: %s", exc)
        return _reply(400, "Invalid upload filename")
    except UploadTooLargeError as exc:
        logger.info("Upload refused: %s", exc)
        return _reply(413, "File is too large")
    except DestinationExistsError as exc:
        logger.warning("Upload not stored: %s", exc)
        return _reply(409, "A file with this name already exists")
    except ConfigError as exc:
        logger.error("Upload policy unavailable; rejecting upload: %s", exc)
        return _reply(500, "Upload policy is unavailable")
    except StagingError as exc:
        logger.error("Upload staging failed: %r", exc)
        return _reply(500, "Upload could not be stored")
    finally:
        await file.close()

    verdict = result.verdict
    if verdict.is_accepted:
        return _reply(200, verdict.human_message)
    return _reply(
        403,
        verdict.human_message,
        reason=verdict.reason_code.value,
        stage=verdict.rejection_stage.value,
    )
