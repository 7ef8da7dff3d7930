import asyncio
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from uploadgate.api.dependencies import get_admission_service
from uploadgate.api.middleware.logging import RequestLoggingMiddleware
from uploadgate.api.routes.upload import router as upload_router
from uploadgate.config import get_settings
from uploadgate.core.adapters import ClamdScanner
from uploadgate.schemas.upload import UploadResponse
from uploadgate.services.admission import AdmissionService

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="UploadGate API",
    description="File-upload admission gate",
    version="1.0.0",
    docs_url="/v1/docs",
    openapi_url="/v1/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(upload_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed requests get the upload response shape with status 400."""
    logger.info("Malformed request path=%s errors=%s", request.url.path, exc.errors())
    body = UploadResponse(message="Malformed upload request")
    return JSONResponse(status_code=400, content=body.model_dump())


@app.get("/healthz", tags=["health"])
async def health_check() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@app.get("/readyz", tags=["health"])
async def readiness_check(
    service: AdmissionService = Depends(get_admission_service),
) -> JSONResponse:
    """Report 503 while the clamd daemon does not answer ``PING``."""
    scanner = service.pipeline.av_scanner
    if isinstance(scanner, ClamdScanner) and not await asyncio.to_thread(scanner.ping):
        return JSONResponse({"status": "unavailable", "antivirus": "unreachable"}, status_code=503)
    return JSONResponse({"status": "ready"})


@app.on_event("startup")
async def startup_event() -> None:
    logger.info(
        "UploadGate starting up: environment=%s policy=%s destination=%s sniffer=%s av=%s",
        settings.environment,
        settings.policy_path,
        settings.destination_dir,
        settings.content_sniffer,
        settings.av_backend,
    )
