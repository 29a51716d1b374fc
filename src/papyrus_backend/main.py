from __future__ import annotations

import logging
import secrets
from typing import Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from omegaconf import DictConfig

from .configuration import load_config
from .errors import BackingStoreUnavailable, JobNotFound, JobNotReady, StorageError
from .key_manager import APIKeyRecord, KeyManager
from .metrics import STORE_OUTAGES, render_latest
from .middleware import AdmissionMiddleware, RequestLoggingMiddleware
from .models import (
    APIKeyCreate,
    APIKeyCreated,
    APIKeyInfo,
    GenerationRequest,
    JobAccepted,
    JobResult,
    JobStage,
    JobStatusResponse,
    JobSummary,
    TemplateList,
)
from .pipeline import PipelineService
from .render import TemplateStore
from .services import Services, build_services
from .utils import configure_logging

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_pipeline(request: Request) -> PipelineService:
    return request.app.state.pipeline


def get_key_manager(services: Services = Depends(get_services)) -> KeyManager:
    return services.keys


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    keys: KeyManager = Depends(get_key_manager),
) -> APIKeyRecord:
    """
    Resolve the caller's API key.

    The admission middleware has usually validated the header already; its
    result is reused instead of hitting the credential store twice.

    Raises:
        HTTPException: 401 if the key is missing, unknown or revoked
    """
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing API key")
    record = getattr(request.state, "api_key", None)
    if record is None:
        record = keys.validate_key(x_api_key)
    if record is None:
        raise HTTPException(status_code=401, detail="Invalid or inactive API key")
    return record


def require_master_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    services: Services = Depends(get_services),
) -> None:
    master_key = services.config.admin.master_key
    if not master_key:
        raise HTTPException(status_code=401, detail="Admin endpoints are disabled")
    if not secrets.compare_digest(x_api_key, master_key):
        raise HTTPException(status_code=401, detail="Invalid master key")


@router.get("/healthz")
def healthcheck(services: Services = Depends(get_services)) -> Dict[str, str]:
    services.store.ping()
    try:
        services.objects.ping()
    except StorageError as exc:
        logger.error(f"Health check failed: {exc}")
        raise HTTPException(status_code=503, detail="Object storage unavailable") from exc
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> Response:
    content, content_type = render_latest()
    return Response(content=content, media_type=content_type)


@router.get("/pdf/templates", response_model=TemplateList)
def list_templates(services: Services = Depends(get_services)) -> TemplateList:
    templates = TemplateStore(services.config.render.templates_dir or None).available()
    return TemplateList(templates=templates, languages=list(services.config.render.languages), total=len(templates))


@router.post("/pdf/jobs", response_model=JobAccepted, status_code=202)
def submit_job(
    payload: GenerationRequest,
    request: Request,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    caller: APIKeyRecord = Depends(require_api_key),
    pipeline: PipelineService = Depends(get_pipeline),
    keys: KeyManager = Depends(get_key_manager),
) -> JobAccepted:
    scope = getattr(request.state, "accounting_key", None) or f"api_key:{caller.key_hash}"
    job_id, replayed = pipeline.submit(payload, scope=scope, owner=caller.id, idempotency_token=idempotency_key)
    keys.touch(caller.id)

    status = JobStage.QUEUED
    if replayed:
        response.headers["Idempotent-Replayed"] = "true"
        record = pipeline.store.get(job_id)
        if record is not None:
            status = record.stage
    return JobAccepted(job_id=job_id, status=status)


@router.get("/pdf/jobs", response_model=List[JobSummary])
def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    caller: APIKeyRecord = Depends(require_api_key),
    pipeline: PipelineService = Depends(get_pipeline),
) -> List[JobSummary]:
    return pipeline.list_jobs(owner=caller.id, limit=limit)


@router.get("/pdf/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, pipeline: PipelineService = Depends(get_pipeline)) -> JobStatusResponse:
    return pipeline.get_status(job_id)


@router.get("/pdf/jobs/{job_id}/download", response_model=JobResult)
def download_job(job_id: str, pipeline: PipelineService = Depends(get_pipeline)) -> JobResult:
    return pipeline.get_result(job_id)


@router.post("/admin/keys", response_model=APIKeyCreated, status_code=201, dependencies=[Depends(require_master_key)])
def create_api_key(body: APIKeyCreate, keys: KeyManager = Depends(get_key_manager)) -> APIKeyCreated:
    raw_key, record = keys.create_key(
        name=body.name,
        tier=body.tier,
        requests_per_minute=body.requests_per_minute,
        description=body.description,
    )
    return APIKeyCreated(api_key=raw_key, record=record.to_info())


@router.get("/admin/keys", response_model=List[APIKeyInfo], dependencies=[Depends(require_master_key)])
def list_api_keys(keys: KeyManager = Depends(get_key_manager)) -> List[APIKeyInfo]:
    return [record.to_info() for record in keys.list_keys()]


@router.delete("/admin/keys/{key_id}", dependencies=[Depends(require_master_key)])
def revoke_api_key(key_id: str, keys: KeyManager = Depends(get_key_manager)) -> Dict[str, str]:
    if not keys.revoke_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"status": "revoked"}


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


async def _store_unavailable(request: Request, exc: BackingStoreUnavailable) -> JSONResponse:
    logger.error(f"{exc} while serving {request.method} {request.url.path}")
    STORE_OUTAGES.labels(store=exc.store).inc()
    return JSONResponse(
        status_code=503,
        content={"detail": f"The {exc.store} store is temporarily unavailable. Try again shortly."},
        headers={"Retry-After": "5"},
    )


async def _job_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _job_not_ready(request: Request, exc: JobNotReady) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "status": exc.stage})


def create_app(config: Optional[DictConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Runtime configuration; loaded from defaults and environment when omitted
        services: Pre-built stores (tests); built from ``config`` when omitted
    """
    services = services or build_services(config)
    config = services.config

    app = FastAPI(title="Papyrus API", version=API_VERSION)
    app.state.services = services
    app.state.pipeline = PipelineService(
        services.store,
        services.queue,
        services.idempotency,
        services.objects,
        url_ttl=int(config.storage.url_ttl),
    )

    # Added innermost first: CORS -> logging -> admission -> routes
    app.add_middleware(AdmissionMiddleware)
    app.add_middleware(RequestLoggingMiddleware, api_version=API_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.server.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "x-ratelimit-limit", "x-ratelimit-remaining", "x-ratelimit-reset", "Idempotent-Replayed"],
    )

    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(BackingStoreUnavailable, _store_unavailable)
    app.add_exception_handler(JobNotFound, _job_not_found)
    app.add_exception_handler(JobNotReady, _job_not_ready)
    app.include_router(router)
    return app


def run() -> None:
    """Entry point for ``papyrus-api``."""
    config = load_config()
    configure_logging(config.logging.level)
    uvicorn.run(create_app(config), host=config.server.host, port=int(config.server.port))


app = create_app()
