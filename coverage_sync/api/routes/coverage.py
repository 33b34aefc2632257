"""API routes for coverage manifests and ingest jobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...core.errors import (
    ManifestConflictError,
    NotFoundError,
    ProviderError,
    UnrecognizedSymbolError,
    UnsupportedExchangeError,
)
from ...schemas.coverage import JobStatus
from ...schemas.requests import (
    CreateManifestRequest,
    JobActionRequest,
    UpdateManifestStatusRequest,
)
from ...services.coverage_service import CoverageService
from ..deps import get_service


router = APIRouter(prefix="/api/coverage", tags=["coverage"])


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"ok": False, "error": message, **extra}
    )


@router.get("/manifests")
def list_manifests(service: CoverageService = Depends(get_service)):
    items = [manifest.model_dump() for manifest in service.list_manifests()]
    return JSONResponse(status_code=200, content={"ok": True, "items": items})


@router.post("/manifests")
def create_manifest(
    request: CreateManifestRequest,
    service: CoverageService = Depends(get_service),
):
    try:
        manifest = service.create_manifest(request)
    except UnrecognizedSymbolError as exc:
        return _error(400, str(exc), suggestions=exc.suggestions)
    except UnsupportedExchangeError as exc:
        return _error(400, str(exc))
    except ManifestConflictError as exc:
        return _error(409, str(exc))
    except ProviderError as exc:
        return _error(502, str(exc))
    return JSONResponse(
        status_code=201, content={"ok": True, "item": manifest.model_dump()}
    )


@router.get("/manifests/{manifest_id}")
def get_manifest(manifest_id: int, service: CoverageService = Depends(get_service)):
    try:
        manifest = service.get_manifest(manifest_id)
    except NotFoundError as exc:
        return _error(404, str(exc))
    return JSONResponse(status_code=200, content={"ok": True, "item": manifest.model_dump()})


@router.patch("/manifests/{manifest_id}")
def update_manifest_status(
    manifest_id: int,
    request: UpdateManifestStatusRequest,
    service: CoverageService = Depends(get_service),
):
    try:
        manifest = service.set_manifest_status(manifest_id, request.status)
    except NotFoundError as exc:
        return _error(404, str(exc))
    return JSONResponse(status_code=200, content={"ok": True, "item": manifest.model_dump()})


@router.get("/jobs")
def list_jobs(
    status: JobStatus | None = None,
    manifest_id: int | None = None,
    limit: int = 200,
    offset: int = 0,
    service: CoverageService = Depends(get_service),
):
    jobs = service.list_jobs(
        status=status, manifest_id=manifest_id, limit=limit, offset=offset
    )
    total = service.count_jobs(status=status, manifest_id=manifest_id)
    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "items": [job.model_dump() for job in jobs],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    )


@router.get("/jobs/{job_id}")
def get_job(job_id: int, service: CoverageService = Depends(get_service)):
    try:
        job = service.get_job(job_id)
    except NotFoundError as exc:
        return _error(404, str(exc))
    return JSONResponse(status_code=200, content={"ok": True, "item": job.model_dump()})


@router.post("/jobs")
def run_job_action(
    request: JobActionRequest,
    service: CoverageService = Depends(get_service),
):
    if request.action != "tick":
        return _error(400, "Unknown action")
    executed = service.tick()
    message = "Scheduler tick executed" if executed else "Scheduler tick already running"
    return JSONResponse(
        status_code=200,
        content={"ok": True, "executed": executed, "message": message},
    )
