# src/api/routes.py
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from api.schemas import (
    ErrorResponse,
    ScanHistoryResponse,
    ScanStarted,
    ScanStatusResponse,
    ScanSummaryResponse,
)
from engine.config import get_settings
from engine.scan_service import ScanService
from typing import Optional
import logging
import threading

router = APIRouter()
_service_lock = threading.Lock()


def ensure_scan_service(app: FastAPI) -> ScanService:
    service = getattr(app.state, "scan_service", None)
    if service is None:
        with _service_lock:
            service = getattr(app.state, "scan_service", None)
            if service is None:
                service = ScanService.from_settings(get_settings())
                app.state.scan_service = service
    return service


def get_scan_service(request: Request) -> ScanService:
    return ensure_scan_service(request.app)


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity as forwarded by the upstream gateway; None for anonymous callers."""
    return x_user_id or None


def require_owner_id(owner_id: Optional[str] = Depends(get_owner_id)) -> str:
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return owner_id


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get(
    "/scans/history",
    summary="List the caller's scans",
    response_description="Scans newest first, with pagination",
    tags=["Scans"],
    response_model=ScanHistoryResponse,
    responses={401: {"description": "No caller identity"}},
)
def get_scan_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    owner_id: str = Depends(require_owner_id),
    service: ScanService = Depends(get_scan_service),
):
    """
    Paginated history of the caller's own scans, newest first.
    """
    return {"success": True, "data": service.history(owner_id, page=page, limit=limit)}


@router.get(
    "/scans/summary",
    summary="Vulnerability summary across the caller's scans",
    tags=["Scans"],
    response_model=ScanSummaryResponse,
    responses={401: {"description": "No caller identity"}},
)
def get_scan_summary(
    owner_id: str = Depends(require_owner_id),
    service: ScanService = Depends(get_scan_service),
):
    """
    Totals by severity, the five most vulnerable images and the five most
    recent scans, all limited to the caller's own records.
    """
    return {"success": True, "data": service.summary(owner_id)}


@router.get(
    "/scans/{scan_id:path}/status",
    summary="Get scan status",
    response_description="Current state of the scan",
    tags=["Scans"],
    response_model=ScanStatusResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Scan belongs to another user"},
        404: {"model": ErrorResponse, "description": "Scan not found"},
    },
)
def get_scan_status(
    scan_id: str,
    include_report: bool = Query(False, alias="includeReport"),
    owner_id: Optional[str] = Depends(get_owner_id),
    service: ScanService = Depends(get_scan_service),
):
    """
    Return the durable record of a finished scan, or the live progress of a
    running one.
    """
    record = service.get_status(scan_id, requester_id=owner_id, include_report=include_report)
    return {"success": True, "data": record}


@router.post(
    "/scans/{image_ref:path}",
    status_code=202,
    summary="Start a vulnerability scan of a local image",
    response_description="Scan ID to poll for progress",
    tags=["Scans"],
    response_model=ScanStarted,
    responses={
        403: {"model": ErrorResponse, "description": "Monthly scan quota reached"},
        404: {"model": ErrorResponse, "description": "Image not found"},
        409: {"model": ErrorResponse, "description": "Scan already in progress"},
        429: {"model": ErrorResponse, "description": "Too many concurrent scans"},
        503: {"model": ErrorResponse, "description": "Container runtime unreachable"},
    },
)
def start_scan(
    image_ref: str,
    owner_id: Optional[str] = Depends(get_owner_id),
    service: ScanService = Depends(get_scan_service),
):
    """
    Start a scan in the background and return immediately with its ID.
    """
    logging.info(f"Received security scan request for image: {image_ref}")
    scan_id = service.submit(image_ref, owner_id=owner_id)
    return ScanStarted(scan_id=scan_id)
