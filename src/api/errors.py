# src/api/errors.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.schemas import ErrorResponse
from engine.exceptions import ScanAlreadyInProgress, ScanError


def handle_scan_error(request: Request, exc: ScanError) -> JSONResponse:
    """Renders engine errors raised on the request path with their own status code."""
    if exc.status_code >= 500:
        logging.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logging.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc}")
    body = ErrorResponse(
        error=exc.title,
        message=str(exc),
        scan_id=exc.scan_id if isinstance(exc, ScanAlreadyInProgress) else None,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


def install_handlers(app: FastAPI):
    """Installs custom exception handlers for the FastAPI app."""
    handlers = {
        ScanError: handle_scan_error,
    }
    for exc, handler in handlers.items():
        app.add_exception_handler(exc, handler)  # type: ignore
