# src/main.py

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.errors import install_handlers
from api.routes import ensure_scan_service, router
from engine.config import get_settings
import logging
import uuid


# Configure structured logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = ensure_scan_service(app)
    # No automatic recovery: scans orphaned by a previous crash stay as they are.
    for scan in service.stale_scans():
        logging.warning(
            f"[scan_id={scan['scan_id']}] Left {scan['status']} by a previous run; it will not resume."
        )
    logging.info("Scan API started.")
    try:
        yield
    finally:
        service.shutdown()
        logging.info("Scan API stopped.")


app = FastAPI(title="Docklens Scan Core", lifespan=lifespan)
install_handlers(app)


@app.middleware("http")
async def add_trace_id_and_log(request: Request, call_next):
    trace_id = str(uuid.uuid4())
    request.state.trace_id = trace_id
    logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url}")
    try:
        response = await call_next(request)
    except Exception as exc:
        logging.exception(f"[trace_id={trace_id}] Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "traceId": trace_id}
        )
    response.headers["X-Trace-Id"] = trace_id
    return response

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
    logging.error(f"[trace_id={trace_id}] Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc), "traceId": trace_id}
    )

app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
