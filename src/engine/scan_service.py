# src/engine/scan_service.py
"""
ScanService: admits scan requests, drives each scan from pending to a
terminal state in the background, and answers status/history/summary queries.

Each background job is the only writer of its own scan record. The admission
slot taken at submission is given back exactly once, when the job ends.
"""
import logging
import math
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from engine.admission import AdmissionController
from engine.config import Settings
from engine.db import make_session_factory
from engine.exceptions import (
    DbInitFailed,
    ParseError,
    ScanAccessDenied,
    ScanAlreadyInProgress,
    ScanExecutionFailed,
    ScanNotFound,
    ScanQuotaExceeded,
)
from engine.job_manager import JobManager
from engine.models import ScanStatus, utcnow
from engine.results import Severity, empty_counts, interpret_report, total_vulnerabilities
from engine.scan_engine import ScannerInvoker
from engine.store import ScanStateStore
from tools.docker_gateway import DockerImageGateway, ImageGateway
from tools.trivy_adapter import TrivyAdapter

PROGRESS_INIT_DB = "Initializing vulnerability database..."
PROGRESS_SCANNING = "Scanning image..."
PARSE_FAILED = "Failed to parse scan results"
TOP_IMAGES = 5
RECENT_SCANS = 5


class ScanService:
    def __init__(
        self,
        store: ScanStateStore,
        gateway: ImageGateway,
        invoker: ScannerInvoker,
        admission: AdmissionController,
        job_manager: JobManager,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.invoker = invoker
        self.admission = admission
        self.job_manager = job_manager
        self.settings = settings or Settings()
        self._submit_lock = threading.Lock()
        self._last_millis = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScanService":
        store = ScanStateStore(
            make_session_factory(settings.database_url),
            retention_seconds=settings.scan_retention_seconds,
        )
        adapter = TrivyAdapter(binary=settings.trivy_binary, max_output_bytes=settings.scan_output_limit)
        return cls(
            store=store,
            gateway=DockerImageGateway(),
            invoker=ScannerInvoker(adapter),
            admission=AdmissionController(settings.max_parallel_scans),
            job_manager=JobManager(max_workers=settings.max_parallel_scans),
            settings=settings,
        )

    def new_scan_id(self, image_ref: str) -> str:
        # millisecond stamp, bumped when two submissions land in the same millisecond
        millis = max(int(time.time() * 1000), self._last_millis + 1)
        self._last_millis = millis
        return f"{image_ref}_{millis}"

    # -- submission ---------------------------------------------------------

    def submit(self, image_ref: str, owner_id: Optional[str] = None) -> str:
        self._check_quota(owner_id)
        self.admission.admit()
        try:
            self.gateway.resolve_digest(image_ref)
            with self._submit_lock:
                existing = self.store.find_active(image_ref)
                if existing:
                    raise ScanAlreadyInProgress(image_ref, existing)
                # checked again and charged under the lock so concurrent submissions cannot overshoot
                self._check_quota(owner_id)
                scan_id = self.new_scan_id(image_ref)
                self.store.create(scan_id, image_ref, owner_id)
                if owner_id:
                    self._record_usage(scan_id, owner_id)
        except Exception:
            self.admission.release()
            raise

        logging.info(f"[scan_id={scan_id}] Accepted scan of {image_ref} owner={owner_id}")
        try:
            self.job_manager.submit_job(scan_id, self.run_scan, scan_id, image_ref)
        except Exception as e:
            self._fail(scan_id, f"Failed to start scan: {e}")
            self.admission.release()
            self.store.schedule_eviction(scan_id)
            raise
        return scan_id

    def _record_usage(self, scan_id: str, owner_id: str) -> None:
        try:
            self.store.increment_usage(owner_id)
        except Exception as e:
            logging.error(f"[scan_id={scan_id}] Failed to record usage for {owner_id}: {e}")

    def _check_quota(self, owner_id: Optional[str]) -> None:
        limit = self.settings.scan_quota_per_month
        if not owner_id or limit <= 0:
            return
        used = self.store.usage_count(owner_id)
        if used >= limit:
            raise ScanQuotaExceeded(owner_id, used, limit)

    # -- background job -----------------------------------------------------

    def run_scan(self, scan_id: str, image_ref: str) -> None:
        settings = self.settings
        try:
            self.store.transition(scan_id, ScanStatus.RUNNING, progress=PROGRESS_INIT_DB)
            try:
                self.invoker.initialize_database(settings.trivy_cache_dir, timeout=settings.db_init_timeout)
            except DbInitFailed as e:
                self._fail(scan_id, str(e))
                return

            self.store.set_progress(scan_id, PROGRESS_SCANNING)
            digest = self.gateway.resolve_digest(image_ref)
            logging.info(f"[scan_id={scan_id}] Scanning {image_ref} (fallback id {digest})")
            try:
                output = self.invoker.scan(image_ref, digest, settings.trivy_cache_dir, settings.scan_timeout)
            except ScanExecutionFailed as e:
                self._fail(scan_id, str(e))
                return

            try:
                counts, report = interpret_report(output.stdout)
            except ParseError as e:
                logging.error(f"[scan_id={scan_id}] {e}")
                self._fail(scan_id, PARSE_FAILED)
                return

            self.store.transition(
                scan_id,
                ScanStatus.COMPLETED,
                progress=None,
                vulnerability_counts=counts,
                warnings=output.stderr or None,
                raw_report=report,
            )
            logging.info(f"[scan_id={scan_id}] Scan completed. counts={counts}")
        except Exception as e:
            logging.exception(f"[scan_id={scan_id}] Scan error")
            self._fail(scan_id, str(e) or type(e).__name__)
        finally:
            self.admission.release()
            self.store.schedule_eviction(scan_id)

    def _fail(self, scan_id: str, error: str) -> None:
        logging.error(f"[scan_id={scan_id}] Scan failed: {error}")
        try:
            self.store.transition(scan_id, ScanStatus.FAILED, progress=None, error=error)
        except Exception as e:
            logging.error(f"[scan_id={scan_id}] Could not record failure: {e}")

    # -- queries ------------------------------------------------------------

    def get_status(self, scan_id: str, requester_id: Optional[str] = None, include_report: bool = False) -> Dict[str, Any]:
        record = self.store.get(scan_id, include_report=include_report)
        if record is None:
            raise ScanNotFound(scan_id)
        owner_id = record.get("owner_id")
        if requester_id and owner_id and owner_id != requester_id:
            raise ScanAccessDenied("You do not have permission to access this scan")
        return record

    def history(self, owner_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        scans, total = self.store.history(owner_id, offset=(page - 1) * limit, limit=limit)
        return {
            "scans": scans,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }

    def summary(self, owner_id: str) -> Dict[str, Any]:
        scans = self.store.completed_for(owner_id)
        now = utcnow()
        start_of_month = datetime(now.year, now.month, 1)

        totals = empty_counts()
        images: Dict[str, Dict[str, Any]] = {}
        scans_this_month = 0
        for scan in scans:
            if scan["start_time"] and scan["start_time"] >= start_of_month:
                scans_this_month += 1
            counts = scan["vulnerability_counts"] or {}
            for severity in Severity:
                totals[severity.value] += counts.get(severity.value, 0)

            stats = images.setdefault(scan["image_ref"], {
                "image_ref": scan["image_ref"],
                "total_vulnerabilities": 0,
                "critical": 0,
                "high": 0,
                "last_scan": scan["completed_at"],
            })
            stats["total_vulnerabilities"] += total_vulnerabilities(counts)
            stats["critical"] += counts.get(Severity.CRITICAL.value, 0)
            stats["high"] += counts.get(Severity.HIGH.value, 0)
            if scan["completed_at"] and (stats["last_scan"] is None or scan["completed_at"] > stats["last_scan"]):
                stats["last_scan"] = scan["completed_at"]

        most_vulnerable = sorted(images.values(), key=lambda s: s["total_vulnerabilities"], reverse=True)
        recent, _ = self.store.history(owner_id, offset=0, limit=RECENT_SCANS)
        return {
            "total_scans": len(scans),
            "scans_this_month": scans_this_month,
            "total_images": len(images),
            "vulnerability_counts": totals,
            "most_vulnerable_images": most_vulnerable[:TOP_IMAGES],
            "recent_scans": recent,
        }

    def stale_scans(self) -> List[Dict[str, Any]]:
        return self.store.stale_scans()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Let running scans finish, up to ``timeout`` seconds, then stop the worker pool."""
        self.job_manager.wait_all(timeout=timeout)
        self.job_manager.shutdown(wait_for_jobs=False)
