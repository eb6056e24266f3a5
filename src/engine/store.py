# src/engine/store.py
"""
ScanStateStore: the durable scan records plus a short-lived in-memory view
used for low-latency polling.

The database row is authoritative. The cache only contributes the latest
progress text of a scan that is still running, and its entries are dropped a
fixed retention window after the scan reaches a terminal state.
"""

import json
import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from engine.exceptions import InvalidStatusTransition, ScanNotFound
from engine.models import ACTIVE_STATUSES, TRANSITIONS, ScanRecord, ScanStatus, ScanUsage, utcnow

DEFAULT_RETENTION_SECONDS = 3600


class ScanCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, dict] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def put(self, scan_id: str, fields: dict) -> None:
        with self._lock:
            self._purge_locked()
            entry = self._entries.setdefault(scan_id, {"scan_id": scan_id})
            entry.update(fields)

    def get(self, scan_id: str) -> Optional[dict]:
        with self._lock:
            self._purge_locked()
            entry = self._entries.get(scan_id)
            return dict(entry) if entry is not None else None

    def expire_after(self, scan_id: str, seconds: float) -> None:
        with self._lock:
            if scan_id in self._entries:
                self._expires_at[scan_id] = self._clock() + seconds

    def _purge_locked(self) -> None:
        now = self._clock()
        expired = [scan_id for scan_id, deadline in self._expires_at.items() if deadline <= now]
        for scan_id in expired:
            self._entries.pop(scan_id, None)
            del self._expires_at[scan_id]
            logging.info(f"[scan_id={scan_id}] Evicted scan from in-memory cache")

    def __contains__(self, scan_id: str) -> bool:
        return self.get(scan_id) is not None


def _loads(value: Optional[str]):
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return value


def record_to_dict(record: ScanRecord, include_report: bool = False) -> Dict[str, Any]:
    data = {
        "scan_id": record.scan_id,
        "image_ref": record.image_ref,
        "owner_id": record.owner_id,
        "status": record.status,
        "progress": record.progress,
        "start_time": record.start_time,
        "completed_at": record.completed_at,
        "vulnerability_counts": _loads(record.vulnerability_counts),
        "warnings": record.warnings,
        "error": record.error,
    }
    if include_report:
        data["raw_report"] = _loads(record.raw_report)
    return data


class ScanStateStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        cache: Optional[ScanCache] = None,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else ScanCache()
        self.retention_seconds = retention_seconds
        self._usage_lock = threading.Lock()

    # -- writes -------------------------------------------------------------

    def create(self, scan_id: str, image_ref: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        started = utcnow()
        record = ScanRecord(
            scan_id=scan_id,
            image_ref=image_ref,
            owner_id=owner_id,
            status=ScanStatus.PENDING.value,
            progress="Initializing scan...",
            start_time=started,
        )
        with self.session_factory() as db:
            db.add(record)
            db.commit()
            data = record_to_dict(record)
        self.cache.put(scan_id, data)
        return data

    def transition(self, scan_id: str, status: ScanStatus, **fields) -> Dict[str, Any]:
        """
        Move a scan to ``status`` and write ``fields`` to both copies.
        Terminal states are final and stamp ``completed_at`` exactly once.
        """
        status = ScanStatus(status)
        with self.session_factory() as db:
            record = db.query(ScanRecord).filter(ScanRecord.scan_id == scan_id).first()
            if record is None:
                raise ScanNotFound(scan_id)
            current = ScanStatus(record.status)
            if status not in TRANSITIONS[current]:
                raise InvalidStatusTransition(scan_id, current.value, status.value)
            record.status = status.value
            for name, value in fields.items():
                if name in ("vulnerability_counts", "raw_report") and value is not None and not isinstance(value, str):
                    value = json.dumps(value)
                setattr(record, name, value)
            if status.is_terminal:
                record.completed_at = utcnow()
            db.commit()
            data = record_to_dict(record)
        self.cache.put(scan_id, data)
        return data

    def set_progress(self, scan_id: str, progress: str) -> Dict[str, Any]:
        current = self.get(scan_id)
        if current is None:
            raise ScanNotFound(scan_id)
        return self.transition(scan_id, ScanStatus(current["status"]), progress=progress)

    def schedule_eviction(self, scan_id: str) -> None:
        self.cache.expire_after(scan_id, self.retention_seconds)

    # -- reads --------------------------------------------------------------

    def load(self, scan_id: str, include_report: bool = False) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            record = db.query(ScanRecord).filter(ScanRecord.scan_id == scan_id).first()
            return record_to_dict(record, include_report) if record else None

    def get(self, scan_id: str, include_report: bool = False) -> Optional[Dict[str, Any]]:
        durable = self.load(scan_id, include_report)
        cached = self.cache.get(scan_id)
        if durable is None:
            return cached
        if ScanStatus(durable["status"]).is_terminal or cached is None:
            return durable
        merged = dict(durable)
        if cached.get("progress"):
            merged["progress"] = cached["progress"]
        return merged

    def find_active(self, image_ref: str) -> Optional[str]:
        with self.session_factory() as db:
            record = (
                db.query(ScanRecord)
                .filter(ScanRecord.image_ref == image_ref, ScanRecord.status.in_(ACTIVE_STATUSES))
                .order_by(ScanRecord.start_time.desc())
                .first()
            )
            return record.scan_id if record else None

    def history(self, owner_id: str, offset: int = 0, limit: int = 10) -> Tuple[List[Dict[str, Any]], int]:
        with self.session_factory() as db:
            query = db.query(ScanRecord).filter(ScanRecord.owner_id == owner_id)
            total = query.count()
            records = query.order_by(ScanRecord.start_time.desc(), ScanRecord.id.desc()).offset(offset).limit(limit).all()
            return [record_to_dict(r) for r in records], total

    def completed_for(self, owner_id: str) -> List[Dict[str, Any]]:
        with self.session_factory() as db:
            records = (
                db.query(ScanRecord)
                .filter(ScanRecord.owner_id == owner_id, ScanRecord.status == ScanStatus.COMPLETED.value)
                .all()
            )
            return [record_to_dict(r) for r in records]

    def stale_scans(self) -> List[Dict[str, Any]]:
        with self.session_factory() as db:
            records = db.query(ScanRecord).filter(ScanRecord.status.in_(ACTIVE_STATUSES)).all()
            return [record_to_dict(r) for r in records]

    # -- usage --------------------------------------------------------------

    @staticmethod
    def _period_start(when: Optional[datetime] = None) -> datetime:
        when = when or utcnow()
        return datetime(when.year, when.month, 1)

    def usage_count(self, owner_id: str, when: Optional[datetime] = None) -> int:
        with self.session_factory() as db:
            usage = (
                db.query(ScanUsage)
                .filter(ScanUsage.owner_id == owner_id, ScanUsage.period_start == self._period_start(when))
                .first()
            )
            return usage.count if usage else 0

    def increment_usage(self, owner_id: str) -> int:
        period = self._period_start()
        with self._usage_lock, self.session_factory() as db:
            usage = (
                db.query(ScanUsage)
                .filter(ScanUsage.owner_id == owner_id, ScanUsage.period_start == period)
                .first()
            )
            if usage is None:
                usage = ScanUsage(owner_id=owner_id, period_start=period, count=0)
                db.add(usage)
            usage.count += 1
            db.commit()
            return usage.count
