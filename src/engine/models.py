# src/engine/models.py
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    # naive UTC, SQLite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScanStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.COMPLETED, ScanStatus.FAILED)


ACTIVE_STATUSES = (ScanStatus.PENDING.value, ScanStatus.RUNNING.value)

# allowed forward moves; re-entering the same non-terminal status is a progress update
TRANSITIONS = {
    ScanStatus.PENDING: {ScanStatus.PENDING, ScanStatus.RUNNING, ScanStatus.FAILED},
    ScanStatus.RUNNING: {ScanStatus.RUNNING, ScanStatus.COMPLETED, ScanStatus.FAILED},
    ScanStatus.COMPLETED: set(),
    ScanStatus.FAILED: set(),
}


class ScanRecord(Base):
    __tablename__ = 'scan_records'
    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String, unique=True, nullable=False, index=True)
    image_ref = Column(String, nullable=False, index=True)
    owner_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=ScanStatus.PENDING.value)
    progress = Column(String, nullable=True)
    start_time = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    vulnerability_counts = Column(Text, nullable=True)  # JSON string of severity buckets
    warnings = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    raw_report = Column(Text, nullable=True)  # full scanner JSON

    __table_args__ = (
        Index('ix_scan_records_image_status', 'image_ref', 'status'),
        Index('ix_scan_records_owner_start', 'owner_id', 'start_time'),
    )


class ScanUsage(Base):
    __tablename__ = 'scan_usage'
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False)
    period_start = Column(DateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint('owner_id', 'period_start'),)
