# src/api/schemas.py
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Serialises with camelCase keys, accepts either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VulnerabilityCounts(ApiModel):
    critical: int = Field(0, ge=0)
    high: int = Field(0, ge=0)
    medium: int = Field(0, ge=0)
    low: int = Field(0, ge=0)


class ScanStarted(ApiModel):
    success: bool = True
    scan_id: str
    status: Literal["started"] = "started"
    message: str = "Security scan started. Use GET /scans/{scanId}/status to check progress."


class ScanRecordView(ApiModel):
    scan_id: str
    image_ref: str
    owner_id: Optional[str] = None
    status: Literal["pending", "running", "completed", "failed"]
    progress: Optional[str] = None
    start_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    vulnerability_counts: Optional[VulnerabilityCounts] = None
    warnings: Optional[str] = None
    error: Optional[str] = None


class ScanStatusView(ScanRecordView):
    raw_report: Optional[Any] = None


class ScanStatusResponse(ApiModel):
    success: bool = True
    data: ScanStatusView


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    pages: int


class ScanHistory(ApiModel):
    scans: List[ScanRecordView]
    pagination: Pagination


class ScanHistoryResponse(ApiModel):
    success: bool = True
    data: ScanHistory


class ImageStats(ApiModel):
    image_ref: str
    total_vulnerabilities: int
    critical: int
    high: int
    last_scan: Optional[datetime] = None


class ScanSummary(ApiModel):
    total_scans: int
    scans_this_month: int
    total_images: int
    vulnerability_counts: VulnerabilityCounts
    most_vulnerable_images: List[ImageStats]
    recent_scans: List[ScanRecordView]


class ScanSummaryResponse(ApiModel):
    success: bool = True
    data: ScanSummary


class ErrorResponse(ApiModel):
    success: bool = False
    error: str
    message: Optional[str] = None
    scan_id: Optional[str] = None
