# src/engine/exceptions.py
"""
Error taxonomy for scan orchestration.

Errors with a ``status_code`` are raised on the synchronous submission and
query paths and rendered by the API layer. The rest only ever surface as the
``error`` text of a failed scan record.
"""
from typing import Optional


class ScanError(Exception):
    """Base class for every error raised by the scan engine."""

    status_code = 500
    title = "Scan error"


class CapacityExceeded(ScanError):
    status_code = 429
    title = "Too many concurrent scans"

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(
            f"Maximum of {capacity} concurrent scans allowed. Please try again later."
        )


class ImageNotFound(ScanError):
    status_code = 404
    title = "Image not found"

    def __init__(self, image_ref: str):
        self.image_ref = image_ref
        super().__init__(
            f"The image '{image_ref}' was not found locally. Please ensure it exists."
        )


class RuntimeUnavailable(ScanError):
    status_code = 503
    title = "Container runtime unreachable"


class ScanAlreadyInProgress(ScanError):
    status_code = 409
    title = "Scan already in progress"

    def __init__(self, image_ref: str, scan_id: str):
        self.image_ref = image_ref
        self.scan_id = scan_id
        super().__init__(
            f"A scan is already running for image '{image_ref}' (scan {scan_id}). "
            "Please wait for it to complete."
        )


class ScanQuotaExceeded(ScanError):
    status_code = 403
    title = "Scan limit reached"

    def __init__(self, owner_id: str, used: int, limit: int):
        self.owner_id = owner_id
        self.used = used
        self.limit = limit
        super().__init__(f"Limited to {limit} scans per month ({used} used).")


class ScanNotFound(ScanError):
    status_code = 404
    title = "Scan not found"

    def __init__(self, scan_id: str):
        self.scan_id = scan_id
        super().__init__(f"No scan found with id '{scan_id}'")


class ScanAccessDenied(ScanError):
    status_code = 403
    title = "You do not have permission to access this scan"


class InvalidStatusTransition(ScanError):
    def __init__(self, scan_id: str, current: str, requested: str):
        self.scan_id = scan_id
        self.current = current
        self.requested = requested
        super().__init__(f"Scan {scan_id} cannot move from {current} to {requested}")


class ToolInvocationError(ScanError):
    """A single run of the external scanner did not produce usable output."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"{target}: {reason}")


class ScanExecutionFailed(ScanError):
    def __init__(self, primary: ToolInvocationError, fallback: Optional[ToolInvocationError] = None):
        self.primary = primary
        self.fallback = fallback
        if fallback is None:
            message = f"Scan failed: {primary}"
        else:
            message = (
                "Scan failed with both image name and ID: "
                f"primary ({primary}); fallback ({fallback})"
            )
        super().__init__(message)


class DbInitFailed(ScanError):
    pass


class ParseError(ScanError):
    pass
