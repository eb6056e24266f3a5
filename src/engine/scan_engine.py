# src/engine/scan_engine.py
"""
ScannerInvoker: runs Trivy against an image, first by the name the user gave
and, if that fails, once more by the image's canonical id.

Some runtime setups can only resolve local images by id, but the readable
name gives nicer reports when it works.
"""
import logging
from typing import Optional

from engine.exceptions import DbInitFailed, ScanExecutionFailed, ToolInvocationError
from tools.base import SecurityToolAdapter, ToolOutput
from tools.trivy_adapter import TrivyAdapter

DB_INIT_TIMEOUT = 60


class ScannerInvoker:
    def __init__(self, adapter: Optional[SecurityToolAdapter] = None):
        self.adapter = adapter or TrivyAdapter()

    def initialize_database(self, cache_dir: str, timeout: int = DB_INIT_TIMEOUT) -> ToolOutput:
        logging.info(f"Initializing vulnerability database in {cache_dir}")
        try:
            output = self.adapter.download_db(cache_dir, timeout)
        except ToolInvocationError as e:
            logging.error(f"Failed to initialize vulnerability database: {e}")
            raise DbInitFailed("Failed to initialize vulnerability database") from e
        if output.stderr:
            logging.debug(f"Vulnerability database initialization warnings: {output.stderr}")
        return output

    def scan(self, primary_ref: str, fallback_ref: Optional[str], cache_dir: str, timeout_seconds: int) -> ToolOutput:
        try:
            return self.adapter.run_scan(primary_ref, cache_dir, timeout_seconds)
        except ToolInvocationError as primary_error:
            if not fallback_ref:
                raise ScanExecutionFailed(primary_error)
            logging.warning(
                f"Scan of {primary_ref} failed ({primary_error.reason}), retrying with {fallback_ref}"
            )
            try:
                return self.adapter.run_scan(fallback_ref, cache_dir, timeout_seconds)
            except ToolInvocationError as fallback_error:
                raise ScanExecutionFailed(primary_error, fallback_error)
