# src/engine/job_manager.py
"""
JobManager: runs scan jobs on a worker pool, detached from the request that
submitted them.

A job reports its outcome only through the records it writes. Anything it
raises is logged here and never reaches the submitter.
"""

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from typing import Dict, Optional


class JobManager:
    def __init__(self, max_workers: int = 3, executor: Optional[Executor] = None):
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="scan-job"
        )
        self.jobs: Dict[str, Future] = {}
        self.lock = threading.Lock()

    def submit_job(self, job_id: str, func, *args, **kwargs) -> Future:
        logging.info(f"[job_id={job_id}] Submitted scan job.")
        future = self._executor.submit(self._run_job, job_id, func, args, kwargs)
        with self.lock:
            self.jobs[job_id] = future
        future.add_done_callback(lambda _: self._forget(job_id))
        return future

    def _run_job(self, job_id, func, args, kwargs):
        logging.info(f"[job_id={job_id}] Started scan job.")
        try:
            func(*args, **kwargs)
        except Exception:
            logging.exception(f"[job_id={job_id}] Scan job crashed")
        else:
            logging.info(f"[job_id={job_id}] Finished scan job.")

    def _forget(self, job_id: str) -> None:
        with self.lock:
            self.jobs.pop(job_id, None)

    def wait_all(self, timeout: Optional[float] = None) -> None:
        with self.lock:
            pending = list(self.jobs.values())
        wait(pending, timeout=timeout)

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)
