# src/engine/admission.py
"""
AdmissionController: bounds the number of scans running at the same time.

Every successful admit() must be paired with exactly one release(), whatever
way the scan ends. A missing release permanently shrinks capacity.
"""

import logging
import threading

from engine.exceptions import CapacityExceeded


class AdmissionController:
    def __init__(self, capacity: int = 3):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def try_admit(self) -> bool:
        with self._lock:
            if self._in_flight >= self._capacity:
                return False
            self._in_flight += 1
            return True

    def admit(self) -> None:
        if not self.try_admit():
            logging.info(f"Admission denied: {self._capacity} scans already in flight")
            raise CapacityExceeded(self._capacity)

    def release(self) -> None:
        with self._lock:
            if self._in_flight == 0:
                logging.warning("Admission released with no scan in flight")
                return
            self._in_flight -= 1
