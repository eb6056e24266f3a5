# src/tools/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class ToolOutput:
    stdout: str
    stderr: str = ""
    target: Optional[str] = None


class SecurityToolAdapter(ABC):
    @abstractmethod
    def run_scan(self, target: str, cache_dir: str, timeout: int) -> ToolOutput:
        pass

    @abstractmethod
    def download_db(self, cache_dir: str, timeout: int) -> ToolOutput:
        pass
