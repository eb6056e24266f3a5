import json
from collections import deque
from concurrent.futures import Executor, Future

import pytest

from engine.admission import AdmissionController
from engine.config import Settings
from engine.db import make_session_factory
from engine.exceptions import ImageNotFound
from engine.job_manager import JobManager
from engine.scan_engine import ScannerInvoker
from engine.scan_service import ScanService
from engine.store import ScanCache, ScanStateStore
from tools.base import SecurityToolAdapter, ToolOutput
from tools.docker_gateway import ImageGateway

SAMPLE_REPORT = {
    "SchemaVersion": 2,
    "ArtifactName": "alpine:3.18",
    "Results": [
        {
            "Target": "alpine:3.18 (alpine 3.18.4)",
            "Vulnerabilities": [
                {"VulnerabilityID": "CVE-2023-0001", "Severity": "CRITICAL"},
                {"VulnerabilityID": "CVE-2023-0002", "Severity": "HIGH"},
                {"VulnerabilityID": "CVE-2023-0003", "Severity": "high"},
            ],
        },
        {
            "Target": "usr/lib/python3/site-packages",
            "Vulnerabilities": [
                {"VulnerabilityID": "CVE-2023-0004", "Severity": "Medium"},
                {"VulnerabilityID": "CVE-2023-0005", "Severity": "LOW"},
                {"VulnerabilityID": "CVE-2023-0006", "Severity": "LOW"},
                {"VulnerabilityID": "CVE-2023-0007", "Severity": "low"},
                {"VulnerabilityID": "CVE-2023-0008", "Severity": "UNKNOWN"},
            ],
        },
        {"Target": "app/config.yaml"},
    ],
}


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ManualExecutor(Executor):
    """Queues submitted work until the test runs it."""

    def __init__(self):
        self.queue = deque()

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.queue.append((future, fn, args, kwargs))
        return future

    def run_pending(self):
        while self.queue:
            future, fn, args, kwargs = self.queue.popleft()
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)

    def shutdown(self, wait=True, **kwargs):
        pass


class FakeGateway(ImageGateway):
    def __init__(self, images=None):
        self.images = dict(images or {})
        self.calls = []

    def resolve_digest(self, image_ref):
        self.calls.append(image_ref)
        if image_ref not in self.images:
            raise ImageNotFound(image_ref)
        return self.images[image_ref]


class FakeTrivy(SecurityToolAdapter):
    def __init__(self, outputs=None, db_error=None):
        self.outputs = dict(outputs or {})
        self.default = json.dumps(SAMPLE_REPORT)
        self.db_error = db_error
        self.scan_calls = []
        self.db_calls = 0
        self.on_scan = None

    def run_scan(self, target, cache_dir, timeout):
        self.scan_calls.append(target)
        if self.on_scan is not None:
            self.on_scan(target)
        result = self.outputs.get(target, self.default)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(stdout=result, stderr="", target=target)

    def download_db(self, cache_dir, timeout):
        self.db_calls += 1
        if self.db_error is not None:
            raise self.db_error
        return ToolOutput(stdout="", stderr="")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    return make_session_factory("sqlite://")


@pytest.fixture
def store(session_factory, clock):
    return ScanStateStore(session_factory, cache=ScanCache(clock=clock), retention_seconds=3600)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        max_parallel_scans=3,
        scan_timeout=30,
        trivy_cache_dir=str(tmp_path / "trivy-cache"),
        database_url="sqlite://",
    )


@pytest.fixture
def gateway():
    return FakeGateway({
        "alpine:3.18": "a1b2c3",
        "nginx:latest": "d4e5f6",
        "redis:7": "0a0b0c",
        "postgres:16": "1a1b1c",
    })


@pytest.fixture
def trivy():
    return FakeTrivy()


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def service(store, gateway, trivy, executor, settings):
    return ScanService(
        store=store,
        gateway=gateway,
        invoker=ScannerInvoker(trivy),
        admission=AdmissionController(settings.max_parallel_scans),
        job_manager=JobManager(executor=executor),
        settings=settings,
    )


@pytest.fixture
def sample_report():
    return json.loads(json.dumps(SAMPLE_REPORT))
