import json
import os
import sys
import textwrap

import pytest

from engine.exceptions import DbInitFailed, ScanExecutionFailed, ToolInvocationError
from engine.scan_engine import ScannerInvoker
from tools.base import ToolOutput
from tools import trivy_adapter
from tools.trivy_adapter import TrivyAdapter


def test_primary_success_skips_fallback(trivy):
    invoker = ScannerInvoker(trivy)
    output = invoker.scan("alpine:3.18", "a1b2c3", "/cache", 30)
    assert output.target == "alpine:3.18"
    assert trivy.scan_calls == ["alpine:3.18"]


def test_fallback_output_is_returned_when_primary_fails(trivy):
    trivy.outputs["alpine:3.18"] = ToolInvocationError("alpine:3.18", "unable to find the specified image")
    trivy.outputs["a1b2c3"] = ToolOutput(stdout='{"Results": []}', stderr="", target="a1b2c3")
    invoker = ScannerInvoker(trivy)

    output = invoker.scan("alpine:3.18", "a1b2c3", "/cache", 30)

    assert output.stdout == '{"Results": []}'
    assert output.target == "a1b2c3"
    assert trivy.scan_calls == ["alpine:3.18", "a1b2c3"]


def test_both_failures_are_named_in_the_error(trivy):
    trivy.outputs["alpine:3.18"] = ToolInvocationError("alpine:3.18", "unable to find the specified image")
    trivy.outputs["a1b2c3"] = ToolInvocationError("a1b2c3", "timed out after 40s")
    invoker = ScannerInvoker(trivy)

    with pytest.raises(ScanExecutionFailed) as exc:
        invoker.scan("alpine:3.18", "a1b2c3", "/cache", 30)

    message = str(exc.value)
    assert "unable to find the specified image" in message
    assert "timed out after 40s" in message
    assert exc.value.primary.target == "alpine:3.18"
    assert exc.value.fallback.target == "a1b2c3"
    # exactly one retry
    assert trivy.scan_calls == ["alpine:3.18", "a1b2c3"]


def test_no_fallback_reference_means_no_retry(trivy):
    trivy.outputs["alpine:3.18"] = ToolInvocationError("alpine:3.18", "boom")
    with pytest.raises(ScanExecutionFailed) as exc:
        ScannerInvoker(trivy).scan("alpine:3.18", None, "/cache", 30)
    assert exc.value.fallback is None
    assert trivy.scan_calls == ["alpine:3.18"]


def test_db_init_failure_is_wrapped(trivy):
    trivy.db_error = ToolInvocationError("vulnerability database", "network unreachable")
    with pytest.raises(DbInitFailed) as exc:
        ScannerInvoker(trivy).initialize_database("/cache", timeout=60)
    assert str(exc.value) == "Failed to initialize vulnerability database"




@pytest.fixture
def fake_trivy(tmp_path):
    """Writes an executable stand-in for the trivy binary that runs ``body``."""

    def make(body):
        script = tmp_path / "trivy"
        script.write_text(
            f"#!{sys.executable}\n"
            "import json, os, sys, time\n"
            "args = sys.argv[1:]\n"
            "target = args[-1]\n"
            "here = os.path.dirname(os.path.abspath(sys.argv[0]))\n"
            + textwrap.dedent(body)
        )
        script.chmod(0o755)
        return str(script)

    return make


def test_trivy_command_line(fake_trivy):
    binary = fake_trivy("""
        sys.stdout.write(json.dumps(args))
        sys.stderr.write("2024-01-01 INFO Detected OS")
    """)
    output = TrivyAdapter(binary=binary).run_scan("nginx:latest", "/cache", 300)

    assert json.loads(output.stdout) == [
        "image", "--cache-dir", "/cache", "--format", "json",
        "--timeout", "300s", "nginx:latest",
    ]
    assert output.stderr.startswith("2024-01-01 INFO")
    assert output.target == "nginx:latest"


def test_trivy_non_zero_exit(fake_trivy):
    binary = fake_trivy("""
        sys.stderr.write("FATAL image not found")
        sys.exit(1)
    """)
    with pytest.raises(ToolInvocationError) as exc:
        TrivyAdapter(binary=binary).run_scan("ghost:1", "/cache", 10)
    assert exc.value.reason == "FATAL image not found"


def test_trivy_timeout(fake_trivy, monkeypatch):
    monkeypatch.setattr(trivy_adapter, "TIMEOUT_BUFFER_SECONDS", 0)
    binary = fake_trivy("""
        time.sleep(30)
    """)
    with pytest.raises(ToolInvocationError) as exc:
        TrivyAdapter(binary=binary).run_scan("nginx:latest", "/cache", 1)
    assert "timed out after 1s" in str(exc.value)


def test_trivy_missing_binary(tmp_path):
    with pytest.raises(ToolInvocationError) as exc:
        TrivyAdapter(binary=str(tmp_path / "no-such-trivy")).run_scan("nginx:latest", "/cache", 5)
    assert "could not run" in exc.value.reason


@pytest.mark.parametrize("stream", ["stdout", "stderr"])
def test_runaway_output_kills_the_process(fake_trivy, tmp_path, stream):
    binary = fake_trivy(f"""
        with open(os.path.join(here, "pid"), "w") as f:
            f.write(str(os.getpid()))
        while True:
            sys.{stream}.buffer.write(b"x" * 4096)
            sys.{stream}.buffer.flush()
    """)
    with pytest.raises(ToolInvocationError) as exc:
        TrivyAdapter(binary=binary, max_output_bytes=10000).run_scan("nginx:latest", "/cache", 60)
    assert "exceeded 10000 bytes" in str(exc.value)

    pid = int((tmp_path / "pid").read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_undecodable_output_falls_back_to_image_id(fake_trivy):
    binary = fake_trivy("""
        if target == "alpine:3.18":
            sys.stdout.buffer.write(b"\\xff\\xfe")
        else:
            sys.stdout.write('{"Results": []}')
    """)
    output = ScannerInvoker(TrivyAdapter(binary=binary)).scan("alpine:3.18", "a1b2c3", "/cache", 30)

    assert output.target == "a1b2c3"
    assert output.stdout == '{"Results": []}'


def test_download_db_creates_cache_dir(fake_trivy, tmp_path):
    binary = fake_trivy("""
        sys.stdout.write(json.dumps(args))
    """)
    cache_dir = tmp_path / "cache" / "trivy"
    output = TrivyAdapter(binary=binary).download_db(str(cache_dir), 60)

    assert cache_dir.is_dir()
    assert json.loads(output.stdout) == ["image", "--cache-dir", str(cache_dir), "--download-db-only"]


def test_unusable_cache_dir_fails_db_init(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    adapter = TrivyAdapter(binary=str(tmp_path / "no-such-trivy"))

    with pytest.raises(ToolInvocationError) as exc:
        adapter.download_db(str(blocker / "cache"), 60)
    assert exc.value.target == "vulnerability database"

    with pytest.raises(DbInitFailed):
        ScannerInvoker(adapter).initialize_database(str(blocker / "cache"), timeout=60)
