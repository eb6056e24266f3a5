from .base import SecurityToolAdapter, ToolOutput
from engine.exceptions import ToolInvocationError
import subprocess
import threading
import logging
import os

# extra wall-clock time granted to the process beyond trivy's own --timeout
TIMEOUT_BUFFER_SECONDS = 10
DEFAULT_OUTPUT_LIMIT = 10 * 1024 * 1024
CHUNK_SIZE = 64 * 1024


class _BoundedReader(threading.Thread):
    """Drains one pipe of ``proc``; kills the process once it has written more than ``limit`` bytes."""

    def __init__(self, proc, stream, limit):
        super().__init__(daemon=True)
        self.proc = proc
        self.stream = stream
        self.limit = limit
        self.chunks = []
        self.size = 0
        self.overflowed = False
        self.start()

    def run(self):
        with self.stream:
            while True:
                chunk = self.stream.read1(CHUNK_SIZE)
                if not chunk:
                    break
                self.size += len(chunk)
                if self.size > self.limit:
                    self.overflowed = True
                    self.proc.kill()
                    break
                self.chunks.append(chunk)

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


class TrivyAdapter(SecurityToolAdapter):
    def __init__(self, binary="trivy", max_output_bytes=DEFAULT_OUTPUT_LIMIT):
        self.binary = binary
        self.max_output_bytes = max_output_bytes

    def run_scan(self, target, cache_dir, timeout) -> ToolOutput:
        args = [
            "image",
            "--cache-dir", cache_dir,
            "--format", "json",
            "--timeout", f"{timeout}s",
            target,
        ]
        return self._run(args, target, timeout + TIMEOUT_BUFFER_SECONDS)

    def download_db(self, cache_dir, timeout) -> ToolOutput:
        target = "vulnerability database"
        try:
            os.makedirs(cache_dir, exist_ok=True)
        except OSError as e:
            raise ToolInvocationError(target, f"cannot create cache directory {cache_dir}: {e}")
        args = ["image", "--cache-dir", cache_dir, "--download-db-only"]
        return self._run(args, target, timeout)

    def _run(self, args, target, timeout) -> ToolOutput:
        cmd = [self.binary] + args
        logging.debug(f"Running: {' '.join(cmd)} (timeout={timeout}s)")
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise ToolInvocationError(target, f"could not run {self.binary}: {e}")

        stdout = _BoundedReader(proc, proc.stdout, self.max_output_bytes)
        stderr = _BoundedReader(proc, proc.stderr, self.max_output_bytes)
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            raise ToolInvocationError(target, f"timed out after {timeout}s")
        finally:
            stdout.join()
            stderr.join()

        if stdout.overflowed or stderr.overflowed:
            logging.warning(f"Killed {self.binary} scanning {target}: output over {self.max_output_bytes} bytes")
            raise ToolInvocationError(target, f"output exceeded {self.max_output_bytes} bytes")
        err_text = stderr.data.decode("utf-8", errors="replace")
        if returncode != 0:
            reason = err_text.strip() or f"exit code {returncode}"
            raise ToolInvocationError(target, reason)
        try:
            out_text = stdout.data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ToolInvocationError(target, f"output is not valid UTF-8: {e}")
        return ToolOutput(stdout=out_text, stderr=err_text, target=target)
