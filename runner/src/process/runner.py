"""
Local process execution with bounded output capture, timeouts and
cancellation.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import IO, List, Mapping, Optional

from runner.src.errors import EngineFault

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05
READ_CHUNK = 64 * 1024
TRUNCATION_MARKER = "\n... [truncated {count} bytes] ...\n"

class OutputBuffer:
    """
    Bounded capture of one output stream.

    Keeps the first and the most recent ``limit // 2`` bytes. Anything in
    between is dropped, counted, and replaced by a marker in ``getvalue()``.
    """

    def __init__(self, limit: int):
        self.limit = max(limit, 0)
        self._head_limit = self.limit // 2
        self._tail_limit = self.limit - self._head_limit
        self._head = bytearray()
        self._tail = bytearray()
        self.dropped = 0

    def write(self, chunk: bytes) -> None:
        room = self._head_limit - len(self._head)
        if room > 0:
            self._head += chunk[:room]
            chunk = chunk[room:]
        if not chunk:
            return
        self._tail += chunk
        overflow = len(self._tail) - self._tail_limit
        if overflow > 0:
            del self._tail[:overflow]
            self.dropped += overflow

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def getvalue(self) -> str:
        head = self._head.decode("utf-8", errors="replace")
        tail = self._tail.decode("utf-8", errors="replace")
        if not self.truncated:
            return head + tail
        return head + TRUNCATION_MARKER.format(count=self.dropped) + tail

@dataclass
class ProcessResult:
    argv: List[str]
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False
    duration: float = 0.0

def _start_reader(stream: IO[bytes], buffer: OutputBuffer) -> threading.Thread:
    def pump():
        with stream:
            for chunk in iter(partial(stream.read1, READ_CHUNK), b""):
                buffer.write(chunk)

    thread = threading.Thread(target=pump, daemon=True)
    thread.start()
    return thread

def _send_signal(proc: subprocess.Popen, sig: int) -> None:
    try:
        if os.name == "posix":
            # Steps run in their own session, so signal the whole group
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass  # Already gone

def terminate_process(proc: subprocess.Popen, grace_period: float) -> int:
    """
    Stop a process: SIGTERM, wait ``grace_period`` seconds, then SIGKILL.
    Returns the exit code.
    """
    _send_signal(proc, signal.SIGTERM)
    try:
        return proc.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} still running after {grace_period}s, killing")
        _send_signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        return proc.wait()

def run_process(
    argv: List[str],
    env: Mapping[str, str],
    cwd: Path,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    grace_period: float = 5.0,
    buffer_limit: int = 1024 * 1024,
) -> ProcessResult:
    """
    Run ``argv`` with exactly ``env`` and block until it exits, times out or
    is cancelled.

    Raises EngineFault if the process cannot be started. A non-zero exit is
    reported in the result, never raised.
    """
    started = time.monotonic()

    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
    except (OSError, ValueError) as e:
        raise EngineFault(f"Failed to start process '{argv[0]}': {e}") from e

    stdout_buffer = OutputBuffer(buffer_limit)
    stderr_buffer = OutputBuffer(buffer_limit)
    readers = [
        _start_reader(proc.stdout, stdout_buffer),
        _start_reader(proc.stderr, stderr_buffer),
    ]

    deadline = started + timeout if timeout else None
    timed_out = False
    cancelled = False

    while True:
        try:
            exit_code = proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Cancelling process {proc.pid}")
            cancelled = True
        elif deadline is not None and time.monotonic() >= deadline:
            logger.warning(f"Process {proc.pid} timed out after {timeout}s")
            timed_out = True
        else:
            continue

        exit_code = terminate_process(proc, grace_period)
        break

    for reader in readers:
        reader.join(timeout=grace_period)
        if reader.is_alive():
            # A detached grandchild still holds the pipe open
            logger.warning(f"Output of process {proc.pid} still open after exit, giving up on it")

    return ProcessResult(
        argv=list(argv),
        exit_code=exit_code,
        stdout=stdout_buffer.getvalue(),
        stderr=stderr_buffer.getvalue(),
        timed_out=timed_out,
        cancelled=cancelled,
        truncated=stdout_buffer.truncated or stderr_buffer.truncated,
        duration=time.monotonic() - started,
    )
