"""
Local execution of criterion commands.

Spawns one process per call in its own process group, captures a bounded
amount of its output, and kills the whole group when the command times out
or the run is cancelled.
"""

import logging
import os
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO, Mapping, Sequence

from .cancellation import CancelToken
from .config import OUTPUT_LIMIT_BYTES, PROCESS_POLL_SECONDS, TRUNCATION_MARKER
from .models import CommandOutput

logger = logging.getLogger(__name__)


def run_command(
    argv: Sequence[str],
    *,
    timeout: float,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    output_limit: int = OUTPUT_LIMIT_BYTES,
    cancel: CancelToken | None = None,
) -> CommandOutput:
    """
    Run a command to completion, timeout or cancellation.

    Output goes to anonymous temporary files rather than pipes, so a chatty
    command can neither fill memory nor block on a full pipe; only the first
    `output_limit` bytes of each stream are read back.

    Args:
        argv: Program and arguments.
        timeout: Seconds before the process group is killed.
        cwd: Working directory for the command.
        env: Full environment for the command (None: inherit).
        output_limit: Bytes kept from each of stdout and stderr.
        cancel: Token checked while waiting.

    Returns:
        CommandOutput describing how the command ended.

    Raises:
        OSError: If the process cannot be spawned (e.g. binary not found).
    """
    with tempfile.TemporaryFile() as stdout_file, tempfile.TemporaryFile() as stderr_file:
        started = time.monotonic()
        process = subprocess.Popen(
            list(argv),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=stdout_file,
            stderr=stderr_file,
            start_new_session=os.name == "posix",
        )
        logger.debug("Started pid %d: %s", process.pid, " ".join(argv))

        deadline = started + timeout
        timed_out = cancelled = False
        try:
            while True:
                remaining = deadline - time.monotonic()
                try:
                    process.wait(timeout=max(0.0, min(PROCESS_POLL_SECONDS, remaining)))
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel is not None and cancel.cancelled:
                    cancelled = True
                    break
                if time.monotonic() >= deadline:
                    timed_out = True
                    break
        finally:
            # Also reaps anything the command left running in its group
            _kill_process_group(process)
            process.wait()

        duration = time.monotonic() - started
        if timed_out:
            logger.debug("pid %d timed out after %.1fs", process.pid, timeout)

        stdout, stdout_truncated = _read_bounded(stdout_file, output_limit)
        stderr, stderr_truncated = _read_bounded(stderr_file, output_limit)

    return CommandOutput(
        pid=process.pid,
        exit_code=None if (timed_out or cancelled) else process.returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        cancelled=cancelled,
        truncated=stdout_truncated or stderr_truncated,
        duration_seconds=duration,
    )


def _kill_process_group(process: subprocess.Popen) -> None:
    if os.name != "posix":
        if process.poll() is None:
            process.kill()
        return

    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # Group already empty
        pass


def _read_bounded(stream: IO[bytes], limit: int) -> tuple[str, bool]:
    stream.seek(0)
    data = stream.read(limit + 1)
    truncated = len(data) > limit
    text = data[:limit].decode("utf-8", errors="replace")
    if truncated:
        text += TRUNCATION_MARKER
    return text, truncated
