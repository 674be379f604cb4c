"""Command execution utilities for external provisioning tools.

Every tool the pipeline drives (qemu-img, qemu-nbd, parted, mkfs.*, lsblk,
mount, debootstrap, chroot) goes through one of these two runners so that a
non-zero exit status always surfaces as ``CommandFailedError``.

Runners:
    - run_command(): capture output, raise on failure (short-lived tools)
    - run_streaming_command(): stream output line by line into the log
      (debootstrap, the stage-2 script)
"""

from __future__ import annotations

import subprocess
from collections import deque
from typing import Mapping, Optional, Sequence

from vm_image_builder.logging import get_logger
from vm_image_builder.storage.exceptions import CommandFailedError

log = get_logger(source="command", tags=["command"])

# Lines of streamed output kept for the error message of a failed command
STREAM_TAIL_LINES = 20


def run_command(
    command: Sequence[str],
    log_output: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command, capturing its output.

    Raises:
        CommandFailedError: If the tool is missing or exits non-zero
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            text=True,
            capture_output=True,
        )
    except OSError as error:
        raise CommandFailedError(command, 127, str(error)) from error
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        raise CommandFailedError(command, result.returncode, stderr or stdout)
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_streaming_command(
    command: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
) -> int:
    """Run a long command, logging each output line as it arrives.

    stderr is merged into stdout so the log keeps the tool's own ordering.

    Raises:
        CommandFailedError: If the tool is missing or exits non-zero
    """
    command = [str(part) for part in command]
    output_log = log.bind(tags=["command", "output"])
    log.debug(f"Running command: {' '.join(command)}")
    try:
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=dict(env) if env is not None else None,
        )
    except OSError as error:
        raise CommandFailedError(command, 127, str(error)) from error

    tail: deque[str] = deque(maxlen=STREAM_TAIL_LINES)
    for line in process.stdout:
        line = line.rstrip()
        if not line:
            continue
        tail.append(line)
        output_log.debug(line)
    process.stdout.close()
    returncode = process.wait()
    if returncode != 0:
        raise CommandFailedError(command, returncode, "\n".join(tail))
    log.debug(f"Command completed with return code {returncode}")
    return returncode


__all__ = [
    "run_command",
    "run_streaming_command",
]
