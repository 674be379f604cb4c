from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "VM_IMAGE_BUILDER_LOG_DIR",
        Path.home() / ".local" / "state" / "vm-image-builder" / "logs",
    )
)


def _should_log_tool_output(record, console_level: str) -> bool:
    """Hide streamed tool output (debootstrap, apt) from the console unless tracing."""
    tags = record["extra"].get("tags", [])

    # Always log warnings and above
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "output" in tags:
        return logger.level(console_level).no <= logger.level("TRACE").no

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Failed stages, unrecoverable errors
    - SUCCESS/INFO: Stage progress, skipped stages, resources left live
    - DEBUG: Every external command and its output
    - TRACE: Streamed output of long-running tools on the console

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/vm-image-builder/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - operator-facing
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=lambda record: _should_log_tool_output(record, console_level),
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <24} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - every command and its output
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <24} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a build
        tags: Tags for filtering (e.g., ["mount", "storage"])
        source: Source component (e.g., "pipeline", "nbd")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Context manager for tracking a pipeline stage with automatic timing.

    Logs stage start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "partition", "execute-stage2")
        job_id: Build identifier; a fresh one is generated when omitted
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("format", device="/dev/nbd0") as log:
            log.debug("Formatting EFI partition")
    """
    if job_id is None:
        job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source="pipeline", job_id=job_id, tags=[operation])

        log.info(f"Stage {operation} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"Stage {operation} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"Stage {operation} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_pipeline(job_id: str | None = None) -> Logger:
        """Logger for the stage controller."""
        if job_id is None:
            job_id = f"build-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_device() -> Logger:
        """Logger for image, nbd, partition and filesystem operations."""
        return logger.bind(source="device", tags=["device", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mounts of the target root and pseudo-filesystems."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_stage2() -> Logger:
        """Logger for base-system population and the stage-2 script."""
        return logger.bind(source="stage2", tags=["stage2", "chroot"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, preconditions and configuration."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging pipeline events with consistent
    structure and fields.
    """

    @staticmethod
    def log_stage_skipped(log: Logger, stage: str, reason: str, **extra) -> None:
        """Log a stage elided by a skip flag."""
        log.info(
            f"Stage {stage} skipped ({reason})",
            event_type="stage_skipped",
            stage=stage,
            reason=reason,
            **extra,
        )

    @staticmethod
    def log_resource_left_live(
        log: Logger, resource: str, release_command: str, **extra
    ) -> None:
        """Log a mount or device handed over to the operator."""
        log.warning(
            f"{resource} left live; release with: {release_command}",
            event_type="resource_left_live",
            resource=resource,
            release_command=release_command,
            **extra,
        )
