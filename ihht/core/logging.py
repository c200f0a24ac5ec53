"""
Structured logging configuration using structlog.

Training runs are reviewed after the fact, so each process writes its own
log file under settings.log_dir next to the console stream. Events the
user had to act on (mask lifts, dial suggestions, sensor loss) carry a
``safety_event`` flag so they can be filtered out of a run log quickly.
"""

import contextlib
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from ihht.core.config import settings

LOG_FILE_PREFIX = "ihht_"

SAFETY_EVENTS = frozenset(
    {
        "mask_lift_triggered",
        "mask_lift_escalated",
        "altitude_adjustment_suggested",
        "sensor_disconnected",
    }
)


def tag_safety_events(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Flag instructions and sensor loss for run-log review."""
    if event_dict.get("event") in SAFETY_EVENTS:
        event_dict["safety_event"] = True
    return event_dict


def _run_log_path(log_dir: Path, keep: int) -> Path:
    """Make room for this run's log file and return its path.

    The oldest run logs beyond keep - 1 are removed first.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    previous = sorted(
        log_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    for old_file in previous[max(keep - 1, 0):]:
        with contextlib.suppress(OSError):
            old_file.unlink()

    started = datetime.now().strftime("%Y%m%d_%H%M%S")
    return log_dir / f"{LOG_FILE_PREFIX}{started}.log"


def configure_logging(
    log_sessions_to_keep: Optional[int] = None,
    log_dir: Optional[Path] = None,
    log_to_file: Optional[bool] = None,
) -> Optional[Path]:
    """Configure structlog and the stdlib root logger.

    Call once at startup. Safe to call again (tests reconfigure freely);
    previously installed handlers are closed.

    Args:
        log_sessions_to_keep: Run logs to retain (default: settings)
        log_dir: Directory for run logs (default: settings.log_dir)
        log_to_file: Write a run log at all (default: settings.log_to_file)

    Returns:
        Path of this run's log file, or None when file output is off
    """
    keep = log_sessions_to_keep or settings.log_sessions_to_keep
    directory = log_dir or settings.log_dir
    to_file = settings.log_to_file if log_to_file is None else log_to_file
    level = logging.getLevelName(settings.log_level)

    shared_processors: List[Processor] = [
        # session_id / request_id bound by the controller and middleware
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        tag_safety_events,
    ]
    if settings.debug:
        renderer: List[Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    plain = logging.Formatter("%(message)s")
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(plain)
    root_logger.addHandler(console_handler)

    log_file = None
    if to_file:
        log_file = _run_log_path(Path(directory), keep)
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(plain)
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return log_file


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger for a module: ``log = get_logger(__name__)``."""
    return structlog.get_logger(name)


def bind_context(**kwargs) -> None:
    """Bind values (session_id, request_id) into every later log entry."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
