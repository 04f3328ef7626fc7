"""Logging and command metrics for the localnotes store.

``configure_logging`` sets up the rotating log file of the ``localnotes``
logger tree. ``traced`` wraps the store commands of ``NoteService``: each
call is timed, logged with the note ids it touched, and counted in the
process-wide ``metrics`` collector together with the error code of any
failure.
"""
import functools
import inspect
import json
import logging
import time
import uuid
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

from localnotes.exceptions import LocalNotesError
from localnotes.models.schema import NoteContent, NoteMeta

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".localnotes" / "logs"
LOG_FILENAME = "localnotes.log"
METRICS_FILENAME = "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Command arguments worth putting into trace lines
TRACE_ARGUMENTS = ("note_id", "note_ids", "template_id", "notebook_id", "query")

F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Attach a rotating file handler (and optionally stderr) to ``localnotes``.

    Calling it again with the same directory does not add a second handler.

    Args:
        log_dir: Directory for localnotes.log. Defaults to ~/.localnotes/logs/
        level: Logging level for the localnotes loggers
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files to keep
        console: Also log to stderr

    Returns:
        The log directory
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILENAME

    store_logger = logging.getLogger("localnotes")
    store_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if not any(
        isinstance(h, RotatingFileHandler)
        and Path(h.baseFilename).resolve() == log_file.resolve()
        for h in store_logger.handlers
    ):
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        store_logger.addHandler(file_handler)

    if console and not any(
        type(h) is logging.StreamHandler for h in store_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        store_logger.addHandler(console_handler)

    store_logger.info(f"Logging to {log_file}")
    return log_path


@dataclass
class CommandStats:
    """Counters for one store command."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    notes_affected: int = 0
    error_codes: Counter = field(default_factory=Counter)
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        avg = self.total_duration_ms / self.count if self.count else 0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "avg_duration_ms": round(avg, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "notes_affected": self.notes_affected,
            "error_codes": dict(self.error_codes),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
        }


class MetricsCollector:
    """Thread-safe per-command counters.

    Persisting is explicit through save_metrics(), or every
    ``auto_save_interval`` recorded commands when that is positive.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 0,
    ):
        self._stats: Dict[str, CommandStats] = defaultdict(CommandStats)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self.metrics_file = (
            Path(metrics_file) if metrics_file else DEFAULT_LOG_DIR / METRICS_FILENAME
        )
        self._auto_save_interval = auto_save_interval
        self._since_save = 0

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        notes_affected: int = 0,
    ) -> None:
        """Record one finished command.

        Args:
            operation: Command name (save_note, search, ...)
            duration_ms: Wall time in milliseconds
            success: Whether the command returned normally
            error: Failure message
            error_code: ErrorCode name of a domain failure, else the exception type
            notes_affected: Notes returned or changed by the command
        """
        with self._lock:
            stats = self._stats[operation]
            stats.count += 1
            stats.total_duration_ms += duration_ms
            stats.max_duration_ms = max(stats.max_duration_ms, duration_ms)
            stats.notes_affected += notes_affected
            if success:
                stats.success_count += 1
            else:
                stats.error_count += 1
                stats.last_error = error
                stats.last_error_time = datetime.now(timezone.utc)
                if error_code:
                    stats.error_codes[error_code] += 1

            self._since_save += 1
            if 0 < self._auto_save_interval <= self._since_save:
                self._save_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Counters of every command, keyed by command name."""
        with self._lock:
            return {name: stats.to_dict() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all commands."""
        with self._lock:
            error_codes: Counter = Counter()
            for stats in self._stats.values():
                error_codes.update(stats.error_codes)
            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._start_time
                ).total_seconds(),
                "total_operations": sum(s.count for s in self._stats.values()),
                "total_errors": sum(s.error_count for s in self._stats.values()),
                "notes_affected": sum(s.notes_affected for s in self._stats.values()),
                "error_codes": dict(error_codes),
                "operations_tracked": sorted(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now(timezone.utc)
            self._since_save = 0

    def _save_unlocked(self) -> bool:
        data = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {name: s.to_dict() for name, s in self._stats.items()},
        }
        temp_file = self.metrics_file.with_suffix(".tmp")
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self.metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self.metrics_file}: {e}")
            return False
        self._since_save = 0
        return True

    def save_metrics(self) -> bool:
        """Write the counters to metrics_file.

        Returns:
            True if saved, False if the write failed (logged as an error)
        """
        with self._lock:
            return self._save_unlocked()


metrics = MetricsCollector()


def _error_code(error: Exception) -> str:
    if isinstance(error, LocalNotesError):
        return error.code.name
    return type(error).__name__


def _count_notes(result: Any) -> int:
    """Notes a command returned or changed: a record, a list, a count or a summary."""
    if isinstance(result, (NoteMeta, NoteContent)):
        return 1
    if isinstance(result, (list, tuple)):
        return sum(1 for item in result if isinstance(item, NoteMeta))
    if isinstance(result, dict) and isinstance(result.get("notes"), int):
        return result["notes"]
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    return 0


def _note_id(result: Any) -> Optional[str]:
    if isinstance(result, NoteMeta):
        return result.id
    if isinstance(result, NoteContent):
        return result.meta.id
    return None


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block, log START/END lines and record it in ``metrics``.

    Yields:
        A dict for result info; ``note_id`` and ``result_count`` set in it
        appear in the END line, and ``result_count`` is counted as the
        number of notes affected.

    Example:
        with timed_operation("search", query="tag:work") as op:
            op["result_count"] = len(service.search("tag:work"))
    """
    correlation_id = uuid.uuid4().hex[:8]
    start = time.perf_counter()
    info: Dict[str, Any] = {}
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    try:
        yield info
    except Exception as e:
        duration_ms = (time.perf_counter() - start) * 1000
        code = _error_code(e)
        message = e.message if isinstance(e, LocalNotesError) else str(e)
        metrics.record_operation(
            operation, duration_ms, False, error=message, error_code=code
        )
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) "
            f"[ERROR {code}: {message}]"
        )
        raise

    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record_operation(
        operation,
        duration_ms,
        True,
        notes_affected=int(info.get("result_count", 0)),
    )
    info_str = ", ".join(f"{k}={v}" for k, v in info.items())
    logger.debug(f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [OK] {info_str}")


def _trace_context(signature: inspect.Signature, args, kwargs) -> Dict[str, Any]:
    try:
        bound = signature.bind(*args, **kwargs)
    except TypeError:
        return {}
    context = {}
    for name in TRACE_ARGUMENTS:
        if name in bound.arguments:
            value = bound.arguments[name]
            if isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)
            context[name] = str(value)[:80]
    return context


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorate a store command with timed_operation.

    The note, template or notebook ids and the query the command was called
    with go into the trace lines; the id of a returned record and the number
    of notes returned or changed go into the END line and the metrics.

    Args:
        operation_name: Metrics key. Defaults to the function name.
    """

    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = _trace_context(signature, args, kwargs)
            with timed_operation(op_name, **context) as op:
                result = func(*args, **kwargs)
                note_id = _note_id(result)
                if note_id:
                    op["note_id"] = note_id
                op["result_count"] = _count_notes(result)
                return result

        return wrapper  # type: ignore

    return decorator
