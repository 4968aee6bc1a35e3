"""Logging configuration for hostwright.

Provides configurable logging with:
- File-based logging with rotation
- Console output for the run transcript
- Performance timing decorators for per-task cost analysis

Environment Variables:
    HOSTWRIGHT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    HOSTWRIGHT_LOG_FILE: Path to log file (default: ~/.hostwright/hostwright.log)
    HOSTWRIGHT_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    HOSTWRIGHT_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from hostwright.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("probe")
    def probe(self, resource):
        ...

    with timed_section("task", host="web-1", task="Install git"):
        ...
"""
import functools
import logging
import os
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("hostwright.perf")
main_logger = logging.getLogger("hostwright")


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("HOSTWRIGHT_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".hostwright" / "hostwright.log"
    path_str = os.environ.get("HOSTWRIGHT_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(
    level: Optional[int] = None,
    log_file: Optional[Path] = None,
) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (INFO+ by default, respects HOSTWRIGHT_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics (file only)

    Args:
        level: Console level override (e.g. from a --verbose flag)
        log_file: Log file override
    """
    log_level = level if level is not None else get_log_level()
    log_file = log_file or get_log_file()
    max_size_mb = int(os.environ.get("HOSTWRIGHT_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("HOSTWRIGHT_LOG_BACKUPS", "5"))

    # Create log directory if needed
    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-28s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_format = logging.Formatter("%(levelname)-7s | %(message)s")
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_format)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "hostwright-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    for lg in (main_logger, perf_logger):
        for handler in list(lg.handlers):
            lg.removeHandler(handler)
            handler.close()

    main_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    main_logger.addHandler(console_handler)
    main_logger.addHandler(file_handler)

    # Perf records stay out of the console transcript
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.propagate = False
    perf_logger.addHandler(perf_handler)

    main_logger.debug(
        f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}"
    )


def _format_perf(operation: str, host: Optional[str], elapsed: float, status: str) -> str:
    return f"{operation:20s} | {host or 'N/A':15s} | {elapsed:8.2f}ms | {status}"


def timed(operation: str, host: Optional[str] = None):
    """Decorator to log execution time of a function.

    Args:
        operation: Name of the operation (e.g., "probe", "apply")
        host: Optional host name (can also be inferred from self.host_name)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            host_name = host
            if host_name is None and args and hasattr(args[0], "host_name"):
                host_name = args[0].host_name

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                global_stats.record(operation, elapsed)
                perf_logger.warning(_format_perf(operation, host_name, elapsed, f"FAIL: {e}"))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            global_stats.record(operation, elapsed)
            perf_logger.info(_format_perf(operation, host_name, elapsed, "OK"))
            return result

        return wrapper

    return decorator


@contextmanager
def timed_section(operation: str, host: Optional[str] = None, **extra):
    """Context manager for timing code sections.

    Usage:
        with timed_section("task", host="web-1", task="Install git"):
            ...
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
    except BaseException as e:
        elapsed = (time.perf_counter() - start) * 1000
        global_stats.record(operation, elapsed)
        msg = _format_perf(operation, host, elapsed, f"FAIL: {type(e).__name__}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
    elapsed = (time.perf_counter() - start) * 1000
    global_stats.record(operation, elapsed)
    msg = _format_perf(operation, host, elapsed, "OK")
    if extra_str:
        msg += f" | {extra_str}"
    perf_logger.info(msg)


class PerfStats:
    """Collect and report performance statistics.

    Usage:
        stats = PerfStats()
        stats.record("probe", 150.5)
        stats.record("apply", 50.3)
        print(stats.summary())
    """

    def __init__(self):
        self._data: dict[str, list[float]] = {}

    def record(self, operation: str, duration_ms: float) -> None:
        """Record a timing measurement."""
        self._data.setdefault(operation, []).append(duration_ms)

    def count(self, operation: str) -> int:
        return len(self._data.get(operation, []))

    def summary(self) -> str:
        """Generate summary statistics."""
        lines = ["Performance Summary", "=" * 60]

        for op, times in sorted(self._data.items()):
            if not times:
                continue
            count = len(times)
            avg = sum(times) / count
            lines.append(
                f"{op:20s} | count={count:4d} | "
                f"avg={avg:8.2f}ms | min={min(times):8.2f}ms | max={max(times):8.2f}ms"
            )

        return "\n".join(lines)

    def clear(self) -> None:
        """Clear all recorded data."""
        self._data.clear()


# Global stats instance for convenience
global_stats = PerfStats()
