"""
Structured logging and in-process metrics for the feedback agent.

Production logs are single-line JSON for the log shipper; dev logs are
human readable. Every record carries the correlation id and tenant of the
run or request that produced it, taken from context variables, so a whole
pipeline run can be pulled out of the logs with one filter.

Feedback content must never reach a log line. Context keys that usually
hold free text are masked by the formatter as a last line of protection.
"""

import asyncio
import json
import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Deque, Dict, Optional

import numpy as np

from feedback_agent.config import settings


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

# Context keys whose values are replaced before formatting
MASKED_KEYS = frozenset({"text", "raw_text", "redacted_text", "payload", "prompt", "response", "notes"})
MASKED = "[omitted]"


def _mask(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (MASKED if k in MASKED_KEYS else v) for k, v in data.items()}


def _run_context() -> Dict[str, str]:
    context = {}
    if correlation_id_var.get():
        context["correlation_id"] = correlation_id_var.get()
    if tenant_id_var.get():
        context["tenant_id"] = tenant_id_var.get()
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "environment": settings.environment,
        }
        entry.update(_run_context())

        data = getattr(record, "extra_data", None)
        if data:
            entry["data"] = _mask(data)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable dev output: the message followed by key=value context."""

    def __init__(self):
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _run_context()
        data = getattr(record, "extra_data", None)
        if data:
            context.update(_mask(data))
        if context:
            line += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


class StructuredLogger:
    """
    Logger that takes context as keyword arguments.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info("Processing window complete", tenant_id="t-1", clusters=3)
        logger.error("Generation failed", error=str(e), exc_info=True)
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: bool = False, **context):
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, exc_info=exc_info, extra={"extra_data": context}, stacklevel=3)

    def debug(self, message: str, **context):
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context):
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context):
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, exc_info: bool = False, **context):
        self._log(logging.ERROR, message, exc_info=exc_info, **context)

    def critical(self, message: str, **context):
        self._log(logging.CRITICAL, message, **context)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None):
    """
    Configure the root logger.

    Args:
        level: Log level name
        json_format: JSON lines (prod) or console format (dev)
        log_file: Optional JSON log file; parent directories are created
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for noisy in ("httpx", "httpcore", "openai", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def init_logging():
    """Initialize logging from settings."""
    is_prod = settings.is_production
    setup_logging(
        level="INFO" if is_prod else "DEBUG",
        json_format=is_prod,
        log_file="logs/feedback_agent.log" if is_prod else None,
    )


# ============== METRICS ==============


class MetricsCollector:
    """
    Thread-safe counters, gauges and timing samples.

    Sync FastAPI endpoints run in a thread pool while tenant workers run on
    the event loop, so every update takes the lock.

    Usage:
        metrics.increment("feedback.queued")
        metrics.gauge("queue.t-1.size", 5)
        metrics.timing("stage.process_window", 0.42)
    """

    def __init__(self, max_samples: int = 1000):
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._timings: Dict[str, Deque[float]] = {}
        self._start_time = time.time()

    def increment(self, name: str, value: int = 1):
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def timing(self, name: str, seconds: float):
        with self._lock:
            samples = self._timings.setdefault(name, deque(maxlen=self._max_samples))
            samples.append(seconds)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            timings = {name: list(samples) for name, samples in self._timings.items() if samples}

        timing_stats = {}
        for name, samples in timings.items():
            values = np.asarray(samples)
            timing_stats[name] = {
                "count": int(values.size),
                "mean_ms": round(float(values.mean()) * 1000, 2),
                "p50_ms": round(float(np.percentile(values, 50)) * 1000, 2),
                "p95_ms": round(float(np.percentile(values, 95)) * 1000, 2),
                "max_ms": round(float(values.max()) * 1000, 2),
            }

        return {
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "counters": counters,
            "gauges": gauges,
            "timings": timing_stats,
        }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


metrics = MetricsCollector()


# ============== DECORATORS ==============


def log_execution_time(logger_name: str = "feedback_agent"):
    """
    Time a pipeline stage.

    Records ``stage.<function>`` timings and logs failures with the elapsed
    time. Works on plain functions and coroutines.
    """
    def decorator(func):
        logger = StructuredLogger(logger_name)
        stage = f"stage.{func.__name__}"

        def _finish(start: float, error: Optional[Exception] = None):
            elapsed = time.perf_counter() - start
            metrics.timing(stage, elapsed)
            if error is None:
                logger.debug(f"{func.__name__} completed", duration_ms=round(elapsed * 1000, 2))
            else:
                metrics.increment(f"{stage}.errors")
                logger.error(
                    f"{func.__name__} failed",
                    duration_ms=round(elapsed * 1000, 2),
                    error=str(error),
                    exc_info=True,
                )

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _finish(start, e)
                    raise
                _finish(start)
                return result
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _finish(start, e)
                raise
            _finish(start)
            return result
        return sync_wrapper

    return decorator
