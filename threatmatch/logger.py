"""
Structured logging for the threat-match backfill.

Provides centralized logging with console and file outputs plus metrics
tracking so an operator can see which report files and months failed.
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks per-file and per-month metrics for backfill runs.
    """

    def __init__(
        self,
        name: str = "threatmatch",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()

        # Workers record metrics concurrently
        self._metrics_lock = threading.Lock()
        self.metrics = {
            "files_attempted": 0,
            "files_succeeded": 0,
            "files_failed": 0,
            "records_written": 0,
            "errors_by_type": {},
            "month_success_rate": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"threatmatch_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str, sort_keys=True)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_file_attempt(self, month: str):
        """Record a report file entering processing."""
        with self._metrics_lock:
            self.metrics["files_attempted"] += 1
            stats = self.metrics["month_success_rate"].setdefault(
                month, {"attempts": 0, "successes": 0}
            )
            stats["attempts"] += 1

    def record_file_success(self, month: str, records: int):
        """Record a report file whose partition was exchanged."""
        with self._metrics_lock:
            self.metrics["files_succeeded"] += 1
            self.metrics["records_written"] += records
            if month in self.metrics["month_success_rate"]:
                self.metrics["month_success_rate"][month]["successes"] += 1

    def record_file_failure(self, month: str, error_type: str):
        """Record a report file that failed."""
        with self._metrics_lock:
            self.metrics["files_failed"] += 1
            errors = self.metrics["errors_by_type"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def get_metrics(self) -> dict:
        """Return a snapshot of current metrics with success rates."""
        with self._metrics_lock:
            metrics_copy = json.loads(json.dumps(self.metrics))
        for stats in metrics_copy["month_success_rate"].values():
            if stats["attempts"] > 0:
                stats["success_rate"] = round(
                    stats["successes"] / stats["attempts"], 3
                )
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        total_attempts = metrics["files_attempted"]
        total_successes = metrics["files_succeeded"]
        overall_rate = 0
        if total_attempts > 0:
            overall_rate = round(total_successes / total_attempts * 100, 1)

        self.info("=== Backfill Metrics ===")
        self.info(f"Files: {total_successes}/{total_attempts} ({overall_rate}% success)")
        self.info(f"Records written: {metrics['records_written']}")

        if metrics["month_success_rate"]:
            self.info("Month Success Rates:")
            for month, stats in sorted(metrics["month_success_rate"].items()):
                rate = stats.get("success_rate", 0) * 100
                self.info(f"  {month}: {stats['successes']}/{stats['attempts']} ({rate:.1f}%)")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "threatmatch",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
