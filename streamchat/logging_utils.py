"""Logging utilities with local timezone support."""

import logging
import time

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class LocalTimeFormatter(logging.Formatter):
    """Formatter that uses local time instead of UTC."""

    def formatTime(self, record, datefmt=None):
        ct = self.converter(record.created)
        if datefmt:
            s = time.strftime(datefmt, ct)
        else:
            s = time.strftime("%Y-%m-%d %H:%M:%S", ct)
            s = f"{s},{int(record.msecs):03d}"
        return s

    converter = time.localtime


class HealthCheckAccessFilter(logging.Filter):
    """Drop health and metrics probes from the uvicorn access log."""

    def __init__(self, paths: tuple[str, ...] = ("/health", "/metrics")):
        super().__init__()
        self.paths = paths

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not any(f"GET {path} " in msg for path in self.paths)


def configure_logging(level: int = logging.INFO) -> None:
    """Install a single local-time stream handler on the root logger."""
    root = logging.getLogger()
    for existing in root.handlers:
        if isinstance(existing.formatter, LocalTimeFormatter):
            return
    handler = logging.StreamHandler()
    handler.setFormatter(LocalTimeFormatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
