from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


class BracketLevelFormatter(logging.Formatter):
    """Custom formatter that adds bracketed lowercase level tags and UTC timestamps."""

    _TAGS = {
        logging.DEBUG: "[debug]",
        logging.INFO: "[info]",
        logging.WARNING: "[warn]",
        logging.ERROR: "[error]",
        logging.CRITICAL: "[crit]",
    }

    def formatTime(self, record, datefmt=None):
        """Format the record time as UTC ISO-8601 with Z suffix."""
        return datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        """Add level_tag attribute and format the record."""
        record.level_tag = self._TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return super().format(record)


class RingBuffer:
    """Thread-safe fixed-size ring buffer of arbitrary items.

    Inputs (constructor):
      - capacity: Maximum number of items to retain (int, >= 1)

    Outputs:
      - RingBuffer instance with push() and snapshot() helpers.

    Example:
      >>> buf = RingBuffer(capacity=2)
      >>> buf.push(1)
      >>> buf.push(2)
      >>> buf.push(3)
      >>> buf.snapshot()
      [2, 3]
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            capacity = 1

        self._capacity = int(capacity)
        self._items: List[Any] = []
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, item: Any) -> None:
        with self._lock:
            self._items.append(item)
            overflow = len(self._items) - self._capacity
            if overflow > 0:
                del self._items[:overflow]

    def snapshot(self, limit: Optional[int] = None) -> List[Any]:
        """Return a copy of buffered items, optionally truncated to the newest N.

        Example:
          >>> buf = RingBuffer(3)
          >>> for i in range(5):
          ...     buf.push(i)
          >>> buf.snapshot(limit=2)
          [3, 4]
        """

        with self._lock:
            data = list(self._items)
        if limit is not None and limit >= 0:
            data = data[-limit:] if limit else []
        return data


class StartupLogCapture(logging.handlers.BufferingHandler):
    """Holds records logged before init_logging() so they can be replayed.

    Example use:
        >>> capture = StartupLogCapture.install()
        >>> logging.getLogger("x").info("before logging is configured")
        >>> init_logging({"level": "info"})
        >>> capture.replay()
    """

    def __init__(self, capacity: int = 1000) -> None:
        super().__init__(capacity)

    def shouldFlush(self, record: logging.LogRecord) -> bool:
        return False

    def emit(self, record: logging.LogRecord) -> None:
        if len(self.buffer) < self.capacity:
            self.buffer.append(record)

    @classmethod
    def install(cls, capacity: int = 1000) -> "StartupLogCapture":
        """Attach a capture handler to the root logger at DEBUG."""

        capture = cls(capacity)
        root = logging.getLogger()
        root.addHandler(capture)
        root.setLevel(logging.DEBUG)
        return capture

    def replay(self) -> None:
        """Detach from the root logger and re-dispatch records the new level allows."""

        logging.getLogger().removeHandler(self)
        self.acquire()
        try:
            records, self.buffer = list(self.buffer), []
        finally:
            self.release()
        for record in records:
            log = logging.getLogger(record.name)
            if log.isEnabledFor(record.levelno):
                log.handle(record)


class RingBufferHandler(logging.Handler):
    """Logging handler that stores formatted lines in a RingBuffer for the dashboard."""

    def __init__(self, buffer: RingBuffer, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.push(self.format(record))
        except Exception:  # pragma: no cover - mirrors logging.Handler behaviour
            self.handleError(record)


def _as_dict(cfg: Any) -> Dict[str, Any]:
    if cfg is None:
        return {}
    if isinstance(cfg, dict):
        return cfg
    dump = getattr(cfg, "model_dump", None)
    if callable(dump):
        return dict(dump())
    return dict(cfg)


def init_logging(cfg: Any = None, log_buffer: Optional[RingBuffer] = None) -> None:
    """
    Initialize logging configuration based on the provided config.

    Args:
        cfg: LoggingConfig model or dictionary with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: boolean to log to stderr (default: True)
            - file: string path to log file (optional)
        log_buffer: Optional RingBuffer receiving every formatted record, used
            by the dashboard's recent-logs view.

    Example config:
        {
            "level": "info",
            "stderr": True,
            "file": "./jellyfin-discovery-proxy.log",
        }
    """
    cfg = _as_dict(cfg)

    level_str = str(cfg.get("level", "info")).lower()
    level = _LEVELS.get(level_str, logging.INFO)

    fmt = "%(asctime)s %(level_tag)s %(name)s: %(message)s"
    formatter = BracketLevelFormatter(fmt=fmt)

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for h in list(root.handlers):
        root.removeHandler(h)

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if log_buffer is not None:
        buffer_handler = RingBufferHandler(log_buffer)
        buffer_handler.setFormatter(formatter)
        root.addHandler(buffer_handler)

    if level_str not in _LEVELS:
        root.warning("Unknown log level '%s', defaulting to 'info'", level_str)

    logging.captureWarnings(True)
