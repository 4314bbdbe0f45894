import json
import logging
import os
import sys
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

LOG_TAIL_MAX_LINES = 500

_TEXT_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # Optional structured fields
        if hasattr(record, "correlation_id"):
            payload["correlation_id"] = getattr(record, "correlation_id")
        for k in ("op", "reason", "backend", "adapter", "bind", "path", "method"):
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"))


class LogTailHandler(logging.Handler):
    """
    Keeps the last N formatted lines in memory: the running log the API serves.
    """

    def __init__(self, maxlen: int = LOG_TAIL_MAX_LINES):
        super().__init__()
        self._lines: Deque[str] = deque(maxlen=maxlen)
        self._lines_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._lines_lock:
            self._lines.append(line)

    def lines(self, limit: Optional[int] = None, secrets: Iterable[str] = ()) -> List[str]:
        with self._lines_lock:
            out = list(self._lines)
        if limit is not None and limit >= 0:
            out = out[-limit:] if limit else []
        secrets = [s for s in secrets if s]
        if not secrets:
            return out
        redacted: List[str] = []
        for line in out:
            for s in secrets:
                line = line.replace(s, "********")
            redacted.append(line)
        return redacted


_TAIL = LogTailHandler()


def get_log_tail(limit: Optional[int] = None, secrets: Iterable[str] = ()) -> List[str]:
    return _TAIL.lines(limit=limit, secrets=secrets)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    lvl = (level or os.environ.get("HOTSPOT_HELPER_LOG_LEVEL") or "INFO").upper()
    style = (fmt or os.environ.get("HOTSPOT_HELPER_LOG_FORMAT") or "text").strip().lower()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, lvl, logging.INFO))

    text_formatter = logging.Formatter(_TEXT_FORMAT, datefmt=_TEXT_DATEFMT)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter() if style == "json" else text_formatter)
    root.addHandler(handler)

    # The running log is always human-readable, whatever stdout gets.
    _TAIL.setFormatter(text_formatter)
    root.addHandler(_TAIL)
