import logging
import os
import sys
from typing import Any, Dict, Optional

from site_ingest.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: Optional[str] = None, log_path: Optional[str] = None) -> None:
    """
    Configure application logging: stdout plus a file handler
    under LOG_PATH. Safe to call more than once.
    """
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]

    path = log_path if log_path is not None else settings.LOG_PATH
    if path:
        try:
            os.makedirs(path, exist_ok=True)
            handlers.append(logging.FileHandler(os.path.join(path, "site_ingest.log"), encoding="utf-8"))
        except OSError as e:
            # Read-only filesystems still get stdout logging
            print(f"Could not create log file under {path}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    # Set third-party loggers to WARNING
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("sentence_transformers").setLevel(logging.WARNING)
    logging.getLogger("readability").setLevel(logging.WARNING)


class RequestLoggerAdapter(logging.LoggerAdapter):
    """Prefixes messages with the request context (path, user)."""

    def process(self, msg: Any, kwargs: Dict[str, Any]):
        context = " ".join(f"{key}={value}" for key, value in self.extra.items() if value is not None)
        return (f"[{context}] {msg}" if context else msg), kwargs


def get_request_logger(context: Dict[str, Any], name: str = "site_ingest.api") -> RequestLoggerAdapter:
    """Get a logger that carries request context on every line."""
    return RequestLoggerAdapter(logging.getLogger(name), context)
