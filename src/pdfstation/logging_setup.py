"""Logging configuration and the per-job logging context."""

import logging
import sys
from typing import Any, MutableMapping, Optional, Tuple

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class JobLogAdapter(logging.LoggerAdapter):
    """Logger adapter that tags every record with the job it belongs to.

    The context is attached both as a message prefix (for plain stream
    handlers) and as record attributes `job_id` / `operation` (for structured
    handlers and tests via caplog).
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"[job={extra.get('job_id')} op={extra.get('operation')}] {msg}", kwargs


def job_logger(
    job_id: str,
    operation: Optional[str] = None,
    base: Optional[logging.Logger] = None,
) -> JobLogAdapter:
    """Build the logging context passed through the processor call chain."""
    return JobLogAdapter(
        base or logging.getLogger("pdfstation.jobs"),
        {"job_id": job_id, "operation": operation},
    )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the pdfstation logger tree."""
    root = logging.getLogger("pdfstation")
    root.setLevel(level)
    if not any(getattr(h, "_pdfstation", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._pdfstation = True  # type: ignore[attr-defined]
        root.addHandler(handler)
