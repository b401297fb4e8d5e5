"""Log formatting for delivery transitions.

Scheduler and monitor log lines carry ``extra=`` fields (webhook_id,
event_id, attempt, status_code, duration, error); the formatter appends
them as key=value pairs so they survive plain-text log shipping.
"""

import logging
import sys

from webhook_engine.config import settings

STRUCTURED_FIELDS = ("webhook_id", "event_id", "attempt", "status_code", "duration", "error")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        if pairs:
            line = f"{line} {' '.join(pairs)}"
        return line


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing.formatter, StructuredFormatter):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())
