"""
Structured event logging for the catalog admin tool.

Events are ordinary ``logging`` records carrying an ``event`` name and a
``fields`` dict, so any handler can pick them up.
"""
import logging
import sys
from typing import Any, Dict


def emit(logger: logging.Logger, level: int, event: str, message: str = "", **fields: Any) -> None:
    """Log ``event`` at ``level`` with the given fields attached to the record."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, message or event, extra={"event": event, "fields": fields})


def format_fields(fields: Dict[str, Any]) -> str:
    parts = []
    for key, value in fields.items():
        if isinstance(value, float):
            value = f"{value:.3f}"
        text = str(value)
        if " " in text or text == "":
            text = repr(text)
        parts.append(f"{key}={text}")
    return " ".join(parts)


class EventFormatter(logging.Formatter):
    """Render records as ``time level logger event message key=value ...``."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        event = getattr(record, "event", None)
        fields = getattr(record, "fields", None)
        if event and record.getMessage() != event:
            line = f"{line} [{event}]"
        if fields:
            line = f"{line} {format_fields(fields)}"
        return line


def configure_logging(level: str = "INFO") -> None:
    """Install ``EventFormatter`` on a stderr handler of the root logger."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(EventFormatter())
    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing.formatter, EventFormatter):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
