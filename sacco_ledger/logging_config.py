"""
Structured logging for ledger commands

Every component logs under the ``sacco`` logger tree. Records may carry the
member, action and resource they concern; JSONFormatter writes those as
top-level keys so a log line can be joined back to the audit trail.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Record attributes copied into the JSON line when set
CONTEXT_FIELDS = ("correlation_id", "member_id", "action", "resource", "extra")

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; unset context fields are left out"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    logger_name: str = "sacco",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Point the ledger's logger tree at a single handler.

    Calling it again replaces the previous handler, so a job can reconfigure
    after reading its settings.

    Args:
        level: Level name such as "INFO" or "debug"
        logger_name: Top of the logger tree to configure
        log_format: "json" for JSONFormatter, anything else for plain text
        log_file: Append to this file instead of writing to stderr
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(PLAIN_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def log_action(logger: logging.Logger, level: str, message: str,
               member_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit ``message`` with ledger context attached to the record.

    ``resource`` is the loan, transaction or member id the action touched;
    ``extra`` holds any further amounts or dates worth keeping.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    context = {
        "member_id": member_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    for field, value in context.items():
        if value:
            setattr(record, field, value)

    logger.handle(record)
