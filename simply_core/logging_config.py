"""
Logging setup for Simply Core

Every engine logs through ``log_action`` so ledger, accrual and transfer
events share one JSON shape:

    {"timestamp": ..., "level": "INFO", "logger": "simply.transfers",
     "message": "Transfer completed", "user_id": "...", "action": "transfer.create",
     "resource": "transaction:<id>", "extra": {...}}

CVU values inside ``extra`` are masked down to their last four digits.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ACTION_FIELDS = ("user_id", "action", "resource", "extra")
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def mask_cvu(value: Any) -> Any:
    if isinstance(value, str) and len(value) > 4:
        return "*" * (len(value) - 4) + value[-4:]
    return value


def mask_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``payload`` with every ``*cvu`` key masked"""
    return {
        key: mask_cvu(value) if key.endswith("cvu") else value
        for key, value in payload.items()
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's own UTC time"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in ACTION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # Decimals and dates serialize as strings
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "simply",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger with a single handler.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Logger that engines log under (``simply.*``)
        log_format: "json" or "text"
        log_file: Path to append to; stdout when omitted
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "simply") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log a domain action with structured fields.

    ``action`` is dotted (``investment.create``), ``resource`` is
    ``kind:<id>`` and ``user_id`` is the owner of the account acted upon.
    Nothing is built when ``level`` is disabled for ``logger``.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    record.user_id = user_id
    record.action = action
    record.resource = resource
    record.extra = mask_payload(extra) if extra else None
    logger.handle(record)
