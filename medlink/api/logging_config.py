"""Logging setup for the MedLink hub.

Every handler installed by ``setup_logging`` carries ``ICMaskingFilter`` so a
patient's IC number never reaches stdout in full, whether it arrives in a
message argument, a request path or a traceback. Production deployments use
``StructuredFormatter`` (one JSON object per line); development keeps the
plain text layout.

Security Impact:
    - Only the date-of-birth prefix of an IC number is ever logged
    - Request context (request id, client ip, endpoint) is carried as fields
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# YYMMDD-PB-###G, dashes optional
IC_NUMBER_PATTERN = re.compile(r"\b(\d{6})-?(\d{2})-?(\d{4})\b")
IC_MASK = "******"

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
TEXT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

CONTEXT_FIELDS = ("request_id", "client_ip", "endpoint", "hospital_id")
QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "fastapi", "duckdb")


def mask_ic_numbers(text: str) -> str:
    """Replace every IC number in text with its date-of-birth prefix and asterisks."""
    return IC_NUMBER_PATTERN.sub(lambda match: match.group(1) + IC_MASK, text)


class ICMaskingFilter(logging.Filter):
    """Rewrites the record message with IC numbers masked.

    The record is rendered once with its arguments; when masking changes the
    text the rendered form replaces ``msg`` and ``args`` is cleared.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        rendered = record.getMessage()
        masked = mask_ic_numbers(rendered)
        if masked != rendered:
            record.msg = masked
            record.args = None
        return True


class StructuredFormatter(logging.Formatter):
    """JSON line formatter for production log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        """Render a record as a single JSON object.

        Parameters:
            record: Log record to format

        Returns:
            JSON encoded log line
        """
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            payload.update(extra_fields)

        if record.exc_info:
            payload["exception"] = mask_ic_numbers(self.formatException(record.exc_info))

        return json.dumps(payload, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO"):
    """Install a single stdout handler on the root logger.

    Parameters:
        use_json: Emit JSON lines instead of plain text
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(ICMaskingFilter())
    handler.setFormatter(
        StructuredFormatter() if use_json
        else logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATE_FORMAT)
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
