"""One-line JSON log records, enabled with ``API_STRUCTURED_LOGGING=true``.

Example line (wrapped here)::

    {"ts": "2024-01-10T06:00:00.012345+00:00", "level": "INFO",
     "logger": "api.services.subscription_processor",
     "message": "Subscription processing complete",
     "job": {"name": "process_subscriptions", "manual": false,
             "trialsExpired": 2, "subscriptionsSuspended": 0,
             "periodsExpired": 0, "notificationsSent": 1,
             "notificationsFailed": 0, "errors": []}}

``request`` (access log) and ``job`` (processor summaries) extras are
copied as nested objects.  The correlation id of an access record is
lifted to the top level.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

_NESTED_EXTRAS = ("request", "job")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _NESTED_EXTRAS:
            value = getattr(record, name, None)
            if value is None:
                continue
            entry[name] = value
            if isinstance(value, dict) and value.get("correlation_id"):
                entry.setdefault("correlation_id", value["correlation_id"])

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.module}:{record.lineno}"
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)
