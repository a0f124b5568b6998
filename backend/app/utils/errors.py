from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


LOGGER = logging.getLogger(__name__)


@dataclass
class AppError(Exception):
    message: str
    error_code: str = "APP_ERROR"
    status_code: int = 400
    details: Any = None
    stage: str = "API"

    def __str__(self) -> str:
        return self.message


def log_error(
    stage: str,
    message: str,
    details: Any = None,
    correlation_id: str | None = None,
) -> None:
    payload = {
        "stage": stage,
        "message": message,
        "details": details,
        "correlation_id": correlation_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    LOGGER.error("%s", json.dumps(payload, default=str))
