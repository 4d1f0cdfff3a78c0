from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from .request_id import get_request_id

AuditAction = Literal[
    "booking.created",
    "booking.confirmed",
    "booking.cancelled",
    "booking.completed",
    "booking.expired",
    "booking.refunded",
    "booking.refund_failed",
    "slots.blocked",
    "slots.released",
]
AuditInitiator = Literal["user", "system", "admin"]

AUDIT_LOGGER_NAME = "venue_booking.audit"


def _build_audit_logger() -> logging.Logger:
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    # One JSON line per event; keep it out of the application log format.
    logger.propagate = False
    return logger


_audit_logger = _build_audit_logger()


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    court_id: str,
    date: str,
    start_time: str,
    end_time: str,
    booking_id: Optional[str] = None,
    user_id: Optional[str] = None,
    status_from: Optional[Any] = None,
    status_to: Optional[Any] = None,
    payment_status: Optional[Any] = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Write one JSON line for a booking or slot event. Raises RuntimeError when the line cannot be written."""
    payload: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": "info",
        "action": action,
        "initiator": initiator,
        "request_id": get_request_id(),
        "booking_id": booking_id,
        "court_id": court_id,
        "user_id": user_id,
        "date": date,
        "start_time": start_time,
        "end_time": end_time,
        "status_from": _as_text(status_from),
        "status_to": _as_text(status_to),
        "payment_status": _as_text(payment_status),
    }
    if message is not None:
        payload["message"] = message
    if extra:
        payload.update(extra)

    # None fields are omitted.
    line = {key: value for key, value in payload.items() if value is not None}
    try:
        _audit_logger.info(json.dumps(line, ensure_ascii=True, default=str))
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("failed to emit audit log") from exc
