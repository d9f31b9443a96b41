from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict


_LOGGER = logging.getLogger("portal")

_ENVELOPE_FIELDS = ("event_id", "occurred_at")


EVENT_SCHEMAS: dict[str, dict[str, Any]] = {
    "OrderCreated": {
        "required_fields": ("order_id", "buyer_id"),
        "optional_fields": ("items_count",) + _ENVELOPE_FIELDS,
    },
    "OrderStatusChanged": {
        "required_fields": ("order_id", "from_state", "to_state", "actor_role", "actor_id", "timestamp"),
        "optional_fields": _ENVELOPE_FIELDS,
    },
    "QuoteSubmitted": {
        "required_fields": ("order_id", "supplier_id", "revision"),
        "optional_fields": ("quoted_lines",) + _ENVELOPE_FIELDS,
    },
    "OrderAdjudicated": {
        "required_fields": ("order_id", "grand_total"),
        "optional_fields": ("supplier_ids",) + _ENVELOPE_FIELDS,
    },
    "CommentAdded": {
        "required_fields": ("order_id", "comment_id", "author_id"),
        "optional_fields": ("is_admin",) + _ENVELOPE_FIELDS,
    },
}


def _event_payload(event: Any) -> Dict[str, Any]:
    try:
        raw = asdict(event)
    except TypeError:
        raw = dict(getattr(event, "__dict__", {}) or {})
    return dict(raw or {})


def validate_event(event: Any) -> bool:
    payload = _event_payload(event)
    schema_name = type(event).__name__
    schema = EVENT_SCHEMAS.get(schema_name)
    if not schema:
        return True

    required_fields = [str(field).strip() for field in tuple(schema.get("required_fields") or ()) if str(field).strip()]
    missing_fields = [
        field for field in required_fields if field not in payload or payload.get(field) in (None, "")
    ]
    if not missing_fields:
        return True

    _LOGGER.error(
        "domain_event_schema_invalid",
        extra={
            "event_id": str(payload.get("event_id") or "").strip() or None,
            "schema_name": schema_name,
            "missing_fields": missing_fields,
        },
    )
    return False
