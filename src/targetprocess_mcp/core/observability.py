from __future__ import annotations

import logging
from typing import Any, Dict, Optional

EVENT_LOGGER = "targetprocess_mcp.events"

# LogRecord attributes an extra may not overwrite
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

# credentials that reach an event by accident are masked, never written
SECRET_FIELDS = frozenset({"password", "access_token", "token", "authorization"})
REDACTED = "***"


def event_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fields safe to attach to a TargetProcess event record.
    - None values are dropped so logfmt lines stay short
    - LogRecord attributes are dropped
    - credential-looking keys are masked
    """
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None or key in _RECORD_ATTRS:
            continue
        cleaned[key] = REDACTED if key.lower() in SECRET_FIELDS else value
    return cleaned


def record_event(
    event: str,
    *,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Emit one named event (tp_call, entity_types.populated, metadata.built, ...)."""
    log = logger or logging.getLogger(EVENT_LOGGER)
    log.log(level, event, extra={"event": event, **event_fields(fields)})


__all__ = ["record_event", "event_fields", "EVENT_LOGGER", "SECRET_FIELDS"]
