from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from app.db.models.audit import AuditLog


def audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    payload: dict | None = None,
    request_id: str | None = None,
) -> AuditLog:
    """Add an append-only audit record to the caller's transaction.

    Keep payload JSON-serializable.
    """
    safe_payload: dict[str, Any] = payload or {}
    try:
        # Ensure it can roundtrip to JSON (avoids runtime errors on commit)
        json.dumps(safe_payload)
    except (TypeError, ValueError):
        safe_payload = {"_payload_error": "non_json", "_payload_repr": repr(payload)}

    row = AuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        from_status=from_status,
        to_status=to_status,
        request_id=request_id,
        payload=safe_payload,
    )
    db.add(row)
    return row
