from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


logger = logging.getLogger("app.audit")

audit_entries: list[dict[str, Any]] = []


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return sorted((after or before or {}).keys())
    keys = set(before) | set(after)
    return sorted(key for key in keys if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
    organization_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    """Append an audit entry scoped to the organization the change happened in."""
    resolved_correlation_id = correlation_id or get_correlation_id()
    changed = _changed_fields(before, after)
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "organization_id": organization_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": before,
            "after": after,
            "changed_fields": changed,
            "correlation_id": resolved_correlation_id,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )
    logger.info(
        "audit.recorded",
        extra={
            "organization_id": organization_id,
            "entity_type": entity_type,
            "action": action,
            "count": len(changed),
        },
    )


def entries_for(
    organization_id: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["organization_id"] == organization_id
        and (entity_type is None or entry["entity_type"] == entity_type)
        and (entity_id is None or entry["entity_id"] == entity_id)
    ]
