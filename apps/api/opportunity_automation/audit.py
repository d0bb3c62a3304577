from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from opportunity_automation.context import get_correlation_id

AUDIT_BUFFER_SIZE = 1000

OUTCOME_COMMITTED = "committed"
OUTCOME_REJECTED = "rejected"

audit_entries: deque[dict[str, Any]] = deque(maxlen=AUDIT_BUFFER_SIZE)


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    *,
    phase: str,
    transaction_id: str,
    outcome: str = OUTCOME_COMMITTED,
    errors: list[str] | None = None,
) -> None:
    """Append one lifecycle decision to the audit trail.

    ``phase`` is the trigger phase that decided the record's fate. Rejected
    records carry the rule messages in ``errors`` and have no ``after`` image.
    """
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "outcome": outcome,
            "phase": phase,
            "errors": list(errors or []),
            "before": before,
            "after": after,
            "correlation_id": correlation_id or get_correlation_id(),
            "transaction_id": transaction_id,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(entity_id: str, *, outcome: str | None = None) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_id"] == entity_id and (outcome is None or entry["outcome"] == outcome)
    ]
