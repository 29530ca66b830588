import uuid
from typing import Any

from sqlalchemy.orm import Session

from stockledger.core.clock import Clock, system_clock, to_storage
from stockledger.core.scope import StockScope
from stockledger.models.audit_log import AuditLog


def log_audit_event(
    db: Session,
    *,
    business_id: str,
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str | None = None,
    scope: StockScope | None = None,
    metadata_json: dict[str, Any] | None = None,
    clock: Clock = system_clock,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; scope ids are folded into the metadata."""
    metadata = dict(metadata_json or {})
    if scope is not None:
        metadata = {**scope.as_dict(), **metadata}
    event = AuditLog(
        id=str(uuid.uuid4()),
        business_id=business_id,
        actor_id=actor_id[:191],
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata or None,
        created_at=to_storage(clock.now()),
    )
    db.add(event)
    return event
