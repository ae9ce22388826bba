from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.models import AuditActorType, AuditLog

logger = logging.getLogger("app.audit")


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str | int,
    action: str,
    success: bool = True,
    organization_id: int | None = None,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Write an audit row in its own commit; failures are logged, never raised."""
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        organization_id=organization_id,
        actor_type=actor_type,
        actor_id=str(actor_id),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": str(actor_id),
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "action": action,
            "actor_type": actor_type.value,
            "actor_id": str(actor_id),
            "organization_id": organization_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )
