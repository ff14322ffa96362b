from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.fleet_models import AuditLog


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, actor: str | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            Actor=actor,
            CreatedAt=datetime.now(),
        )
    )


def list_audit_entries(db: Session, entity_type: str, entity_id: int) -> list[dict]:
    rows = db.execute(
        select(AuditLog)
        .where(AuditLog.EntityType == entity_type)
        .where(AuditLog.EntityID == entity_id)
        .order_by(AuditLog.AuditID)
    ).scalars().all()
    return [
        {
            "auditID": row.AuditID,
            "entityType": row.EntityType,
            "entityID": row.EntityID,
            "action": row.Action,
            "details": row.Details,
            "actor": row.Actor,
            "createdAt": row.CreatedAt,
        }
        for row in rows
    ]
