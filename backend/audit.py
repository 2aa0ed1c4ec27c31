"""Append-only audit trail of privileged actions.

Entries are added inside the caller's transaction so the audited change and
its audit row commit (or roll back) together. Nothing in the application
updates or deletes an entry.
"""
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from models import AuditLog


def record(
    db: Session,
    admin_id: Optional[int],
    action: str,
    entity: Optional[str] = None,
    entity_id: Any = None,
    meta: Optional[dict] = None,
) -> AuditLog:
    row = AuditLog(
        admin_id=admin_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=meta or None,
    )
    db.add(row)
    return row


def list_entries(db: Session, limit: int = 100, offset: int = 0) -> list[dict]:
    rows = db.execute(
        select(AuditLog)
        .options(joinedload(AuditLog.admin))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return [{
        "id": r.id,
        "adminId": r.admin_id,
        "adminEmail": r.admin.email if r.admin else None,
        "action": r.action,
        "entity": r.entity,
        "entityId": r.entity_id,
        "meta": r.meta,
        "createdAt": r.created_at,
    } for r in rows]
