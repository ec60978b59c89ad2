"""Audit log sink."""

import logging
from typing import Any

from sqlmodel import Session, select

from meshenroll.audit.models import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    session: Session,
    actor_id: str | None,
    tenant_id: str | None,
    event: str,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Append an audit record. Caller commits."""
    entry = AuditLog(actor_id=actor_id, tenant_id=tenant_id, event=event, details=details or {})
    session.add(entry)
    logger.info("Audit: %s by %s (tenant=%s)", event, actor_id, tenant_id)
    return entry


def list_audit(
    session: Session,
    tenant_id: str | None = None,
    event: str | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    stmt = select(AuditLog)
    if tenant_id is not None:
        stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    if event is not None:
        stmt = stmt.where(AuditLog.event == event)
    stmt = stmt.order_by(AuditLog.created_at.desc()).limit(limit)  # type: ignore[attr-defined]
    return list(session.exec(stmt).all())
