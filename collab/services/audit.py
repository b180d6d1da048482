"""Audit trail for captures, releases, refunds and withdrawals."""

import json
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collab.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def log_audit(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: int | None = None,
    user_id: int | None = None,
    details: dict | None = None,
) -> None:
    """Add an audit entry to the caller's unit of work.

    A failure to write the entry is logged and does not abort the
    operation being audited.
    """
    conversation_id = (details or {}).get("conversation_id")
    try:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            conversation_id=conversation_id,
            details=json.dumps(details, default=str) if details else None,
        )
        db.add(entry)
        await db.flush()
    except Exception:
        logger.exception("Failed to write audit log: %s %s/%s", action, entity_type, entity_id)


async def list_for_conversation(db: AsyncSession, conversation_id: int) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.conversation_id == conversation_id)
        .order_by(AuditLog.id)
    )
    return list(result.scalars().all())
