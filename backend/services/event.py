import logging
from typing import Optional, Any

from sqlalchemy.ext.asyncio import AsyncSession

from models.event import AuditEvent

logger = logging.getLogger("audit")


async def log_event(
    session: AsyncSession,
    action: str,
    message: str,
    level: str = "info",
    entity_type: str = "user",
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None
) -> AuditEvent:
    """Append an audit event."""
    event = AuditEvent(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        level=level,
        message=message,
        details=details,
    )
    session.add(event)
    await session.commit()
    await session.refresh(event)
    return event


async def record_audit_event(
    session: AsyncSession,
    action: str,
    message: str,
    **kwargs,
) -> Optional[AuditEvent]:
    """Fire-and-forget variant of log_event: failures are logged and dropped."""
    try:
        return await log_event(session, action, message, **kwargs)
    except Exception as e:
        logger.warning(f"[audit] Failed to record {action}: {e}")
        try:
            await session.rollback()
        except Exception as rollback_error:
            logger.debug(f"[audit] Rollback after failed event also failed: {rollback_error}")
        return None
