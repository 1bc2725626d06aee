import logging
import uuid

from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def log_audit(db: Session, actor: str, action: str, entity_type: str, entity_id: str, details: dict | None = None) -> AuditLog:
    """Add an audit row to the caller's transaction.

    Rows flagged ``needs_attention`` are also logged at warning level so
    operators see them without querying the table.
    """
    entry = AuditLog(
        id=str(uuid.uuid4()),
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
        created_at=clock.now(),
    )
    db.add(entry)
    if entry.details.get("needs_attention"):
        logger.warning("audit_needs_attention", extra={"action": action, "entity_type": entity_type, "entity_id": entity_id})
    return entry
