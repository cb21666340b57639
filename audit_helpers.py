"""
Audit Trail Helper Functions
Append-only record of every mutating library action
"""

from sqlalchemy.orm import Session
import logging

from db_single import get_config
from library_models import AuditEntry, AuditActionEnum
from library_access import require_admin
from library_errors import library_action

logger = logging.getLogger(__name__)

ENTITY_BOOK = "Book"
ENTITY_LOAN = "Loan"
ENTITY_USER = "User"


def record_audit(session: Session, acting_user_id: int, action: AuditActionEnum,
                 entity_type: str, details: str, entity_id: int = None) -> AuditEntry:
    """Append an audit entry to the current transaction"""
    entry = AuditEntry(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        acting_user_id=acting_user_id,
        details=details,
    )
    session.add(entry)
    logger.debug(f"Audit: {action.value} {entity_type}#{entity_id} by user {acting_user_id}")
    return entry


@library_action
def list_audit_entries(session: Session, caller, entity_type: str = None, limit: int = None):
    """Newest audit entries first, optionally for one entity type (admin only)"""
    require_admin(caller)
    max_limit = get_config().MAX_PAGE_SIZE
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = max_limit
    limit = min(max(limit, 1), max_limit)

    query = session.query(AuditEntry)
    if entity_type:
        query = query.filter(AuditEntry.entity_type == entity_type)
    return query.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc()).limit(limit).all()
