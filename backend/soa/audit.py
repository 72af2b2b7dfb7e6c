"""
SOA Reconciliation - Audit Trail

Every mutating reconciliation operation emits a structured log event and
adds a row to soa_audit_log in the caller's session, so the audit row
commits or rolls back together with the change it describes.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from soa.context import SOAContext
from soa.models import SOAAuditLogDB

logger = logging.getLogger(__name__)


class SOAAuditEvent:
    """Audit event types for SOA reconciliation operations."""
    STATEMENT_CREATED = "soa.statement_created"
    LINES_ADDED = "soa.lines_added"
    LINE_RETIRED = "soa.line_retired"
    RUN_COMPLETED = "soa.run_completed"
    MATCH_CREATED = "soa.match_created"
    MATCH_CONFIRMED = "soa.match_confirmed"
    MATCH_REJECTED = "soa.match_rejected"
    MATCH_SUPERSEDED = "soa.match_superseded"
    ISSUE_CREATED = "soa.issue_created"
    ISSUE_RESOLVED = "soa.issue_resolved"
    DEBIT_NOTE_PROPOSED = "soa.debit_note_proposed"
    DEBIT_NOTE_APPROVED = "soa.debit_note_approved"
    DEBIT_NOTE_POSTED = "soa.debit_note_posted"
    STATEMENT_SIGNED_OFF = "soa.statement_signed_off"


def log_soa_event(
    db: AsyncSession,
    ctx: SOAContext,
    event_type: str,
    statement_id: Optional[str],
    details: Dict[str, Any],
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None
) -> SOAAuditLogDB:
    """Log a reconciliation event and stage its audit row."""
    log_entry = {
        "event": event_type,
        "vendor_id": ctx.vendor_id,
        "statement_id": statement_id,
        "entity_id": entity_id,
        "details": details,
        "actor": ctx.actor_id,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"SOA event: {event_type}", extra=log_entry)

    entry = SOAAuditLogDB(
        statement_id=statement_id,
        vendor_id=ctx.vendor_id,
        action=event_type,
        actor=ctx.actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    db.add(entry)
    return entry
