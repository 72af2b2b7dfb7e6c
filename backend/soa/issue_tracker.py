"""
SOA Issue Tracker

Records and resolves discrepancies against statement lines. Creating or
resolving an issue re-derives the line status in the same transaction.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from soa.audit import SOAAuditEvent, log_soa_event
from soa.context import SOAContext
from soa.errors import NotFoundError, StateError, ValidationError
from soa.models import (
    SOAIssueDB, SOALineDB, SOAStatementDB,
    IssueType, IssueSeverity, IssueStatus, DetectedBy, ResolutionAction,
    utc_now,
)
from soa.statements import (
    get_statement, get_line, locked_statement, refresh_line_status, parse_amount, parse_enum,
)

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def stage_issue(
    db: AsyncSession,
    ctx: SOAContext,
    statement: SOAStatementDB,
    line: SOALineDB,
    issue_type: IssueType,
    description: str,
    severity: IssueSeverity = IssueSeverity.MEDIUM,
    detected_by: DetectedBy = DetectedBy.SYSTEM,
    amount_delta: Optional[Decimal] = None,
    expected_value: Any = None,
    actual_value: Any = None,
    match_id: Optional[str] = None,
    invoice_id: Optional[str] = None
) -> SOAIssueDB:
    """
    Add an open issue to the session.

    The caller holds the statement lock and refreshes the line status.
    """
    issue = SOAIssueDB(
        statement_id=statement.id,
        vendor_id=ctx.vendor_id,
        soa_line_id=line.id,
        match_id=match_id,
        invoice_id=invoice_id,
        issue_type=issue_type.value,
        severity=severity.value,
        description=description,
        amount_delta=amount_delta,
        expected_value=_as_text(expected_value),
        actual_value=_as_text(actual_value),
        detected_by=detected_by.value,
        status=IssueStatus.OPEN.value,
        detected_at=utc_now(),
    )
    db.add(issue)
    return issue


class IssueTracker:
    """Create, resolve and list statement issues."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_issue(self, ctx: SOAContext, issue_id: str) -> SOAIssueDB:
        result = await self.db.execute(
            select(SOAIssueDB).where(
                SOAIssueDB.id == issue_id,
                SOAIssueDB.vendor_id == ctx.vendor_id
            )
        )
        issue = result.scalar_one_or_none()
        if not issue:
            raise NotFoundError(f"Issue {issue_id} not found", {"issue_id": issue_id})
        return issue

    async def get_issue(self, ctx: SOAContext, issue_id: str) -> SOAIssueDB:
        issue = await self._get_issue(ctx, issue_id)
        # Company scope is enforced through the owning statement
        await get_statement(self.db, ctx, issue.statement_id)
        return issue

    async def create_issue(self, ctx: SOAContext, statement_id: str, data: Dict[str, Any]) -> SOAIssueDB:
        """
        Open a new issue against a line of the statement.

        Accepts soa_line_id (or soa_item_id), issue_type, severity,
        description, amount_delta, detected_by, expected_value, actual_value.
        """
        line_id = data.get("soa_line_id") or data.get("soa_item_id")
        if not line_id:
            raise ValidationError("soa_line_id is required", {"statement_id": statement_id})

        issue_type = parse_enum(IssueType, data.get("issue_type"), "issue_type")
        severity = parse_enum(IssueSeverity, data.get("severity") or IssueSeverity.MEDIUM.value, "severity")
        detected_by = parse_enum(DetectedBy, data.get("detected_by") or DetectedBy.MANUAL.value, "detected_by")

        description = (data.get("description") or "").strip()
        if not description:
            raise ValidationError("description is required", {"statement_id": statement_id})

        amount_delta = data.get("amount_delta")
        if amount_delta is not None:
            amount_delta = parse_amount(amount_delta, "amount_delta")

        async with locked_statement(self.db, ctx, statement_id) as statement:
            line = await get_line(self.db, ctx, line_id, statement_id=statement.id)
            if not line:
                raise ValidationError(
                    f"Line {line_id} does not belong to statement {statement_id}",
                    {"statement_id": statement_id, "line_id": line_id}
                )

            issue = stage_issue(
                self.db, ctx, statement, line,
                issue_type=issue_type,
                description=description,
                severity=severity,
                detected_by=detected_by,
                amount_delta=amount_delta,
                expected_value=data.get("expected_value"),
                actual_value=data.get("actual_value"),
                match_id=data.get("match_id"),
                invoice_id=data.get("invoice_id"),
            )
            await self.db.flush()
            await refresh_line_status(self.db, line)

            log_soa_event(
                self.db, ctx, SOAAuditEvent.ISSUE_CREATED, statement.id,
                {"issue_type": issue.issue_type, "line_id": line.id, "severity": issue.severity},
                entity_type="issue", entity_id=issue.id
            )

        logger.info(f"Opened {issue.issue_type} issue {issue.id} on line {line_id}")
        return issue

    async def resolve_issue(
        self,
        ctx: SOAContext,
        issue_id: str,
        action: str,
        notes: str
    ) -> SOAIssueDB:
        """
        Resolve an open issue with a resolution note.

        When it was the line's last open issue the line moves to resolved,
        or back to matched if a confirmed match remains.
        """
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required", {"issue_id": issue_id})
        resolution = parse_enum(ResolutionAction, action, "action")

        issue = await self._get_issue(ctx, issue_id)

        async with locked_statement(self.db, ctx, issue.statement_id) as statement:
            await self.db.refresh(issue)
            if issue.status == IssueStatus.RESOLVED.value:
                raise StateError(
                    f"Issue {issue_id} is already resolved",
                    {"statement_id": statement.id, "issue_id": issue_id, "line_id": issue.soa_line_id}
                )

            issue.status = IssueStatus.RESOLVED.value
            issue.resolution_action = resolution.value
            issue.resolution_notes = notes.strip()
            issue.resolved_by = ctx.actor_id
            issue.resolved_at = utc_now()

            line_status = None
            if issue.soa_line_id:
                line = await get_line(self.db, ctx, issue.soa_line_id, statement_id=statement.id)
                if line:
                    line_status = await refresh_line_status(self.db, line)

            log_soa_event(
                self.db, ctx, SOAAuditEvent.ISSUE_RESOLVED, statement.id,
                {"action": resolution.value, "line_id": issue.soa_line_id, "line_status": line_status},
                entity_type="issue", entity_id=issue.id
            )

        logger.info(f"Resolved issue {issue_id} ({resolution.value})")
        return issue

    async def list_issues(
        self,
        ctx: SOAContext,
        statement_id: str,
        status: Optional[str] = None
    ) -> List[SOAIssueDB]:
        """All issues for the statement, oldest first."""
        await get_statement(self.db, ctx, statement_id)

        query = select(SOAIssueDB).where(
            SOAIssueDB.statement_id == statement_id,
            SOAIssueDB.vendor_id == ctx.vendor_id
        )
        if status:
            query = query.where(SOAIssueDB.status == parse_enum(IssueStatus, status, "status").value)
        query = query.order_by(SOAIssueDB.detected_at, SOAIssueDB.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())
