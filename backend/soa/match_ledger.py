"""
SOA Match Ledger

Persists matches between statement lines and ledger invoices and drives
their lifecycle:

    proposed -> confirmed
    proposed -> rejected
    confirmed -> rejected

Invariants checked against persisted state under the statement lock:
- at most one confirmed match per line
- at most one confirmed match per invoice within a statement

Confirming a match rejects the line's other proposals as superseded.

Whether a system-created exact match is confirmed immediately is an
explicit policy flag (auto_confirm_exact), not a side effect of match_type.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from soa.audit import SOAAuditEvent, log_soa_event
from soa.context import SOAContext, SYSTEM_ACTOR
from soa.errors import NotFoundError, StateError, ValidationError
from soa.issue_tracker import stage_issue
from soa.models import (
    SOAMatchDB, SOAIssueDB, LedgerInvoiceDB, SOALineDB,
    MatchStatus, MatchType, MatchedBy, IssueType, IssueSeverity, DetectedBy,
    utc_now,
)
from soa.statements import (
    get_statement, get_line, locked_statement, refresh_line_status, parse_enum,
)

logger = logging.getLogger(__name__)


def infer_issue_type(reason: str) -> IssueType:
    """Issue type implied by a rejection reason."""
    text = (reason or "").lower()
    if "currency" in text:
        return IssueType.CURRENCY_MISMATCH
    if "date" in text:
        return IssueType.DATE_MISMATCH
    return IssueType.AMOUNT_MISMATCH


class MatchLedger:
    """Create, confirm and reject statement matches."""

    def __init__(self, db: AsyncSession, auto_confirm_exact: bool = True):
        self.db = db
        self.auto_confirm_exact = auto_confirm_exact

    # ==================== READS ====================

    async def _get_match(self, ctx: SOAContext, match_id: str) -> SOAMatchDB:
        result = await self.db.execute(
            select(SOAMatchDB).where(
                SOAMatchDB.id == match_id,
                SOAMatchDB.vendor_id == ctx.vendor_id
            )
        )
        match = result.scalar_one_or_none()
        if not match:
            raise NotFoundError(f"Match {match_id} not found", {"match_id": match_id})
        return match

    async def get_match(self, ctx: SOAContext, match_id: str) -> SOAMatchDB:
        match = await self._get_match(ctx, match_id)
        await get_statement(self.db, ctx, match.statement_id)
        return match

    async def list_matches(
        self,
        ctx: SOAContext,
        statement_id: str,
        status: Optional[str] = None
    ) -> List[SOAMatchDB]:
        await get_statement(self.db, ctx, statement_id)

        query = select(SOAMatchDB).where(
            SOAMatchDB.statement_id == statement_id,
            SOAMatchDB.vendor_id == ctx.vendor_id
        )
        if status:
            query = query.where(SOAMatchDB.status == parse_enum(MatchStatus, status, "status").value)
        query = query.order_by(SOAMatchDB.created_at, SOAMatchDB.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _confirmed_for_invoice(
        self,
        statement_id: str,
        invoice_id: str,
        exclude_match_id: Optional[str] = None
    ) -> Optional[SOAMatchDB]:
        query = select(SOAMatchDB).where(
            SOAMatchDB.statement_id == statement_id,
            SOAMatchDB.invoice_id == invoice_id,
            SOAMatchDB.status == MatchStatus.CONFIRMED.value
        )
        if exclude_match_id:
            query = query.where(SOAMatchDB.id != exclude_match_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def _live_matches_for_line(self, line_id: str) -> List[SOAMatchDB]:
        result = await self.db.execute(
            select(SOAMatchDB).where(
                SOAMatchDB.soa_line_id == line_id,
                SOAMatchDB.status != MatchStatus.REJECTED.value
            ).order_by(SOAMatchDB.created_at, SOAMatchDB.id)
        )
        return list(result.scalars().all())

    async def _supersede_siblings(self, ctx: SOAContext, statement_id: str, confirmed: SOAMatchDB) -> List[str]:
        """
        Retire the line's other proposals once one of its matches is
        confirmed. They are rejected without opening an issue.
        """
        superseded = []
        for other in await self._live_matches_for_line(confirmed.soa_line_id):
            if other.id == confirmed.id or other.status != MatchStatus.PROPOSED.value:
                continue
            other.status = MatchStatus.REJECTED.value
            other.rejected_by = ctx.actor_id
            other.rejected_at = utc_now()
            other.rejection_reason = f"Superseded by confirmed match {confirmed.id}"
            other.match_metadata = {**(other.match_metadata or {}), "superseded_by": confirmed.id}
            superseded.append(other.id)

            log_soa_event(
                self.db, ctx, SOAAuditEvent.MATCH_SUPERSEDED, statement_id,
                {"line_id": other.soa_line_id, "invoice_id": other.invoice_id, "superseded_by": confirmed.id},
                entity_type="match", entity_id=other.id
            )

        if superseded:
            logger.info(f"Match {confirmed.id} superseded {len(superseded)} proposal(s) on line {confirmed.soa_line_id}")
        return superseded

    # ==================== CREATE ====================

    async def create_match(
        self,
        ctx: SOAContext,
        line_id: str,
        invoice_id: str,
        match_data: Optional[Dict[str, Any]] = None,
        statement_id: Optional[str] = None
    ) -> SOAMatchDB:
        """
        Persist a match for a line.

        Idempotent: a live (proposed or confirmed) match between the same
        line and invoice is returned unchanged.
        """
        match_data = match_data or {}

        line = await get_line(self.db, ctx, line_id, statement_id=statement_id)
        if not line:
            raise ValidationError(
                f"Line {line_id} is not in the caller's scope",
                {"statement_id": statement_id, "line_id": line_id}
            )

        async with locked_statement(self.db, ctx, line.statement_id) as statement:
            await self.db.refresh(line)

            invoice = await self._get_scoped_invoice(ctx, invoice_id)
            if not invoice:
                raise ValidationError(
                    f"Invoice {invoice_id} is not in the caller's scope",
                    {"statement_id": statement.id, "line_id": line_id, "invoice_id": invoice_id}
                )

            for existing in await self._live_matches_for_line(line.id):
                if existing.invoice_id == invoice.id:
                    logger.info(f"Match for line {line.id} and invoice {invoice.id} already exists ({existing.status})")
                    return existing
                if existing.status == MatchStatus.CONFIRMED.value:
                    raise StateError(
                        f"Line {line.id} is already confirmed against invoice {existing.invoice_id}",
                        {"statement_id": statement.id, "line_id": line.id, "invoice_id": existing.invoice_id}
                    )

            match = self._build_match(ctx, statement.id, line, invoice, match_data)

            if self._should_auto_confirm(match):
                clash = await self._confirmed_for_invoice(statement.id, invoice.id)
                if clash:
                    logger.warning(
                        f"Auto-confirm downgraded to proposed: invoice {invoice.id} already confirmed "
                        f"by match {clash.id} in statement {statement.id}"
                    )
                    match.match_metadata = {**(match.match_metadata or {}), "auto_confirm_blocked_by": clash.id}
                else:
                    match.status = MatchStatus.CONFIRMED.value
                    match.confirmed_by = ctx.actor_id
                    match.confirmed_at = utc_now()

            self.db.add(match)
            await self.db.flush()
            if match.status == MatchStatus.CONFIRMED.value:
                await self._supersede_siblings(ctx, statement.id, match)
            await refresh_line_status(self.db, line)

            log_soa_event(
                self.db, ctx, SOAAuditEvent.MATCH_CREATED, statement.id,
                {
                    "line_id": line.id,
                    "invoice_id": invoice.id,
                    "match_type": match.match_type,
                    "confidence": float(match.confidence),
                    "status": match.status,
                },
                entity_type="match", entity_id=match.id
            )

        logger.info(f"Created {match.status} {match.match_type} match {match.id} for line {line_id}")
        return match

    async def _get_scoped_invoice(self, ctx: SOAContext, invoice_id: str) -> Optional[LedgerInvoiceDB]:
        query = select(LedgerInvoiceDB).where(
            LedgerInvoiceDB.id == invoice_id,
            LedgerInvoiceDB.vendor_id == ctx.vendor_id
        )
        if ctx.company_id:
            query = query.where(LedgerInvoiceDB.company_id == ctx.company_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    def _should_auto_confirm(self, match: SOAMatchDB) -> bool:
        return (
            self.auto_confirm_exact
            and match.matched_by == MatchedBy.SYSTEM.value
            and bool(match.is_exact_match)
        )

    def _build_match(
        self,
        ctx: SOAContext,
        statement_id: str,
        line: SOALineDB,
        invoice: LedgerInvoiceDB,
        data: Dict[str, Any]
    ) -> SOAMatchDB:
        is_exact = bool(data.get("is_exact_match", False))
        default_type = MatchType.DETERMINISTIC if is_exact else MatchType.PROBABILISTIC
        match_type = parse_enum(MatchType, data.get("match_type") or default_type.value, "match_type")
        matched_by = parse_enum(MatchedBy, data.get("matched_by") or MatchedBy.MANUAL.value, "matched_by")

        try:
            confidence = float(data.get("confidence", 1.0 if is_exact else 0.0))
        except (TypeError, ValueError):
            raise ValidationError("confidence must be a number", {"line_id": line.id})
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("confidence must be between 0 and 1", {"line_id": line.id, "confidence": confidence})

        match_score = data.get("match_score")
        if match_score is None:
            match_score = int(round(confidence * 100))

        soa_amount = Decimal(line.amount)
        invoice_amount = Decimal(invoice.total_amount)
        date_difference = None
        if line.document_date and invoice.invoice_date:
            date_difference = abs((line.document_date - invoice.invoice_date).days)

        return SOAMatchDB(
            statement_id=statement_id,
            vendor_id=ctx.vendor_id,
            soa_line_id=line.id,
            invoice_id=invoice.id,
            match_type=match_type.value,
            is_exact_match=is_exact,
            confidence=Decimal(str(round(confidence, 4))),
            match_score=int(match_score),
            match_criteria=data.get("match_criteria") or {},
            soa_amount=soa_amount,
            invoice_amount=invoice_amount,
            amount_difference=abs(soa_amount) - abs(invoice_amount),
            soa_date=line.document_date,
            invoice_date=invoice.invoice_date,
            date_difference_days=date_difference,
            matched_by=matched_by.value,
            match_metadata=data.get("metadata") or {},
            status=MatchStatus.PROPOSED.value,
        )

    # ==================== LIFECYCLE ====================

    async def confirm_match(self, ctx: SOAContext, match_id: str) -> SOAMatchDB:
        """
        proposed -> confirmed. Already confirmed is a no-op; rejected is a
        StateError.
        """
        match = await self._get_match(ctx, match_id)

        async with locked_statement(self.db, ctx, match.statement_id) as statement:
            await self.db.refresh(match)
            error_context = {
                "statement_id": statement.id,
                "match_id": match.id,
                "line_id": match.soa_line_id,
                "invoice_id": match.invoice_id,
            }

            if match.status == MatchStatus.CONFIRMED.value:
                return match
            if match.status == MatchStatus.REJECTED.value:
                raise StateError(f"Match {match_id} was rejected and cannot be confirmed", error_context)

            clash = await self._confirmed_for_invoice(statement.id, match.invoice_id, exclude_match_id=match.id)
            if clash:
                raise StateError(
                    f"Invoice {match.invoice_id} is already confirmed against line {clash.soa_line_id}",
                    {**error_context, "conflicting_match_id": clash.id}
                )

            for other in await self._live_matches_for_line(match.soa_line_id):
                if other.id != match.id and other.status == MatchStatus.CONFIRMED.value:
                    raise StateError(
                        f"Line {match.soa_line_id} already has confirmed match {other.id}",
                        {**error_context, "conflicting_match_id": other.id}
                    )

            match.status = MatchStatus.CONFIRMED.value
            match.confirmed_by = ctx.actor_id
            match.confirmed_at = utc_now()
            superseded = await self._supersede_siblings(ctx, statement.id, match)

            line = await get_line(self.db, ctx, match.soa_line_id, statement_id=statement.id)
            if line:
                await refresh_line_status(self.db, line)

            log_soa_event(
                self.db, ctx, SOAAuditEvent.MATCH_CONFIRMED, statement.id,
                {"line_id": match.soa_line_id, "invoice_id": match.invoice_id, "superseded_match_ids": superseded},
                entity_type="match", entity_id=match.id
            )

        logger.info(f"Confirmed match {match_id}")
        return match

    async def reject_match(
        self,
        ctx: SOAContext,
        match_id: str,
        reason: str,
        issue_type: Optional[str] = None
    ) -> Tuple[SOAMatchDB, SOAIssueDB]:
        """
        proposed/confirmed -> rejected.

        Opens exactly one issue against the match's line in the same
        transaction. The issue type is the explicit one if given, otherwise
        inferred from the reason.
        """
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required", {"match_id": match_id})
        resolved_type = (
            parse_enum(IssueType, issue_type, "issue_type") if issue_type else infer_issue_type(reason)
        )

        match = await self._get_match(ctx, match_id)

        async with locked_statement(self.db, ctx, match.statement_id) as statement:
            await self.db.refresh(match)
            if match.status == MatchStatus.REJECTED.value:
                raise StateError(
                    f"Match {match_id} is already rejected",
                    {"statement_id": statement.id, "match_id": match.id, "line_id": match.soa_line_id}
                )

            previous_status = match.status
            match.status = MatchStatus.REJECTED.value
            match.rejected_by = ctx.actor_id
            match.rejected_at = utc_now()
            match.rejection_reason = reason.strip()

            line = await get_line(self.db, ctx, match.soa_line_id, statement_id=statement.id)
            if not line:
                raise NotFoundError(
                    f"Line {match.soa_line_id} not found",
                    {"statement_id": statement.id, "line_id": match.soa_line_id}
                )

            issue = stage_issue(
                self.db, ctx, statement, line,
                issue_type=resolved_type,
                description=f"Match rejected: {match.rejection_reason}",
                severity=IssueSeverity.MEDIUM,
                detected_by=DetectedBy.MANUAL if ctx.actor_id != SYSTEM_ACTOR else DetectedBy.SYSTEM,
                amount_delta=Decimal(match.soa_amount) - Decimal(match.invoice_amount),
                expected_value=match.invoice_amount,
                actual_value=match.soa_amount,
                match_id=match.id,
                invoice_id=match.invoice_id,
            )
            await self.db.flush()
            await refresh_line_status(self.db, line)

            log_soa_event(
                self.db, ctx, SOAAuditEvent.MATCH_REJECTED, statement.id,
                {
                    "line_id": line.id,
                    "invoice_id": match.invoice_id,
                    "previous_status": previous_status,
                    "reason": match.rejection_reason,
                    "issue_id": issue.id,
                    "issue_type": issue.issue_type,
                },
                entity_type="match", entity_id=match.id
            )

        logger.info(f"Rejected match {match_id}; opened {issue.issue_type} issue {issue.id}")
        return match, issue
