"""
SOA Debit Note Workflow

State machine:

    draft -> approved -> posted

No skipped states and no reverse transitions. Approval and posting need
the internal finance capability. Posting returns the recomputed statement
summary, since a posted debit note is how a variance gets corrected
without re-matching.
"""

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from soa.audit import SOAAuditEvent, log_soa_event
from soa.context import SOAContext
from soa.errors import NotFoundError, StateError, ValidationError
from soa.models import (
    DebitNoteDB, SOAIssueDB, DebitNoteStatus, DebitNoteReason, utc_now,
)
from soa.statements import get_statement, locked_statement, parse_amount, parse_currency, parse_enum
from soa.variance import StatementSummary, VarianceAggregator

logger = logging.getLogger(__name__)

DN_NUMBER_PATTERN = re.compile(r"^DN-(\d{4})-(\d+)$")


class DebitNoteWorkflow:
    """Propose, approve and post debit notes against a statement."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _next_dn_no(self, year: int) -> str:
        """DN-<year>-<seq>, continuing from the highest number issued that year."""
        result = await self.db.execute(
            select(DebitNoteDB.dn_no).where(DebitNoteDB.dn_no.like(f"DN-{year}-%"))
        )
        highest = 0
        for (dn_no,) in result.all():
            parsed = DN_NUMBER_PATTERN.match(dn_no or "")
            if parsed:
                highest = max(highest, int(parsed.group(2)))
        return f"DN-{year}-{highest + 1:03d}"

    async def _get_debit_note(self, ctx: SOAContext, dn_id: str) -> DebitNoteDB:
        query = select(DebitNoteDB).where(
            DebitNoteDB.id == dn_id,
            DebitNoteDB.vendor_id == ctx.vendor_id
        )
        if ctx.company_id:
            query = query.where(DebitNoteDB.company_id == ctx.company_id)
        result = await self.db.execute(query)
        debit_note = result.scalar_one_or_none()
        if not debit_note:
            raise NotFoundError(f"Debit note {dn_id} not found", {"debit_note_id": dn_id})
        return debit_note

    async def get_debit_note(self, ctx: SOAContext, dn_id: str) -> DebitNoteDB:
        return await self._get_debit_note(ctx, dn_id)

    async def list_debit_notes(self, ctx: SOAContext, statement_id: str) -> List[DebitNoteDB]:
        await get_statement(self.db, ctx, statement_id)
        result = await self.db.execute(
            select(DebitNoteDB).where(
                DebitNoteDB.statement_id == statement_id,
                DebitNoteDB.vendor_id == ctx.vendor_id
            ).order_by(DebitNoteDB.created_at, DebitNoteDB.dn_no)
        )
        return list(result.scalars().all())

    async def propose(
        self,
        ctx: SOAContext,
        statement_id: str,
        amount: Any,
        reason_code: Optional[str],
        issue_id: Optional[str] = None,
        notes: Optional[str] = None,
        currency: Optional[str] = None
    ) -> DebitNoteDB:
        """Create a draft debit note. amount must be positive and reason_code known."""
        parsed_amount = parse_amount(amount)
        if parsed_amount <= Decimal("0"):
            raise ValidationError(
                "amount must be greater than zero",
                {"statement_id": statement_id, "amount": str(parsed_amount)}
            )
        if not reason_code:
            raise ValidationError("reason_code is required", {"statement_id": statement_id})
        reason = parse_enum(DebitNoteReason, str(reason_code).upper(), "reason_code")

        async with locked_statement(self.db, ctx, statement_id) as statement:
            if issue_id:
                issue_result = await self.db.execute(
                    select(SOAIssueDB.id).where(
                        SOAIssueDB.id == issue_id,
                        SOAIssueDB.statement_id == statement.id,
                        SOAIssueDB.vendor_id == ctx.vendor_id
                    )
                )
                if issue_result.scalar_one_or_none() is None:
                    raise ValidationError(
                        f"Issue {issue_id} does not belong to statement {statement.id}",
                        {"statement_id": statement.id, "issue_id": issue_id}
                    )

            debit_note = DebitNoteDB(
                dn_no=await self._next_dn_no(datetime.now(timezone.utc).year),
                statement_id=statement.id,
                soa_issue_id=issue_id,
                vendor_id=ctx.vendor_id,
                company_id=statement.company_id,
                amount=parsed_amount,
                currency=parse_currency(currency) if currency else statement.currency,
                reason_code=reason.value,
                notes=notes,
                status=DebitNoteStatus.DRAFT.value,
                created_by=ctx.actor_id,
            )
            self.db.add(debit_note)
            await self.db.flush()

            log_soa_event(
                self.db, ctx, SOAAuditEvent.DEBIT_NOTE_PROPOSED, statement.id,
                {"dn_no": debit_note.dn_no, "amount": str(parsed_amount), "reason_code": reason.value},
                entity_type="debit_note", entity_id=debit_note.id
            )

        logger.info(f"Proposed debit note {debit_note.dn_no} for statement {statement_id}")
        return debit_note

    def _ensure_status(self, debit_note: DebitNoteDB, expected: DebitNoteStatus, action: str) -> None:
        if debit_note.status != expected.value:
            raise StateError(
                f"Cannot {action} debit note {debit_note.dn_no} in status {debit_note.status}",
                {
                    "statement_id": debit_note.statement_id,
                    "debit_note_id": debit_note.id,
                    "status": debit_note.status,
                    "required_status": expected.value,
                }
            )

    async def approve(self, ctx: SOAContext, dn_id: str) -> DebitNoteDB:
        """draft -> approved. Internal finance actors only."""
        ctx.require_internal("Debit note approval")
        debit_note = await self._get_debit_note(ctx, dn_id)

        async with locked_statement(self.db, ctx, debit_note.statement_id) as statement:
            await self.db.refresh(debit_note)
            self._ensure_status(debit_note, DebitNoteStatus.DRAFT, "approve")

            debit_note.status = DebitNoteStatus.APPROVED.value
            debit_note.approved_by = ctx.actor_id
            debit_note.approved_at = utc_now()

            log_soa_event(
                self.db, ctx, SOAAuditEvent.DEBIT_NOTE_APPROVED, statement.id,
                {"dn_no": debit_note.dn_no},
                entity_type="debit_note", entity_id=debit_note.id
            )

        logger.info(f"Approved debit note {debit_note.dn_no}")
        return debit_note

    async def post(
        self,
        ctx: SOAContext,
        dn_id: str,
        ledger_entry_id: Optional[str] = None
    ) -> Tuple[DebitNoteDB, StatementSummary]:
        """approved -> posted, then recompute the statement summary."""
        ctx.require_internal("Debit note posting")
        debit_note = await self._get_debit_note(ctx, dn_id)

        async with locked_statement(self.db, ctx, debit_note.statement_id) as statement:
            await self.db.refresh(debit_note)
            self._ensure_status(debit_note, DebitNoteStatus.APPROVED, "post")

            debit_note.status = DebitNoteStatus.POSTED.value
            debit_note.posted_by = ctx.actor_id
            debit_note.posted_at = utc_now()
            debit_note.ledger_entry_id = ledger_entry_id

            log_soa_event(
                self.db, ctx, SOAAuditEvent.DEBIT_NOTE_POSTED, statement.id,
                {"dn_no": debit_note.dn_no, "amount": str(debit_note.amount), "ledger_entry_id": ledger_entry_id},
                entity_type="debit_note", entity_id=debit_note.id
            )

        summary = await VarianceAggregator(self.db).get_summary(ctx, debit_note.statement_id)
        logger.info(
            f"Posted debit note {debit_note.dn_no}; statement {debit_note.statement_id} "
            f"net_variance now {summary.net_variance}"
        )
        return debit_note, summary
