"""
SOA Variance Aggregator

Derives the statement summary from the current line, match, issue and
debit note tables on every call. Nothing here is cached or persisted.

Amounts are taken as magnitudes and signed by document type (INV +1,
CN/DN -1):
- a line with a confirmed match contributes signed(|soa| - |invoice|),
  even when an issue is open against it
- an unconfirmed line with an open issue contributes nothing; its gap is
  explained
- any other line contributes signed(|soa|)
A line with an open issue is counted as a discrepancy either way.
Posted debit notes for the statement are then subtracted.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from soa.context import SOAContext
from soa.models import (
    SOALineDB, SOAMatchDB, SOAIssueDB, DebitNoteDB,
    DocumentType, LineStatus, MatchStatus, IssueStatus, DebitNoteStatus,
)
from soa.statements import MONEY, get_statement

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def document_sign(document_type: str) -> int:
    """INV counts for the vendor, CN and DN against."""
    return 1 if document_type == DocumentType.INVOICE.value else -1


def _money(value) -> Decimal:
    return Decimal(value if value is not None else 0).quantize(MONEY)


@dataclass
class StatementSummary:
    """Derived, never persisted."""
    statement_id: str
    vendor_id: str
    total_lines: int = 0
    total_amount: Decimal = ZERO
    matched_lines: int = 0
    matched_amount: Decimal = ZERO
    unmatched_lines: int = 0
    unmatched_amount: Decimal = ZERO
    discrepancy_lines: int = 0
    discrepancy_amount: Decimal = ZERO
    resolved_lines: int = 0
    line_variance: Decimal = ZERO
    debit_note_adjustment: Decimal = ZERO
    net_variance: Decimal = ZERO

    @property
    def is_reconciled(self) -> bool:
        return self.net_variance == ZERO and self.unmatched_lines == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_id": self.statement_id,
            "vendor_id": self.vendor_id,
            "total_lines": self.total_lines,
            "total_amount": str(self.total_amount),
            "matched_lines": self.matched_lines,
            "matched_amount": str(self.matched_amount),
            "unmatched_lines": self.unmatched_lines,
            "unmatched_amount": str(self.unmatched_amount),
            "discrepancy_lines": self.discrepancy_lines,
            "discrepancy_amount": str(self.discrepancy_amount),
            "resolved_lines": self.resolved_lines,
            "line_variance": str(self.line_variance),
            "debit_note_adjustment": str(self.debit_note_adjustment),
            "net_variance": str(self.net_variance),
            "is_reconciled": self.is_reconciled,
        }


class VarianceAggregator:
    """Computes StatementSummary for one statement."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_summary(self, ctx: SOAContext, statement_id: str) -> StatementSummary:
        statement = await get_statement(self.db, ctx, statement_id)

        lines_result = await self.db.execute(
            select(SOALineDB).where(
                SOALineDB.statement_id == statement.id,
                SOALineDB.vendor_id == ctx.vendor_id
            ).order_by(SOALineDB.line_number, SOALineDB.id)
        )
        lines = list(lines_result.scalars().all())

        matches_result = await self.db.execute(
            select(SOAMatchDB.soa_line_id, SOAMatchDB.invoice_amount).where(
                SOAMatchDB.statement_id == statement.id,
                SOAMatchDB.status == MatchStatus.CONFIRMED.value
            )
        )
        confirmed = {line_id: invoice_amount for line_id, invoice_amount in matches_result.all()}

        issues_result = await self.db.execute(
            select(SOAIssueDB.soa_line_id).where(
                SOAIssueDB.statement_id == statement.id,
                SOAIssueDB.status == IssueStatus.OPEN.value
            ).distinct()
        )
        open_issue_lines = {row[0] for row in issues_result.all() if row[0]}

        dn_result = await self.db.execute(
            select(DebitNoteDB.amount).where(
                DebitNoteDB.statement_id == statement.id,
                DebitNoteDB.vendor_id == ctx.vendor_id,
                DebitNoteDB.status == DebitNoteStatus.POSTED.value
            )
        )
        posted_amounts = [amount for (amount,) in dn_result.all()]

        summary = StatementSummary(statement_id=statement.id, vendor_id=ctx.vendor_id)

        for line in lines:
            sign = document_sign(line.document_type)
            soa_abs = abs(_money(line.amount))
            signed_amount = sign * soa_abs

            summary.total_lines += 1
            summary.total_amount += signed_amount

            if line.id in open_issue_lines:
                summary.discrepancy_lines += 1
                summary.discrepancy_amount += signed_amount

            if line.id in confirmed:
                summary.matched_lines += 1
                summary.matched_amount += signed_amount
                summary.line_variance += sign * (soa_abs - abs(_money(confirmed[line.id])))
            elif line.id in open_issue_lines:
                continue
            else:
                summary.line_variance += signed_amount
                if line.status == LineStatus.EXTRACTED.value:
                    summary.unmatched_lines += 1
                    summary.unmatched_amount += signed_amount
                else:
                    summary.resolved_lines += 1

        summary.debit_note_adjustment = sum((_money(a) for a in posted_amounts), ZERO)
        summary.net_variance = (summary.line_variance - summary.debit_note_adjustment).quantize(MONEY)

        logger.debug(
            f"Summary for statement {statement.id}: net_variance={summary.net_variance}, "
            f"unmatched={summary.unmatched_lines}, discrepancy={summary.discrepancy_lines}"
        )
        return summary
