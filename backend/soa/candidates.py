"""
SOA Candidate Store

Read-only access to the vendor's ledger invoices for a reconciliation run.
Lookups are per line and bounded by a timeout; a failed lookup is reported
as None for that line and never aborts the batch.
"""

import asyncio
import logging
from decimal import Decimal, ROUND_CEILING
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Numeric, select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from soa.context import SOAContext
from soa.matching_engine import CandidateInvoice, SOALineInput
from soa.models import (
    LedgerInvoiceDB, SOAMatchDB, MatchStatus, MATCHABLE_INVOICE_STATUSES
)

logger = logging.getLogger(__name__)


def to_candidate(invoice: LedgerInvoiceDB) -> CandidateInvoice:
    return CandidateInvoice(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        total_amount=Decimal(invoice.total_amount),
        currency=invoice.currency,
        document_type=invoice.document_type,
        invoice_date=invoice.invoice_date,
    )


class CandidateStore:
    """
    Finds ledger invoices that could match a statement line.

    Only pending/approved/paid invoices of the caller's vendor (and company,
    when scoped) are offered. Invoices already confirmed against another
    line of the same statement are excluded.
    """

    def __init__(
        self,
        db: AsyncSession,
        amount_tolerance_pct: Decimal = Decimal("0.01"),
        amount_epsilon: Decimal = Decimal("0.005"),
        amount_tolerance_abs: Decimal = Decimal("0.00"),
        limit: int = 200,
        timeout_seconds: float = 5.0
    ):
        self.db = db
        self.amount_tolerance_pct = Decimal(str(amount_tolerance_pct))
        self.amount_epsilon = Decimal(str(amount_epsilon))
        self.amount_tolerance_abs = Decimal(str(amount_tolerance_abs))
        self.limit = limit
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, db: AsyncSession, settings) -> "CandidateStore":
        return cls(
            db,
            amount_tolerance_pct=Decimal(str(settings.SOA_AMOUNT_TOLERANCE_PCT)),
            amount_epsilon=Decimal(str(settings.SOA_AMOUNT_EPSILON)),
            amount_tolerance_abs=Decimal(str(settings.SOA_AMOUNT_TOLERANCE_ABS)),
            limit=settings.SOA_CANDIDATE_LIMIT,
            timeout_seconds=settings.SOA_LOOKUP_TIMEOUT_SECONDS,
        )

    def amount_window(self, magnitude: Decimal, allow_partial: bool = False) -> Tuple[Decimal, Optional[Decimal]]:
        """
        Bounds on invoice magnitude for a line of the given magnitude.

        The engine scales its relative tolerance by the larger of the two
        amounts, so an invoice may sit up to magnitude * pct / (1 - pct)
        above the line. The window covers that and leaves the final call to
        the engine. With allow_partial there is no upper bound.
        """
        pct = self.amount_tolerance_pct
        relative = magnitude * pct / (1 - pct) if pct < 1 else magnitude
        allowance = max(relative, self.amount_tolerance_abs, self.amount_epsilon).quantize(
            Decimal("0.01"), rounding=ROUND_CEILING
        )
        upper = None if allow_partial else magnitude + allowance
        return magnitude - allowance, upper

    async def find_for_line(
        self,
        ctx: SOAContext,
        statement_id: str,
        line: SOALineInput,
        allow_partial: bool = False
    ) -> List[CandidateInvoice]:
        """Candidates whose amount magnitude falls inside the line's window."""
        magnitude = abs(Decimal(line.amount))
        lower, upper = self.amount_window(magnitude, allow_partial)
        invoice_magnitude = func.abs(LedgerInvoiceDB.total_amount, type_=Numeric(15, 2))

        already_confirmed = select(SOAMatchDB.invoice_id).where(
            and_(
                SOAMatchDB.statement_id == statement_id,
                SOAMatchDB.status == MatchStatus.CONFIRMED.value
            )
        )

        query = select(LedgerInvoiceDB).where(
            LedgerInvoiceDB.vendor_id == ctx.vendor_id,
            LedgerInvoiceDB.status.in_(MATCHABLE_INVOICE_STATUSES),
            func.upper(LedgerInvoiceDB.currency) == (line.currency or "").upper(),
            LedgerInvoiceDB.document_type == line.document_type,
            invoice_magnitude >= lower,
            LedgerInvoiceDB.id.not_in(already_confirmed),
        )
        if upper is not None:
            query = query.where(invoice_magnitude <= upper)
        if ctx.company_id:
            query = query.where(LedgerInvoiceDB.company_id == ctx.company_id)
        query = query.order_by(LedgerInvoiceDB.id).limit(self.limit)

        result = await self.db.execute(query)
        return [to_candidate(inv) for inv in result.scalars().all()]

    async def lookup_batch(
        self,
        ctx: SOAContext,
        statement_id: str,
        lines: Sequence[SOALineInput],
        allow_partial: bool = False
    ) -> Dict[str, Optional[List[CandidateInvoice]]]:
        """
        One bounded lookup per line.

        Lookups share one session, so they run one after another. A timeout
        or database error rolls the session back and records None for that
        line only.
        """
        candidates_by_line: Dict[str, Optional[List[CandidateInvoice]]] = {}

        for line in lines:
            try:
                candidates_by_line[line.id] = await asyncio.wait_for(
                    self.find_for_line(ctx, statement_id, line, allow_partial=allow_partial),
                    timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Candidate lookup timed out after {self.timeout_seconds}s for line {line.id} "
                    f"(statement {statement_id})"
                )
                await self.db.rollback()
                candidates_by_line[line.id] = None
            except Exception as e:
                logger.warning(f"Candidate lookup failed for line {line.id} (statement {statement_id}): {e}")
                await self.db.rollback()
                candidates_by_line[line.id] = None

        found = sum(len(c) for c in candidates_by_line.values() if c)
        logger.info(f"Candidate lookup for statement {statement_id}: {len(lines)} lines, {found} candidates")
        return candidates_by_line
