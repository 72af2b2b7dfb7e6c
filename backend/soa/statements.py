"""
SOA Reconciliation - Statements and Lines

Ingestion boundary for already-normalized statement lines, vendor-scoped
reads, line retirement, line status refresh, and the per-statement lock
that serializes every state-changing reconciliation operation.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from soa.audit import SOAAuditEvent, log_soa_event
from soa.context import SOAContext
from soa.errors import NotFoundError, StateError, ValidationError
from soa.models import (
    SOAStatementDB, SOALineDB, SOAMatchDB, SOAIssueDB,
    StatementStatus, LineStatus, DocumentType, MatchStatus, IssueStatus,
    derive_line_status, utc_now,
)

logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")

REQUIRED_LINE_FIELDS = ("document_number", "amount", "currency", "document_type", "document_date")

# One asyncio.Lock per statement id while any task holds or awaits it
_statement_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _get_statement_lock(statement_id: str) -> asyncio.Lock:
    lock = _statement_locks.get(statement_id)
    if lock is None:
        lock = asyncio.Lock()
        _statement_locks[statement_id] = lock
    return lock


# ==================== INPUT PARSING ====================

def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse a money value into a Decimal rounded to cents."""
    if value is None or value == "":
        raise ValidationError(f"{field} is required", {"field": field})
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", {"field": field})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", {"field": field, "value": str(value)})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", {"field": field})
    return amount.quantize(MONEY)


def parse_currency(value: Any) -> str:
    if not value or not isinstance(value, str) or len(value.strip()) != 3:
        raise ValidationError("currency must be a 3-letter ISO code", {"value": value})
    return value.strip().upper()


def parse_date(value: Any, field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", {"field": field, "value": str(value)})


def parse_enum(enum_cls, value: Any, field: str):
    """Map a string onto a closed enum, rejecting anything outside it."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [e.value for e in enum_cls]
        raise ValidationError(
            f"Invalid {field}: {value}. Must be one of: {allowed}",
            {"field": field, "value": value}
        )


# ==================== SCOPED READS ====================

async def get_statement(
    db: AsyncSession,
    ctx: SOAContext,
    statement_id: str,
    for_update: bool = False
) -> SOAStatementDB:
    """Fetch a statement inside the caller's scope, or raise NotFoundError."""
    query = select(SOAStatementDB).where(
        SOAStatementDB.id == statement_id,
        SOAStatementDB.vendor_id == ctx.vendor_id
    )
    if ctx.company_id:
        query = query.where(SOAStatementDB.company_id == ctx.company_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)

    result = await db.execute(query)
    statement = result.scalar_one_or_none()
    if not statement:
        raise NotFoundError(f"Statement {statement_id} not found", {"statement_id": statement_id})
    return statement


def ensure_open(statement: SOAStatementDB) -> None:
    if not statement.is_open:
        raise StateError(
            f"Statement {statement.id} is signed off and closed for changes",
            {"statement_id": statement.id, "status": statement.status}
        )


@asynccontextmanager
async def locked_statement(
    db: AsyncSession,
    ctx: SOAContext,
    statement_id: str,
    require_open: bool = True
) -> AsyncIterator[SOAStatementDB]:
    """
    Serialize a unit of work on one statement.

    Holds the in-process lock for the statement and the database row lock
    (SELECT ... FOR UPDATE). Commits when the block exits cleanly and rolls
    back on any exception.
    """
    lock = _get_statement_lock(statement_id)
    async with lock:
        try:
            statement = await get_statement(db, ctx, statement_id, for_update=True)
            if require_open:
                ensure_open(statement)
            yield statement
            await db.commit()
        except Exception:
            await db.rollback()
            raise


async def refresh_line_status(db: AsyncSession, line: SOALineDB) -> str:
    """Re-derive a line's status from its current matches and issues."""
    await db.flush()

    confirmed = await db.execute(
        select(func.count(SOAMatchDB.id)).where(
            SOAMatchDB.soa_line_id == line.id,
            SOAMatchDB.status == MatchStatus.CONFIRMED.value
        )
    )
    issue_counts = await db.execute(
        select(SOAIssueDB.status, func.count(SOAIssueDB.id))
        .where(SOAIssueDB.soa_line_id == line.id)
        .group_by(SOAIssueDB.status)
    )
    counts = {status: count for status, count in issue_counts.all()}

    new_status = derive_line_status(
        has_confirmed_match=confirmed.scalar_one() > 0,
        has_open_issue=counts.get(IssueStatus.OPEN.value, 0) > 0,
        has_resolved_issue=counts.get(IssueStatus.RESOLVED.value, 0) > 0,
        is_retired=line.retired_at is not None,
    ).value

    if line.status != new_status:
        logger.debug(f"Line {line.id} status {line.status} -> {new_status}")
        line.status = new_status
    return new_status


async def get_line(
    db: AsyncSession,
    ctx: SOAContext,
    line_id: str,
    statement_id: Optional[str] = None
) -> Optional[SOALineDB]:
    query = select(SOALineDB).where(
        SOALineDB.id == line_id,
        SOALineDB.vendor_id == ctx.vendor_id
    )
    if ctx.company_id:
        query = query.where(SOALineDB.company_id == ctx.company_id)
    if statement_id:
        query = query.where(SOALineDB.statement_id == statement_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


# ==================== SERVICE ====================

class StatementService:
    """Statements and their lines, always read through the caller's vendor scope."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_statement(self, ctx: SOAContext, data: Dict[str, Any]) -> SOAStatementDB:
        statement = SOAStatementDB(
            vendor_id=ctx.vendor_id,
            company_id=ctx.company_id,
            reference=data.get("reference"),
            statement_date=parse_date(data.get("statement_date"), "statement_date"),
            currency=parse_currency(data.get("currency") or "USD"),
            status=StatementStatus.OPEN.value,
            created_by=ctx.actor_id,
        )
        self.db.add(statement)
        await self.db.flush()

        log_soa_event(
            self.db, ctx, SOAAuditEvent.STATEMENT_CREATED, statement.id,
            {"reference": statement.reference, "currency": statement.currency},
            entity_type="statement", entity_id=statement.id
        )
        await self.db.commit()
        await self.db.refresh(statement)

        logger.info(f"Created SOA statement {statement.id} for vendor {ctx.vendor_id}")
        return statement

    async def get_statement(self, ctx: SOAContext, statement_id: str) -> SOAStatementDB:
        return await get_statement(self.db, ctx, statement_id)

    async def list_statements(
        self,
        ctx: SOAContext,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[SOAStatementDB]:
        query = select(SOAStatementDB).where(SOAStatementDB.vendor_id == ctx.vendor_id)
        if ctx.company_id:
            query = query.where(SOAStatementDB.company_id == ctx.company_id)
        if status:
            query = query.where(SOAStatementDB.status == parse_enum(StatementStatus, status, "status").value)
        query = query.order_by(SOAStatementDB.created_at.desc(), SOAStatementDB.id).limit(limit).offset(offset)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    def _build_line(
        self,
        ctx: SOAContext,
        statement: SOAStatementDB,
        index: int,
        data: Dict[str, Any],
        first_number: int = 1
    ) -> SOALineDB:
        missing = [f for f in REQUIRED_LINE_FIELDS if data.get(f) in (None, "")]
        if missing:
            raise ValidationError(
                f"Line {index + 1} is missing required fields: {', '.join(missing)}",
                {"statement_id": statement.id, "line_index": index, "missing": missing}
            )

        document_number = str(data["document_number"]).strip()
        if not document_number:
            raise ValidationError(
                f"Line {index + 1} has a blank document_number",
                {"statement_id": statement.id, "line_index": index}
            )

        return SOALineDB(
            statement_id=statement.id,
            vendor_id=ctx.vendor_id,
            company_id=statement.company_id,
            line_number=data.get("line_number") or first_number + index,
            document_number=document_number,
            document_type=parse_enum(DocumentType, str(data["document_type"]).upper(), "document_type").value,
            amount=parse_amount(data["amount"]),
            currency=parse_currency(data["currency"]),
            document_date=parse_date(data["document_date"], "document_date"),
            description=data.get("description"),
            status=LineStatus.EXTRACTED.value,
        )

    async def add_lines(
        self,
        ctx: SOAContext,
        statement_id: str,
        lines: List[Dict[str, Any]]
    ) -> List[SOALineDB]:
        """
        Add normalized line records to an open statement.

        The whole batch is validated before anything is written; one bad
        line rejects the batch. Lines are numbered on from the statement's
        highest line number unless the caller supplies line_number.
        """
        if not lines:
            raise ValidationError("At least one line is required", {"statement_id": statement_id})

        async with locked_statement(self.db, ctx, statement_id) as statement:
            current_max = await self.db.execute(
                select(func.max(SOALineDB.line_number)).where(SOALineDB.statement_id == statement.id)
            )
            first_number = (current_max.scalar_one() or 0) + 1

            new_lines = [
                self._build_line(ctx, statement, i, data, first_number) for i, data in enumerate(lines)
            ]
            self.db.add_all(new_lines)
            await self.db.flush()

            log_soa_event(
                self.db, ctx, SOAAuditEvent.LINES_ADDED, statement.id,
                {"count": len(new_lines)},
                entity_type="statement", entity_id=statement.id
            )

        logger.info(f"Added {len(new_lines)} lines to statement {statement_id}")
        return new_lines

    async def list_lines(
        self,
        ctx: SOAContext,
        statement_id: str,
        status: Optional[str] = None
    ) -> List[SOALineDB]:
        await get_statement(self.db, ctx, statement_id)

        query = select(SOALineDB).where(
            SOALineDB.statement_id == statement_id,
            SOALineDB.vendor_id == ctx.vendor_id
        )
        if status:
            query = query.where(SOALineDB.status == parse_enum(LineStatus, status, "status").value)
        query = query.order_by(SOALineDB.line_number, SOALineDB.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def retire_line(self, ctx: SOAContext, line_id: str, notes: str) -> SOALineDB:
        """Retire a line without a match; it becomes resolved."""
        if not notes or not notes.strip():
            raise ValidationError("Retirement notes are required", {"line_id": line_id})

        line = await get_line(self.db, ctx, line_id)
        if not line:
            raise NotFoundError(f"Line {line_id} not found", {"line_id": line_id})

        async with locked_statement(self.db, ctx, line.statement_id) as statement:
            await self.db.refresh(line)
            if line.status == LineStatus.MATCHED.value:
                raise StateError(
                    "A line with a confirmed match cannot be retired",
                    {"statement_id": statement.id, "line_id": line.id}
                )
            if line.retired_at is not None:
                raise StateError("Line is already retired", {"statement_id": statement.id, "line_id": line.id})

            line.retired_at = utc_now()
            line.retired_by = ctx.actor_id
            line.retirement_notes = notes.strip()
            await refresh_line_status(self.db, line)

            log_soa_event(
                self.db, ctx, SOAAuditEvent.LINE_RETIRED, statement.id,
                {"notes": line.retirement_notes, "status": line.status},
                entity_type="line", entity_id=line.id
            )

        return line
