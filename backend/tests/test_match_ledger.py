"""
Unit Tests for the SOA Match Ledger

Tests cover:
- Match creation and the auto-confirm policy
- Idempotent re-creation
- Scope checks on lines and invoices
- Confirm / reject lifecycle and the uniqueness of confirmed matches
- Rejection opening exactly one issue
- Confirmation superseding the line's other proposals
- Concurrent confirmations of one invoice from separate sessions

Run with: pytest tests/test_match_ledger.py -v
"""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.connection import Base
from soa.errors import NotFoundError, StateError, ValidationError
from soa.match_ledger import MatchLedger, infer_issue_type
from soa.models import LedgerInvoiceDB, SOAIssueDB, SOAMatchDB, SOAAuditLogDB
from soa.statements import StatementService

SYSTEM_EXACT = {"matched_by": "system", "is_exact_match": True, "confidence": 1.0}


class TestIssueTypeInference:
    """Test the issue type implied by a rejection reason."""

    @pytest.mark.parametrize("reason,expected", [
        ("Amount differs by 10", "amount_mismatch"),
        ("Wrong currency on invoice", "currency_mismatch"),
        ("Invoice date is a month off", "date_mismatch"),
        ("", "amount_mismatch"),
    ])
    def test_infer(self, reason, expected):
        assert infer_issue_type(reason).value == expected


class TestCreateMatch:
    """Test match creation."""

    @pytest.fixture
    def ledger(self, db):
        return MatchLedger(db, auto_confirm_exact=True)

    @pytest.mark.asyncio
    async def test_system_exact_match_auto_confirms(self, db, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "1000.00"}])
        invoice = await make_invoice("INV-001", "1000.00")

        match = await ledger.create_match(ctx, lines[0].id, invoice.id, SYSTEM_EXACT)

        assert match.status == "confirmed"
        assert match.confirmed_by == ctx.actor_id
        assert match.amount_difference == Decimal("0.00")
        await db.refresh(lines[0])
        assert lines[0].status == "matched"

    @pytest.mark.asyncio
    async def test_auto_confirm_policy_off_leaves_proposed(self, db, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "1000.00"}])
        invoice = await make_invoice("INV-001", "1000.00")
        ledger = MatchLedger(db, auto_confirm_exact=False)

        match = await ledger.create_match(ctx, lines[0].id, invoice.id, SYSTEM_EXACT)

        assert match.status == "proposed"
        await db.refresh(lines[0])
        assert lines[0].status == "extracted"

    @pytest.mark.asyncio
    async def test_manual_match_starts_proposed(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "1000.00"}])
        invoice = await make_invoice("INV-001", "1000.00")

        match = await ledger.create_match(ctx, lines[0].id, invoice.id, {"is_exact_match": True})

        assert match.matched_by == "manual"
        assert match.status == "proposed"

    @pytest.mark.asyncio
    async def test_recreate_is_idempotent(self, db, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "1000.00"}])
        invoice = await make_invoice("INV-001", "1000.00")

        first = await ledger.create_match(ctx, lines[0].id, invoice.id, SYSTEM_EXACT)
        second = await ledger.create_match(ctx, lines[0].id, invoice.id, SYSTEM_EXACT)

        assert first.id == second.id
        count = await db.execute(select(func.count(SOAMatchDB.id)).where(SOAMatchDB.soa_line_id == lines[0].id))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_line_out_of_scope(self, ledger, ctx, other_vendor_ctx, make_statement, make_invoice):
        statement, lines = await make_statement(other_vendor_ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")

        with pytest.raises(ValidationError) as exc_info:
            await ledger.create_match(ctx, lines[0].id, invoice.id)

        assert exc_info.value.context["line_id"] == lines[0].id

    @pytest.mark.asyncio
    async def test_invoice_out_of_scope(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        foreign = await make_invoice("INV-001", "10", vendor_id="vendor-b")

        with pytest.raises(ValidationError) as exc_info:
            await ledger.create_match(ctx, lines[0].id, foreign.id)

        assert exc_info.value.context["invoice_id"] == foreign.id
        assert exc_info.value.context["statement_id"] == statement.id

    @pytest.mark.asyncio
    async def test_line_confirmed_to_other_invoice(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        first = await make_invoice("INV-001", "10")
        second = await make_invoice("INV-001", "10")
        await ledger.create_match(ctx, lines[0].id, first.id, SYSTEM_EXACT)

        with pytest.raises(StateError):
            await ledger.create_match(ctx, lines[0].id, second.id)

    @pytest.mark.asyncio
    async def test_auto_confirm_downgraded_when_invoice_taken(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [
            {"document_number": "INV-001", "amount": "10"},
            {"document_number": "INV-001", "amount": "10"},
        ])
        invoice = await make_invoice("INV-001", "10")
        winner = await ledger.create_match(ctx, lines[0].id, invoice.id, SYSTEM_EXACT)

        loser = await ledger.create_match(ctx, lines[1].id, invoice.id, SYSTEM_EXACT)

        assert winner.status == "confirmed"
        assert loser.status == "proposed"
        assert loser.match_metadata["auto_confirm_blocked_by"] == winner.id

    @pytest.mark.asyncio
    async def test_amounts_come_from_records(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-002", "amount": "1000.00"}])
        invoice = await make_invoice("INV-002", "990.00")

        match = await ledger.create_match(ctx, lines[0].id, invoice.id, {"soa_amount": "1.00"})

        assert match.soa_amount == Decimal("1000.00")
        assert match.invoice_amount == Decimal("990.00")
        assert match.amount_difference == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_creation_is_audited(self, db, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")

        match = await ledger.create_match(ctx, lines[0].id, invoice.id, SYSTEM_EXACT)

        result = await db.execute(
            select(SOAAuditLogDB).where(SOAAuditLogDB.action == "soa.match_created")
        )
        entries = list(result.scalars().all())
        assert len(entries) == 1
        assert entries[0].entity_id == match.id
        assert entries[0].actor == ctx.actor_id


class TestMatchLifecycle:
    """Test confirm and reject."""

    @pytest.fixture
    def ledger(self, db):
        return MatchLedger(db, auto_confirm_exact=False)

    @pytest.mark.asyncio
    async def test_confirm_proposed(self, db, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)

        confirmed = await ledger.confirm_match(ctx, match.id)

        assert confirmed.status == "confirmed"
        await db.refresh(lines[0])
        assert lines[0].status == "matched"

    @pytest.mark.asyncio
    async def test_confirm_twice_is_noop(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)
        await ledger.confirm_match(ctx, match.id)

        again = await ledger.confirm_match(ctx, match.id)

        assert again.status == "confirmed"

    @pytest.mark.asyncio
    async def test_confirm_rejected_fails(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)
        await ledger.reject_match(ctx, match.id, "Amount differs")

        with pytest.raises(StateError):
            await ledger.confirm_match(ctx, match.id)

    @pytest.mark.asyncio
    async def test_confirm_unknown_or_foreign(self, ledger, ctx, other_vendor_ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)

        with pytest.raises(NotFoundError):
            await ledger.confirm_match(ctx, "no-such-match")
        with pytest.raises(NotFoundError):
            await ledger.confirm_match(other_vendor_ctx, match.id)

    @pytest.mark.asyncio
    async def test_invoice_confirmed_only_once_per_statement(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [
            {"document_number": "INV-001", "amount": "10"},
            {"document_number": "INV-001", "amount": "10"},
        ])
        invoice = await make_invoice("INV-001", "10")
        first = await ledger.create_match(ctx, lines[0].id, invoice.id)
        second = await ledger.create_match(ctx, lines[1].id, invoice.id)
        await ledger.confirm_match(ctx, first.id)

        with pytest.raises(StateError) as exc_info:
            await ledger.confirm_match(ctx, second.id)

        assert exc_info.value.context["conflicting_match_id"] == first.id

    @pytest.mark.asyncio
    async def test_reject_opens_one_issue(self, db, ctx, make_statement, make_invoice):
        ledger = MatchLedger(db, auto_confirm_exact=True)
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "1000.00"}])
        invoice = await make_invoice("INV-001", "990.00")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)
        await ledger.confirm_match(ctx, match.id)

        rejected, issue = await ledger.reject_match(ctx, match.id, "Amount differs by 10")

        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "Amount differs by 10"
        assert issue.issue_type == "amount_mismatch"
        assert issue.status == "open"
        assert issue.soa_line_id == lines[0].id
        assert issue.match_id == match.id
        assert issue.amount_delta == Decimal("10.00")
        assert issue.detected_by == "manual"

        count = await db.execute(select(func.count(SOAIssueDB.id)).where(SOAIssueDB.statement_id == statement.id))
        assert count.scalar_one() == 1
        await db.refresh(lines[0])
        assert lines[0].status == "discrepancy"

    @pytest.mark.asyncio
    async def test_reject_with_explicit_issue_type(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)

        _, issue = await ledger.reject_match(ctx, match.id, "Wrong goods", issue_type="missing_grn")

        assert issue.issue_type == "missing_grn"

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)

        with pytest.raises(ValidationError):
            await ledger.reject_match(ctx, match.id, "   ")

    @pytest.mark.asyncio
    async def test_reject_twice_fails(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)
        await ledger.reject_match(ctx, match.id, "Amount differs")

        with pytest.raises(StateError):
            await ledger.reject_match(ctx, match.id, "Amount differs again")

    @pytest.mark.asyncio
    async def test_new_match_allowed_after_rejection(self, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        wrong = await make_invoice("INV-001", "10")
        right = await make_invoice("INV-001", "10")
        match = await ledger.create_match(ctx, lines[0].id, wrong.id)
        await ledger.reject_match(ctx, match.id, "Wrong invoice")

        replacement = await ledger.create_match(ctx, lines[0].id, right.id)

        assert replacement.id != match.id
        assert replacement.status == "proposed"

    @pytest.mark.asyncio
    async def test_confirm_supersedes_other_proposals(self, db, ledger, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        right = await make_invoice("INV-001", "10")
        stale = await make_invoice("INV-001-A", "10")
        kept = await ledger.create_match(ctx, lines[0].id, right.id)
        other = await ledger.create_match(ctx, lines[0].id, stale.id)

        await ledger.confirm_match(ctx, kept.id)

        await db.refresh(other)
        assert other.status == "rejected"
        assert other.match_metadata["superseded_by"] == kept.id
        issues = await db.execute(select(func.count(SOAIssueDB.id)).where(SOAIssueDB.statement_id == statement.id))
        assert issues.scalar_one() == 0
        with pytest.raises(StateError):
            await ledger.reject_match(ctx, other.id, "Stale proposal")

    @pytest.mark.asyncio
    async def test_auto_confirm_supersedes_manual_proposal(self, db, ctx, make_statement, make_invoice):
        ledger = MatchLedger(db, auto_confirm_exact=True)
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        guess = await make_invoice("INV-0011", "10")
        exact = await make_invoice("INV-001", "10")
        proposed = await ledger.create_match(ctx, lines[0].id, guess.id)

        confirmed = await ledger.create_match(ctx, lines[0].id, exact.id, SYSTEM_EXACT)

        assert confirmed.status == "confirmed"
        await db.refresh(proposed)
        assert proposed.status == "rejected"
        assert proposed.match_metadata["superseded_by"] == confirmed.id


class TestConcurrentConfirm:
    """Test confirmations racing on one statement from separate sessions."""

    @pytest_asyncio.fixture
    async def file_session_factory(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'soa.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_only_one_confirm_wins_for_an_invoice(self, file_session_factory, ctx):
        async with file_session_factory() as setup:
            statement = await StatementService(setup).create_statement(ctx, {"reference": "SOA-RACE"})
            lines = await StatementService(setup).add_lines(ctx, statement.id, [
                {"document_number": "INV-001", "amount": "10", "currency": "USD",
                 "document_type": "INV", "document_date": "2025-01-15"},
                {"document_number": "INV 001", "amount": "10", "currency": "USD",
                 "document_type": "INV", "document_date": "2025-01-15"},
            ])
            invoice = LedgerInvoiceDB(
                vendor_id=ctx.vendor_id, invoice_number="INV-001", total_amount=Decimal("10.00"),
                currency="USD", status="approved", document_type="INV",
            )
            setup.add(invoice)
            await setup.commit()

            setup_ledger = MatchLedger(setup, auto_confirm_exact=False)
            first = await setup_ledger.create_match(ctx, lines[0].id, invoice.id)
            second = await setup_ledger.create_match(ctx, lines[1].id, invoice.id)

        async def confirm(match_id):
            async with file_session_factory() as session:
                return await MatchLedger(session).confirm_match(ctx, match_id)

        outcomes = await asyncio.gather(confirm(first.id), confirm(second.id), return_exceptions=True)

        confirmed = [o for o in outcomes if isinstance(o, SOAMatchDB)]
        refused = [o for o in outcomes if isinstance(o, StateError)]
        assert len(confirmed) == 1
        assert len(refused) == 1
        assert refused[0].context["conflicting_match_id"] == confirmed[0].id

        async with file_session_factory() as check:
            count = await check.execute(
                select(func.count(SOAMatchDB.id)).where(
                    SOAMatchDB.invoice_id == invoice.id,
                    SOAMatchDB.status == "confirmed"
                )
            )
            assert count.scalar_one() == 1
