"""
Unit Tests for the SOA Sign-off Gate

Tests cover:
- Refusal with the failed conditions listed
- Successful sign-off once variance is zero and nothing is unmatched
- Debit notes correcting a variance so sign-off can proceed
- The statement being closed after sign-off

Run with: pytest tests/test_signoff.py -v
"""

from decimal import Decimal

import pytest

from soa.errors import NotFoundError, StateError

SYSTEM_EXACT = {"matched_by": "system", "is_exact_match": True, "confidence": 1.0}


class TestSignOffGate:
    """Test zero-variance acknowledgement."""

    async def _reconciled_statement(self, service, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "1000.00"}])
        invoice = await make_invoice("INV-001", "1000.00")
        await service.ledger.create_match(ctx, lines[0].id, invoice.id, SYSTEM_EXACT)
        return statement, lines

    # ==================== REFUSAL TESTS ====================

    @pytest.mark.asyncio
    async def test_refused_with_unmatched_lines(self, service, ctx, make_statement):
        statement, _ = await make_statement(ctx, [{"document_number": "INV-001", "amount": "100.00"}])

        with pytest.raises(StateError) as exc_info:
            await service.signoff.sign_off(ctx, statement.id)

        assert exc_info.value.context["failed_conditions"] == ["net_variance == 0", "unmatched_lines == 0"]
        refreshed = await service.statements.get_statement(ctx, statement.id)
        assert refreshed.status == "open"

    @pytest.mark.asyncio
    async def test_unmatched_line_blocks_even_at_zero_variance(
        self, service, ctx, finance_ctx, make_statement
    ):
        statement, _ = await make_statement(ctx, [{"document_number": "INV-001", "amount": "100.00"}])
        draft = await service.debit_notes.propose(ctx, statement.id, "100.00", "CLAIM")
        await service.debit_notes.approve(finance_ctx, draft.id)
        await service.debit_notes.post(finance_ctx, draft.id)

        with pytest.raises(StateError) as exc_info:
            await service.signoff.sign_off(ctx, statement.id)

        assert exc_info.value.context["failed_conditions"] == ["unmatched_lines == 0"]

    @pytest.mark.asyncio
    async def test_variance_blocks_then_debit_note_clears_it(
        self, service, ctx, finance_ctx, make_statement, make_invoice
    ):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-002", "amount": "1000.00"}])
        invoice = await make_invoice("INV-002", "990.00")
        match = await service.ledger.create_match(ctx, lines[0].id, invoice.id)
        await service.ledger.confirm_match(ctx, match.id)

        with pytest.raises(StateError) as exc_info:
            await service.signoff.sign_off(ctx, statement.id)
        assert exc_info.value.context["failed_conditions"] == ["net_variance == 0"]
        assert exc_info.value.context["net_variance"] == "10.00"

        draft = await service.debit_notes.propose(ctx, statement.id, "10.00", "PRICE_VARIANCE")
        await service.debit_notes.approve(finance_ctx, draft.id)
        await service.debit_notes.post(finance_ctx, draft.id)

        acknowledgement = await service.signoff.sign_off(ctx, statement.id)
        assert acknowledgement.net_variance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_issue_on_confirmed_line_does_not_hide_gap(self, service, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-500", "amount": "1000.00"}])
        invoice = await make_invoice("INV-500", "995.00")
        match = await service.ledger.create_match(ctx, lines[0].id, invoice.id)
        await service.ledger.confirm_match(ctx, match.id)
        await service.issues.create_issue(ctx, statement.id, {
            "soa_line_id": lines[0].id, "issue_type": "missing_grn", "description": "No goods receipt",
        })

        with pytest.raises(StateError) as exc_info:
            await service.signoff.sign_off(ctx, statement.id)

        assert exc_info.value.context["failed_conditions"] == ["net_variance == 0"]
        assert exc_info.value.context["net_variance"] == "5.00"

    # ==================== SUCCESS TESTS ====================

    @pytest.mark.asyncio
    async def test_sign_off_records_snapshot(self, service, ctx, make_statement, make_invoice):
        statement, _ = await self._reconciled_statement(service, ctx, make_statement, make_invoice)

        acknowledgement = await service.signoff.sign_off(
            ctx, statement.id, {"acknowledgement_type": "full", "notes": "All clear"}
        )

        assert acknowledgement.acknowledged_by == ctx.actor_id
        assert acknowledgement.total_lines == 1
        assert acknowledgement.matched_lines == 1
        assert acknowledgement.notes == "All clear"

        refreshed = await service.statements.get_statement(ctx, statement.id)
        assert refreshed.status == "signed_off"
        assert refreshed.signed_off_at is not None

        stored = await service.signoff.get_acknowledgement(ctx, statement.id)
        assert stored.id == acknowledgement.id

    @pytest.mark.asyncio
    async def test_open_issue_does_not_block(self, service, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-003", "amount": "50.00"}])
        invoice = await make_invoice("INV-003", "45.00")
        match = await service.ledger.create_match(ctx, lines[0].id, invoice.id)
        await service.ledger.reject_match(ctx, match.id, "Amount differs")

        acknowledgement = await service.signoff.sign_off(ctx, statement.id, {"acknowledgement_type": "with_exceptions"})

        assert acknowledgement.discrepancy_lines == 1
        assert acknowledgement.acknowledgement_type == "with_exceptions"

    @pytest.mark.asyncio
    async def test_acknowledgement_missing_before_sign_off(self, service, ctx, make_statement):
        statement, _ = await make_statement(ctx)

        with pytest.raises(NotFoundError):
            await service.signoff.get_acknowledgement(ctx, statement.id)

    # ==================== CLOSED STATEMENT TESTS ====================

    @pytest.mark.asyncio
    async def test_closed_statement_rejects_changes(self, service, ctx, make_statement, make_invoice):
        statement, lines = await self._reconciled_statement(service, ctx, make_statement, make_invoice)
        await service.signoff.sign_off(ctx, statement.id)

        with pytest.raises(StateError):
            await service.signoff.sign_off(ctx, statement.id)
        with pytest.raises(StateError):
            await service.statements.add_lines(ctx, statement.id, [{
                "document_number": "INV-LATE", "amount": "1", "currency": "USD",
                "document_type": "INV", "document_date": "2025-02-01",
            }])
        with pytest.raises(StateError):
            await service.debit_notes.propose(ctx, statement.id, "1", "WHT")
        with pytest.raises(StateError):
            await service.issues.create_issue(ctx, statement.id, {
                "soa_line_id": lines[0].id, "issue_type": "missing_grn", "description": "Late",
            })
        with pytest.raises(StateError):
            await service.run_reconciliation(ctx, statement.id)
