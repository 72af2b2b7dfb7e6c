"""
Unit Tests for the SOA Issue Tracker

Tests cover:
- Line status derivation
- Opening issues against statement lines
- Resolution with mandatory notes
- Line status after the last open issue is resolved
- Issue listing order

Run with: pytest tests/test_issue_tracker.py -v
"""

import pytest

from soa.errors import StateError, ValidationError
from soa.issue_tracker import IssueTracker
from soa.match_ledger import MatchLedger
from soa.models import derive_line_status, LineStatus


class TestLineStatusDerivation:
    """Test the single place line status is decided."""

    def test_untouched_line_is_extracted(self):
        assert derive_line_status(False, False) == LineStatus.EXTRACTED

    def test_confirmed_match_is_matched(self):
        assert derive_line_status(True, False) == LineStatus.MATCHED

    def test_open_issue_wins_over_match(self):
        assert derive_line_status(True, True) == LineStatus.DISCREPANCY

    def test_resolved_issues_only(self):
        assert derive_line_status(False, False, has_resolved_issue=True) == LineStatus.RESOLVED

    def test_match_wins_over_resolved_issue(self):
        assert derive_line_status(True, False, has_resolved_issue=True) == LineStatus.MATCHED

    def test_retired_line_is_resolved(self):
        assert derive_line_status(False, False, is_retired=True) == LineStatus.RESOLVED


class TestIssueTracker:
    """Test issue creation and resolution."""

    @pytest.fixture
    def tracker(self, db):
        return IssueTracker(db)

    async def _open(self, tracker, ctx, statement, line, issue_type="amount_mismatch"):
        return await tracker.create_issue(ctx, statement.id, {
            "soa_line_id": line.id,
            "issue_type": issue_type,
            "description": "Vendor shows a different amount",
        })

    # ==================== CREATE TESTS ====================

    @pytest.mark.asyncio
    async def test_create_issue(self, db, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])

        issue = await self._open(tracker, ctx, statement, lines[0])

        assert issue.status == "open"
        assert issue.severity == "medium"
        assert issue.detected_by == "manual"
        await db.refresh(lines[0])
        assert lines[0].status == "discrepancy"

    @pytest.mark.asyncio
    async def test_create_accepts_soa_item_id(self, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])

        issue = await tracker.create_issue(ctx, statement.id, {
            "soa_item_id": lines[0].id,
            "issue_type": "missing_po",
            "description": "No purchase order",
            "severity": "high",
        })

        assert issue.soa_line_id == lines[0].id
        assert issue.severity == "high"

    @pytest.mark.asyncio
    async def test_unknown_issue_type(self, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])

        with pytest.raises(ValidationError):
            await self._open(tracker, ctx, statement, lines[0], issue_type="bad_vibes")

    @pytest.mark.asyncio
    async def test_line_from_another_statement(self, tracker, ctx, make_statement):
        statement, _ = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        other, other_lines = await make_statement(ctx, [{"document_number": "INV-002", "amount": "20"}])

        with pytest.raises(ValidationError) as exc_info:
            await self._open(tracker, ctx, statement, other_lines[0])

        assert exc_info.value.context["line_id"] == other_lines[0].id

    # ==================== RESOLVE TESTS ====================

    @pytest.mark.asyncio
    async def test_resolve_last_issue_resolves_line(self, db, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        issue = await self._open(tracker, ctx, statement, lines[0])

        resolved = await tracker.resolve_issue(ctx, issue.id, "waived", "Vendor agreed to write off")

        assert resolved.status == "resolved"
        assert resolved.resolution_action == "waived"
        assert resolved.resolved_by == ctx.actor_id
        assert resolved.resolved_at is not None
        await db.refresh(lines[0])
        assert lines[0].status == "resolved"

    @pytest.mark.asyncio
    async def test_line_stays_discrepancy_while_issues_remain(self, db, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        first = await self._open(tracker, ctx, statement, lines[0])
        await self._open(tracker, ctx, statement, lines[0], issue_type="date_mismatch")

        await tracker.resolve_issue(ctx, first.id, "corrected", "Fixed in ledger")

        await db.refresh(lines[0])
        assert lines[0].status == "discrepancy"

    @pytest.mark.asyncio
    async def test_resolve_returns_line_to_matched(self, db, tracker, ctx, make_statement, make_invoice):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        invoice = await make_invoice("INV-001", "10")
        ledger = MatchLedger(db)
        match = await ledger.create_match(ctx, lines[0].id, invoice.id)
        await ledger.confirm_match(ctx, match.id)
        issue = await self._open(tracker, ctx, statement, lines[0], issue_type="missing_grn")

        await tracker.resolve_issue(ctx, issue.id, "accepted", "GRN arrived")

        await db.refresh(lines[0])
        assert lines[0].status == "matched"

    @pytest.mark.asyncio
    async def test_resolve_requires_notes(self, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        issue = await self._open(tracker, ctx, statement, lines[0])

        with pytest.raises(ValidationError):
            await tracker.resolve_issue(ctx, issue.id, "waived", "")

    @pytest.mark.asyncio
    async def test_resolve_rejects_unknown_action(self, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        issue = await self._open(tracker, ctx, statement, lines[0])

        with pytest.raises(ValidationError):
            await tracker.resolve_issue(ctx, issue.id, "ignored", "Not our problem")

    @pytest.mark.asyncio
    async def test_resolve_twice_fails(self, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [{"document_number": "INV-001", "amount": "10"}])
        issue = await self._open(tracker, ctx, statement, lines[0])
        await tracker.resolve_issue(ctx, issue.id, "waived", "Written off")

        with pytest.raises(StateError):
            await tracker.resolve_issue(ctx, issue.id, "waived", "Written off again")

    # ==================== LIST TESTS ====================

    @pytest.mark.asyncio
    async def test_list_includes_resolved_oldest_first(self, tracker, ctx, make_statement):
        statement, lines = await make_statement(ctx, [
            {"document_number": "INV-001", "amount": "10"},
            {"document_number": "INV-002", "amount": "20"},
        ])
        first = await self._open(tracker, ctx, statement, lines[0])
        second = await self._open(tracker, ctx, statement, lines[1], issue_type="date_mismatch")
        await tracker.resolve_issue(ctx, first.id, "corrected", "Fixed")

        issues = await tracker.list_issues(ctx, statement.id)
        open_only = await tracker.list_issues(ctx, statement.id, status="open")

        assert [i.id for i in issues] == [first.id, second.id]
        assert [i.id for i in open_only] == [second.id]
