"""
SOA Reconciliation Service

Orchestrates a reconciliation run over one statement:

1. Snapshot the statement's lines
2. Look up ledger candidates per line (bounded, failures isolated per line)
3. Run the two-pass matching engine (pure), with partial settlements
   when enabled
4. Persist each proposal through the match ledger
5. Optionally open missing_invoice issues for unmatched lines

All other operations are exposed through the component services, which
this class wires together with the configured policy.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from soa.audit import SOAAuditEvent, log_soa_event
from soa.candidates import CandidateStore
from soa.context import SOAContext
from soa.debit_notes import DebitNoteWorkflow
from soa.issue_tracker import IssueTracker
from soa.match_ledger import MatchLedger
from soa.matching_engine import MatchingConfig, MatchResult, SOALineInput, batch_match
from soa.models import SOALineDB, LineStatus, MatchStatus, IssueType, IssueSeverity, DetectedBy
from soa.signoff import SignOffGate
from soa.statements import StatementService, get_statement, ensure_open, locked_statement
from soa.variance import VarianceAggregator

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationRunResult:
    """Result of a reconciliation run."""
    run_id: str
    statement_id: str
    started_at: str
    completed_at: Optional[str] = None
    total_lines: int = 0
    deterministic_matches: int = 0
    probabilistic_matches: int = 0
    partial_matches: int = 0
    confirmed_matches: int = 0
    unmatched: int = 0
    lookup_failures: int = 0
    issues_opened: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "statement_id": self.statement_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "total_lines": self.total_lines,
            "deterministic_matches": self.deterministic_matches,
            "probabilistic_matches": self.probabilistic_matches,
            "partial_matches": self.partial_matches,
            "confirmed_matches": self.confirmed_matches,
            "unmatched": self.unmatched,
            "lookup_failures": self.lookup_failures,
            "issues_opened": self.issues_opened,
            "results": self.results,
        }


def snapshot_line(line: SOALineDB) -> SOALineInput:
    return SOALineInput(
        id=line.id,
        document_number=line.document_number,
        amount=Decimal(line.amount),
        currency=line.currency,
        document_type=line.document_type,
        document_date=line.document_date,
        status=line.status,
        line_number=line.line_number,
    )


class SOAReconciliationService:
    """
    Entry point for SOA reconciliation.

    Wraps the component services around one session and one set of
    settings, so every operation sees the same policy.
    """

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.matching_config = MatchingConfig.from_settings(self.settings)

        self.statements = StatementService(db)
        self.candidates = CandidateStore.from_settings(db, self.settings)
        self.ledger = MatchLedger(db, auto_confirm_exact=self.settings.SOA_AUTO_CONFIRM_EXACT_MATCHES)
        self.issues = IssueTracker(db)
        self.variance = VarianceAggregator(db)
        self.debit_notes = DebitNoteWorkflow(db)
        self.signoff = SignOffGate(db)

    async def _load_lines(
        self,
        ctx: SOAContext,
        statement_id: str,
        line_ids: Optional[List[str]] = None
    ) -> List[SOALineInput]:
        query = select(SOALineDB).where(
            SOALineDB.statement_id == statement_id,
            SOALineDB.vendor_id == ctx.vendor_id
        )
        if line_ids:
            query = query.where(SOALineDB.id.in_(line_ids))
        query = query.order_by(SOALineDB.line_number, SOALineDB.id)

        result = await self.db.execute(query)
        return [snapshot_line(line) for line in result.scalars().all()]

    async def batch_match(
        self,
        ctx: SOAContext,
        statement_id: str,
        line_ids: Optional[List[str]] = None,
        allow_partial: Optional[bool] = None
    ) -> List[MatchResult]:
        """
        Propose matches for a statement's lines without persisting anything.

        Lines that are not extracted come back with match=None. A failed or
        timed-out candidate lookup yields match=None for that line only.
        allow_partial overrides the configured partial-settlement policy
        for this call.
        """
        await get_statement(self.db, ctx, statement_id)
        lines = await self._load_lines(ctx, statement_id, line_ids)

        config = self.matching_config
        if allow_partial is not None:
            config = replace(config, allow_partial=allow_partial)

        eligible = [line for line in lines if line.status == LineStatus.EXTRACTED.value]
        candidates_by_line = await self.candidates.lookup_batch(
            ctx, statement_id, eligible, allow_partial=config.allow_partial
        )

        return batch_match(lines, candidates_by_line, config)

    async def run_reconciliation(
        self,
        ctx: SOAContext,
        statement_id: str,
        line_ids: Optional[List[str]] = None,
        flag_unmatched: bool = False,
        allow_partial: Optional[bool] = None
    ) -> ReconciliationRunResult:
        """
        Match and persist. Each proposal is written through the match
        ledger, which applies the auto-confirm policy.
        """
        statement = await get_statement(self.db, ctx, statement_id)
        ensure_open(statement)

        run = ReconciliationRunResult(
            run_id=str(uuid.uuid4()),
            statement_id=statement_id,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info(f"Reconciliation run {run.run_id} started for statement {statement_id}")

        results = await self.batch_match(ctx, statement_id, line_ids, allow_partial=allow_partial)
        run.total_lines = len(results)

        for result in results:
            row = result.to_dict()

            if result.match is not None:
                match = await self.ledger.create_match(
                    ctx, result.line.id, result.match.invoice_id, result.match.to_match_data()
                )
                row["match_id"] = match.id
                row["match_status"] = match.status
                if result.pass_number == 1:
                    run.deterministic_matches += 1
                else:
                    run.probabilistic_matches += 1
                if result.reason == "partial":
                    run.partial_matches += 1
                if match.status == MatchStatus.CONFIRMED.value:
                    run.confirmed_matches += 1

            elif result.reason == "lookup_failed":
                run.lookup_failures += 1

            elif result.reason in ("no_match", "no_candidates"):
                run.unmatched += 1
                if flag_unmatched:
                    issue = await self.issues.create_issue(ctx, statement_id, {
                        "soa_line_id": result.line.id,
                        "issue_type": IssueType.MISSING_INVOICE.value,
                        "severity": IssueSeverity.MEDIUM.value,
                        "detected_by": DetectedBy.SYSTEM.value,
                        "description": f"No ledger invoice found for {result.line.document_number}",
                        "actual_value": str(result.line.amount),
                    })
                    row["issue_id"] = issue.id
                    run.issues_opened += 1

            run.results.append(row)

        run.completed_at = datetime.now(timezone.utc).isoformat()

        async with locked_statement(self.db, ctx, statement_id, require_open=False):
            log_soa_event(
                self.db, ctx, SOAAuditEvent.RUN_COMPLETED, statement_id,
                {
                    "run_id": run.run_id,
                    "total_lines": run.total_lines,
                    "deterministic_matches": run.deterministic_matches,
                    "probabilistic_matches": run.probabilistic_matches,
                    "partial_matches": run.partial_matches,
                    "unmatched": run.unmatched,
                    "lookup_failures": run.lookup_failures,
                    "issues_opened": run.issues_opened,
                },
                entity_type="statement", entity_id=statement_id
            )

        logger.info(
            f"Reconciliation run {run.run_id} completed: {run.deterministic_matches} deterministic, "
            f"{run.probabilistic_matches} probabilistic, {run.unmatched} unmatched, "
            f"{run.lookup_failures} lookup failures"
        )
        return run
