"""
SOA Reconciliation API Endpoints

REST API for the SOA reconciliation core:
- GET  /soa/status - Module status
- GET  /soa/statements - List statements
- POST /soa/statements - Create a statement
- GET  /soa/statements/{statement_id} - Get a statement
- POST /soa/statements/{statement_id}/lines - Add normalized lines
- GET  /soa/statements/{statement_id}/lines - List lines
- POST /soa/lines/{line_id}/retire - Retire a line without a match
- POST /soa/statements/{statement_id}/reconcile - Run matching
- GET  /soa/statements/{statement_id}/summary - Variance summary
- GET  /soa/statements/{statement_id}/matches - List matches
- POST /soa/statements/{statement_id}/matches - Create a manual match
- GET  /soa/matches/{match_id} - Get a match
- POST /soa/matches/{match_id}/confirm - Confirm a match
- POST /soa/matches/{match_id}/reject - Reject a match (opens an issue)
- GET  /soa/statements/{statement_id}/issues - List issues
- POST /soa/statements/{statement_id}/issues - Open an issue
- POST /soa/issues/{issue_id}/resolve - Resolve an issue
- GET  /soa/statements/{statement_id}/debit-notes - List debit notes
- POST /soa/statements/{statement_id}/debit-notes - Propose a debit note
- POST /soa/debit-notes/{dn_id}/approve - Approve (internal actors)
- POST /soa/debit-notes/{dn_id}/post - Post (internal actors)
- POST /soa/statements/{statement_id}/sign-off - Sign off
- GET  /soa/statements/{statement_id}/acknowledgement - Sign-off record

Every endpoint except /status requires the internal API key. The caller
forwards vendor scope and actor identity as headers:
    X-Vendor-Id, X-Company-Id, X-Actor-Id, X-Actor-Capability
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_db
from middleware.internal_auth import InternalService, require_internal_service
from soa.context import SOAContext
from soa.errors import SOAError, ValidationError, NotFoundError, StateError, AuthorizationError
from soa.service import SOAReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/soa", tags=["SOA Reconciliation"])

INTERNAL_CAPABILITY = "internal"

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StateError: status.HTTP_409_CONFLICT,
}


def soa_http_exception(error: SOAError) -> HTTPException:
    """Map a reconciliation error onto its HTTP status with a structured body."""
    status_code = ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=error.to_dict())


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"{action} failed")


# ==================== Request Models ====================

class CreateStatementRequest(BaseModel):
    """Request to open a statement."""
    reference: Optional[str] = Field(default=None, description="Vendor statement reference")
    statement_date: Optional[date] = Field(default=None, description="Statement date")
    currency: str = Field(default="USD", description="ISO currency code")


class LineRequest(BaseModel):
    """One normalized statement line."""
    document_number: Optional[str] = Field(default=None, description="Invoice / credit note number")
    document_type: Optional[str] = Field(default="INV", description="INV, CN or DN")
    amount: Optional[Decimal] = Field(default=None, description="Signed amount")
    currency: Optional[str] = Field(default=None, description="ISO currency code")
    document_date: Optional[date] = Field(default=None, description="Document date")
    description: Optional[str] = None
    line_number: Optional[int] = None


class AddLinesRequest(BaseModel):
    """Request to add lines to a statement."""
    lines: List[LineRequest] = Field(..., description="Normalized line records")


class RetireLineRequest(BaseModel):
    notes: str = Field(..., description="Why the line is retired without a match")


class ReconcileRequest(BaseModel):
    """Request to run matching for a statement."""
    line_ids: Optional[List[str]] = Field(default=None, description="Restrict to these lines")
    flag_unmatched: bool = Field(default=False, description="Open missing_invoice issues for unmatched lines")
    dry_run: bool = Field(default=False, description="Return proposals without persisting them")
    allow_partial: Optional[bool] = Field(
        default=None, description="Override the partial-settlement policy for this run"
    )


class CreateMatchRequest(BaseModel):
    """Request to create a manual match."""
    soa_line_id: str
    invoice_id: str
    match_type: Optional[str] = Field(default=None, description="deterministic or probabilistic")
    is_exact_match: bool = False
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    match_criteria: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class RejectMatchRequest(BaseModel):
    """Request to reject a match."""
    reason: Optional[str] = Field(default=None, description="Rejection reason")
    issue_type: Optional[str] = Field(default=None, description="Override the inferred issue type")


class CreateIssueRequest(BaseModel):
    """Request to open an issue."""
    soa_line_id: Optional[str] = None
    issue_type: Optional[str] = None
    severity: Optional[str] = "medium"
    description: Optional[str] = None
    amount_delta: Optional[Decimal] = None
    detected_by: Optional[str] = "manual"
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None
    match_id: Optional[str] = None
    invoice_id: Optional[str] = None


class ResolveIssueRequest(BaseModel):
    """Request to resolve an issue."""
    action: Optional[str] = Field(default=None, description="corrected, accepted, rejected or waived")
    notes: Optional[str] = Field(default=None, description="Resolution note (required)")


class ProposeDebitNoteRequest(BaseModel):
    """Request to propose a debit note."""
    amount: Optional[Decimal] = None
    reason_code: Optional[str] = Field(default=None, description="OVERPAYMENT, PRICE_VARIANCE, WHT or CLAIM")
    issue_id: Optional[str] = None
    notes: Optional[str] = None
    currency: Optional[str] = None


class PostDebitNoteRequest(BaseModel):
    ledger_entry_id: Optional[str] = None


class SignOffRequest(BaseModel):
    """Request to sign off a statement."""
    acknowledgement_type: str = Field(default="full", description="full, partial or with_exceptions")
    notes: Optional[str] = None


# ==================== Dependencies ====================

def get_soa_context(
    x_vendor_id: Optional[str] = Header(None, alias="X-Vendor-Id"),
    x_company_id: Optional[str] = Header(None, alias="X-Company-Id"),
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_capability: Optional[str] = Header(None, alias="X-Actor-Capability"),
    _service: InternalService = Depends(require_internal_service)
) -> SOAContext:
    """Build the caller scope from forwarded headers."""
    if not x_vendor_id:
        raise soa_http_exception(ValidationError("X-Vendor-Id header is required"))

    capabilities = {c.strip().lower() for c in (x_actor_capability or "").split(",") if c.strip()}
    return SOAContext(
        vendor_id=x_vendor_id,
        company_id=x_company_id or None,
        actor_id=x_actor_id or _service.name,
        is_internal=INTERNAL_CAPABILITY in capabilities,
    )


def get_service(db: AsyncSession = Depends(get_db)) -> SOAReconciliationService:
    return SOAReconciliationService(db)


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """SOA reconciliation module status."""
    return {
        "module": "soa_reconciliation",
        "status": "operational",
        "version": "1.0.0",
        "features": {
            "deterministic_matching": True,
            "probabilistic_matching": True,
            "debit_notes": True,
            "sign_off": True
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ---------- Statements and lines ----------

@router.get("/statements", summary="List statements")
async def list_statements(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        statements = await service.statements.list_statements(ctx, status=status_filter, limit=limit, offset=offset)
        return {
            "statements": [s.to_dict() for s in statements],
            "count": len(statements),
            "limit": limit,
            "offset": offset
        }
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("List statements", e)


@router.post("/statements", status_code=201, summary="Create statement")
async def create_statement(
    request: CreateStatementRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        statement = await service.statements.create_statement(ctx, request.model_dump())
        return statement.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Create statement", e)


@router.get("/statements/{statement_id}", summary="Get statement")
async def get_statement(
    statement_id: str,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        statement = await service.statements.get_statement(ctx, statement_id)
        return statement.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Get statement", e)


@router.post("/statements/{statement_id}/lines", status_code=201, summary="Add lines")
async def add_lines(
    statement_id: str,
    request: AddLinesRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    """Add already-normalized line records. The batch is all-or-nothing."""
    try:
        lines = await service.statements.add_lines(
            ctx, statement_id, [line.model_dump() for line in request.lines]
        )
        return {"statement_id": statement_id, "lines": [line.to_dict() for line in lines], "count": len(lines)}
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Add lines", e)


@router.get("/statements/{statement_id}/lines", summary="List lines")
async def list_lines(
    statement_id: str,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        lines = await service.statements.list_lines(ctx, statement_id, status=status_filter)
        return {"statement_id": statement_id, "lines": [line.to_dict() for line in lines], "count": len(lines)}
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("List lines", e)


@router.post("/lines/{line_id}/retire", summary="Retire line")
async def retire_line(
    line_id: str,
    request: RetireLineRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        line = await service.statements.retire_line(ctx, line_id, request.notes)
        return line.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Retire line", e)


# ---------- Matching ----------

@router.post("/statements/{statement_id}/reconcile", summary="Run reconciliation")
async def reconcile_statement(
    statement_id: str,
    request: ReconcileRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    """
    Run the two-pass matcher over the statement's extracted lines.

    With dry_run the proposals are returned without being persisted.
    """
    try:
        if request.dry_run:
            results = await service.batch_match(
                ctx, statement_id, request.line_ids, allow_partial=request.allow_partial
            )
            return {
                "statement_id": statement_id,
                "dry_run": True,
                "results": [r.to_dict() for r in results]
            }

        run = await service.run_reconciliation(
            ctx, statement_id,
            line_ids=request.line_ids,
            flag_unmatched=request.flag_unmatched,
            allow_partial=request.allow_partial
        )
        return run.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Reconciliation run", e)


@router.get("/statements/{statement_id}/summary", summary="Variance summary")
async def get_summary(
    statement_id: str,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        summary = await service.variance.get_summary(ctx, statement_id)
        return summary.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Summary", e)


@router.get("/statements/{statement_id}/matches", summary="List matches")
async def list_matches(
    statement_id: str,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        matches = await service.ledger.list_matches(ctx, statement_id, status=status_filter)
        return {"statement_id": statement_id, "matches": [m.to_dict() for m in matches], "count": len(matches)}
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("List matches", e)


@router.post("/statements/{statement_id}/matches", status_code=201, summary="Create manual match")
async def create_match(
    statement_id: str,
    request: CreateMatchRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    """Manual matches always start as proposed."""
    try:
        match_data = {
            "match_type": request.match_type,
            "is_exact_match": request.is_exact_match,
            "match_criteria": request.match_criteria,
            "matched_by": "manual",
            "metadata": {"notes": request.notes} if request.notes else {},
        }
        if request.confidence is not None:
            match_data["confidence"] = request.confidence

        match = await service.ledger.create_match(
            ctx, request.soa_line_id, request.invoice_id, match_data, statement_id=statement_id
        )
        return match.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Create match", e)


@router.get("/matches/{match_id}", summary="Get match")
async def get_match(
    match_id: str,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        match = await service.ledger.get_match(ctx, match_id)
        return match.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Get match", e)


@router.post("/matches/{match_id}/confirm", summary="Confirm match")
async def confirm_match(
    match_id: str,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        match = await service.ledger.confirm_match(ctx, match_id)
        return match.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Confirm match", e)


@router.post("/matches/{match_id}/reject", summary="Reject match")
async def reject_match(
    match_id: str,
    request: RejectMatchRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    """Rejecting a match opens exactly one issue against its line."""
    try:
        match, issue = await service.ledger.reject_match(
            ctx, match_id, request.reason, issue_type=request.issue_type
        )
        return {"match": match.to_dict(), "issue": issue.to_dict()}
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Reject match", e)


# ---------- Issues ----------

@router.get("/statements/{statement_id}/issues", summary="List issues")
async def list_issues(
    statement_id: str,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        issues = await service.issues.list_issues(ctx, statement_id, status=status_filter)
        return {"statement_id": statement_id, "issues": [i.to_dict() for i in issues], "count": len(issues)}
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("List issues", e)


@router.post("/statements/{statement_id}/issues", status_code=201, summary="Open issue")
async def create_issue(
    statement_id: str,
    request: CreateIssueRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        issue = await service.issues.create_issue(ctx, statement_id, request.model_dump())
        return issue.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Create issue", e)


@router.post("/issues/{issue_id}/resolve", summary="Resolve issue")
async def resolve_issue(
    issue_id: str,
    request: ResolveIssueRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        issue = await service.issues.resolve_issue(ctx, issue_id, request.action, request.notes)
        return issue.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Resolve issue", e)


# ---------- Debit notes ----------

@router.get("/statements/{statement_id}/debit-notes", summary="List debit notes")
async def list_debit_notes(
    statement_id: str,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        notes = await service.debit_notes.list_debit_notes(ctx, statement_id)
        return {"statement_id": statement_id, "debit_notes": [n.to_dict() for n in notes], "count": len(notes)}
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("List debit notes", e)


@router.post("/statements/{statement_id}/debit-notes", status_code=201, summary="Propose debit note")
async def propose_debit_note(
    statement_id: str,
    request: ProposeDebitNoteRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        debit_note = await service.debit_notes.propose(
            ctx,
            statement_id,
            amount=request.amount,
            reason_code=request.reason_code,
            issue_id=request.issue_id,
            notes=request.notes,
            currency=request.currency
        )
        return debit_note.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Propose debit note", e)


@router.post("/debit-notes/{dn_id}/approve", summary="Approve debit note")
async def approve_debit_note(
    dn_id: str,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    """Requires X-Actor-Capability: internal."""
    try:
        debit_note = await service.debit_notes.approve(ctx, dn_id)
        return debit_note.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Approve debit note", e)


@router.post("/debit-notes/{dn_id}/post", summary="Post debit note")
async def post_debit_note(
    dn_id: str,
    request: PostDebitNoteRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    """Requires X-Actor-Capability: internal. Returns the recomputed summary."""
    try:
        debit_note, summary = await service.debit_notes.post(ctx, dn_id, ledger_entry_id=request.ledger_entry_id)
        return {"debit_note": debit_note.to_dict(), "summary": summary.to_dict()}
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Post debit note", e)


# ---------- Sign-off ----------

@router.post("/statements/{statement_id}/sign-off", summary="Sign off statement")
async def sign_off_statement(
    statement_id: str,
    request: SignOffRequest,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    """Fails with 409 unless net_variance is zero and no line is unmatched."""
    try:
        acknowledgement = await service.signoff.sign_off(ctx, statement_id, request.model_dump())
        return acknowledgement.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Sign-off", e)


@router.get("/statements/{statement_id}/acknowledgement", summary="Get sign-off record")
async def get_acknowledgement(
    statement_id: str,
    ctx: SOAContext = Depends(get_soa_context),
    service: SOAReconciliationService = Depends(get_service)
):
    try:
        acknowledgement = await service.signoff.get_acknowledgement(ctx, statement_id)
        return acknowledgement.to_dict()
    except SOAError as e:
        raise soa_http_exception(e)
    except Exception as e:
        raise _internal_error("Get acknowledgement", e)
