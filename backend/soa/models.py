"""
SOA Reconciliation - Database Models

Models for:
- SOAStatement: the reconciliation case, scoped to one vendor and company
- SOALine: one claimed entry on the vendor's statement
- LedgerInvoice: read-only ledger candidate (never mutated here)
- SOAMatch: proposed/confirmed/rejected association line <-> invoice
- SOAIssue: tracked discrepancy against a line
- DebitNote: corrective instrument (draft -> approved -> posted)
- SOAAcknowledgement: immutable sign-off record
- SOAAuditLog: audit trail for every mutation
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional, Dict, Any

from sqlalchemy import (
    Column, String, Text, Date, DateTime, Numeric, Integer, JSON, Boolean, ForeignKey, Index
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


# ==================== ENUMS ====================

class DocumentType(str, PyEnum):
    """Document types that may appear on a statement"""
    INVOICE = "INV"
    CREDIT_NOTE = "CN"
    DEBIT_NOTE = "DN"


class StatementStatus(str, PyEnum):
    OPEN = "open"
    SIGNED_OFF = "signed_off"


class LineStatus(str, PyEnum):
    """Derived from Match/Issue state, never set directly"""
    EXTRACTED = "extracted"
    MATCHED = "matched"
    DISCREPANCY = "discrepancy"
    RESOLVED = "resolved"


class InvoiceStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


# Ledger invoices that may be offered as candidates
MATCHABLE_INVOICE_STATUSES = (
    InvoiceStatus.PENDING.value,
    InvoiceStatus.APPROVED.value,
    InvoiceStatus.PAID.value,
)


class MatchType(str, PyEnum):
    DETERMINISTIC = "deterministic"
    PROBABILISTIC = "probabilistic"


class MatchStatus(str, PyEnum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class MatchedBy(str, PyEnum):
    SYSTEM = "system"
    MANUAL = "manual"


class IssueType(str, PyEnum):
    MISSING_GRN = "missing_grn"
    AMOUNT_MISMATCH = "amount_mismatch"
    DATE_MISMATCH = "date_mismatch"
    MISSING_PO = "missing_po"
    PO_STATUS = "po_status"
    GRN_STATUS = "grn_status"
    MISSING_INVOICE = "missing_invoice"
    CURRENCY_MISMATCH = "currency_mismatch"


class IssueSeverity(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueStatus(str, PyEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class DetectedBy(str, PyEnum):
    SYSTEM = "system"
    MANUAL = "manual"


class ResolutionAction(str, PyEnum):
    CORRECTED = "corrected"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WAIVED = "waived"


class DebitNoteStatus(str, PyEnum):
    DRAFT = "draft"
    APPROVED = "approved"
    POSTED = "posted"


class DebitNoteReason(str, PyEnum):
    OVERPAYMENT = "OVERPAYMENT"
    PRICE_VARIANCE = "PRICE_VARIANCE"
    WHT = "WHT"
    CLAIM = "CLAIM"


class AcknowledgementType(str, PyEnum):
    FULL = "full"
    PARTIAL = "partial"
    WITH_EXCEPTIONS = "with_exceptions"


def derive_line_status(
    has_confirmed_match: bool,
    has_open_issue: bool,
    has_resolved_issue: bool = False,
    is_retired: bool = False
) -> LineStatus:
    """
    The only place a line status is decided.

    An open issue always wins; a confirmed match comes next; a line whose
    issues are all resolved, or that was retired without a match, is resolved.
    """
    if has_open_issue:
        return LineStatus.DISCREPANCY
    if has_confirmed_match:
        return LineStatus.MATCHED
    if has_resolved_issue or is_retired:
        return LineStatus.RESOLVED
    return LineStatus.EXTRACTED


# ==================== STATEMENT TABLE ====================

class SOAStatementDB(Base):
    """
    Statement of Account case.

    Every line, match, issue and debit note belongs to exactly one statement.
    """
    __tablename__ = 'soa_statements'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    vendor_id = Column(String(36), nullable=False, index=True)
    company_id = Column(String(36), nullable=True, index=True)

    reference = Column(String(100), nullable=True)
    statement_date = Column(Date, nullable=True)
    currency = Column(String(3), nullable=False, default='USD')

    status = Column(String(20), nullable=False, default=StatementStatus.OPEN.value)
    signed_off_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def is_open(self) -> bool:
        return self.status == StatementStatus.OPEN.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "company_id": self.company_id,
            "reference": self.reference,
            "statement_date": _iso(self.statement_date),
            "currency": self.currency,
            "status": self.status,
            "signed_off_at": _iso(self.signed_off_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ==================== LINE TABLE ====================

class SOALineDB(Base):
    """One claimed entry on the vendor's statement"""
    __tablename__ = 'soa_lines'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    statement_id = Column(String(36), ForeignKey('soa_statements.id', ondelete='CASCADE'), nullable=False, index=True)
    vendor_id = Column(String(36), nullable=False, index=True)
    company_id = Column(String(36), nullable=True)

    line_number = Column(Integer, nullable=True)
    document_number = Column(String(100), nullable=False)
    document_type = Column(String(3), nullable=False, default=DocumentType.INVOICE.value)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='USD')
    document_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=LineStatus.EXTRACTED.value, index=True)

    # Retired without a match
    retired_at = Column(DateTime(timezone=True), nullable=True)
    retired_by = Column(String(36), nullable=True)
    retirement_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "vendor_id": self.vendor_id,
            "company_id": self.company_id,
            "line_number": self.line_number,
            "document_number": self.document_number,
            "document_type": self.document_type,
            "amount": _money(self.amount),
            "currency": self.currency,
            "document_date": _iso(self.document_date),
            "description": self.description,
            "status": self.status,
            "retired_at": _iso(self.retired_at),
            "retired_by": self.retired_by,
            "retirement_notes": self.retirement_notes,
            "created_at": _iso(self.created_at),
        }


# ==================== LEDGER INVOICE TABLE ====================

class LedgerInvoiceDB(Base):
    """
    Ledger invoice / credit note owned by the vendor and company.

    Read-only for the reconciliation core.
    """
    __tablename__ = 'ledger_invoices'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    vendor_id = Column(String(36), nullable=False, index=True)
    company_id = Column(String(36), nullable=True, index=True)

    invoice_number = Column(String(100), nullable=False, index=True)
    document_type = Column(String(3), nullable=False, default=DocumentType.INVOICE.value)
    total_amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='USD')
    invoice_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default=InvoiceStatus.PENDING.value)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "company_id": self.company_id,
            "invoice_number": self.invoice_number,
            "document_type": self.document_type,
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "invoice_date": _iso(self.invoice_date),
            "status": self.status,
        }


# ==================== MATCH TABLE ====================

class SOAMatchDB(Base):
    """Association between one SOA line and one ledger invoice"""
    __tablename__ = 'soa_matches'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    statement_id = Column(String(36), ForeignKey('soa_statements.id', ondelete='CASCADE'), nullable=False, index=True)
    vendor_id = Column(String(36), nullable=False, index=True)
    soa_line_id = Column(String(36), ForeignKey('soa_lines.id', ondelete='CASCADE'), nullable=False, index=True)
    invoice_id = Column(String(36), ForeignKey('ledger_invoices.id'), nullable=False, index=True)

    # Match details
    match_type = Column(String(20), nullable=False)
    is_exact_match = Column(Boolean, nullable=False, default=False)
    confidence = Column(Numeric(5, 4), nullable=False, default=0)
    match_score = Column(Integer, nullable=False, default=0)
    match_criteria = Column(JSON, nullable=True)

    # Amounts and dates at match time
    soa_amount = Column(Numeric(15, 2), nullable=False)
    invoice_amount = Column(Numeric(15, 2), nullable=False)
    amount_difference = Column(Numeric(15, 2), nullable=True)
    soa_date = Column(Date, nullable=True)
    invoice_date = Column(Date, nullable=True)
    date_difference_days = Column(Integer, nullable=True)

    matched_by = Column(String(20), nullable=False, default=MatchedBy.SYSTEM.value)
    match_metadata = Column('metadata', JSON, nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default=MatchStatus.PROPOSED.value, index=True)
    confirmed_by = Column(String(36), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_soa_matches_statement_invoice_status', 'statement_id', 'invoice_id', 'status'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "vendor_id": self.vendor_id,
            "soa_line_id": self.soa_line_id,
            "invoice_id": self.invoice_id,
            "match_type": self.match_type,
            "is_exact_match": self.is_exact_match,
            "confidence": float(self.confidence) if self.confidence is not None else 0.0,
            "match_score": self.match_score,
            "match_criteria": self.match_criteria or {},
            "soa_amount": _money(self.soa_amount),
            "invoice_amount": _money(self.invoice_amount),
            "amount_difference": _money(self.amount_difference),
            "soa_date": _iso(self.soa_date),
            "invoice_date": _iso(self.invoice_date),
            "date_difference_days": self.date_difference_days,
            "matched_by": self.matched_by,
            "metadata": self.match_metadata or {},
            "status": self.status,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": _iso(self.confirmed_at),
            "rejected_by": self.rejected_by,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
        }


# ==================== ISSUE TABLE ====================

class SOAIssueDB(Base):
    """Tracked discrepancy tied to an SOA line"""
    __tablename__ = 'soa_issues'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    statement_id = Column(String(36), ForeignKey('soa_statements.id', ondelete='CASCADE'), nullable=False, index=True)
    vendor_id = Column(String(36), nullable=False, index=True)
    soa_line_id = Column(String(36), ForeignKey('soa_lines.id', ondelete='SET NULL'), nullable=True, index=True)
    match_id = Column(String(36), ForeignKey('soa_matches.id', ondelete='SET NULL'), nullable=True)
    invoice_id = Column(String(36), nullable=True)

    issue_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False, default=IssueSeverity.MEDIUM.value)
    description = Column(Text, nullable=False)
    amount_delta = Column(Numeric(15, 2), nullable=True)
    expected_value = Column(Text, nullable=True)
    actual_value = Column(Text, nullable=True)
    detected_by = Column(String(20), nullable=False, default=DetectedBy.SYSTEM.value)

    # Resolution
    status = Column(String(20), nullable=False, default=IssueStatus.OPEN.value, index=True)
    resolution_action = Column(String(20), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    detected_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "vendor_id": self.vendor_id,
            "soa_line_id": self.soa_line_id,
            "match_id": self.match_id,
            "invoice_id": self.invoice_id,
            "issue_type": self.issue_type,
            "severity": self.severity,
            "description": self.description,
            "amount_delta": _money(self.amount_delta),
            "expected_value": self.expected_value,
            "actual_value": self.actual_value,
            "detected_by": self.detected_by,
            "status": self.status,
            "resolution_action": self.resolution_action,
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "detected_at": _iso(self.detected_at),
        }


# ==================== DEBIT NOTE TABLE ====================

class DebitNoteDB(Base):
    """Debit note proposed to correct a statement variance"""
    __tablename__ = 'debit_notes'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    dn_no = Column(String(50), nullable=False, unique=True)
    statement_id = Column(String(36), ForeignKey('soa_statements.id', ondelete='SET NULL'), nullable=True, index=True)
    soa_issue_id = Column(String(36), ForeignKey('soa_issues.id', ondelete='SET NULL'), nullable=True)
    vendor_id = Column(String(36), nullable=False, index=True)
    company_id = Column(String(36), nullable=True)

    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='USD')
    reason_code = Column(String(20), nullable=False)
    notes = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=DebitNoteStatus.DRAFT.value, index=True)

    created_by = Column(String(36), nullable=True)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    posted_by = Column(String(36), nullable=True)
    posted_at = Column(DateTime(timezone=True), nullable=True)
    ledger_entry_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dn_no": self.dn_no,
            "statement_id": self.statement_id,
            "soa_issue_id": self.soa_issue_id,
            "vendor_id": self.vendor_id,
            "company_id": self.company_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "reason_code": self.reason_code,
            "notes": self.notes,
            "status": self.status,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "posted_by": self.posted_by,
            "posted_at": _iso(self.posted_at),
            "ledger_entry_id": self.ledger_entry_id,
            "created_at": _iso(self.created_at),
        }


# ==================== ACKNOWLEDGEMENT TABLE ====================

class SOAAcknowledgementDB(Base):
    """
    Sign-off record. Written once by the sign-off gate and never updated.
    """
    __tablename__ = 'soa_acknowledgements'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    statement_id = Column(String(36), ForeignKey('soa_statements.id', ondelete='CASCADE'), nullable=False, unique=True)
    vendor_id = Column(String(36), nullable=False, index=True)
    company_id = Column(String(36), nullable=True)

    acknowledgement_type = Column(String(20), nullable=False, default=AcknowledgementType.FULL.value)
    notes = Column(Text, nullable=True)
    acknowledged_by = Column(String(36), nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    # Summary snapshot at sign-off
    total_lines = Column(Integer, nullable=False, default=0)
    matched_lines = Column(Integer, nullable=False, default=0)
    discrepancy_lines = Column(Integer, nullable=False, default=0)
    net_variance = Column(Numeric(15, 2), nullable=False, default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "vendor_id": self.vendor_id,
            "company_id": self.company_id,
            "acknowledgement_type": self.acknowledgement_type,
            "notes": self.notes,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "total_lines": self.total_lines,
            "matched_lines": self.matched_lines,
            "discrepancy_lines": self.discrepancy_lines,
            "net_variance": _money(self.net_variance),
        }


# ==================== AUDIT LOG TABLE ====================

class SOAAuditLogDB(Base):
    """Audit trail for reconciliation actions"""
    __tablename__ = 'soa_audit_log'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    statement_id = Column(String(36), nullable=True, index=True)
    vendor_id = Column(String(36), nullable=False, index=True)

    action = Column(String(50), nullable=False)
    actor = Column(String(100), nullable=False)
    entity_type = Column(String(30), nullable=True)
    entity_id = Column(String(36), nullable=True)
    details = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), default=utc_now, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "statement_id": self.statement_id,
            "vendor_id": self.vendor_id,
            "action": self.action,
            "actor": self.actor,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details or {},
            "timestamp": _iso(self.timestamp),
        }
