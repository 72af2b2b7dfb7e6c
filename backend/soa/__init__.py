"""
SOA Reconciliation Module

Reconciles a vendor Statement of Account against the internal invoice
ledger:
- Two-pass matching (deterministic, then probabilistic) with confidence scoring
- Match lifecycle (proposed / confirmed / rejected)
- Issue tracking for discrepancies
- Variance summary derived from current match and issue state
- Debit note workflow (draft -> approved -> posted)
- Zero-variance sign-off gate
- Audit trail for every mutation

Module Structure:
- models.py: SQLAlchemy database models and closed status enums
- matching_engine.py: Pure matching passes
- service.py: Orchestration over the component services
- endpoints/soa_api.py: FastAPI router
"""

from soa.context import SOAContext
from soa.errors import SOAError, ValidationError, NotFoundError, StateError, AuthorizationError
from soa.models import (
    SOAStatementDB,
    SOALineDB,
    LedgerInvoiceDB,
    SOAMatchDB,
    SOAIssueDB,
    DebitNoteDB,
    SOAAcknowledgementDB,
    SOAAuditLogDB,
    derive_line_status,
)
from soa.matching_engine import (
    MatchingConfig,
    SOALineInput,
    CandidateInvoice,
    ProposedMatch,
    MatchResult,
    batch_match,
    normalize_document_number,
)
from soa.variance import StatementSummary
from soa.service import SOAReconciliationService, ReconciliationRunResult
from soa.endpoints.soa_api import router as soa_router

__all__ = [
    # Context and errors
    'SOAContext',
    'SOAError',
    'ValidationError',
    'NotFoundError',
    'StateError',
    'AuthorizationError',
    # Database models
    'SOAStatementDB',
    'SOALineDB',
    'LedgerInvoiceDB',
    'SOAMatchDB',
    'SOAIssueDB',
    'DebitNoteDB',
    'SOAAcknowledgementDB',
    'SOAAuditLogDB',
    'derive_line_status',
    # Matching engine
    'MatchingConfig',
    'SOALineInput',
    'CandidateInvoice',
    'ProposedMatch',
    'MatchResult',
    'batch_match',
    'normalize_document_number',
    # Services
    'StatementSummary',
    'SOAReconciliationService',
    'ReconciliationRunResult',
    # Router
    'soa_router',
]
