"""
SOA Reconciliation Errors

Typed error taxonomy shared by every reconciliation operation. Each error
carries a ``context`` dict (statement_id, line_id, invoice_id, ...) so the
calling layer can render an actionable message without parsing strings.
"""

from typing import Any, Dict, Optional


class SOAError(Exception):
    """Base class for reconciliation errors"""

    error_code = "soa_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in (context or {}).items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(SOAError):
    """Malformed or missing input"""
    error_code = "validation_error"


class NotFoundError(SOAError):
    """Unknown id, or an id outside the caller's vendor scope"""
    error_code = "not_found"


class StateError(SOAError):
    """Illegal state transition or a failed sign-off precondition"""
    error_code = "state_error"


class AuthorizationError(SOAError):
    """Privileged action attempted by a non-privileged actor"""
    error_code = "authorization_error"
