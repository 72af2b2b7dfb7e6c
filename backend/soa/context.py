"""
Explicit caller scope for every reconciliation operation.
"""

from dataclasses import dataclass
from typing import Optional

from soa.errors import AuthorizationError, ValidationError


SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class SOAContext:
    """
    Vendor/company scope and the acting user.

    ``is_internal`` is the coarse capability flag supplied by the calling
    layer for finance-only actions (debit note approval and posting).
    """
    vendor_id: str
    company_id: Optional[str] = None
    actor_id: str = SYSTEM_ACTOR
    is_internal: bool = False

    def __post_init__(self):
        if not self.vendor_id:
            raise ValidationError("vendor_id is required")
        if not self.actor_id:
            raise ValidationError("actor_id is required")

    def require_internal(self, action: str) -> None:
        if not self.is_internal:
            raise AuthorizationError(
                f"{action} requires an internal finance actor",
                {"actor_id": self.actor_id, "vendor_id": self.vendor_id}
            )

    @classmethod
    def system(cls, vendor_id: str, company_id: Optional[str] = None) -> "SOAContext":
        return cls(vendor_id=vendor_id, company_id=company_id, actor_id=SYSTEM_ACTOR, is_internal=True)
