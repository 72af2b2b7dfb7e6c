"""
SOA Sign-off Gate

A statement can be acknowledged only when, immediately before the
acknowledgement is written:

    net_variance == 0 AND unmatched_lines == 0

Open issues do not block sign-off by themselves; their lines carry no
variance. Once signed off the statement is closed for matching, issue and
debit note changes.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from soa.audit import SOAAuditEvent, log_soa_event
from soa.context import SOAContext
from soa.errors import NotFoundError, StateError
from soa.models import (
    SOAAcknowledgementDB, StatementStatus, AcknowledgementType, utc_now,
)
from soa.statements import get_statement, locked_statement, parse_enum
from soa.variance import VarianceAggregator

logger = logging.getLogger(__name__)


class SignOffGate:
    """Zero-variance acknowledgement of a statement."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def sign_off(
        self,
        ctx: SOAContext,
        statement_id: str,
        acknowledgement_data: Optional[Dict[str, Any]] = None
    ) -> SOAAcknowledgementDB:
        acknowledgement_data = acknowledgement_data or {}
        ack_type = parse_enum(
            AcknowledgementType,
            acknowledgement_data.get("acknowledgement_type") or acknowledgement_data.get("type")
            or AcknowledgementType.FULL.value,
            "acknowledgement_type"
        )

        async with locked_statement(self.db, ctx, statement_id, require_open=False) as statement:
            if statement.status == StatementStatus.SIGNED_OFF.value:
                raise StateError(
                    f"Statement {statement_id} is already signed off",
                    {"statement_id": statement_id, "status": statement.status}
                )

            summary = await VarianceAggregator(self.db).get_summary(ctx, statement.id)

            failed = []
            if summary.net_variance != 0:
                failed.append("net_variance == 0")
            if summary.unmatched_lines != 0:
                failed.append("unmatched_lines == 0")

            if failed:
                logger.warning(f"Sign-off refused for statement {statement_id}: {', '.join(failed)} not met")
                raise StateError(
                    f"Sign-off refused: {' and '.join(failed)} not satisfied",
                    {
                        "statement_id": statement_id,
                        "failed_conditions": failed,
                        "net_variance": str(summary.net_variance),
                        "unmatched_lines": summary.unmatched_lines,
                    }
                )

            now = utc_now()
            acknowledgement = SOAAcknowledgementDB(
                statement_id=statement.id,
                vendor_id=ctx.vendor_id,
                company_id=statement.company_id,
                acknowledgement_type=ack_type.value,
                notes=acknowledgement_data.get("notes"),
                acknowledged_by=ctx.actor_id,
                acknowledged_at=now,
                total_lines=summary.total_lines,
                matched_lines=summary.matched_lines,
                discrepancy_lines=summary.discrepancy_lines,
                net_variance=summary.net_variance,
            )
            self.db.add(acknowledgement)

            statement.status = StatementStatus.SIGNED_OFF.value
            statement.signed_off_at = now
            await self.db.flush()

            log_soa_event(
                self.db, ctx, SOAAuditEvent.STATEMENT_SIGNED_OFF, statement.id,
                {"acknowledgement_type": ack_type.value, "summary": summary.to_dict()},
                entity_type="acknowledgement", entity_id=acknowledgement.id
            )

        logger.info(f"Statement {statement_id} signed off by {ctx.actor_id}")
        return acknowledgement

    async def get_acknowledgement(self, ctx: SOAContext, statement_id: str) -> SOAAcknowledgementDB:
        await get_statement(self.db, ctx, statement_id)
        result = await self.db.execute(
            select(SOAAcknowledgementDB).where(
                SOAAcknowledgementDB.statement_id == statement_id,
                SOAAcknowledgementDB.vendor_id == ctx.vendor_id
            )
        )
        acknowledgement = result.scalar_one_or_none()
        if not acknowledgement:
            raise NotFoundError(
                f"Statement {statement_id} has not been signed off",
                {"statement_id": statement_id}
            )
        return acknowledgement
