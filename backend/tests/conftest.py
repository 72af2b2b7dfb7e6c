"""
Shared fixtures for the SOA reconciliation tests.

Persistence tests run against an in-memory SQLite database (aiosqlite)
created fresh for every test.
"""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database.connection import Base
from soa.context import SOAContext
from soa.models import LedgerInvoiceDB
from soa.service import SOAReconciliationService

VENDOR_A = "vendor-a"
VENDOR_B = "vendor-b"
DEFAULT_DATE = date(2025, 1, 15)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        INTERNAL_API_KEY="test-internal-key",
        SOA_LOOKUP_TIMEOUT_SECONDS=0.5,
    )


@pytest.fixture
def service(db, settings):
    return SOAReconciliationService(db, settings=settings)


@pytest.fixture
def ctx():
    return SOAContext(vendor_id=VENDOR_A, actor_id="reviewer-1")


@pytest.fixture
def finance_ctx():
    return SOAContext(vendor_id=VENDOR_A, actor_id="finance-1", is_internal=True)


@pytest.fixture
def other_vendor_ctx():
    return SOAContext(vendor_id=VENDOR_B, actor_id="reviewer-2", is_internal=True)


@pytest.fixture
def make_invoice(db):
    """Insert a ledger invoice directly; the core never writes these."""
    async def _make(
        invoice_number: str,
        total_amount,
        vendor_id: str = VENDOR_A,
        currency: str = "USD",
        invoice_date: date = DEFAULT_DATE,
        status: str = "approved",
        document_type: str = "INV",
        company_id=None,
        invoice_id=None,
    ) -> LedgerInvoiceDB:
        invoice = LedgerInvoiceDB(
            vendor_id=vendor_id,
            company_id=company_id,
            invoice_number=invoice_number,
            total_amount=Decimal(str(total_amount)),
            currency=currency,
            invoice_date=invoice_date,
            status=status,
            document_type=document_type,
        )
        if invoice_id:
            invoice.id = invoice_id
        db.add(invoice)
        await db.commit()
        return invoice
    return _make


@pytest.fixture
def make_statement(service):
    """Create a statement for ctx and add the given lines."""
    async def _make(ctx, lines=None, currency: str = "USD"):
        statement = await service.statements.create_statement(ctx, {"reference": "SOA-TEST", "currency": currency})
        created = []
        if lines:
            payload = []
            for line in lines:
                row = {
                    "document_type": "INV",
                    "currency": currency,
                    "document_date": DEFAULT_DATE,
                }
                row.update(line)
                payload.append(row)
            created = await service.statements.add_lines(ctx, statement.id, payload)
        return statement, created
    return _make
