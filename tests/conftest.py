"""
Expense Lifecycle - Test Configuration

Pytest fixtures and configuration.

Tests run against a throwaway SQLite database per test (aiosqlite), so the
optimistic locking and conditional-update paths are exercised against a real
database engine.
"""

import os
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, List, Optional
from uuid import uuid4

# Settings are read at import time; point them at SQLite before importing the app
os.environ["DATABASE_URL_ASYNC"] = "sqlite+aiosqlite:///./expense_lifecycle_test.db"
os.environ["APP_ENV"] = "test"
os.environ["EXPORT_DISPATCH"] = "sync"
os.environ["LEDGER_BACKEND"] = "stub"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import Base, get_async_session
from app.dependencies import get_ledger
from app.models import (
    AuditLogEntry,
    CapLimitType,
    Employee,
    EmployeeRole,
    ExpenseCategory,
    ExpenseItem,
    ExpenseReport,
    MileageRate,
    PolicyCap,
    ReportStatus,
)
from app.models.base import utcnow
from app.schemas.auth import CallerClaim
from app.services.audit_service import AuditService
from app.services.report_store import ReportStore
from app.utils.security import create_access_token
from main import app

from fixtures.factories import APRIL_END, APRIL_START, meal
from fixtures.ledger_mock import ScriptedLedger


# =============================================================================
# DATABASE
# =============================================================================

@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'expenses.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def ledger() -> ScriptedLedger:
    return ScriptedLedger()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, ledger) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session and ledger overrides."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_session
    app.dependency_overrides[get_ledger] = lambda: ledger

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# =============================================================================
# DIRECTORY
# =============================================================================

async def _add_employee(db: AsyncSession, name: str, role: EmployeeRole, manager_id=None, department="Sales"):
    person = Employee(
        hr_identifier=f"HR-{uuid4().hex[:8]}",
        full_name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        department=department,
        role=role,
        manager_id=manager_id,
    )
    db.add(person)
    await db.commit()
    return person


@pytest_asyncio.fixture
async def manager(db_session: AsyncSession) -> Employee:
    return await _add_employee(db_session, "Morgan Lee", EmployeeRole.MANAGER)


@pytest_asyncio.fixture
async def employee(db_session: AsyncSession, manager: Employee) -> Employee:
    return await _add_employee(db_session, "Jordan Diaz", EmployeeRole.EMPLOYEE, manager_id=manager.id)


@pytest_asyncio.fixture
async def other_manager(db_session: AsyncSession) -> Employee:
    return await _add_employee(db_session, "Riley Chen", EmployeeRole.MANAGER, department="Engineering")


@pytest_asyncio.fixture
async def finance_user(db_session: AsyncSession) -> Employee:
    return await _add_employee(db_session, "Sam Patel", EmployeeRole.FINANCE, department="Finance")


@pytest.fixture
def caller_for() -> Callable[[Employee], CallerClaim]:
    def _caller(person: Employee) -> CallerClaim:
        return CallerClaim(
            employee_id=person.id,
            role=person.role,
            ip_address="10.0.0.1",
            user_agent="pytest",
        )
    return _caller


@pytest.fixture
def auth_headers() -> Callable[[Employee], Dict[str, str]]:
    def _headers(person: Employee) -> Dict[str, str]:
        token = create_access_token({"sub": str(person.id), "role": person.role.value})
        return {"Authorization": f"Bearer {token}"}
    return _headers


# =============================================================================
# POLICY
# =============================================================================

@pytest_asyncio.fixture
async def policy(db_session: AsyncSession):
    """Meal per-diem, lodging per-item and default caps plus 2023/2024 mileage rates."""
    caps = [
        PolicyCap(
            policy_key="meal.per_diem",
            category=ExpenseCategory.MEAL,
            limit_type=CapLimitType.PER_DIEM,
            amount_cents=1500,
            active_from=date(2024, 1, 1),
        ),
        PolicyCap(
            policy_key="lodging.per_night",
            category=ExpenseCategory.LODGING,
            limit_type=CapLimitType.PER_ITEM,
            amount_cents=30000,
            active_from=date(2024, 1, 1),
        ),
        PolicyCap(
            policy_key="default.per_item",
            category=None,
            limit_type=CapLimitType.PER_ITEM,
            amount_cents=250000,
            active_from=date(2024, 1, 1),
        ),
    ]
    rates = [
        MileageRate(effective_date=date(2023, 1, 1), rate_cents_per_mile=Decimal("65.5")),
        MileageRate(effective_date=date(2024, 1, 1), rate_cents_per_mile=Decimal("67.0")),
    ]
    db_session.add_all(caps + rates)
    await db_session.commit()
    return caps


# =============================================================================
# REPORTS
# =============================================================================

@pytest.fixture
def make_report(db_session: AsyncSession):
    """Factory that persists a report for an owner in the requested status."""

    async def _make(
        owner: Employee,
        status: ReportStatus = ReportStatus.DRAFT,
        items: Optional[List[ExpenseItem]] = None,
        period_start: date = APRIL_START,
        period_end: date = APRIL_END,
    ) -> ExpenseReport:
        items = items if items is not None else [meal()]
        for position, item in enumerate(items):
            item.position = position
        report = ExpenseReport(
            employee_id=owner.id,
            reporting_period_start=period_start,
            reporting_period_end=period_end,
            currency="USD",
            status=status,
            items=items,
            approvals=[],
        )
        if status not in (ReportStatus.DRAFT, ReportStatus.NEEDS_CHANGES):
            report.submitted_at = utcnow()
        if status == ReportStatus.FINANCE_FINALIZED:
            report.finalized_at = utcnow()
        report.recalculate_totals()
        db_session.add(report)
        await db_session.commit()
        return report

    return _make


@pytest.fixture
def people(employee, manager, other_manager, finance_user) -> Dict[str, Employee]:
    return {
        "employee": employee,
        "manager": manager,
        "other_manager": other_manager,
        "finance": finance_user,
    }


@pytest.fixture
def fetch_report(session_factory):
    """Load a report in a fresh session, as the next request would see it."""

    async def _fetch(report_id) -> ExpenseReport:
        async with session_factory() as db:
            return await ReportStore(db).get(report_id)

    return _fetch


@pytest.fixture
def fetch_trail(session_factory):
    async def _fetch(entity_type: str, entity_id) -> List[AuditLogEntry]:
        async with session_factory() as db:
            return await AuditService(db).get_trail(entity_type, entity_id)

    return _fetch
