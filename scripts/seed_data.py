"""
Seed a development database with a small directory, policy caps and mileage rates

Creates a manager, an employee reporting to them and a finance reviewer,
default policy caps, IRS-style mileage rates and one April 2024 draft report.
Prints bearer tokens for each person so the API can be exercised directly.
"""

import asyncio
import os
import sys
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import async_session_factory, close_db, init_db
from app.models import (
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
from app.utils.security import create_access_token


PEOPLE = [
    ("HR-1001", "Morgan Lee", "morgan.lee@example.com", "Sales", EmployeeRole.MANAGER, None),
    ("HR-1002", "Jordan Diaz", "jordan.diaz@example.com", "Sales", EmployeeRole.EMPLOYEE, "HR-1001"),
    ("HR-2001", "Sam Patel", "sam.patel@example.com", "Finance", EmployeeRole.FINANCE, None),
]

CAPS = [
    ("meal.per_diem", ExpenseCategory.MEAL, CapLimitType.PER_DIEM, 1500, date(2024, 1, 1), None),
    ("lodging.per_night", ExpenseCategory.LODGING, CapLimitType.PER_ITEM, 30000, date(2024, 1, 1), None),
    ("default.per_item", None, CapLimitType.PER_ITEM, 250000, date(2024, 1, 1), None),
]

MILEAGE_RATES = [
    (date(2023, 1, 1), Decimal("65.5"), "IRS 2023 standard rate"),
    (date(2024, 1, 1), Decimal("67.0"), "IRS 2024 standard rate"),
]


async def seed():
    await init_db()

    async with async_session_factory() as db:
        people = {}
        for hr_id, name, email, department, role, manager_hr in PEOPLE:
            existing = (await db.execute(select(Employee).where(Employee.hr_identifier == hr_id))).scalar_one_or_none()
            if existing is None:
                existing = Employee(
                    hr_identifier=hr_id,
                    full_name=name,
                    email=email,
                    department=department,
                    role=role,
                    manager_id=people[manager_hr].id if manager_hr else None,
                )
                db.add(existing)
                await db.flush()
                print(f"  ✓ employee {name} ({role.value})")
            people[hr_id] = existing

        if (await db.execute(select(PolicyCap))).first() is None:
            for key, category, limit_type, amount, active_from, active_to in CAPS:
                db.add(PolicyCap(
                    policy_key=key,
                    category=category,
                    limit_type=limit_type,
                    amount_cents=amount,
                    active_from=active_from,
                    active_to=active_to,
                ))
                print(f"  ✓ cap {key}: {amount} cents")

        if (await db.execute(select(MileageRate))).first() is None:
            for effective_date, rate, source in MILEAGE_RATES:
                db.add(MileageRate(effective_date=effective_date, rate_cents_per_mile=rate, source_reference=source))
                print(f"  ✓ mileage rate {rate} c/mi from {effective_date}")

        owner = people["HR-1002"]
        has_report = (
            await db.execute(select(ExpenseReport).where(ExpenseReport.employee_id == owner.id))
        ).first()
        if has_report is None:
            start = date(2024, 4, 1)
            report = ExpenseReport(
                employee_id=owner.id,
                reporting_period_start=start,
                reporting_period_end=date(2024, 4, 30),
                currency="USD",
                status=ReportStatus.DRAFT,
                items=[
                    ExpenseItem(position=0, expense_date=start + timedelta(days=2), category=ExpenseCategory.MEAL,
                                amount_cents=1250, reimbursable=True, description="Client lunch", receipts=[]),
                    ExpenseItem(position=1, expense_date=start + timedelta(days=3), category=ExpenseCategory.MILEAGE,
                                amount_cents=2680, reimbursable=True, distance_miles=Decimal("40"),
                                description="Site visit", receipts=[]),
                ],
                approvals=[],
            )
            report.recalculate_totals()
            db.add(report)
            print("  ✓ draft report for April 2024")

        await db.commit()

        print("\nBearer tokens:")
        for hr_id, person in people.items():
            token = create_access_token({"sub": str(person.id), "role": person.role.value}, expires_delta=timedelta(days=7))
            print(f"  {person.full_name:<12} {person.role.value:<9} {token}")

    await close_db()


if __name__ == "__main__":
    asyncio.run(seed())
