"""
Expense Lifecycle - Routers Package

FastAPI route handlers.

Routers:
- expenses: Draft reports, line items, submit/resubmit, policy preview
- approvals: Manager review queue and decisions
- finance: Finalization, rejection and ledger batches
- audit: Audit trail and hash-chain verification
"""

from app.routers import approvals, audit, expenses, finance

__all__ = ["approvals", "audit", "expenses", "finance"]
