"""
Expense Lifecycle - Audit Schemas

Pydantic schemas for audit trail and chain verification responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AuditEntryResponse(BaseModel):
    """One entry of an entity's audit chain."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    sequence: int
    event_type: str
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    performed_by: Optional[UUID] = None
    performed_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    previous_hash: str
    signature_hash: str


class AuditTrailResponse(BaseModel):
    entity_type: str
    entity_id: str
    entries: List[AuditEntryResponse] = Field(default_factory=list)


class BrokenEntry(BaseModel):
    entry_id: str
    sequence: int
    reasons: List[str]


class ChainVerificationResponse(BaseModel):
    """Result of replaying an entity's hash chain."""
    entity_type: str
    entity_id: str
    is_valid: bool
    entries_checked: int
    broken_entries: List[BrokenEntry] = Field(default_factory=list)
