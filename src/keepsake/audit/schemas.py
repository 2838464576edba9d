"""Audit event types and data models."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Categories of auditable events."""

    MEMORY_CREATED = "MEMORY_CREATED"
    MEMORY_DELETED = "MEMORY_DELETED"
    MEMORY_MERGED = "MEMORY_MERGED"
    HOUSEKEEPING_RUN = "HOUSEKEEPING_RUN"
    INDEX_REBUILT = "INDEX_REBUILT"


class AuditEvent(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType = Field(
        description="Category of the audited action.",
    )
    character_id: str | None = Field(
        default=None,
        description="Character whose memories were touched.",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary event-specific data.",
    )
