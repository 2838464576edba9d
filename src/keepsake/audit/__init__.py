"""Audit subsystem: async JSONL trail of memory lifecycle events."""

from keepsake.audit.schemas import AuditEvent
from keepsake.audit.schemas import AuditEventType
from keepsake.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
