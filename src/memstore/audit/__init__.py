"""Audit subsystem: append-only conflict and maintenance records."""

from memstore.audit.schemas import ConflictAuditEntry
from memstore.audit.schemas import MaintenanceRunDetails
from memstore.audit.schemas import MaintenanceRunSummary
from memstore.audit.schemas import MaintenanceStepError
from memstore.audit.schemas import ResolutionKind
from memstore.audit.store import AuditLog

__all__ = [
    "AuditLog",
    "ConflictAuditEntry",
    "MaintenanceRunDetails",
    "MaintenanceRunSummary",
    "MaintenanceStepError",
    "ResolutionKind",
]
