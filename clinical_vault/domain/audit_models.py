"""Audit trail models.

``AuditLogEntry`` is write-once. ``old_values``/``new_values`` hold the
*encrypted* payload token (or a redacted placeholder) as stored; decrypted
views are produced by the audit engine on read.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_vault.domain.enums import AccessResult
from clinical_vault.domain.utils import ensure_utc, utc_now

# Operations written by the engine itself rather than on behalf of a patient.
SECURITY_ALERT_OPERATION = "security_alert"
PURGE_OPERATION = "purge_audit_logs"
SYSTEM_USER = "system"

DATA_TYPE_SECURITY = "security"
DATA_TYPE_AUDIT_LOG = "audit_log"
DATA_TYPE_LGPD = "lgpd_compliance"


class RequestContext(BaseModel):
    """Network/client metadata supplied by the outer layer."""

    model_config = ConfigDict(frozen=True)

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None


class AuditLogEntry(BaseModel):
    """Single audit log entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique audit log identifier")
    user_id: str = Field(..., description="Acting user id or 'system'")
    patient_id: Optional[str] = Field(None, description="Subject patient (None for system events)")
    operation: str = Field(..., description="Operation name (read, update, security_alert, ...)")
    data_type: str = Field(..., description="Kind of data touched (patient_data, document, ...)")
    access_result: AccessResult = Field(default=AccessResult.GRANTED)
    timestamp: datetime = Field(default_factory=utc_now)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    justification: Optional[str] = None
    old_values: Optional[Any] = Field(None, description="Encrypted payload token or decrypted view")
    new_values: Optional[Any] = Field(None, description="Encrypted payload token or decrypted view")
    session_id: Optional[str] = None
    request_id: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("operation", "data_type", "user_id")
    @classmethod
    def require_value(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Audit field cannot be empty")
        return v.strip()

    @property
    def is_system_event(self) -> bool:
        return self.patient_id is None or self.user_id == SYSTEM_USER


class AuditLogFilter(BaseModel):
    """Filter, pagination and ordering for audit queries."""

    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    operation: Optional[str] = None
    data_type: Optional[str] = None
    access_result: Optional[AccessResult] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = Field(default=100, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)
    sort_by: str = "timestamp"
    sort_order: str = "DESC"

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.user_id and entry.user_id != self.user_id:
            return False
        if self.patient_id and entry.patient_id != self.patient_id:
            return False
        if self.operation and entry.operation != self.operation:
            return False
        if self.data_type and entry.data_type != self.data_type:
            return False
        if self.access_result and entry.access_result != self.access_result:
            return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True


class PaginationMeta(BaseModel):
    total: int
    limit: Optional[int]
    offset: int
    has_next: bool
    has_previous: bool


class AuditLogsResponse(BaseModel):
    logs: list[AuditLogEntry]
    pagination: PaginationMeta


class PatientAccessCount(BaseModel):
    patient_id: str
    access_count: int


class AuditStatistics(BaseModel):
    total_entries: int
    unique_users: int
    denied_accesses: int
    operation_counts: dict[str, int]
    top_accessed_patients: list[PatientAccessCount]
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SecurityStatistics(BaseModel):
    denied_accesses: int
    security_alerts: int
    top_denied_users: dict[str, int]
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
