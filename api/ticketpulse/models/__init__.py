from .base import Base
from .job_execution import JobExecution, JobStatus
from .ticket import Ticket
from .reference import CompanyCache, GroupCache
from .snapshot import GroupResolution, TicketSnapshot, WeeklySnapshot
from .monthly_aggregate import MonthlyTicketAggregate
from .retention_audit_log import RetentionAction, RetentionAuditLog, RetentionTarget
from .system_config import SystemConfig
from .activity_log import ActivityLog
from .audit_log import AuditLog

__all__ = [
    "Base",
    "JobExecution",
    "JobStatus",
    "Ticket",
    "CompanyCache",
    "GroupCache",
    "WeeklySnapshot",
    "GroupResolution",
    "TicketSnapshot",
    "MonthlyTicketAggregate",
    "RetentionAuditLog",
    "RetentionAction",
    "RetentionTarget",
    "SystemConfig",
    "ActivityLog",
    "AuditLog",
]
