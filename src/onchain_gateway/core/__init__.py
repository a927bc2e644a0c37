# Core Module - Shared Utilities
#
# Core module provides shared functionality across onchain_gateway modules:
# - Audit logging
# - SQLite connection helper

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    configure_audit_logger,
    get_audit_logger,
)
from .db import connect

__all__ = [
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "configure_audit_logger",
    "get_audit_logger",
    "connect",
]
