# Core Module: Gateway Audit Trail
#
# Append-only structured log of every ledger event: processed and rejected
# transactions, airdrops, node lifecycle. Each entry carries an event id,
# UTC timestamp, severity and event-specific details, rendered as JSON by
# structlog into a daily file under the audit directory.

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of events recorded in the audit trail."""

    # Ledger
    TX_PROCESSED = "tx.processed"
    TX_REJECTED = "tx.rejected"
    AIRDROP = "ledger.airdrop"

    # Node lifecycle
    NODE_START = "node.start"
    NODE_STOP = "node.stop"

    # Client side
    TX_FAILED = "client.tx.failed"


class EventSeverity(str, Enum):
    """
    Severity levels for audit events.

    - INFO: normal activity (successful transactions)
    - WARNING: a transaction or request was rejected
    - CRITICAL: the node could not serve (store failure, crash)
    """
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for ledger events.

    Features:
    - Structured JSON logging
    - Automatic timestamp and event ID
    - One file per day under ``log_dir``
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_file_handler()

        self.logger = structlog.get_logger("onchain_gateway.audit")

    def _setup_file_handler(self):
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        formatter = logging.Formatter('%(message)s')  # structlog handles formatting
        file_handler.setFormatter(formatter)

        audit_logger = logging.getLogger("onchain_gateway.audit")
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        self._file_handler = file_handler

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger("onchain_gateway.audit").removeHandler(self._file_handler)
        self._file_handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log an audit event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
        }

        if severity == EventSeverity.INFO:
            self.logger.info("gateway_event", **event_data)
        else:
            self.logger.warning("gateway_event", **event_data)

        return event_id


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def configure_audit_logger(log_dir: Optional[Path] = None) -> AuditLogger:
    """Replace the global audit logger with one writing to ``log_dir``."""
    global _audit_logger
    if _audit_logger is not None:
        _audit_logger.close()
    _audit_logger = AuditLogger(log_dir=log_dir)
    return _audit_logger


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
