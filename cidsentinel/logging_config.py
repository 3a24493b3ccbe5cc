"""
Logging configuration for CID Sentinel.

Provides structured JSON logging for monitoring cycles, publication and
ledger transitions.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for cycle ID tracking
cycle_id_var: ContextVar[str] = ContextVar('cycle_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line, suitable for log aggregation
    systems like ELK, Loki or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        cycle_id = cycle_id_var.get()
        if cycle_id:
            log_data["cycle_id"] = cycle_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Provides methods for logging cycle verdicts, evidence pack
    lifecycle events and ledger transitions.
    """

    def __init__(self, name: str = "cidsentinel.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "cycle_id": cycle_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def cycle_started(self, cid: str, gateways: int) -> None:
        self._log(
            logging.INFO,
            "CYCLE_STARTED",
            cid=cid,
            gateways=gateways,
            message=f"Probing {cid} across {gateways} gateways"
        )

    def cycle_verdict(
        self,
        cid: str,
        status: str,
        success_count: int,
        total: int,
        avg_latency_ms: Optional[float] = None
    ) -> None:
        """Log the aggregated verdict of a cycle."""
        level = logging.WARNING if status == "BREACH" else logging.INFO
        self._log(
            level,
            "CYCLE_VERDICT",
            cid=cid,
            status=status,
            success_count=success_count,
            total=total,
            avg_latency_ms=avg_latency_ms,
            message=f"{status} ({success_count}/{total} probes ok)"
        )

    def pack_signed(self, cid: str, digest: str, public_key_hint: str) -> None:
        self._log(
            logging.INFO,
            "PACK_SIGNED",
            cid=cid,
            digest=digest,
            public_key=public_key_hint,
            message=f"Evidence pack signed for {cid}"
        )

    def pack_published(self, cid: str, pack_cid: str, attempts: int, size: int) -> None:
        self._log(
            logging.INFO,
            "PACK_PUBLISHED",
            cid=cid,
            pack_cid=pack_cid,
            attempts=attempts,
            size=size,
            message=f"Evidence pack stored as {pack_cid}"
        )

    def publication_failed(self, cid: str, error: str, attempts: int, retryable: bool) -> None:
        self._log(
            logging.ERROR,
            "PUBLICATION_FAILED",
            cid=cid,
            error=error,
            attempts=attempts,
            retryable=retryable,
            message=f"Evidence pack upload failed after {attempts} attempt(s): {error}"
        )

    def stage_failed(self, cid: str, stage: str, error: str) -> None:
        self._log(
            logging.ERROR,
            "STAGE_FAILED",
            cid=cid,
            stage=stage,
            error=error,
            message=f"Stage {stage} failed: {error}"
        )

    def ledger_event(self, event: str, **fields) -> None:
        self._log(
            logging.INFO,
            "LEDGER_EVENT",
            ledger_event=event,
            **fields,
            message=f"Ledger event: {event}"
        )

    def ledger_rejected(self, operation: str, reason: str, **fields) -> None:
        self._log(
            logging.WARNING,
            "LEDGER_REJECTED",
            operation=operation,
            reason=reason,
            **fields,
            message=f"{operation} rejected: {reason}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # stderr keeps stdout free for CLI output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_cycle_id(cycle_id: Optional[str] = None) -> str:
    """
    Set the cycle ID for the current context.

    Args:
        cycle_id: Cycle ID to set, or None to generate one

    Returns:
        The cycle ID that was set
    """
    if cycle_id is None:
        cycle_id = str(uuid.uuid4())
    cycle_id_var.set(cycle_id)
    return cycle_id


def get_cycle_id() -> str:
    """Get the current cycle ID."""
    return cycle_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
