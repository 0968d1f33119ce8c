"""
Structured audit logging for ledger mutations.

Every banking, borrowing, consumption and pooling mutation is written as a
single JSON line so that an operator can reconstruct who changed which
balance, in what order, from the log stream alone.

Usage:
    from src.compliance.audit import audit_logger, operation_scope

    with operation_scope("bank_surplus"):
        audit_logger.info("Surplus banked", ship_id="IMO9", amount=12.5)
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

# Context variable for the current engine operation (thread-safe)
operation_id_ctx: ContextVar[Optional[str]] = ContextVar("operation_id", default=None)
operation_name_ctx: ContextVar[Optional[str]] = ContextVar("operation_name", default=None)


def get_operation_id() -> Optional[str]:
    """Get the current operation ID from context."""
    return operation_id_ctx.get()


@contextmanager
def operation_scope(name: str, operation_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag all audit lines emitted inside the block with one operation ID.

    Nested scopes keep the outer ID so a pool formation and the resolutions
    it triggers share a correlation key.
    """
    current = operation_id_ctx.get()
    op_id = current or operation_id or str(uuid.uuid4())
    id_token = operation_id_ctx.set(op_id)
    name_token = operation_name_ctx.set(operation_name_ctx.get() or name)
    try:
        yield op_id
    finally:
        operation_name_ctx.reset(name_token)
        operation_id_ctx.reset(id_token)


class StructuredLogger:
    """
    JSON audit logger.

    Outputs one JSON object per event with consistent fields for log
    aggregation systems.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: str, message: str, **kwargs):
        """Internal log method with structured output."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "message": message,
            "service": "fueleu-ledger",
            "operation": operation_name_ctx.get(),
            "operation_id": get_operation_id(),
            **kwargs
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        getattr(self.logger, level.lower())(json.dumps(log_entry, default=str))

    def info(self, message: str, **kwargs):
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log("ERROR", message, **kwargs)


# Global audit logger instance
audit_logger = StructuredLogger("fueleu.audit")
