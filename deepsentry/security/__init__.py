"""Security layer: risk gate, approval ledger and audit report."""

from __future__ import annotations

from deepsentry.security.audit import AuditLog, NullAuditLog, open_audit_log
from deepsentry.security.gate import Decision, SafetyGate, confirm_on_terminal
from deepsentry.security.ledger import ApprovalLedger

__all__ = [
    "ApprovalLedger",
    "AuditLog",
    "Decision",
    "NullAuditLog",
    "SafetyGate",
    "confirm_on_terminal",
    "open_audit_log",
]
