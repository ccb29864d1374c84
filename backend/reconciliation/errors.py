"""
Reconciliation error taxonomy.

Every failure in the reconciliation core is a normal, recoverable outcome
reported to the caller. Nothing here is retried automatically.

- Validation: rejected before any state change
- Conflict: the one-to-one match invariant would be violated
- State: the session lifecycle forbids the transition
- Not found: a referenced session/transaction/entry does not exist or does
  not belong to the session
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation errors"""
    code = "reconciliation_error"
    category = "validation"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ReconciliationError):
    """Bad or missing session fields, non-numeric balances"""
    code = "validation_error"


class NoValidEntriesError(ValidationError):
    """Statement import where no row survived normalization"""
    code = "no_valid_entries"

    def __init__(self, skipped_count: int = 0):
        super().__init__(
            "No valid entries found in statement",
            {"skipped_count": skipped_count},
        )


class InvalidSelectionError(ValidationError):
    """Match request that does not select exactly one of each side"""
    code = "invalid_selection"

    def __init__(self, transaction_count: int, statement_entry_count: int):
        super().__init__(
            "Please select exactly one transaction and one statement entry",
            {
                "transaction_count": transaction_count,
                "statement_entry_count": statement_entry_count,
            },
        )


class AlreadyMatchedError(ReconciliationError):
    """Transaction or statement entry already has a match in the session"""
    code = "already_matched"
    category = "conflict"


class AuditSequenceConflictError(ReconciliationError):
    """Another change claimed the same audit sequence; safe to retry"""
    code = "concurrent_update"
    category = "conflict"

    def __init__(self, organization_id: Optional[str] = None):
        super().__init__(
            "Another reconciliation change was recorded at the same time; retry the request",
            {"organization_id": organization_id} if organization_id else None,
        )


class NotFoundError(ReconciliationError):
    """Referenced entity missing or outside the session/period"""
    code = "not_found"
    category = "not_found"

    def __init__(self, entity: str, entity_id: Optional[str], reason: Optional[str] = None):
        message = f"{entity} {entity_id} not found"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"entity": entity, "id": entity_id})


class IncompleteReconciliationError(ReconciliationError):
    """Completion attempted while unmatched items remain"""
    code = "incomplete_reconciliation"
    category = "state"

    def __init__(self, unmatched_transactions: int, unmatched_statement_entries: int):
        super().__init__(
            "Reconciliation cannot be completed while unmatched items remain",
            {
                "unmatched_transactions": unmatched_transactions,
                "unmatched_statement_entries": unmatched_statement_entries,
            },
        )


class SessionClosedError(ReconciliationError):
    """Mutation attempted on a completed session"""
    code = "session_closed"
    category = "state"

    def __init__(self, session_id: str, status: str):
        super().__init__(
            f"Reconciliation {session_id} is {status} and can no longer be changed",
            {"reconciliation_id": session_id, "status": status},
        )


class AuditKeyNotConfiguredError(ReconciliationError):
    """AUDIT_HMAC_KEY is missing, so audit entries cannot be chained"""
    code = "audit_key_not_configured"
    category = "configuration"
