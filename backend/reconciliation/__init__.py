"""
Bank Reconciliation Module

Reconciles ledger transactions against imported bank statements:
- Balance calculation for a statement period
- Statement import (JSON rows or CSV)
- Scored match suggestions and one-to-one matching
- Session lifecycle with a completion gate
- HMAC-chained audit trail and alerts
"""

from reconciliation.balance import BalanceSummary, calculate_balances
from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    NoValidEntriesError,
    InvalidSelectionError,
    AlreadyMatchedError,
    AuditSequenceConflictError,
    NotFoundError,
    IncompleteReconciliationError,
    SessionClosedError,
    AuditKeyNotConfiguredError,
)
from reconciliation.statement_import import normalize_statement_rows, parse_statement_csv
from reconciliation.matching_rules.statement_rules import (
    StatementMatchingRules,
    MatchSuggestion,
    statement_rules
)
from reconciliation.alerts import AlertType, ReconciliationAlert, evaluate_alerts
from reconciliation.services.reconciliation_service import ReconciliationService

__all__ = [
    # Balance
    'BalanceSummary',
    'calculate_balances',
    # Errors
    'ReconciliationError',
    'ValidationError',
    'NoValidEntriesError',
    'InvalidSelectionError',
    'AlreadyMatchedError',
    'AuditSequenceConflictError',
    'NotFoundError',
    'IncompleteReconciliationError',
    'SessionClosedError',
    'AuditKeyNotConfiguredError',
    # Ingestion
    'normalize_statement_rows',
    'parse_statement_csv',
    # Matching Rules
    'StatementMatchingRules',
    'MatchSuggestion',
    'statement_rules',
    # Alerts
    'AlertType',
    'ReconciliationAlert',
    'evaluate_alerts',
    # Service
    'ReconciliationService'
]
