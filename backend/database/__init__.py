from .connection import get_db, engine, AsyncSessionLocal, init_db, Base

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    LedgerTransactionDB, BankReconciliationDB, BankStatementEntryDB,
    ReconciliationMatchDB, ReconciliationAuditLogDB, ReconciliationAlertDB,
    EntryType, TransactionReconciliationStatus, SessionStatus, ReconciliationAction,
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    # Reconciliation models
    'LedgerTransactionDB', 'BankReconciliationDB', 'BankStatementEntryDB',
    'ReconciliationMatchDB', 'ReconciliationAuditLogDB', 'ReconciliationAlertDB',
    'EntryType', 'TransactionReconciliationStatus', 'SessionStatus', 'ReconciliationAction',
]
