"""
ComplyBook - Bank Reconciliation Database Models

Tables:
- transactions: Ledger transactions (owned by the ledger; only the
  reconciliation fields are written here)
- bank_reconciliations: One reconciliation session per account/period
- bank_statement_entries: Imported bank statement lines, owned by a session
- reconciliation_matches: One-to-one transaction <-> statement entry pairs
- reconciliation_audit_logs: HMAC-chained audit trail of reconciliation actions
- reconciliation_alerts: Raised alerts and their acknowledgement
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer,
    ForeignKey, Index, UniqueConstraint, Enum as SQLEnum, Numeric
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    # Naive UTC: DateTime columns here carry no timezone on any backend
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_type(enum_cls, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=30,
        values_callable=lambda members: [m.value for m in members],
    )


# ==================== ENUMS ====================

class EntryType(str, PyEnum):
    """Direction of money for ledger transactions and statement entries"""
    INCOME = "income"
    EXPENSE = "expense"


class TransactionReconciliationStatus(str, PyEnum):
    """Reconciliation state of a ledger transaction"""
    UNRECONCILED = "unreconciled"
    RECONCILED = "reconciled"
    PENDING = "pending"


class SessionStatus(str, PyEnum):
    """
    Reconciliation session status.

    Only UNRECONCILED and COMPLETED are ever written. RECONCILED is a legacy
    terminal label and is read exactly like COMPLETED.
    """
    UNRECONCILED = "unreconciled"
    RECONCILED = "reconciled"
    COMPLETED = "completed"

    @property
    def is_closed(self) -> bool:
        return self in (SessionStatus.RECONCILED, SessionStatus.COMPLETED)


class ReconciliationAction(str, PyEnum):
    """Actions recorded in the reconciliation audit log"""
    SESSION_CREATED = "session_created"
    STATEMENT_IMPORTED = "statement_imported"
    RECONCILED = "reconciled"
    UNRECONCILED = "unreconciled"
    BULK_RECONCILED = "bulk_reconciled"
    DIFFERENCE_NOTED = "difference_noted"
    SESSION_COMPLETED = "session_completed"


# ==================== DATABASE MODELS ====================

class LedgerTransactionDB(Base):
    """
    Ledger transaction as seen by reconciliation.

    Created and posted by the general ledger. Reconciliation reads the
    dated, typed amount and writes only reconciliation_status,
    reconciled_date and reconciled_by.
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)

    date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(_enum_type(EntryType, 'transaction_type_enum'), nullable=False)

    reconciliation_status = Column(
        _enum_type(TransactionReconciliationStatus, 'reconciliation_status_enum'),
        nullable=False,
        default=TransactionReconciliationStatus.UNRECONCILED,
    )
    reconciled_date = Column(DateTime, nullable=True)
    reconciled_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index('ix_transactions_org_date', 'organization_id', 'date'),
        Index('ix_transactions_org_reconciliation', 'organization_id', 'reconciliation_status'),
    )


class BankReconciliationDB(Base):
    """
    A reconciliation session for one account and statement period.

    book_balance and difference are snapshots taken at creation; the live
    book balance is always recomputed from the ledger.
    """
    __tablename__ = "bank_reconciliations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    account_name = Column(String(255), nullable=False)

    statement_start_date = Column(Date, nullable=False)
    statement_end_date = Column(Date, nullable=False)

    beginning_balance = Column(Numeric(15, 2), nullable=False)
    ending_balance = Column(Numeric(15, 2), nullable=False)
    statement_balance = Column(Numeric(15, 2), nullable=False)
    book_balance = Column(Numeric(15, 2), nullable=False)
    difference = Column(Numeric(15, 2), nullable=False)

    status = Column(
        _enum_type(SessionStatus, 'bank_reconciliation_status_enum'),
        nullable=False,
        default=SessionStatus.UNRECONCILED,
        index=True,
    )
    completed_date = Column(DateTime, nullable=True)
    completed_by = Column(String(100), nullable=True)

    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=utc_now, index=True)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    statement_entries = relationship(
        "BankStatementEntryDB",
        back_populates="reconciliation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    matches = relationship(
        "ReconciliationMatchDB",
        back_populates="reconciliation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class BankStatementEntryDB(Base):
    """One imported bank statement line. amount is always the magnitude."""
    __tablename__ = "bank_statement_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    reconciliation_id = Column(
        String(36),
        ForeignKey("bank_reconciliations.id", ondelete="CASCADE"),
        nullable=False,
    )

    date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(_enum_type(EntryType, 'transaction_type_enum'), nullable=False)
    is_matched = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utc_now)

    reconciliation = relationship("BankReconciliationDB", back_populates="statement_entries")

    __table_args__ = (
        Index('ix_bank_statement_entries_recon', 'reconciliation_id'),
        Index('ix_bank_statement_entries_recon_matched', 'reconciliation_id', 'is_matched'),
    )


class ReconciliationMatchDB(Base):
    """
    One-to-one pairing of a ledger transaction and a statement entry.

    The unique constraints enforce that, within a session, a transaction and
    a statement entry each appear in at most one match.
    """
    __tablename__ = "reconciliation_matches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    reconciliation_id = Column(
        String(36),
        ForeignKey("bank_reconciliations.id", ondelete="CASCADE"),
        nullable=False,
    )
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    statement_entry_id = Column(
        String(36),
        ForeignKey("bank_statement_entries.id", ondelete="CASCADE"),
        nullable=False,
    )

    similarity_score = Column(Integer, nullable=True)  # set when applied from a suggestion
    previous_transaction_status = Column(String(30), nullable=False)

    matched_by = Column(String(100), nullable=True)
    matched_at = Column(DateTime, default=utc_now)

    reconciliation = relationship("BankReconciliationDB", back_populates="matches")
    transaction = relationship("LedgerTransactionDB", lazy="selectin")
    statement_entry = relationship("BankStatementEntryDB", lazy="selectin")

    __table_args__ = (
        UniqueConstraint('reconciliation_id', 'transaction_id', name='uq_reconciliation_matches_transaction'),
        UniqueConstraint('reconciliation_id', 'statement_entry_id', name='uq_reconciliation_matches_statement_entry'),
        Index('ix_reconciliation_matches_recon_matched_at', 'reconciliation_id', 'matched_at'),
    )


class ReconciliationAuditLogDB(Base):
    """
    Append-only audit trail of reconciliation actions.

    Entries form a per-organization chain: previous_hash is the chain_hash
    of the organization's preceding entry (ordered by sequence).
    """
    __tablename__ = "reconciliation_audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    reconciliation_id = Column(
        String(36),
        ForeignKey("bank_reconciliations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    transaction_id = Column(String(36), nullable=True)
    statement_entry_id = Column(String(36), nullable=True)

    action = Column(_enum_type(ReconciliationAction, 'reconciliation_action_enum'), nullable=False)
    previous_status = Column(String(50), nullable=True)
    new_status = Column(String(50), nullable=True)
    previous_balance = Column(Numeric(15, 2), nullable=True)
    new_balance = Column(Numeric(15, 2), nullable=True)
    difference = Column(Numeric(15, 2), nullable=True)
    notes = Column(Text, nullable=True)

    performed_by = Column(String(100), nullable=False)
    performed_at = Column(DateTime, nullable=False, default=utc_now)

    previous_hash = Column(String(64), nullable=True)
    chain_hash = Column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint('organization_id', 'sequence', name='uq_recon_audit_org_sequence'),
        Index('ix_recon_audit_performed_at', 'performed_at'),
    )


class ReconciliationAlertDB(Base):
    """
    A raised reconciliation alert, kept so it can be acknowledged.

    alert_key identifies the condition within a session (type plus the
    transaction for per-transaction alerts); recording the same condition
    again refreshes the row instead of adding one. resolved_at is set while
    the condition no longer holds.
    """
    __tablename__ = "reconciliation_alerts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    reconciliation_id = Column(
        String(36),
        ForeignKey("bank_reconciliations.id", ondelete="CASCADE"),
        nullable=False,
    )
    transaction_id = Column(String(36), nullable=True)

    alert_key = Column(String(100), nullable=False)
    alert_type = Column(String(30), nullable=False, index=True)
    description = Column(Text, nullable=False)
    difference_amount = Column(Numeric(15, 2), nullable=True)
    days_since_creation = Column(Integer, nullable=True)

    raised_at = Column(DateTime, nullable=False, default=utc_now)
    resolved_at = Column(DateTime, nullable=True)

    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint('reconciliation_id', 'alert_key', name='uq_reconciliation_alerts_key'),
        Index('ix_reconciliation_alerts_org_acknowledged', 'organization_id', 'acknowledged'),
    )


__all__ = [
    'EntryType',
    'TransactionReconciliationStatus',
    'SessionStatus',
    'ReconciliationAction',
    'LedgerTransactionDB',
    'BankReconciliationDB',
    'BankStatementEntryDB',
    'ReconciliationMatchDB',
    'ReconciliationAuditLogDB',
    'ReconciliationAlertDB',
    'generate_uuid',
    'utc_now',
]
