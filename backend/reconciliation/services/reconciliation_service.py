"""
Reconciliation Service

Core business logic for bank reconciliation sessions:
- Session lifecycle (create, resume, complete)
- Statement import
- Manual and suggested matching, unmatching
- Bulk reconcile of a statement period
- Summary, report and audit trail
- Alerts: evaluation, recording, acknowledgement, stale count

Every mutating operation runs in one database transaction with the session
row locked, and writes a chained audit entry in that same transaction.
Alert bookkeeping (recording, acknowledgement) is not audited.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    BankReconciliationDB,
    BankStatementEntryDB,
    LedgerTransactionDB,
    ReconciliationAction,
    ReconciliationAlertDB,
    ReconciliationAuditLogDB,
    ReconciliationMatchDB,
    SessionStatus,
    TransactionReconciliationStatus,
    utc_now,
)
from reconciliation.alerts import ReconciliationAlert, evaluate_alerts
from reconciliation.balance import MAX_BALANCE, ZERO, BalanceSummary, calculate_balances, to_money
from reconciliation.errors import (
    AlreadyMatchedError,
    AuditSequenceConflictError,
    IncompleteReconciliationError,
    InvalidSelectionError,
    NotFoundError,
    SessionClosedError,
    ValidationError,
)
from reconciliation.matching_rules.statement_rules import MatchSuggestion, StatementMatchingRules
from reconciliation.services.audit_chain import (
    AuditChainVerification,
    append_audit_entry,
    verify_organization_chain,
)
from reconciliation.statement_import import normalize_statement_rows, parse_statement_date

logger = logging.getLogger(__name__)


# ==================== RESULT TYPES ====================

@dataclass
class UnmatchedItems:
    """Unmatched sets of a session."""
    transactions: List[LedgerTransactionDB] = field(default_factory=list)
    statement_entries: List[BankStatementEntryDB] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.transactions and not self.statement_entries


@dataclass
class StatementImportOutcome:
    reconciliation_id: str
    entries: List[BankStatementEntryDB]
    skipped_count: int

    @property
    def imported_count(self) -> int:
        return len(self.entries)


@dataclass
class ReconcileAllResult:
    reconciliation_id: str
    reconciled_count: int
    balance_difference: Decimal
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reconciliation_id": self.reconciliation_id,
            "reconciled_count": self.reconciled_count,
            "balance_difference": str(self.balance_difference),
            "message": self.message,
        }


@dataclass
class ReconciliationSummary:
    """Read-only session summary consumed by reporting/export."""
    reconciliation_id: str
    status: str
    balances: BalanceSummary
    matched_count: int
    unmatched_transaction_count: int
    unmatched_statement_entry_count: int
    unmatched_transaction_total: Decimal
    unmatched_statement_total: Decimal
    period_reconciled_count: int
    period_unreconciled_count: int

    @property
    def unmatched_count(self) -> int:
        return self.unmatched_transaction_count + self.unmatched_statement_entry_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reconciliation_id": self.reconciliation_id,
            "status": self.status,
            "beginning_balance": str(self.balances.beginning_balance),
            "calculated_book_balance": str(self.balances.calculated_book_balance),
            "statement_ending_balance": str(self.balances.ending_balance),
            "difference": str(self.balances.balance_difference),
            "period_income": str(self.balances.period_income),
            "period_expenses": str(self.balances.period_expenses),
            "is_balanced": self.balances.is_balanced,
            "matched_count": self.matched_count,
            "unmatched_count": self.unmatched_count,
            "unmatched_transaction_count": self.unmatched_transaction_count,
            "unmatched_statement_entry_count": self.unmatched_statement_entry_count,
            "unmatched_transaction_total": str(self.unmatched_transaction_total),
            "unmatched_statement_total": str(self.unmatched_statement_total),
            "period_reconciled_count": self.period_reconciled_count,
            "period_unreconciled_count": self.period_unreconciled_count,
        }


# ==================== AUDIT EVENTS ====================

class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    SESSION_CREATED = "reconciliation.session_created"
    STATEMENT_IMPORTED = "reconciliation.statement_imported"
    MATCH_CREATED = "reconciliation.match_created"
    MATCH_REMOVED = "reconciliation.match_removed"
    BULK_RECONCILED = "reconciliation.bulk_reconciled"
    SESSION_COMPLETED = "reconciliation.session_completed"
    COMPLETION_BLOCKED = "reconciliation.completion_blocked"
    ALERTS_RECORDED = "reconciliation.alerts_recorded"
    ALERT_ACKNOWLEDGED = "reconciliation.alert_acknowledged"


def log_reconciliation_event(
    event_type: str,
    organization_id: str,
    details: Dict[str, Any],
    reconciliation_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for operational tracing."""
    log_entry = {
        "event": event_type,
        "organization_id": organization_id,
        "reconciliation_id": reconciliation_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def _status_value(value: Any) -> str:
    return getattr(value, "value", value)


def _require_text(value: Any, field_name: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{field_name} is required", {"field": field_name})
    return text


def _require_date(value: Any, field_name: str) -> date:
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required", {"field": field_name})
    parsed = parse_statement_date(value)
    if parsed is None:
        raise ValidationError(
            f"{field_name} must be a valid date",
            {"field": field_name, "received_value": str(value)[:100]},
        )
    return parsed


def _abs_total(items: Iterable[Any]) -> Decimal:
    total = ZERO
    for item in items:
        total += abs(to_money(item.amount))
    return total


# PostgreSQL reports the constraint name, SQLite the constrained columns
_MATCH_CONSTRAINT_MARKERS = ("uq_reconciliation_matches_", "reconciliation_matches.reconciliation_id")
_AUDIT_SEQUENCE_MARKERS = ("uq_recon_audit_org_sequence", "reconciliation_audit_logs.organization_id")


def _violates(error: IntegrityError, markers: Sequence[str]) -> bool:
    text = str(error.orig)
    return any(marker in text for marker in markers)


def _raise_for_audit_conflict(error: IntegrityError, organization_id: Optional[str] = None) -> None:
    if _violates(error, _AUDIT_SEQUENCE_MARKERS):
        logger.warning(f"Audit sequence collision for organization {organization_id}: {error.orig}")
        raise AuditSequenceConflictError(organization_id) from error


class ReconciliationService:
    """
    Service for reconciling ledger transactions against bank statements.

    One instance per request; it borrows the request's AsyncSession.
    """

    def __init__(
        self,
        db: AsyncSession,
        rules: Optional[StatementMatchingRules] = None,
    ):
        settings = get_settings()
        self.db = db
        self.rules = rules or StatementMatchingRules(threshold=settings.SUGGESTION_THRESHOLD)
        self.large_difference_threshold = settings.LARGE_DIFFERENCE_THRESHOLD
        self.stale_after_days = settings.STALE_UNRECONCILED_DAYS

    # ==================== SESSIONS ====================

    async def create_session(
        self,
        organization_id: str,
        account_name: str,
        statement_start_date: Any,
        statement_end_date: Any,
        beginning_balance: Any,
        ending_balance: Any,
        statement_balance: Any,
        created_by: str,
        notes: Optional[str] = None,
    ) -> BankReconciliationDB:
        """
        Open a reconciliation session for an account and statement period.

        Raises:
            ValidationError: missing field, non-numeric balance, or a start
                date after the end date
        """
        organization_id = _require_text(organization_id, "organization_id")
        account_name = _require_text(account_name, "account_name")
        start = _require_date(statement_start_date, "statement_start_date")
        end = _require_date(statement_end_date, "statement_end_date")
        if start > end:
            raise ValidationError(
                "statement_start_date must not be after statement_end_date",
                {"statement_start_date": start.isoformat(), "statement_end_date": end.isoformat()},
            )

        beginning = to_money(beginning_balance, "beginning_balance", limit=MAX_BALANCE)
        ending = to_money(ending_balance, "ending_balance", limit=MAX_BALANCE)
        statement = to_money(statement_balance, "statement_balance", limit=MAX_BALANCE)
        difference = abs(statement - beginning)

        session = BankReconciliationDB(
            organization_id=organization_id,
            account_name=account_name,
            statement_start_date=start,
            statement_end_date=end,
            beginning_balance=beginning,
            ending_balance=ending,
            statement_balance=statement,
            book_balance=beginning,
            difference=difference,
            status=SessionStatus.UNRECONCILED,
            notes=notes,
            created_by=created_by,
        )

        try:
            self.db.add(session)
            await self.db.flush()
            await append_audit_entry(
                self.db,
                organization_id,
                ReconciliationAction.SESSION_CREATED,
                created_by,
                reconciliation_id=session.id,
                new_status=SessionStatus.UNRECONCILED,
                new_balance=statement,
                difference=difference,
                notes=f"Reconciliation opened for {account_name}",
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            _raise_for_audit_conflict(e, organization_id)
            raise
        except Exception as e:
            logger.error(f"Failed to create reconciliation session: {e}")
            await self.db.rollback()
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.SESSION_CREATED,
            organization_id,
            {
                "account_name": account_name,
                "statement_start_date": start.isoformat(),
                "statement_end_date": end.isoformat(),
            },
            reconciliation_id=session.id,
            actor=created_by,
        )
        return session

    async def get_session(self, session_id: str) -> BankReconciliationDB:
        session = await self.db.get(BankReconciliationDB, session_id)
        if session is None:
            raise NotFoundError("Reconciliation", session_id)
        return session

    async def list_sessions(self, organization_id: str) -> List[BankReconciliationDB]:
        """All sessions of an organization, newest first."""
        result = await self.db.execute(
            select(BankReconciliationDB)
            .where(BankReconciliationDB.organization_id == organization_id)
            .order_by(BankReconciliationDB.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_last_session(self, organization_id: str) -> Optional[BankReconciliationDB]:
        """Most recent session of any status, or None."""
        result = await self.db.execute(
            select(BankReconciliationDB)
            .where(BankReconciliationDB.organization_id == organization_id)
            .order_by(BankReconciliationDB.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def resume_session(self, organization_id: str) -> BankReconciliationDB:
        """
        Most recent open session. Pure load, no status change.

        Raises:
            NotFoundError: the organization has no open session
        """
        result = await self.db.execute(
            select(BankReconciliationDB)
            .where(
                BankReconciliationDB.organization_id == organization_id,
                BankReconciliationDB.status == SessionStatus.UNRECONCILED,
            )
            .order_by(BankReconciliationDB.created_at.desc())
            .limit(1)
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundError(
                "Open reconciliation for organization",
                organization_id,
            )
        return session

    async def complete(self, session_id: str, user_id: str) -> BankReconciliationDB:
        """
        Close the session. Irreversible.

        Raises:
            IncompleteReconciliationError: unmatched transactions or
                statement entries remain; the session is unchanged
            SessionClosedError: the session is already closed
        """
        try:
            session = await self._lock_session(session_id)
            unmatched = await self._unmatched_for(session)

            if not unmatched.is_empty:
                log_reconciliation_event(
                    ReconciliationAuditEvent.COMPLETION_BLOCKED,
                    session.organization_id,
                    {
                        "unmatched_transactions": len(unmatched.transactions),
                        "unmatched_statement_entries": len(unmatched.statement_entries),
                    },
                    reconciliation_id=session_id,
                    actor=user_id,
                )
                raise IncompleteReconciliationError(
                    unmatched_transactions=len(unmatched.transactions),
                    unmatched_statement_entries=len(unmatched.statement_entries),
                )

            balances = await self._balances_for(session)
            previous_status = session.status
            now = utc_now()

            session.status = SessionStatus.COMPLETED
            session.completed_date = now
            session.completed_by = user_id
            session.updated_at = now

            await append_audit_entry(
                self.db,
                session.organization_id,
                ReconciliationAction.SESSION_COMPLETED,
                user_id,
                reconciliation_id=session.id,
                previous_status=previous_status,
                new_status=SessionStatus.COMPLETED,
                previous_balance=balances.beginning_balance,
                new_balance=balances.calculated_book_balance,
                difference=balances.balance_difference,
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            _raise_for_audit_conflict(e)
            raise
        except Exception:
            await self.db.rollback()
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.SESSION_COMPLETED,
            session.organization_id,
            {"difference": str(balances.balance_difference)},
            reconciliation_id=session_id,
            actor=user_id,
        )
        return session

    # ==================== STATEMENT IMPORT ====================

    async def import_statement(
        self,
        session_id: str,
        rows: Sequence[Mapping[str, Any]],
        user_id: str = "system",
    ) -> StatementImportOutcome:
        """
        Import raw statement rows into a session.

        Rows that cannot be normalized are skipped and counted. All
        surviving entries are persisted in one transaction.

        Raises:
            NoValidEntriesError: no row survived; nothing is persisted
            SessionClosedError: the session is closed
        """
        normalized = normalize_statement_rows(rows)

        try:
            session = await self._lock_session(session_id)

            entries = [
                BankStatementEntryDB(
                    reconciliation_id=session.id,
                    date=item.date,
                    description=item.description,
                    amount=item.amount,
                    type=item.type,
                    is_matched=False,
                )
                for item in normalized.entries
            ]
            self.db.add_all(entries)
            await self.db.flush()

            await append_audit_entry(
                self.db,
                session.organization_id,
                ReconciliationAction.STATEMENT_IMPORTED,
                user_id,
                reconciliation_id=session.id,
                notes=f"Imported {len(entries)} entries, skipped {normalized.skipped_count} rows",
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            _raise_for_audit_conflict(e)
            raise
        except Exception:
            await self.db.rollback()
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.STATEMENT_IMPORTED,
            session.organization_id,
            {"imported": len(entries), "skipped": normalized.skipped_count},
            reconciliation_id=session_id,
            actor=user_id,
        )
        return StatementImportOutcome(
            reconciliation_id=session_id,
            entries=entries,
            skipped_count=normalized.skipped_count,
        )

    async def list_statement_entries(self, session_id: str) -> List[BankStatementEntryDB]:
        session = await self.get_session(session_id)
        return await self._entries_for(session)

    async def list_period_transactions(self, session_id: str) -> List[LedgerTransactionDB]:
        """Ledger transactions dated within the session's statement period."""
        session = await self.get_session(session_id)
        return await self._period_transactions(session)

    async def list_unmatched(self, session_id: str) -> UnmatchedItems:
        """
        Unmatched sets of a session:
        - period transactions not reconciled and without a match here
        - statement entries not matched
        """
        session = await self.get_session(session_id)
        return await self._unmatched_for(session)

    # ==================== MATCHING ====================

    async def suggest_matches(self, session_id: str) -> List[MatchSuggestion]:
        """Scored one-to-one suggestions from the current unmatched sets."""
        unmatched = await self.list_unmatched(session_id)
        return self.rules.suggest(unmatched.transactions, unmatched.statement_entries)

    async def match(
        self,
        session_id: str,
        transaction_id: str,
        statement_entry_id: str,
        user_id: str,
        similarity_score: Optional[int] = None,
    ) -> ReconciliationMatchDB:
        """
        Pair one transaction with one statement entry.

        Creates the match, marks the transaction reconciled and the entry
        matched, and records the audit entry, all in one commit.

        Raises:
            NotFoundError: session missing, transaction outside the
                organization/period, or entry from another session
            SessionClosedError: the session is closed
            AlreadyMatchedError: either side already matched in this session
        """
        try:
            session = await self._lock_session(session_id)
            txn = await self._get_period_transaction(session, transaction_id)
            entry = await self._get_session_entry(session, statement_entry_id)

            existing = await self.db.execute(
                select(ReconciliationMatchDB.id).where(
                    ReconciliationMatchDB.reconciliation_id == session.id,
                    or_(
                        ReconciliationMatchDB.transaction_id == txn.id,
                        ReconciliationMatchDB.statement_entry_id == entry.id,
                    ),
                )
            )
            if existing.first() is not None:
                raise AlreadyMatchedError(
                    "Transaction or statement entry is already matched in this reconciliation",
                    {"transaction_id": txn.id, "statement_entry_id": entry.id},
                )

            previous_status = _status_value(txn.reconciliation_status)
            now = utc_now()

            match = ReconciliationMatchDB(
                reconciliation_id=session.id,
                transaction_id=txn.id,
                statement_entry_id=entry.id,
                similarity_score=similarity_score,
                previous_transaction_status=previous_status,
                matched_by=user_id,
                matched_at=now,
            )
            match.transaction = txn
            match.statement_entry = entry
            self.db.add(match)

            txn.reconciliation_status = TransactionReconciliationStatus.RECONCILED
            txn.reconciled_date = now
            txn.reconciled_by = user_id
            entry.is_matched = True

            await append_audit_entry(
                self.db,
                session.organization_id,
                ReconciliationAction.RECONCILED,
                user_id,
                reconciliation_id=session.id,
                transaction_id=txn.id,
                statement_entry_id=entry.id,
                previous_status=previous_status,
                new_status=TransactionReconciliationStatus.RECONCILED,
                notes=f"Similarity score {similarity_score}" if similarity_score is not None else None,
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if _violates(e, _MATCH_CONSTRAINT_MARKERS):
                logger.warning(f"Match rejected by unique constraint: {e.orig}")
                raise AlreadyMatchedError(
                    "Transaction or statement entry is already matched in this reconciliation",
                    {"transaction_id": transaction_id, "statement_entry_id": statement_entry_id},
                ) from e
            _raise_for_audit_conflict(e)
            raise
        except Exception:
            await self.db.rollback()
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_CREATED,
            session.organization_id,
            {
                "match_id": match.id,
                "transaction_id": txn.id,
                "statement_entry_id": entry.id,
                "similarity_score": similarity_score,
            },
            reconciliation_id=session_id,
            actor=user_id,
        )
        return match

    async def match_selection(
        self,
        session_id: str,
        transaction_ids: Sequence[str],
        statement_entry_ids: Sequence[str],
        user_id: str,
    ) -> ReconciliationMatchDB:
        """
        Match a manual selection.

        Raises:
            InvalidSelectionError: not exactly one transaction and one entry
        """
        if len(transaction_ids) != 1 or len(statement_entry_ids) != 1:
            raise InvalidSelectionError(len(transaction_ids), len(statement_entry_ids))
        return await self.match(session_id, transaction_ids[0], statement_entry_ids[0], user_id)

    async def apply_suggestion(
        self,
        session_id: str,
        transaction_id: str,
        statement_entry_id: str,
        user_id: str,
    ) -> ReconciliationMatchDB:
        """Re-score a suggested pair and match it, keeping the score."""
        session = await self.get_session(session_id)
        txn = await self._get_period_transaction(session, transaction_id)
        entry = await self._get_session_entry(session, statement_entry_id)
        similarity, _ = self.rules.score(txn, entry)
        return await self.match(session_id, transaction_id, statement_entry_id, user_id, similarity_score=similarity)

    async def list_matches(self, session_id: str) -> List[ReconciliationMatchDB]:
        session = await self.get_session(session_id)
        return await self._matches_for(session)

    async def unmatch(self, match_id: str, user_id: str) -> None:
        """
        Remove a match, restoring the transaction's pre-match status and
        clearing the entry's matched flag.

        A bulk reconcile of the session after the match already covers the
        transaction, so it stays reconciled in that case.

        Raises:
            NotFoundError: unknown match
            SessionClosedError: the owning session is closed
        """
        try:
            result = await self.db.execute(
                select(ReconciliationMatchDB).where(ReconciliationMatchDB.id == match_id)
            )
            match = result.scalar_one_or_none()
            if match is None:
                raise NotFoundError("Match", match_id)

            session = await self._lock_session(match.reconciliation_id)
            txn = match.transaction
            entry = match.statement_entry

            restored = TransactionReconciliationStatus(match.previous_transaction_status)
            if (
                restored != TransactionReconciliationStatus.RECONCILED
                and await self._bulk_reconciled_since(session, match.matched_at)
            ):
                restored = TransactionReconciliationStatus.RECONCILED
            txn.reconciliation_status = restored
            if restored != TransactionReconciliationStatus.RECONCILED:
                txn.reconciled_date = None
                txn.reconciled_by = None
            entry.is_matched = False

            await self.db.delete(match)

            await append_audit_entry(
                self.db,
                session.organization_id,
                ReconciliationAction.UNRECONCILED,
                user_id,
                reconciliation_id=session.id,
                transaction_id=txn.id,
                statement_entry_id=entry.id,
                previous_status=TransactionReconciliationStatus.RECONCILED,
                new_status=restored,
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            _raise_for_audit_conflict(e)
            raise
        except Exception:
            await self.db.rollback()
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_REMOVED,
            session.organization_id,
            {"match_id": match_id, "transaction_id": txn.id, "statement_entry_id": entry.id},
            reconciliation_id=session.id,
            actor=user_id,
        )

    async def reconcile_all(self, session_id: str, user_id: str) -> ReconcileAllResult:
        """
        Mark every period transaction not yet reconciled as reconciled.

        Creates no match rows and does not refuse a non-zero difference;
        the difference is returned and recorded instead.

        Raises:
            SessionClosedError: the session is closed
        """
        try:
            session = await self._lock_session(session_id)
            transactions = await self._period_transactions(session)
            now = utc_now()

            reconciled_count = 0
            for txn in transactions:
                if txn.reconciliation_status != TransactionReconciliationStatus.RECONCILED:
                    txn.reconciliation_status = TransactionReconciliationStatus.RECONCILED
                    txn.reconciled_date = now
                    txn.reconciled_by = user_id
                    reconciled_count += 1

            balances = calculate_balances(session.beginning_balance, transactions, session.ending_balance)
            session.updated_at = now

            await append_audit_entry(
                self.db,
                session.organization_id,
                ReconciliationAction.BULK_RECONCILED,
                user_id,
                reconciliation_id=session.id,
                new_status=TransactionReconciliationStatus.RECONCILED,
                new_balance=balances.calculated_book_balance,
                difference=balances.balance_difference,
                notes=f"Reconciled {reconciled_count} transactions",
            )
            if balances.balance_difference != ZERO:
                await append_audit_entry(
                    self.db,
                    session.organization_id,
                    ReconciliationAction.DIFFERENCE_NOTED,
                    user_id,
                    reconciliation_id=session.id,
                    previous_balance=balances.ending_balance,
                    new_balance=balances.calculated_book_balance,
                    difference=balances.balance_difference,
                    notes="Bulk reconcile with a non-zero balance difference",
                )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            _raise_for_audit_conflict(e)
            raise
        except Exception:
            await self.db.rollback()
            raise

        if balances.balance_difference == ZERO:
            message = f"{reconciled_count} transactions reconciled"
        else:
            message = (
                f"{reconciled_count} transactions reconciled with a difference of "
                f"{balances.balance_difference}"
            )

        log_reconciliation_event(
            ReconciliationAuditEvent.BULK_RECONCILED,
            session.organization_id,
            {"reconciled_count": reconciled_count, "difference": str(balances.balance_difference)},
            reconciliation_id=session_id,
            actor=user_id,
        )
        return ReconcileAllResult(
            reconciliation_id=session_id,
            reconciled_count=reconciled_count,
            balance_difference=balances.balance_difference,
            message=message,
        )

    # ==================== REPORTING ====================

    async def get_summary(self, session_id: str) -> ReconciliationSummary:
        session = await self.get_session(session_id)
        return await self._summary_for(session)

    async def get_report(self, session_id: str) -> Dict[str, Any]:
        """
        Everything an export renderer needs: session fields, summary,
        resolved match pairs and unmatched lists. No formatting.
        """
        session = await self.get_session(session_id)
        summary = await self._summary_for(session)
        matches = await self._matches_for(session)
        unmatched = await self._unmatched_for(session)

        return {
            "session": session_to_dict(session),
            "summary": summary.to_dict(),
            "matches": [match_to_dict(m) for m in matches],
            "unmatched_transactions": [transaction_to_dict(t) for t in unmatched.transactions],
            "unmatched_statement_entries": [statement_entry_to_dict(e) for e in unmatched.statement_entries],
        }

    async def get_alerts(self, session_id: str, today: Optional[date] = None) -> List[ReconciliationAlert]:
        session = await self.get_session(session_id)
        return await self._alerts_for(session, today)

    # ==================== ALERTS ====================

    async def record_alerts(
        self,
        session_id: str,
        today: Optional[date] = None,
    ) -> List[ReconciliationAlertDB]:
        """
        Store the session's current alerts so they can be acknowledged.

        Idempotent per alert key: a condition raised again refreshes its row
        (and reopens it if it had resolved) without touching the
        acknowledgement. Stored alerts whose condition no longer holds are
        marked resolved.

        Returns:
            The stored rows of the currently raised alerts
        """
        try:
            session = await self._lock_session(session_id, require_open=False)
            alerts = await self._alerts_for(session, today)

            result = await self.db.execute(
                select(ReconciliationAlertDB)
                .where(ReconciliationAlertDB.reconciliation_id == session.id)
            )
            stored = {row.alert_key: row for row in result.scalars().all()}
            now = utc_now()
            created = 0

            for alert in alerts:
                row = stored.get(alert.alert_key)
                if row is None:
                    row = ReconciliationAlertDB(
                        organization_id=session.organization_id,
                        reconciliation_id=session.id,
                        alert_key=alert.alert_key,
                        alert_type=alert.alert_type.value,
                        acknowledged=False,
                        raised_at=now,
                    )
                    self.db.add(row)
                    stored[alert.alert_key] = row
                    created += 1
                row.transaction_id = alert.transaction_id
                row.description = alert.description
                row.difference_amount = alert.difference_amount
                row.days_since_creation = alert.days_since_creation
                row.resolved_at = None

            raised_keys = {alert.alert_key for alert in alerts}
            for key, row in stored.items():
                if key not in raised_keys and row.resolved_at is None:
                    row.resolved_at = now

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.ALERTS_RECORDED,
            session.organization_id,
            {"raised": len(alerts), "new": created},
            reconciliation_id=session.id,
        )
        return [stored[alert.alert_key] for alert in alerts]

    async def list_alerts(
        self,
        organization_id: str,
        acknowledged: Optional[bool] = None,
        reconciliation_id: Optional[str] = None,
        include_resolved: bool = False,
    ) -> List[ReconciliationAlertDB]:
        """Stored alerts of an organization, newest first."""
        query = select(ReconciliationAlertDB).where(ReconciliationAlertDB.organization_id == organization_id)
        if acknowledged is not None:
            query = query.where(ReconciliationAlertDB.acknowledged == acknowledged)
        if reconciliation_id:
            query = query.where(ReconciliationAlertDB.reconciliation_id == reconciliation_id)
        if not include_resolved:
            query = query.where(ReconciliationAlertDB.resolved_at.is_(None))

        result = await self.db.execute(
            query.order_by(ReconciliationAlertDB.raised_at.desc(), ReconciliationAlertDB.alert_key.asc())
        )
        return list(result.scalars().all())

    async def acknowledge_alert(self, alert_id: str, user_id: str) -> ReconciliationAlertDB:
        """
        Mark a stored alert acknowledged. The first acknowledgement is kept.

        Raises:
            NotFoundError: unknown alert
        """
        try:
            result = await self.db.execute(
                select(ReconciliationAlertDB)
                .where(ReconciliationAlertDB.id == alert_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            alert = result.scalar_one_or_none()
            if alert is None:
                raise NotFoundError("Alert", alert_id)

            if not alert.acknowledged:
                alert.acknowledged = True
                alert.acknowledged_at = utc_now()
                alert.acknowledged_by = user_id
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.ALERT_ACKNOWLEDGED,
            alert.organization_id,
            {"alert_id": alert.id, "alert_type": alert.alert_type},
            reconciliation_id=alert.reconciliation_id,
            actor=user_id,
        )
        return alert

    async def get_stale_count(self, organization_id: str, today: Optional[date] = None) -> int:
        """
        Organization transactions left unreconciled for more than the stale
        window, across all statement periods.
        """
        cutoff = (today or utc_now().date()) - timedelta(days=self.stale_after_days)
        result = await self.db.execute(
            select(func.count())
            .select_from(LedgerTransactionDB)
            .where(
                LedgerTransactionDB.organization_id == organization_id,
                LedgerTransactionDB.reconciliation_status != TransactionReconciliationStatus.RECONCILED,
                LedgerTransactionDB.date < cutoff,
            )
        )
        return result.scalar_one()

    # ==================== AUDIT ====================

    async def get_audit_log(self, session_id: str) -> List[ReconciliationAuditLogDB]:
        session = await self.get_session(session_id)
        result = await self.db.execute(
            select(ReconciliationAuditLogDB)
            .where(ReconciliationAuditLogDB.reconciliation_id == session.id)
            .order_by(ReconciliationAuditLogDB.sequence.asc())
        )
        return list(result.scalars().all())

    async def verify_audit_chain(self, organization_id: str) -> AuditChainVerification:
        return await verify_organization_chain(self.db, organization_id)

    # ==================== HELPERS ====================

    async def _lock_session(self, session_id: str, require_open: bool = True) -> BankReconciliationDB:
        """Load the session row FOR UPDATE; serializes mutations per session."""
        result = await self.db.execute(
            select(BankReconciliationDB)
            .where(BankReconciliationDB.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundError("Reconciliation", session_id)

        status = SessionStatus(_status_value(session.status))
        if require_open and status.is_closed:
            raise SessionClosedError(session.id, status.value)
        return session

    async def _alerts_for(self, session: BankReconciliationDB, today: Optional[date]) -> List[ReconciliationAlert]:
        balances = await self._balances_for(session)
        unmatched = await self._unmatched_for(session)
        return evaluate_alerts(
            balances,
            unmatched.transactions,
            unmatched.statement_entries,
            today or utc_now().date(),
            large_difference_threshold=self.large_difference_threshold,
            stale_after_days=self.stale_after_days,
        )

    async def _bulk_reconciled_since(self, session: BankReconciliationDB, since: Optional[datetime]) -> bool:
        if since is None:
            return False
        result = await self.db.execute(
            select(ReconciliationAuditLogDB.id)
            .where(
                ReconciliationAuditLogDB.reconciliation_id == session.id,
                ReconciliationAuditLogDB.action == ReconciliationAction.BULK_RECONCILED,
                ReconciliationAuditLogDB.performed_at >= since,
            )
            .limit(1)
        )
        return result.first() is not None

    async def _period_transactions(self, session: BankReconciliationDB) -> List[LedgerTransactionDB]:
        result = await self.db.execute(
            select(LedgerTransactionDB)
            .where(
                LedgerTransactionDB.organization_id == session.organization_id,
                LedgerTransactionDB.date >= session.statement_start_date,
                LedgerTransactionDB.date <= session.statement_end_date,
            )
            .order_by(LedgerTransactionDB.date.asc(), LedgerTransactionDB.id.asc())
        )
        return list(result.scalars().all())

    async def _entries_for(self, session: BankReconciliationDB) -> List[BankStatementEntryDB]:
        result = await self.db.execute(
            select(BankStatementEntryDB)
            .where(BankStatementEntryDB.reconciliation_id == session.id)
            .order_by(BankStatementEntryDB.date.asc(), BankStatementEntryDB.created_at.asc())
        )
        return list(result.scalars().all())

    async def _matches_for(self, session: BankReconciliationDB) -> List[ReconciliationMatchDB]:
        result = await self.db.execute(
            select(ReconciliationMatchDB)
            .where(ReconciliationMatchDB.reconciliation_id == session.id)
            .order_by(ReconciliationMatchDB.matched_at.asc())
        )
        return list(result.scalars().all())

    async def _unmatched_for(self, session: BankReconciliationDB) -> UnmatchedItems:
        transactions = await self._period_transactions(session)
        entries = await self._entries_for(session)
        matched_ids = await self.db.execute(
            select(ReconciliationMatchDB.transaction_id)
            .where(ReconciliationMatchDB.reconciliation_id == session.id)
        )
        matched_transaction_ids = set(matched_ids.scalars().all())

        return UnmatchedItems(
            transactions=[
                t for t in transactions
                if t.reconciliation_status != TransactionReconciliationStatus.RECONCILED
                and t.id not in matched_transaction_ids
            ],
            statement_entries=[e for e in entries if not e.is_matched],
        )

    async def _balances_for(self, session: BankReconciliationDB) -> BalanceSummary:
        transactions = await self._period_transactions(session)
        return calculate_balances(session.beginning_balance, transactions, session.ending_balance)

    async def _summary_for(self, session: BankReconciliationDB) -> ReconciliationSummary:
        transactions = await self._period_transactions(session)
        balances = calculate_balances(session.beginning_balance, transactions, session.ending_balance)
        matches = await self._matches_for(session)
        unmatched = await self._unmatched_for(session)

        reconciled = sum(
            1 for t in transactions
            if t.reconciliation_status == TransactionReconciliationStatus.RECONCILED
        )

        return ReconciliationSummary(
            reconciliation_id=session.id,
            status=_status_value(session.status),
            balances=balances,
            matched_count=len(matches),
            unmatched_transaction_count=len(unmatched.transactions),
            unmatched_statement_entry_count=len(unmatched.statement_entries),
            unmatched_transaction_total=_abs_total(unmatched.transactions),
            unmatched_statement_total=_abs_total(unmatched.statement_entries),
            period_reconciled_count=reconciled,
            period_unreconciled_count=len(transactions) - reconciled,
        )

    async def _get_period_transaction(
        self,
        session: BankReconciliationDB,
        transaction_id: str,
    ) -> LedgerTransactionDB:
        txn = await self.db.get(LedgerTransactionDB, transaction_id)
        if txn is None or txn.organization_id != session.organization_id:
            raise NotFoundError("Transaction", transaction_id)
        if not (session.statement_start_date <= txn.date <= session.statement_end_date):
            raise NotFoundError("Transaction", transaction_id, reason="outside the statement period")
        return txn

    async def _get_session_entry(
        self,
        session: BankReconciliationDB,
        statement_entry_id: str,
    ) -> BankStatementEntryDB:
        entry = await self.db.get(BankStatementEntryDB, statement_entry_id)
        if entry is None or entry.reconciliation_id != session.id:
            raise NotFoundError("Statement entry", statement_entry_id)
        return entry


# ==================== SERIALIZATION ====================

def _money(value: Any) -> Optional[str]:
    return str(to_money(value)) if value is not None else None


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def session_to_dict(session: BankReconciliationDB) -> Dict[str, Any]:
    return {
        "id": session.id,
        "organization_id": session.organization_id,
        "account_name": session.account_name,
        "statement_start_date": _iso(session.statement_start_date),
        "statement_end_date": _iso(session.statement_end_date),
        "beginning_balance": _money(session.beginning_balance),
        "ending_balance": _money(session.ending_balance),
        "statement_balance": _money(session.statement_balance),
        "book_balance": _money(session.book_balance),
        "difference": _money(session.difference),
        "status": _status_value(session.status),
        "completed_date": _iso(session.completed_date),
        "completed_by": session.completed_by,
        "notes": session.notes,
        "created_by": session.created_by,
        "created_at": _iso(session.created_at),
        "updated_at": _iso(session.updated_at),
    }


def transaction_to_dict(txn: LedgerTransactionDB) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "date": _iso(txn.date),
        "description": txn.description,
        "amount": _money(txn.amount),
        "type": _status_value(txn.type),
        "reconciliation_status": _status_value(txn.reconciliation_status),
        "reconciled_date": _iso(txn.reconciled_date),
        "reconciled_by": txn.reconciled_by,
    }


def statement_entry_to_dict(entry: BankStatementEntryDB) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "reconciliation_id": entry.reconciliation_id,
        "date": _iso(entry.date),
        "description": entry.description,
        "amount": _money(entry.amount),
        "type": _status_value(entry.type),
        "is_matched": entry.is_matched,
    }


def match_to_dict(match: ReconciliationMatchDB) -> Dict[str, Any]:
    return {
        "id": match.id,
        "reconciliation_id": match.reconciliation_id,
        "transaction_id": match.transaction_id,
        "statement_entry_id": match.statement_entry_id,
        "similarity_score": match.similarity_score,
        "matched_by": match.matched_by,
        "matched_at": _iso(match.matched_at),
        "transaction": transaction_to_dict(match.transaction) if match.transaction else None,
        "statement_entry": statement_entry_to_dict(match.statement_entry) if match.statement_entry else None,
    }


def suggestion_to_dict(suggestion: MatchSuggestion) -> Dict[str, Any]:
    return {
        "transaction": transaction_to_dict(suggestion.transaction),
        "statement_entry": statement_entry_to_dict(suggestion.statement_entry),
        "similarity_score": suggestion.similarity_score,
        "scoring_breakdown": suggestion.scoring_breakdown,
    }


def audit_entry_to_dict(entry: ReconciliationAuditLogDB) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "organization_id": entry.organization_id,
        "sequence": entry.sequence,
        "reconciliation_id": entry.reconciliation_id,
        "transaction_id": entry.transaction_id,
        "statement_entry_id": entry.statement_entry_id,
        "action": _status_value(entry.action),
        "previous_status": entry.previous_status,
        "new_status": entry.new_status,
        "previous_balance": _money(entry.previous_balance),
        "new_balance": _money(entry.new_balance),
        "difference": _money(entry.difference),
        "notes": entry.notes,
        "performed_by": entry.performed_by,
        "performed_at": _iso(entry.performed_at),
        "previous_hash": entry.previous_hash,
        "chain_hash": entry.chain_hash,
    }


def alert_to_dict(alert: ReconciliationAlertDB) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "organization_id": alert.organization_id,
        "reconciliation_id": alert.reconciliation_id,
        "transaction_id": alert.transaction_id,
        "alert_type": alert.alert_type,
        "description": alert.description,
        "difference_amount": _money(alert.difference_amount),
        "days_since_creation": alert.days_since_creation,
        "raised_at": _iso(alert.raised_at),
        "resolved_at": _iso(alert.resolved_at),
        "acknowledged": alert.acknowledged,
        "acknowledged_at": _iso(alert.acknowledged_at),
        "acknowledged_by": alert.acknowledged_by,
    }
