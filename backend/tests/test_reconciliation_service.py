"""
Unit Tests for the Reconciliation Service

Runs against an in-memory SQLite database and covers:
- Session creation, resume and completion gate
- Statement import (all-or-nothing at zero valid rows)
- One-to-one matching and match/unmatch round-trip
- Bulk reconcile, summary, report and alerts

Run with: pytest tests/test_reconciliation_service.py -v
"""

import logging
import uuid
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from database.reconciliation_models import (
    EntryType,
    ReconciliationAction,
    ReconciliationAuditLogDB,
    ReconciliationMatchDB,
    SessionStatus,
    TransactionReconciliationStatus,
)
from reconciliation.errors import (
    AlreadyMatchedError,
    AuditSequenceConflictError,
    IncompleteReconciliationError,
    InvalidSelectionError,
    NoValidEntriesError,
    NotFoundError,
    SessionClosedError,
    ValidationError,
)
from reconciliation.services import reconciliation_service as service_module
from reconciliation.services.reconciliation_service import (
    ReconciliationAuditEvent,
    ReconciliationService,
    log_reconciliation_event,
)


@pytest.fixture
def service(db):
    return ReconciliationService(db)


@pytest_asyncio.fixture
async def session(service, january_session_args):
    return await service.create_session(**january_session_args)


@pytest_asyncio.fixture
async def period_transactions(add_transaction):
    """Income 500.00 and expense 150.00 inside January, one outside."""
    income = await add_transaction(date(2025, 1, 5), "500.00", EntryType.INCOME, "Grant deposit")
    expense = await add_transaction(date(2025, 1, 12), "150.00", EntryType.EXPENSE, "Office rent")
    outside = await add_transaction(date(2025, 2, 3), "75.00", EntryType.EXPENSE, "February bill")
    return income, expense, outside


async def import_rows(service, session, *rows):
    outcome = await service.import_statement(session.id, list(rows), user_id="user-1")
    return outcome.entries


class TestSessions:
    """Test session lifecycle."""

    @pytest.mark.asyncio
    async def test_create_session_initial_state(self, session):
        assert session.status == SessionStatus.UNRECONCILED
        assert session.book_balance == Decimal("1000.00")
        assert session.difference == Decimal("350.00")
        assert session.completed_date is None

    @pytest.mark.asyncio
    async def test_create_session_requires_account_name(self, service, january_session_args):
        january_session_args["account_name"] = "  "

        with pytest.raises(ValidationError):
            await service.create_session(**january_session_args)

    @pytest.mark.asyncio
    async def test_create_session_rejects_non_numeric_balance(self, service, january_session_args):
        january_session_args["beginning_balance"] = "one thousand"

        with pytest.raises(ValidationError) as exc_info:
            await service.create_session(**january_session_args)
        assert exc_info.value.details["field"] == "beginning_balance"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("beginning_balance", "1e30"),
        ("ending_balance", "10000000000000.00"),
        ("statement_balance", "-10000000000000.00"),
    ])
    async def test_create_session_rejects_oversized_balance(self, service, january_session_args, field, value):
        january_session_args[field] = value

        with pytest.raises(ValidationError) as exc_info:
            await service.create_session(**january_session_args)
        assert exc_info.value.details["field"] == field

    @pytest.mark.asyncio
    async def test_create_session_rejects_inverted_period(self, service, january_session_args):
        january_session_args["statement_start_date"] = date(2025, 2, 1)

        with pytest.raises(ValidationError):
            await service.create_session(**january_session_args)

    @pytest.mark.asyncio
    async def test_get_session_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_session(str(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_resume_returns_open_session(self, service, session, organization_id):
        resumed = await service.resume_session(organization_id)

        assert resumed.id == session.id
        assert resumed.status == SessionStatus.UNRECONCILED

    @pytest.mark.asyncio
    async def test_resume_without_open_session(self, service, organization_id):
        with pytest.raises(NotFoundError):
            await service.resume_session(organization_id)

    @pytest.mark.asyncio
    async def test_last_session_none_for_new_organization(self, service):
        assert await service.get_last_session(str(uuid.uuid4())) is None

    @pytest.mark.asyncio
    async def test_list_sessions_scoped_to_organization(self, service, session, organization_id, january_session_args):
        january_session_args["organization_id"] = str(uuid.uuid4())
        await service.create_session(**january_session_args)

        sessions = await service.list_sessions(organization_id)

        assert [s.id for s in sessions] == [session.id]


class TestStatementImport:
    """Test statement import."""

    @pytest.mark.asyncio
    async def test_import_persists_valid_rows_only(self, service, session):
        outcome = await service.import_statement(session.id, [
            {"date": "2025-01-01", "description": "Coffee", "amount": "-4.50"},
            {"date": "bad", "description": "row"},
        ])

        assert outcome.imported_count == 1
        assert outcome.skipped_count == 1
        entries = await service.list_statement_entries(session.id)
        assert len(entries) == 1
        assert entries[0].amount == Decimal("4.50")
        assert entries[0].type == EntryType.EXPENSE
        assert entries[0].is_matched is False

    @pytest.mark.asyncio
    async def test_import_with_no_valid_rows_persists_nothing(self, service, session):
        with pytest.raises(NoValidEntriesError):
            await service.import_statement(session.id, [{"date": "bad", "description": "row"}])

        assert await service.list_statement_entries(session.id) == []

    @pytest.mark.asyncio
    async def test_reimport_duplicates_entries(self, service, session):
        row = {"date": "2025-01-02", "description": "Deposit", "amount": "10"}

        await service.import_statement(session.id, [row])
        await service.import_statement(session.id, [row])

        assert len(await service.list_statement_entries(session.id)) == 2

    @pytest.mark.asyncio
    async def test_import_unknown_session(self, service):
        with pytest.raises(NotFoundError):
            await service.import_statement(str(uuid.uuid4()), [
                {"date": "2025-01-02", "description": "Deposit", "amount": "10"},
            ])


class TestMatching:
    """Test one-to-one matching."""

    @pytest.mark.asyncio
    async def test_match_marks_both_sides(self, service, session, period_transactions):
        income, _, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})

        match = await service.match(session.id, income.id, deposit.id, "user-1")

        assert match.transaction_id == income.id
        assert income.reconciliation_status == TransactionReconciliationStatus.RECONCILED
        assert income.reconciled_by == "user-1"
        assert income.reconciled_date is not None
        assert deposit.is_matched is True

        unmatched = await service.list_unmatched(session.id)
        assert income.id not in [t.id for t in unmatched.transactions]
        assert deposit.id not in [e.id for e in unmatched.statement_entries]

    @pytest.mark.asyncio
    async def test_second_match_for_transaction_rejected(self, service, session, period_transactions):
        income, _, _ = period_transactions
        first, second = await import_rows(
            service, session,
            {"date": "2025-01-05", "description": "Grant", "amount": "500"},
            {"date": "2025-01-06", "description": "Grant again", "amount": "500"},
        )
        session_id, income_id, second_id = session.id, income.id, second.id
        await service.match(session_id, income_id, first.id, "user-1")

        with pytest.raises(AlreadyMatchedError):
            await service.match(session_id, income_id, second_id, "user-1")

        matches = await service.list_matches(session_id)
        assert len(matches) == 1
        refreshed = await service.list_statement_entries(session_id)
        assert [e.is_matched for e in refreshed if e.id == second_id] == [False]

    @pytest.mark.asyncio
    async def test_second_match_for_entry_rejected(self, db, service, session, period_transactions):
        income, expense, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        await service.match(session.id, income.id, deposit.id, "user-1")

        with pytest.raises(AlreadyMatchedError):
            await service.match(session.id, expense.id, deposit.id, "user-1")

        # Rollback expired loaded instances
        await db.refresh(expense)
        assert expense.reconciliation_status == TransactionReconciliationStatus.UNRECONCILED

    @pytest.mark.asyncio
    async def test_unique_constraint_backs_the_check(self, db, session_factory, service, session, period_transactions):
        """A duplicate row that bypasses the service still fails at the storage layer."""
        income, _, _ = period_transactions
        first, second = await import_rows(
            service, session,
            {"date": "2025-01-05", "description": "Grant", "amount": "500"},
            {"date": "2025-01-06", "description": "Other", "amount": "500"},
        )
        await service.match(session.id, income.id, first.id, "user-1")

        async with session_factory() as other:
            other.add(ReconciliationMatchDB(
                reconciliation_id=session.id,
                transaction_id=income.id,
                statement_entry_id=second.id,
                previous_transaction_status="unreconciled",
            ))
            with pytest.raises(IntegrityError):
                await other.commit()

    @pytest.mark.asyncio
    async def test_transaction_outside_period_not_found(self, service, session, period_transactions):
        _, _, outside = period_transactions
        (entry,) = await import_rows(service, session, {"date": "2025-01-31", "description": "Bill", "amount": "-75"})

        with pytest.raises(NotFoundError):
            await service.match(session.id, outside.id, entry.id, "user-1")

    @pytest.mark.asyncio
    async def test_transaction_of_other_organization_not_found(self, service, session, add_transaction):
        foreign = await add_transaction(
            date(2025, 1, 5), "20.00", EntryType.INCOME, org_id=str(uuid.uuid4())
        )
        (entry,) = await import_rows(service, session, {"date": "2025-01-05", "description": "X", "amount": "20"})

        with pytest.raises(NotFoundError):
            await service.match(session.id, foreign.id, entry.id, "user-1")

    @pytest.mark.asyncio
    async def test_entry_of_other_session_not_found(self, service, session, period_transactions, january_session_args):
        income, _, _ = period_transactions
        other = await service.create_session(**january_session_args)
        (foreign_entry,) = await import_rows(service, other, {"date": "2025-01-05", "description": "Grant", "amount": "500"})

        with pytest.raises(NotFoundError):
            await service.match(session.id, income.id, foreign_entry.id, "user-1")

    @pytest.mark.asyncio
    async def test_selection_must_be_exactly_one_each(self, service, session, period_transactions):
        income, expense, _ = period_transactions
        (entry,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})

        with pytest.raises(InvalidSelectionError) as exc_info:
            await service.match_selection(session.id, [income.id, expense.id], [entry.id], "user-1")

        assert exc_info.value.details == {"transaction_count": 2, "statement_entry_count": 1}
        assert await service.list_matches(session.id) == []

    @pytest.mark.asyncio
    async def test_match_unmatch_round_trip(self, service, session, period_transactions):
        income, _, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        match = await service.match(session.id, income.id, deposit.id, "user-1")

        await service.unmatch(match.id, "user-1")

        assert income.reconciliation_status == TransactionReconciliationStatus.UNRECONCILED
        assert income.reconciled_date is None
        assert income.reconciled_by is None
        assert deposit.is_matched is False
        assert await service.list_matches(session.id) == []
        unmatched = await service.list_unmatched(session.id)
        assert income.id in [t.id for t in unmatched.transactions]
        assert deposit.id in [e.id for e in unmatched.statement_entries]

    @pytest.mark.asyncio
    async def test_unmatch_restores_pending_status(self, service, session, add_transaction):
        pending = await add_transaction(
            date(2025, 1, 9), "30.00", EntryType.EXPENSE,
            status=TransactionReconciliationStatus.PENDING,
        )
        (entry,) = await import_rows(service, session, {"date": "2025-01-09", "description": "X", "amount": "-30"})
        match = await service.match(session.id, pending.id, entry.id, "user-1")

        await service.unmatch(match.id, "user-1")

        assert pending.reconciliation_status == TransactionReconciliationStatus.PENDING

    @pytest.mark.asyncio
    async def test_unmatch_after_bulk_reconcile_stays_reconciled(self, service, session, period_transactions):
        income, _, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        match = await service.match(session.id, income.id, deposit.id, "user-1")
        await service.reconcile_all(session.id, "user-1")

        await service.unmatch(match.id, "user-1")

        assert income.reconciliation_status == TransactionReconciliationStatus.RECONCILED
        assert deposit.is_matched is False
        entries = await service.get_audit_log(session.id)
        assert entries[-1].action == ReconciliationAction.UNRECONCILED
        assert entries[-1].new_status == "reconciled"

    @pytest.mark.asyncio
    async def test_audit_sequence_collision_is_not_already_matched(
        self, monkeypatch, service, session, period_transactions
    ):
        """A chain append that loses a sequence race is a retryable conflict."""
        income, _, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        session_id, income_id, deposit_id = session.id, income.id, deposit.id

        async def append_taken_sequence(db, organization_id, action, performed_by, **kwargs):
            db.add(ReconciliationAuditLogDB(
                organization_id=organization_id,
                sequence=1,
                action=action,
                performed_by=performed_by,
            ))
            await db.flush()

        monkeypatch.setattr(service_module, "append_audit_entry", append_taken_sequence)

        with pytest.raises(AuditSequenceConflictError) as exc_info:
            await service.match(session_id, income_id, deposit_id, "user-1")

        assert not isinstance(exc_info.value, AlreadyMatchedError)
        assert exc_info.value.category == "conflict"
        assert await service.list_matches(session_id) == []

    @pytest.mark.asyncio
    async def test_unmatch_unknown_match(self, service):
        with pytest.raises(NotFoundError):
            await service.unmatch(str(uuid.uuid4()), "user-1")


class TestSuggestions:
    """Test suggestion generation and application."""

    @pytest.mark.asyncio
    async def test_suggestions_pair_equal_amounts(self, service, session, period_transactions):
        income, expense, _ = period_transactions
        deposit, rent = await import_rows(
            service, session,
            {"date": "2025-01-05", "description": "Grant deposit", "amount": "500.00"},
            {"date": "2025-01-13", "description": "Office rent", "amount": "-150.00"},
        )

        suggestions = await service.suggest_matches(session.id)

        pairs = {(s.transaction_id, s.statement_entry_id) for s in suggestions}
        assert pairs == {(income.id, deposit.id), (expense.id, rent.id)}

    @pytest.mark.asyncio
    async def test_suggestions_are_idempotent(self, service, session, period_transactions):
        await import_rows(
            service, session,
            {"date": "2025-01-05", "description": "Grant deposit", "amount": "500.00"},
            {"date": "2025-01-12", "description": "Rent", "amount": "-150.00"},
        )

        first = await service.suggest_matches(session.id)
        second = await service.suggest_matches(session.id)

        def key(suggestions):
            return [(s.transaction_id, s.statement_entry_id, s.similarity_score) for s in suggestions]

        assert key(first) == key(second)

    @pytest.mark.asyncio
    async def test_apply_suggestion_stores_score(self, service, session, period_transactions):
        income, _, _ = period_transactions
        (deposit,) = await import_rows(
            service, session, {"date": "2025-01-05", "description": "Grant deposit", "amount": "500.00"}
        )

        match = await service.apply_suggestion(session.id, income.id, deposit.id, "user-1")

        assert match.similarity_score == 100
        assert await service.suggest_matches(session.id) == []


class TestReconcileAllAndCompletion:
    """Test bulk reconcile, completion gate and closed-session behaviour."""

    @pytest.mark.asyncio
    async def test_reconcile_all_example(self, service, session, period_transactions):
        income, expense, outside = period_transactions

        result = await service.reconcile_all(session.id, "user-1")

        assert result.reconciled_count == 2
        assert result.balance_difference == Decimal("0.00")
        assert income.reconciliation_status == TransactionReconciliationStatus.RECONCILED
        assert expense.reconciliation_status == TransactionReconciliationStatus.RECONCILED
        assert outside.reconciliation_status == TransactionReconciliationStatus.UNRECONCILED
        assert await service.list_matches(session.id) == []

    @pytest.mark.asyncio
    async def test_reconcile_all_skips_already_reconciled(self, service, session, period_transactions):
        await service.reconcile_all(session.id, "user-1")

        result = await service.reconcile_all(session.id, "user-1")

        assert result.reconciled_count == 0

    @pytest.mark.asyncio
    async def test_reconcile_all_with_difference_is_recorded(self, service, session, add_transaction):
        await add_transaction(date(2025, 1, 5), "100.00", EntryType.INCOME)

        result = await service.reconcile_all(session.id, "user-1")

        assert result.balance_difference == Decimal("250.00")
        assert "250.00" in result.message
        actions = [e.action for e in await service.get_audit_log(session.id)]
        assert ReconciliationAction.DIFFERENCE_NOTED in actions

    @pytest.mark.asyncio
    async def test_complete_blocked_while_unmatched(self, service, session, period_transactions):
        session_id = session.id

        with pytest.raises(IncompleteReconciliationError) as exc_info:
            await service.complete(session_id, "user-1")

        assert exc_info.value.details["unmatched_transactions"] == 2
        refreshed = await service.get_session(session_id)
        assert refreshed.status == SessionStatus.UNRECONCILED
        assert refreshed.completed_date is None

    @pytest.mark.asyncio
    async def test_complete_blocked_by_unmatched_entries(self, service, session, period_transactions):
        await import_rows(service, session, {"date": "2025-01-20", "description": "Fee", "amount": "-2"})
        await service.reconcile_all(session.id, "user-1")

        with pytest.raises(IncompleteReconciliationError) as exc_info:
            await service.complete(session.id, "user-1")

        assert exc_info.value.details == {"unmatched_transactions": 0, "unmatched_statement_entries": 1}

    @pytest.mark.asyncio
    async def test_complete_when_everything_matched(self, service, session, period_transactions):
        income, expense, _ = period_transactions
        deposit, rent = await import_rows(
            service, session,
            {"date": "2025-01-05", "description": "Grant deposit", "amount": "500.00"},
            {"date": "2025-01-12", "description": "Office rent", "amount": "-150.00"},
        )
        await service.match(session.id, income.id, deposit.id, "user-1")
        await service.match(session.id, expense.id, rent.id, "user-1")

        completed = await service.complete(session.id, "user-2")

        assert completed.status == SessionStatus.COMPLETED
        assert completed.completed_date is not None
        assert completed.completed_by == "user-2"

    @pytest.mark.asyncio
    async def test_closed_session_rejects_mutations(self, service, session, period_transactions):
        income, _, _ = period_transactions
        session_id = session.id
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        match = await service.match(session_id, income.id, deposit.id, "user-1")
        match_id = match.id
        await service.reconcile_all(session_id, "user-1")
        await service.complete(session_id, "user-1")

        with pytest.raises(SessionClosedError):
            await service.unmatch(match_id, "user-1")
        with pytest.raises(SessionClosedError):
            await service.reconcile_all(session_id, "user-1")
        with pytest.raises(SessionClosedError):
            await service.import_statement(session_id, [{"date": "2025-01-02", "description": "D", "amount": "1"}])
        with pytest.raises(SessionClosedError):
            await service.complete(session_id, "user-1")

        assert len(await service.list_matches(session_id)) == 1

    @pytest.mark.asyncio
    async def test_legacy_reconciled_status_is_closed(self, db, service, session, organization_id):
        session_id = session.id
        session.status = SessionStatus.RECONCILED
        await db.commit()

        with pytest.raises(SessionClosedError):
            await service.reconcile_all(session_id, "user-1")

        with pytest.raises(NotFoundError):
            await service.resume_session(organization_id)


class TestReporting:
    """Test summary, report and alerts."""

    @pytest.mark.asyncio
    async def test_summary_example(self, service, session, period_transactions):
        summary = await service.get_summary(session.id)
        data = summary.to_dict()

        assert data["beginning_balance"] == "1000.00"
        assert data["period_income"] == "500.00"
        assert data["period_expenses"] == "150.00"
        assert data["calculated_book_balance"] == "1350.00"
        assert data["statement_ending_balance"] == "1350.00"
        assert data["difference"] == "0.00"
        assert data["matched_count"] == 0
        assert data["unmatched_count"] == 2
        assert data["unmatched_transaction_total"] == "650.00"

    @pytest.mark.asyncio
    async def test_summary_after_match(self, service, session, period_transactions):
        income, _, _ = period_transactions
        deposit, _ = await import_rows(
            service, session,
            {"date": "2025-01-05", "description": "Grant", "amount": "500"},
            {"date": "2025-01-25", "description": "Fee", "amount": "-3.25"},
        )
        await service.match(session.id, income.id, deposit.id, "user-1")

        summary = await service.get_summary(session.id)

        assert summary.matched_count == 1
        assert summary.unmatched_transaction_count == 1
        assert summary.unmatched_statement_entry_count == 1
        assert summary.unmatched_statement_total == Decimal("3.25")
        assert summary.period_reconciled_count == 1
        assert summary.period_unreconciled_count == 1

    @pytest.mark.asyncio
    async def test_report_resolves_match_pairs(self, service, session, period_transactions):
        income, _, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        await service.match(session.id, income.id, deposit.id, "user-1")

        report = await service.get_report(session.id)

        assert report["session"]["id"] == session.id
        assert report["matches"][0]["transaction"]["id"] == income.id
        assert report["matches"][0]["statement_entry"]["id"] == deposit.id
        assert len(report["unmatched_transactions"]) == 1
        assert report["unmatched_statement_entries"] == []

    @pytest.mark.asyncio
    async def test_alerts(self, service, session, add_transaction):
        await add_transaction(date(2025, 1, 2), "2000.00", EntryType.EXPENSE)
        await import_rows(service, session, {"date": "2025-01-20", "description": "Fee", "amount": "-2"})

        alerts = await service.get_alerts(session.id, today=date(2025, 3, 1))
        types = [a.alert_type.value for a in alerts]

        assert "balance_difference" in types
        assert "large_difference" in types
        assert "missing_transactions" in types
        assert "stale_unreconciled" in types


class TestAuditTrail:
    """Test audit records written by operations."""

    @pytest.mark.asyncio
    async def test_operations_write_chained_audit_entries(self, service, session, period_transactions):
        income, _, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        match = await service.match(session.id, income.id, deposit.id, "user-1")
        await service.unmatch(match.id, "user-1")

        entries = await service.get_audit_log(session.id)

        assert [e.action for e in entries] == [
            ReconciliationAction.SESSION_CREATED,
            ReconciliationAction.STATEMENT_IMPORTED,
            ReconciliationAction.RECONCILED,
            ReconciliationAction.UNRECONCILED,
        ]
        assert [e.sequence for e in entries] == [1, 2, 3, 4]
        for previous, current in zip(entries, entries[1:]):
            assert current.previous_hash == previous.chain_hash

        verification = await service.verify_audit_chain(session.organization_id)
        assert verification.is_valid is True

    @pytest.mark.asyncio
    async def test_failed_match_writes_no_audit_entry(self, service, session, period_transactions):
        income, expense, _ = period_transactions
        (deposit,) = await import_rows(service, session, {"date": "2025-01-05", "description": "Grant", "amount": "500"})
        session_id = session.id
        await service.match(session_id, income.id, deposit.id, "user-1")
        before = len(await service.get_audit_log(session_id))

        with pytest.raises(AlreadyMatchedError):
            await service.match(session_id, expense.id, deposit.id, "user-1")

        assert len(await service.get_audit_log(session_id)) == before


class TestReconciliationEventLogging:
    """Test operational event logging."""

    def test_log_reconciliation_event(self, caplog):
        with caplog.at_level(logging.INFO):
            log_reconciliation_event(
                ReconciliationAuditEvent.MATCH_CREATED,
                "org-1",
                {"match_id": "m-1"},
                reconciliation_id="r-1",
                actor="user-1",
            )

        record = caplog.records[-1]
        assert record.event == ReconciliationAuditEvent.MATCH_CREATED
        assert record.reconciliation_id == "r-1"
        assert record.actor == "user-1"


class TestAlertLifecycle:
    """Test recorded alerts, acknowledgement and the stale count."""

    TODAY = date(2025, 3, 1)

    @pytest_asyncio.fixture
    async def alerted_session(self, service, session, add_transaction):
        """Difference of 370.00, one unmatched fee entry, one stale expense."""
        stale = await add_transaction(date(2025, 1, 2), "20.00", EntryType.EXPENSE, "Old expense")
        await import_rows(service, session, {"date": "2025-01-20", "description": "Fee", "amount": "-2"})
        return session, stale

    @pytest.mark.asyncio
    async def test_record_alerts_is_idempotent(self, service, alerted_session, organization_id):
        session, stale = alerted_session

        first = await service.record_alerts(session.id, today=self.TODAY)
        second = await service.record_alerts(session.id, today=self.TODAY)

        assert [a.alert_key for a in first] == [
            "balance_difference",
            "missing_transactions",
            f"stale_unreconciled:{stale.id}",
        ]
        assert [a.id for a in second] == [a.id for a in first]
        assert len(await service.list_alerts(organization_id)) == 3

    @pytest.mark.asyncio
    async def test_acknowledged_alert_leaves_open_list(self, service, alerted_session, organization_id):
        session, _ = alerted_session
        alerts = await service.record_alerts(session.id, today=self.TODAY)

        acknowledged = await service.acknowledge_alert(alerts[0].id, "user-2")

        assert acknowledged.acknowledged is True
        assert acknowledged.acknowledged_by == "user-2"
        assert acknowledged.acknowledged_at is not None
        open_ids = [a.id for a in await service.list_alerts(organization_id, acknowledged=False)]
        assert alerts[0].id not in open_ids
        assert len(open_ids) == 2
        assert [a.id for a in await service.list_alerts(organization_id, acknowledged=True)] == [alerts[0].id]

    @pytest.mark.asyncio
    async def test_first_acknowledgement_kept(self, service, alerted_session):
        session, _ = alerted_session
        (alert, *_) = await service.record_alerts(session.id, today=self.TODAY)
        await service.acknowledge_alert(alert.id, "user-2")

        again = await service.acknowledge_alert(alert.id, "user-3")

        assert again.acknowledged_by == "user-2"

    @pytest.mark.asyncio
    async def test_acknowledgement_survives_rerecording(self, service, alerted_session, organization_id):
        session, _ = alerted_session
        (alert, *_) = await service.record_alerts(session.id, today=self.TODAY)
        await service.acknowledge_alert(alert.id, "user-2")

        await service.record_alerts(session.id, today=self.TODAY)

        assert alert.id not in [a.id for a in await service.list_alerts(organization_id, acknowledged=False)]

    @pytest.mark.asyncio
    async def test_cleared_condition_resolved(self, service, alerted_session, organization_id):
        session, stale = alerted_session
        await service.record_alerts(session.id, today=self.TODAY)
        await service.reconcile_all(session.id, "user-1")

        current = await service.record_alerts(session.id, today=self.TODAY)

        assert f"stale_unreconciled:{stale.id}" not in [a.alert_key for a in current]
        active = await service.list_alerts(organization_id)
        everything = await service.list_alerts(organization_id, include_resolved=True)
        assert len(active) == 2
        resolved = [a for a in everything if a.resolved_at is not None]
        assert [a.transaction_id for a in resolved] == [stale.id]

    @pytest.mark.asyncio
    async def test_list_alerts_scoped_to_organization(self, service, alerted_session):
        session, _ = alerted_session
        await service.record_alerts(session.id, today=self.TODAY)

        assert await service.list_alerts(str(uuid.uuid4())) == []

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert(self, service):
        with pytest.raises(NotFoundError):
            await service.acknowledge_alert(str(uuid.uuid4()), "user-1")

    @pytest.mark.asyncio
    async def test_stale_count(self, service, add_transaction, organization_id):
        await add_transaction(date(2025, 1, 2), "20.00", EntryType.EXPENSE)
        await add_transaction(
            date(2025, 1, 4), "15.00", EntryType.EXPENSE,
            status=TransactionReconciliationStatus.PENDING,
        )
        await add_transaction(
            date(2025, 1, 3), "10.00", EntryType.INCOME,
            status=TransactionReconciliationStatus.RECONCILED,
        )
        await add_transaction(date(2025, 2, 20), "5.00", EntryType.EXPENSE)
        await add_transaction(date(2025, 1, 2), "99.00", EntryType.EXPENSE, org_id=str(uuid.uuid4()))

        assert await service.get_stale_count(organization_id, today=self.TODAY) == 2
