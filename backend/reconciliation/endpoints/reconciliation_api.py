"""
Reconciliation API Endpoints

REST API for bank reconciliation sessions:
- POST /api/reconciliation/sessions - Open a session
- GET /api/reconciliation/sessions - List sessions for an organization
- GET /api/reconciliation/sessions/last/{organization_id} - Most recent session
- GET /api/reconciliation/sessions/resume/{organization_id} - Most recent open session
- GET /api/reconciliation/sessions/{session_id} - Get a session
- POST /api/reconciliation/sessions/{session_id}/statement-entries - Import rows (JSON)
- POST /api/reconciliation/sessions/{session_id}/statement-entries/csv - Import CSV file
- GET /api/reconciliation/sessions/{session_id}/statement-entries - Statement entries
- GET /api/reconciliation/sessions/{session_id}/transactions - Period transactions
- GET /api/reconciliation/sessions/{session_id}/unmatched - Unmatched sets
- GET /api/reconciliation/sessions/{session_id}/suggestions - Match suggestions
- POST /api/reconciliation/sessions/{session_id}/suggestions/apply - Apply a suggestion
- POST /api/reconciliation/sessions/{session_id}/matches - Match a selection
- GET /api/reconciliation/sessions/{session_id}/matches - List matches
- DELETE /api/reconciliation/matches/{match_id} - Unmatch
- POST /api/reconciliation/sessions/{session_id}/reconcile-all - Bulk reconcile
- POST /api/reconciliation/sessions/{session_id}/complete - Complete
- GET /api/reconciliation/sessions/{session_id}/summary - Summary
- GET /api/reconciliation/sessions/{session_id}/report - Export data
- GET /api/reconciliation/sessions/{session_id}/alerts - Evaluate alerts
- POST /api/reconciliation/sessions/{session_id}/alerts - Record alerts
- GET /api/reconciliation/alerts/{organization_id} - Stored alerts (?acknowledged=false)
- POST /api/reconciliation/alerts/{alert_id}/acknowledge - Acknowledge an alert
- GET /api/reconciliation/stale-count/{organization_id} - Stale unreconciled count
- GET /api/reconciliation/sessions/{session_id}/audit-log - Audit log
- GET /api/reconciliation/audit/verify/{organization_id} - Verify audit chain
- GET /api/reconciliation/status - Module status
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_db
from reconciliation.errors import ReconciliationError
from reconciliation.services.reconciliation_service import (
    ReconciliationService,
    alert_to_dict,
    audit_entry_to_dict,
    match_to_dict,
    session_to_dict,
    statement_entry_to_dict,
    suggestion_to_dict,
    transaction_to_dict,
)
from reconciliation.statement_import import parse_statement_csv
from utils.validation_errors import (
    raise_invalid_parameter,
    raise_reconciliation_error,
    validate_required_uuid,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request/Response Models ====================

class CreateSessionRequest(BaseModel):
    """Request to open a reconciliation session."""
    organization_id: str = Field(..., min_length=1, description="Organization ID")
    account_name: str = Field(..., min_length=1, description="Bank account name")
    statement_start_date: date = Field(..., description="First day of the statement period")
    statement_end_date: date = Field(..., description="Last day of the statement period")
    beginning_balance: Decimal = Field(..., description="Statement beginning balance")
    ending_balance: Decimal = Field(..., description="Statement ending balance")
    statement_balance: Decimal = Field(..., description="Statement balance (mirrors ending balance)")
    notes: Optional[str] = Field(default=None, description="Free-form notes")


class ImportStatementRequest(BaseModel):
    """Raw statement rows: each with date, description and signed amount."""
    rows: List[Dict[str, Any]] = Field(..., description="Statement rows")


class MatchSelectionRequest(BaseModel):
    """Manual match selection. Exactly one of each is accepted."""
    transaction_ids: List[str] = Field(default_factory=list)
    statement_entry_ids: List[str] = Field(default_factory=list)


class ApplySuggestionRequest(BaseModel):
    """Request to apply a suggested pair."""
    transaction_id: str = Field(..., description="Ledger transaction ID")
    statement_entry_id: str = Field(..., description="Statement entry ID")


class StatementImportResponse(BaseModel):
    """Response for a statement import."""
    reconciliation_id: str
    imported_count: int
    skipped_count: int
    entries: List[dict]


class ReconcileAllResponse(BaseModel):
    """Response for a bulk reconcile."""
    reconciliation_id: str
    reconciled_count: int
    balance_difference: str
    message: str


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": "1.0.0",
        "features": {
            "statement_import": True,
            "csv_import": True,
            "match_suggestions": True,
            "bulk_reconcile": True,
            "audit_chain": True,
            "alerts": True
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ==================== Sessions ====================

@router.post("/sessions", status_code=201, summary="Create reconciliation session")
async def create_session(
    request: CreateSessionRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Open a reconciliation session for an account and statement period.

    The book balance starts at the beginning balance; the difference is
    the gap between statement and beginning balances.
    """
    try:
        service = ReconciliationService(db)
        session = await service.create_session(
            organization_id=request.organization_id,
            account_name=request.account_name,
            statement_start_date=request.statement_start_date,
            statement_end_date=request.statement_end_date,
            beginning_balance=request.beginning_balance,
            ending_balance=request.ending_balance,
            statement_balance=request.statement_balance,
            created_by=x_user_id,
            notes=request.notes
        )
        return session_to_dict(session)

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to create reconciliation session: {e}")
        raise HTTPException(status_code=500, detail="Failed to create reconciliation session")


@router.get("/sessions", summary="List sessions")
async def list_sessions(
    organization_id: str = Query(..., min_length=1, description="Organization ID"),
    db: AsyncSession = Depends(get_db)
):
    """List an organization's sessions, newest first."""
    service = ReconciliationService(db)
    sessions = await service.list_sessions(organization_id)
    return {
        "organization_id": organization_id,
        "sessions": [session_to_dict(s) for s in sessions],
        "count": len(sessions)
    }


@router.get("/sessions/last/{organization_id}", summary="Most recent session")
async def get_last_session(
    organization_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Most recent session of any status; `session` is null when none exist."""
    service = ReconciliationService(db)
    session = await service.get_last_session(organization_id)
    return {
        "organization_id": organization_id,
        "session": session_to_dict(session) if session else None
    }


@router.get("/sessions/resume/{organization_id}", summary="Resume open session")
async def resume_session(
    organization_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Load the most recent open session. No status change."""
    try:
        service = ReconciliationService(db)
        session = await service.resume_session(organization_id)
        return session_to_dict(session)

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}", summary="Get session")
async def get_session(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        session = await service.get_session(validated_id)
        return session_to_dict(session)

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/sessions/{session_id}/complete", summary="Complete session")
async def complete_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Complete a session.

    Only allowed when no unmatched transactions or statement entries remain.
    Completion is irreversible.
    """
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        session = await service.complete(validated_id, x_user_id)
        return {
            "success": True,
            "message": "Reconciliation completed",
            "session": session_to_dict(session)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to complete reconciliation: {e}")
        raise HTTPException(status_code=500, detail="Failed to complete reconciliation")


# ==================== Statement Entries ====================

@router.post(
    "/sessions/{session_id}/statement-entries",
    response_model=StatementImportResponse,
    status_code=201,
    summary="Import statement rows"
)
async def import_statement_rows(
    session_id: str,
    request: ImportStatementRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Import raw statement rows.

    Rows missing date, description or amount, or with an unparsable
    amount/date, are skipped and counted. Fails only when no row is valid.
    """
    validated_id = validate_required_uuid(session_id, "session_id")
    return await _import_rows(db, validated_id, request.rows, x_user_id)


@router.post(
    "/sessions/{session_id}/statement-entries/csv",
    response_model=StatementImportResponse,
    status_code=201,
    summary="Import statement CSV"
)
async def import_statement_csv(
    session_id: str,
    file: UploadFile = File(..., description="Statement CSV with date, description, amount columns"),
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """Import a bank statement CSV file."""
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        content = await file.read()
        file_content = content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise_invalid_parameter("file", f"Failed to read file: {e}")

    rows = parse_statement_csv(file_content)
    return await _import_rows(db, validated_id, rows, x_user_id)


async def _import_rows(
    db: AsyncSession,
    session_id: str,
    rows: List[Dict[str, Any]],
    user_id: str
) -> StatementImportResponse:
    try:
        service = ReconciliationService(db)
        outcome = await service.import_statement(session_id, rows, user_id=user_id)
        return StatementImportResponse(
            reconciliation_id=outcome.reconciliation_id,
            imported_count=outcome.imported_count,
            skipped_count=outcome.skipped_count,
            entries=[statement_entry_to_dict(e) for e in outcome.entries]
        )

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Statement import failed: {e}")
        raise HTTPException(status_code=500, detail="Statement import failed")


@router.get("/sessions/{session_id}/statement-entries", summary="List statement entries")
async def list_statement_entries(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        entries = await service.list_statement_entries(validated_id)
        return {
            "reconciliation_id": validated_id,
            "statement_entries": [statement_entry_to_dict(e) for e in entries],
            "count": len(entries)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}/transactions", summary="List period transactions")
async def list_period_transactions(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Ledger transactions dated within the statement period."""
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        transactions = await service.list_period_transactions(validated_id)
        return {
            "reconciliation_id": validated_id,
            "transactions": [transaction_to_dict(t) for t in transactions],
            "count": len(transactions)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}/unmatched", summary="List unmatched items")
async def list_unmatched(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        unmatched = await service.list_unmatched(validated_id)
        return {
            "reconciliation_id": validated_id,
            "transactions": [transaction_to_dict(t) for t in unmatched.transactions],
            "statement_entries": [statement_entry_to_dict(e) for e in unmatched.statement_entries]
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


# ==================== Matching ====================

@router.get("/sessions/{session_id}/suggestions", summary="Get match suggestions")
async def get_suggestions(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    """
    Scored match suggestions from the current unmatched sets.

    Read-only. A transaction or entry appears in at most one suggestion.
    """
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        suggestions = await service.suggest_matches(validated_id)
        return {
            "reconciliation_id": validated_id,
            "threshold": service.rules.threshold,
            "suggestions": [suggestion_to_dict(s) for s in suggestions],
            "count": len(suggestions)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/sessions/{session_id}/suggestions/apply", status_code=201, summary="Apply suggestion")
async def apply_suggestion(
    session_id: str,
    request: ApplySuggestionRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        match = await service.apply_suggestion(
            validated_id,
            request.transaction_id,
            request.statement_entry_id,
            x_user_id
        )
        return match_to_dict(match)

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to apply suggestion: {e}")
        raise HTTPException(status_code=500, detail="Failed to apply suggestion")


@router.post("/sessions/{session_id}/matches", status_code=201, summary="Match selection")
async def create_match(
    session_id: str,
    request: MatchSelectionRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Match exactly one transaction with exactly one statement entry.

    Returns 409 when either side is already matched in the session.
    """
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        match = await service.match_selection(
            validated_id,
            request.transaction_ids,
            request.statement_entry_ids,
            x_user_id
        )
        return match_to_dict(match)

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to create match: {e}")
        raise HTTPException(status_code=500, detail="Failed to create match")


@router.get("/sessions/{session_id}/matches", summary="List matches")
async def list_matches(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        matches = await service.list_matches(validated_id)
        return {
            "reconciliation_id": validated_id,
            "matches": [match_to_dict(m) for m in matches],
            "count": len(matches)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.delete("/matches/{match_id}", summary="Unmatch")
async def delete_match(
    match_id: str,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Remove a match, restoring the transaction's previous status.

    Rejected once the session is completed.
    """
    validated_id = validate_required_uuid(match_id, "match_id")

    try:
        service = ReconciliationService(db)
        await service.unmatch(validated_id, x_user_id)
        return {
            "success": True,
            "message": "Match removed",
            "match_id": validated_id
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to remove match: {e}")
        raise HTTPException(status_code=500, detail="Failed to remove match")


@router.post(
    "/sessions/{session_id}/reconcile-all",
    response_model=ReconcileAllResponse,
    summary="Reconcile all period transactions"
)
async def reconcile_all(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Mark every period transaction as reconciled without pairing.

    Not blocked by a non-zero difference; the difference is returned so the
    caller can warn.
    """
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        result = await service.reconcile_all(validated_id, x_user_id)
        return ReconcileAllResponse(**result.to_dict())

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Bulk reconcile failed: {e}")
        raise HTTPException(status_code=500, detail="Bulk reconcile failed")


# ==================== Reporting ====================

@router.get("/sessions/{session_id}/summary", summary="Session summary")
async def get_summary(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        summary = await service.get_summary(validated_id)
        return summary.to_dict()

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}/report", summary="Session report data")
async def get_report(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Session, summary, resolved match pairs and unmatched lists for export."""
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        return await service.get_report(validated_id)

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/sessions/{session_id}/alerts", summary="Session alerts")
async def get_alerts(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        alerts = await service.get_alerts(validated_id)
        return {
            "reconciliation_id": validated_id,
            "alerts": [a.to_dict() for a in alerts],
            "count": len(alerts)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.post("/sessions/{session_id}/alerts", summary="Record session alerts")
async def record_alerts(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    """
    Store the session's current alerts so they can be acknowledged.

    Safe to repeat: existing alerts are refreshed, not duplicated, and
    alerts whose condition cleared are marked resolved.
    """
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        alerts = await service.record_alerts(validated_id)
        return {
            "reconciliation_id": validated_id,
            "alerts": [alert_to_dict(a) for a in alerts],
            "count": len(alerts)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to record alerts: {e}")
        raise HTTPException(status_code=500, detail="Failed to record alerts")


@router.get("/alerts/{organization_id}", summary="List stored alerts")
async def list_alerts(
    organization_id: str,
    acknowledged: Optional[bool] = Query(default=None, description="Filter by acknowledgement"),
    reconciliation_id: Optional[str] = Query(default=None, description="Limit to one session"),
    include_resolved: bool = Query(default=False, description="Include alerts whose condition cleared"),
    db: AsyncSession = Depends(get_db)
):
    """Stored alerts of an organization, newest first. `?acknowledged=false` lists open ones."""
    service = ReconciliationService(db)
    alerts = await service.list_alerts(
        organization_id,
        acknowledged=acknowledged,
        reconciliation_id=reconciliation_id,
        include_resolved=include_resolved
    )
    return {
        "organization_id": organization_id,
        "alerts": [alert_to_dict(a) for a in alerts],
        "count": len(alerts)
    }


@router.post("/alerts/{alert_id}/acknowledge", summary="Acknowledge alert")
async def acknowledge_alert(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    validated_id = validate_required_uuid(alert_id, "alert_id")

    try:
        service = ReconciliationService(db)
        alert = await service.acknowledge_alert(validated_id, x_user_id)
        return alert_to_dict(alert)

    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to acknowledge alert: {e}")
        raise HTTPException(status_code=500, detail="Failed to acknowledge alert")


@router.get("/stale-count/{organization_id}", summary="Stale unreconciled count")
async def get_stale_count(
    organization_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Transactions unreconciled for longer than the stale window."""
    service = ReconciliationService(db)
    count = await service.get_stale_count(organization_id)
    return {
        "organization_id": organization_id,
        "count": count,
        "days_since_threshold": service.stale_after_days
    }


# ==================== Audit ====================

@router.get("/sessions/{session_id}/audit-log", summary="Session audit log")
async def get_audit_log(
    session_id: str,
    db: AsyncSession = Depends(get_db)
):
    validated_id = validate_required_uuid(session_id, "session_id")

    try:
        service = ReconciliationService(db)
        entries = await service.get_audit_log(validated_id)
        return {
            "reconciliation_id": validated_id,
            "entries": [audit_entry_to_dict(e) for e in entries],
            "count": len(entries)
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)


@router.get("/audit/verify/{organization_id}", summary="Verify audit chain")
async def verify_audit_chain(
    organization_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Recompute and check every hash of the organization's audit chain."""
    try:
        service = ReconciliationService(db)
        verification = await service.verify_audit_chain(organization_id)
        return {
            "organization_id": organization_id,
            **verification.to_dict()
        }

    except ReconciliationError as e:
        raise_reconciliation_error(e)
