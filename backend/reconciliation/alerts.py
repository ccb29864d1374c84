"""
Reconciliation Alerts

Derives advisory alerts from a session's balance summary and its unmatched
items. Evaluation is pure and never blocks an operation; the service can
record the evaluated alerts so users can acknowledge them.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from reconciliation.balance import BalanceSummary


class AlertType(str, Enum):
    BALANCE_DIFFERENCE = "balance_difference"
    LARGE_DIFFERENCE = "large_difference"
    MISSING_TRANSACTIONS = "missing_transactions"
    STALE_UNRECONCILED = "stale_unreconciled"


@dataclass
class ReconciliationAlert:
    alert_type: AlertType
    description: str
    difference_amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    days_since_creation: Optional[int] = None

    @property
    def alert_key(self) -> str:
        """Identity of the alerted condition within a session."""
        if self.transaction_id:
            return f"{self.alert_type.value}:{self.transaction_id}"
        return self.alert_type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_type": self.alert_type.value,
            "description": self.description,
            "difference_amount": str(self.difference_amount) if self.difference_amount is not None else None,
            "transaction_id": self.transaction_id,
            "days_since_creation": self.days_since_creation,
        }


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return None


def evaluate_alerts(
    summary: BalanceSummary,
    unmatched_transactions: Sequence[Any],
    unmatched_entries: Sequence[Any],
    today: date,
    large_difference_threshold: Decimal = Decimal("1000.00"),
    stale_after_days: int = 30,
) -> List[ReconciliationAlert]:
    """
    Evaluate alerts for a reconciliation session.

    Args:
        summary: Current balance summary
        unmatched_transactions: Period transactions without a match
        unmatched_entries: Statement entries without a match
        today: Reference date for staleness
        large_difference_threshold: Difference at or above which a
            large_difference alert is raised
        stale_after_days: Age (by transaction date) after which an
            unmatched transaction is stale

    Returns:
        Alerts ordered: balance alerts, missing transactions, stale items
    """
    alerts: List[ReconciliationAlert] = []
    difference = summary.balance_difference

    if not summary.is_balanced:
        alerts.append(ReconciliationAlert(
            alert_type=AlertType.BALANCE_DIFFERENCE,
            description=f"Book balance differs from the statement by {difference}",
            difference_amount=difference,
        ))

    if not summary.is_balanced and difference >= large_difference_threshold:
        alerts.append(ReconciliationAlert(
            alert_type=AlertType.LARGE_DIFFERENCE,
            description=f"Difference of {difference} exceeds {large_difference_threshold}",
            difference_amount=difference,
        ))

    if unmatched_entries:
        alerts.append(ReconciliationAlert(
            alert_type=AlertType.MISSING_TRANSACTIONS,
            description=f"{len(unmatched_entries)} statement entries have no matching ledger transaction",
        ))

    for txn in unmatched_transactions:
        txn_date = _as_date(getattr(txn, "date", None))
        if txn_date is None:
            continue
        age = (today - txn_date).days
        if age > stale_after_days:
            alerts.append(ReconciliationAlert(
                alert_type=AlertType.STALE_UNRECONCILED,
                description=f"Transaction unreconciled for {age} days",
                transaction_id=str(txn.id),
                days_since_creation=age,
            ))

    return alerts
