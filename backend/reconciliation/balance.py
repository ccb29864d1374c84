"""
Balance Calculator

Derives the book balance for a statement period from the beginning balance
and the period's ledger transactions, and the gap to the statement's
declared ending balance.

    calculated_book_balance = beginning + income - expenses
    balance_difference      = |calculated_book_balance - ending|

All arithmetic is Decimal, quantized to cents, so the result does not
depend on transaction order.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from reconciliation.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Differences at or below one cent count as balanced
BALANCE_TOLERANCE = CENT

# Largest magnitudes the Numeric(12, 2) and Numeric(15, 2) columns hold
MAX_AMOUNT = Decimal("9999999999.99")
MAX_BALANCE = Decimal("9999999999999.99")


def to_money(value: Any, field: Optional[str] = None, limit: Optional[Decimal] = None) -> Decimal:
    """
    Convert a number or numeric string to a 2-place Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.10"), not its
    binary expansion.

    Raises:
        ValidationError: value is missing, not numeric, or its magnitude
            exceeds ``limit``
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field or 'amount'} is required", {"field": field})

    if isinstance(value, bool):
        raise ValidationError(f"{field or 'amount'} must be numeric", {"field": field})

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(
            f"{field or 'amount'} must be numeric",
            {"field": field, "received_value": str(value)[:100]},
        )

    if not amount.is_finite():
        raise ValidationError(f"{field or 'amount'} must be finite", {"field": field})

    try:
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(
            f"{field or 'amount'} is out of range",
            {"field": field, "received_value": str(value)[:100]},
        )

    if limit is not None and abs(amount) > limit:
        raise ValidationError(
            f"{field or 'amount'} must not exceed {limit} in magnitude",
            {"field": field, "received_value": str(value)[:100]},
        )

    return amount


def _field(txn: Any, name: str) -> Any:
    if isinstance(txn, dict):
        return txn.get(name)
    return getattr(txn, name)


def _type_value(value: Any) -> str:
    return getattr(value, "value", value)


@dataclass(frozen=True)
class BalanceSummary:
    """Result of a balance calculation. Pure value object."""
    beginning_balance: Decimal
    period_income: Decimal
    period_expenses: Decimal
    calculated_book_balance: Decimal
    ending_balance: Decimal
    balance_difference: Decimal

    @property
    def is_balanced(self) -> bool:
        return self.balance_difference <= BALANCE_TOLERANCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "beginning_balance": str(self.beginning_balance),
            "period_income": str(self.period_income),
            "period_expenses": str(self.period_expenses),
            "calculated_book_balance": str(self.calculated_book_balance),
            "ending_balance": str(self.ending_balance),
            "balance_difference": str(self.balance_difference),
            "is_balanced": self.is_balanced,
        }


def calculate_balances(
    beginning_balance: Any,
    transactions: Iterable[Any],
    ending_balance: Any,
) -> BalanceSummary:
    """
    Calculate period totals and the book-vs-statement difference.

    Args:
        beginning_balance: Statement beginning balance
        transactions: Period ledger transactions (ORM rows or dicts with
            ``amount`` and ``type``); the amount's magnitude is used and
            ``type`` decides the sign
        ending_balance: Statement-declared ending balance

    Returns:
        BalanceSummary
    """
    beginning = to_money(beginning_balance, "beginning_balance")
    ending = to_money(ending_balance, "ending_balance")

    income = ZERO
    expenses = ZERO
    for txn in transactions:
        amount = abs(to_money(_field(txn, "amount"), "amount"))
        txn_type = _type_value(_field(txn, "type"))
        if txn_type == "income":
            income += amount
        elif txn_type == "expense":
            expenses += amount

    book = beginning + income - expenses

    return BalanceSummary(
        beginning_balance=beginning,
        period_income=income,
        period_expenses=expenses,
        calculated_book_balance=book,
        ending_balance=ending,
        balance_difference=abs(book - ending),
    )
