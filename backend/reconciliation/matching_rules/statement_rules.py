"""
Bank Statement Matching Rules

Scores ledger transactions against bank statement entries and proposes
one-to-one match suggestions.

Primary Match Keys:
- amount (exact magnitude, same direction)
- date (same day or within a window)

Secondary Heuristics:
- description similarity

Scoring:
- Weighted sum scaled to 0-100
- Pairs at or above the suggestion threshold are suggested
- Suggestions never reuse a transaction or a statement entry

Scoring is pure: no database access, deterministic for equal inputs.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence, Tuple

from reconciliation.balance import to_money
from reconciliation.errors import ValidationError


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _type_value(value: Any) -> Optional[str]:
    return getattr(value, "value", value)


@dataclass
class MatchSuggestion:
    """
    A proposed pairing. Ephemeral: computed from the current unmatched
    sets, never persisted.
    """
    transaction: Any
    statement_entry: Any
    similarity_score: int
    scoring_breakdown: Dict[str, float] = field(default_factory=dict)

    @property
    def transaction_id(self) -> str:
        return str(_field(self.transaction, "id"))

    @property
    def statement_entry_id(self) -> str:
        return str(_field(self.statement_entry, "id"))


class StatementMatchingRules:
    """
    Matching rules engine for ledger transactions vs. bank statement entries.

    The amount carries most of the weight: without an amount match a pair
    tops out at 45 points, below the default threshold.
    """

    # Scoring weights
    WEIGHT_AMOUNT = 0.55
    WEIGHT_DATE = 0.25
    WEIGHT_DESCRIPTION = 0.20

    # Tolerances
    AMOUNT_TOLERANCE_PERCENT = Decimal("0.01")  # 1% tolerance
    DATE_TOLERANCE_DAYS = 3

    DEFAULT_THRESHOLD = 70

    def __init__(self, threshold: int = DEFAULT_THRESHOLD):
        if not 0 <= threshold <= 100:
            raise ValueError("threshold must be between 0 and 100")
        self.threshold = threshold

    def score(self, transaction: Any, entry: Any) -> Tuple[int, Dict[str, float]]:
        """
        Score a transaction/statement entry pair.

        Returns:
            Tuple of (similarity_score 0-100, scoring_breakdown)
        """
        breakdown = {
            "amount": self._score_amount(transaction, entry),
            "date": self._score_date(transaction, entry),
            "description": self._score_description(transaction, entry),
        }

        total = (
            breakdown["amount"] * self.WEIGHT_AMOUNT +
            breakdown["date"] * self.WEIGHT_DATE +
            breakdown["description"] * self.WEIGHT_DESCRIPTION
        )
        breakdown["total"] = round(total, 4)

        return int(round(total * 100)), breakdown

    def suggest(
        self,
        transactions: Sequence[Any],
        entries: Sequence[Any],
    ) -> List[MatchSuggestion]:
        """
        Propose one-to-one suggestions between unmatched transactions and
        unmatched statement entries.

        Every pair is scored; pairs at or above the threshold are taken
        greedily by descending score (ties broken by ids), skipping any
        transaction or entry already used.
        """
        scored: List[Tuple[int, str, str, Any, Any, Dict[str, float]]] = []
        for txn in transactions:
            for entry in entries:
                similarity, breakdown = self.score(txn, entry)
                if similarity >= self.threshold:
                    scored.append((
                        similarity,
                        str(_field(txn, "id")),
                        str(_field(entry, "id")),
                        txn,
                        entry,
                        breakdown,
                    ))

        scored.sort(key=lambda s: (-s[0], s[1], s[2]))

        used_transactions = set()
        used_entries = set()
        suggestions = []
        for similarity, txn_id, entry_id, txn, entry, breakdown in scored:
            if txn_id in used_transactions or entry_id in used_entries:
                continue
            used_transactions.add(txn_id)
            used_entries.add(entry_id)
            suggestions.append(MatchSuggestion(
                transaction=txn,
                statement_entry=entry,
                similarity_score=similarity,
                scoring_breakdown=breakdown,
            ))

        return suggestions

    def _score_amount(self, transaction: Any, entry: Any) -> float:
        """Score amount matching. Direction must agree."""
        if _type_value(_field(transaction, "type")) != _type_value(_field(entry, "type")):
            return 0.0

        try:
            txn_amount = abs(to_money(_field(transaction, "amount")))
            entry_amount = abs(to_money(_field(entry, "amount")))
        except ValidationError:
            return 0.0

        if txn_amount == entry_amount:
            return 1.0

        if txn_amount == 0 or entry_amount == 0:
            return 0.0

        tolerance = txn_amount * self.AMOUNT_TOLERANCE_PERCENT
        if abs(txn_amount - entry_amount) <= tolerance:
            return 0.5

        return 0.0

    def _score_date(self, transaction: Any, entry: Any) -> float:
        """Score date proximity."""
        txn_date = _field(transaction, "date")
        entry_date = _field(entry, "date")

        if not isinstance(txn_date, date) or not isinstance(entry_date, date):
            return 0.5  # Neutral score if date missing

        diff = abs((txn_date - entry_date).days)

        if diff == 0:
            return 1.0
        elif diff <= 1:
            return 0.9
        elif diff <= self.DATE_TOLERANCE_DAYS:
            return 0.7
        elif diff <= 7:
            return 0.4
        elif diff <= 14:
            return 0.2

        return 0.0

    def _score_description(self, transaction: Any, entry: Any) -> float:
        """Score description similarity using fuzzy matching."""
        txn_desc = " ".join((_field(transaction, "description") or "").lower().split())
        entry_desc = " ".join((_field(entry, "description") or "").lower().split())

        if not txn_desc or not entry_desc:
            return 0.5  # Neutral score

        return SequenceMatcher(None, txn_desc, entry_desc).ratio()


# Default rules engine
statement_rules = StatementMatchingRules()
