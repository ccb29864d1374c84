"""
Matching Rules Module
"""

from .statement_rules import StatementMatchingRules, MatchSuggestion, statement_rules

__all__ = ["StatementMatchingRules", "MatchSuggestion", "statement_rules"]
