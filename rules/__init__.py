"""
Rules Engine Package

Provides the predicate language achievements are written in: conditions
over dotted paths into a student's metrics, combined with AND/OR groups.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    RuleDefinitionError,
    parse_predicate,
)

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "LogicalOperator",
    "RuleDefinitionError",
    "parse_predicate",
]
