import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    IN = "in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


ORDERING_OPERATORS = frozenset({
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN_OR_EQUAL,
})


class RuleDefinitionError(ValueError):
    pass


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        field_value = self._get_field_value(context, self.field)
        try:
            return self._apply_operator(field_value, self.value)
        except TypeError as e:
            # A value of the wrong type never satisfies the condition.
            logger.warning("Condition %s %s %r not evaluable: %s", self.field, self.operator.value, self.value, e)
            return False

    def _get_field_value(self, context: dict, field_path: str) -> Any:
        parts = field_path.split(".")
        value = context
        for part in parts:
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None
        return value

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        # Counters that have never been touched read as zero.
        if op in ORDERING_OPERATORS and field_value is None:
            field_value = 0
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.NOT_EQUALS: return field_value != compare_value
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.LESS_THAN: return field_value < compare_value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        if op == ConditionOperator.LESS_THAN_OR_EQUAL: return field_value <= compare_value
        if op == ConditionOperator.CONTAINS: return compare_value in field_value if field_value else False
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        if op == ConditionOperator.IS_FALSE: return bool(field_value) is False
        return False

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        try:
            operator = ConditionOperator(data["operator"])
        except (KeyError, ValueError) as e:
            raise RuleDefinitionError(f"Invalid condition operator in {data!r}") from e
        if not data.get("field"):
            raise RuleDefinitionError(f"Condition is missing a field: {data!r}")
        if operator in ORDERING_OPERATORS and not isinstance(data.get("value"), (int, float)):
            raise RuleDefinitionError(f"Operator {operator.value} needs a numeric value")
        if operator == ConditionOperator.CONTAINS and not isinstance(data.get("value"), str):
            raise RuleDefinitionError("Operator contains needs a string value")
        if operator == ConditionOperator.IN and not isinstance(data.get("value"), (list, tuple)):
            raise RuleDefinitionError("Operator in needs a list value")
        return cls(field=data["field"], operator=operator, value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        try:
            operator = LogicalOperator(data["operator"])
        except ValueError as e:
            raise RuleDefinitionError(f"Invalid logical operator {data['operator']!r}") from e
        return cls(operator=operator, conditions=[parse_predicate(c) for c in data["conditions"]])


Predicate = Union[Condition, ConditionGroup]


def parse_predicate(data: dict) -> Predicate:
    if not isinstance(data, dict):
        raise RuleDefinitionError(f"Predicate must be an object, got {type(data).__name__}")
    if "operator" in data and "conditions" in data:
        return ConditionGroup.from_dict(data)
    return Condition.from_dict(data)


@dataclass
class Rule:
    id: str
    name: str
    predicate: Optional[Predicate]
    is_active: bool = True
    priority: int = 0

    def evaluate(self, context: dict) -> bool:
        if not self.is_active or self.predicate is None:
            return False
        return self.predicate.evaluate(context)


class RuleEngine:
    def __init__(self, rules: Optional[list[Rule]] = None):
        self.rules: dict[str, Rule] = {}
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def list_rules(self) -> list[Rule]:
        rules = list(self.rules.values())
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def evaluate(self, context: dict) -> list[Rule]:
        return [rule for rule in self.list_rules() if rule.evaluate(context)]
