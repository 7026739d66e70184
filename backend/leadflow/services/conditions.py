import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Union

from leadflow.errors import ConditionEvaluationError
from leadflow.models.automation import MAGNITUDE_OPERATORS, AutomationCondition, Operator
from leadflow.services.paths import MISSING, resolve_path, stringify

logger = logging.getLogger(__name__)

ConditionLike = Union[AutomationCondition, Mapping[str, Any]]


def _to_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str) and value.strip():
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
        if number.is_nan() or number.is_infinite():
            return None
        return number
    return None


def _unpack(condition: ConditionLike):
    if isinstance(condition, AutomationCondition):
        return condition.field, condition.operator.value, condition.value
    return condition.get("field"), condition.get("operator"), condition.get("value")


class ConditionEvaluator:
    """Evaluates ``(field, operator, value)`` predicates against event data, AND-ed."""

    def evaluate(self, conditions: Iterable[ConditionLike], data: Mapping[str, Any]) -> bool:
        conditions = list(conditions)
        # A malformed condition fails the whole run even if an earlier one is false.
        for condition in conditions:
            self.check(condition)
        for index, condition in enumerate(conditions):
            if not self.evaluate_one(condition, data):
                logger.debug(f"[CONDITIONS] Condition {index} did not hold: {_unpack(condition)}")
                return False
        return True

    def check(self, condition: ConditionLike) -> Operator:
        field, raw_operator, expected = _unpack(condition)
        if not field or not isinstance(field, str):
            raise ConditionEvaluationError("Condition is missing a field", field=field, operator=raw_operator)
        try:
            operator = Operator(raw_operator)
        except ValueError:
            raise ConditionEvaluationError(
                f"Unknown operator '{raw_operator}' for field '{field}'", field=field, operator=raw_operator
            )
        if operator in MAGNITUDE_OPERATORS and _to_number(stringify(expected)) is None:
            raise ConditionEvaluationError(
                f"Condition on '{field}' uses '{operator.value}' with non-numeric value '{stringify(expected)}'",
                field=field,
                operator=operator.value,
            )
        return operator

    def evaluate_one(self, condition: ConditionLike, data: Mapping[str, Any]) -> bool:
        operator = self.check(condition)
        field, _, expected = _unpack(condition)
        expected_text = stringify(expected)
        actual = resolve_path(data, field)

        if operator in MAGNITUDE_OPERATORS:
            return self._compare_magnitude(operator, actual, expected_text)

        if operator == Operator.NOT_EQUALS:
            if actual is MISSING:
                return True
            return stringify(actual) != expected_text

        if actual is MISSING:
            return False

        if operator == Operator.EQUALS:
            return stringify(actual) == expected_text

        # Operator.CONTAINS
        if isinstance(actual, (list, tuple, set)):
            return expected_text in {stringify(item) for item in actual}
        return expected_text in stringify(actual)

    def _compare_magnitude(self, operator: Operator, actual: Any, expected_text: str) -> bool:
        expected = _to_number(expected_text)
        number = _to_number(actual)
        if number is None:
            return False
        if operator == Operator.GREATER_THAN:
            return number > expected
        if operator == Operator.LESS_THAN:
            return number < expected
        if operator == Operator.GREATER_OR_EQUAL:
            return number >= expected
        return number <= expected


def evaluate_conditions(conditions: Iterable[ConditionLike], data: Mapping[str, Any]) -> bool:
    return ConditionEvaluator().evaluate(conditions, data)
