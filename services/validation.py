"""Two-phase validation of hourly readings.

Phase 1 checks each declared field on its own (required, numeric range, text
length and pattern, select membership, date/time parseability). Phase 2 runs
the form's cross-field rules in registration order, skipping any rule whose
inputs failed Phase 1 or whose governing field is hidden by a display
condition. Inputs are never mutated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union

from models.equipment import EquipmentContext
from models.forms import (
    TEMPORAL_TYPES,
    ConditionAction,
    ConditionOperator,
    DisplayCondition,
    FieldDefinition,
    FieldType,
    FormTemplate,
    RuleBinding,
)
from models.records import FieldValue
from services.rules import CrossFieldRule, parse_number, parse_rule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldResult:
    error: Optional[str] = None
    warning: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @property
    def has_warning(self) -> bool:
        return self.warning is not None


@dataclass
class ValidationResult:
    is_valid: bool
    errors: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, str] = field(default_factory=dict)
    field_results: Dict[str, FieldResult] = field(default_factory=dict)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _unit_suffix(definition: FieldDefinition) -> str:
    return f" {definition.unit}" if definition.unit else ""


def _format_bound(value: float) -> str:
    return f"{value:g}"


def evaluate_condition(condition: DisplayCondition, actual: Any) -> bool:
    """Return True when ``actual`` satisfies the condition's comparison."""
    expected = condition.value
    operator = condition.operator
    if operator is ConditionOperator.eq:
        return actual == expected
    if operator is ConditionOperator.ne:
        return actual != expected
    if operator is ConditionOperator.in_:
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if operator is ConditionOperator.contains:
        return actual is not None and str(expected) in str(actual)

    left = parse_number(actual)
    right = parse_number(expected)
    if left is None or right is None:
        return False
    if operator is ConditionOperator.gt:
        return left > right
    if operator is ConditionOperator.lt:
        return left < right
    if operator is ConditionOperator.gte:
        return left >= right
    return left <= right


def is_field_active(definition: FieldDefinition, all_values: Mapping[str, FieldValue]) -> bool:
    """A field is inactive when a hide/disable condition holds or a show condition fails."""
    for condition in definition.conditions:
        matched = evaluate_condition(condition, all_values.get(condition.depends_on))
        if condition.action is ConditionAction.show:
            if not matched:
                return False
        elif matched:
            return False
    return True


class ValidationEngine:

    def validate_field(
        self,
        definition: FieldDefinition,
        value: FieldValue,
        all_values: Mapping[str, FieldValue],
        context: Optional[EquipmentContext] = None,
    ) -> FieldResult:
        if not is_field_active(definition, all_values):
            return FieldResult()

        error = self._check_basic_rules(definition, value)
        if error is not None:
            return FieldResult(error=error)
        return FieldResult(warning=self._check_advisory_range(definition, value))

    def validate_form(
        self,
        fields: Union[FormTemplate, Sequence[FieldDefinition]],
        all_values: Mapping[str, FieldValue],
        context: Optional[EquipmentContext] = None,
        rules: Optional[Iterable[Union[RuleBinding, CrossFieldRule]]] = None,
    ) -> ValidationResult:
        if isinstance(fields, FormTemplate):
            definitions = list(fields.fields)
            bindings: list = list(fields.rules) if rules is None else list(rules)
        else:
            definitions = list(fields)
            bindings = list(rules or [])

        equipment = context or EquipmentContext()
        errors: Dict[str, str] = {}
        warnings: Dict[str, str] = {}
        field_results: Dict[str, FieldResult] = {}

        for definition in definitions:
            result = self.validate_field(
                definition, all_values.get(definition.key), all_values, equipment
            )
            field_results[definition.key] = result
            if result.error is not None:
                errors[definition.key] = result.error
            if result.warning is not None:
                warnings[definition.key] = result.warning

        by_key = {definition.key: definition for definition in definitions}
        for binding in bindings:
            rule = binding if isinstance(binding, CrossFieldRule) else parse_rule(binding)
            outcome = self._run_rule(rule, by_key, errors, all_values, equipment)
            if outcome is None:
                continue
            if outcome.error is not None and outcome.field not in errors:
                errors[outcome.field] = outcome.error
                logger.info(
                    "Blocking compliance rule failed",
                    extra={"rule_id": rule.rule_id, "field": outcome.field},
                )
            if outcome.warning is not None and outcome.field not in warnings:
                warnings[outcome.field] = outcome.warning

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            field_results=field_results,
        )

    @staticmethod
    def _run_rule(
        rule: CrossFieldRule,
        definitions: Mapping[str, FieldDefinition],
        phase_one_errors: Mapping[str, str],
        all_values: Mapping[str, FieldValue],
        context: EquipmentContext,
    ):
        if any(name in phase_one_errors for name in rule.involved_fields):
            return None
        governing = definitions.get(rule.field)
        if governing is not None and not is_field_active(governing, all_values):
            logger.debug(
                "Skipping rule for inactive field",
                extra={"rule_id": rule.rule_id, "field": rule.field},
            )
            return None
        return rule.evaluate(all_values, context)

    def _check_basic_rules(self, definition: FieldDefinition, value: FieldValue) -> Optional[str]:
        validation = definition.validation
        if validation.required and _is_empty(value):
            return f"{definition.display_label} is required"
        if _is_empty(value):
            return None

        if definition.is_numeric:
            return self._check_numeric(definition, value)
        if definition.type is FieldType.text:
            return self._check_text(definition, value)
        if definition.type is FieldType.select:
            return self._check_select(definition, value)
        if definition.type in TEMPORAL_TYPES:
            return self._check_temporal(definition, value)
        return None

    @staticmethod
    def _check_numeric(definition: FieldDefinition, value: FieldValue) -> Optional[str]:
        number = parse_number(value)
        if number is None:
            return f"{definition.display_label} must be a valid number"
        validation = definition.validation
        suffix = _unit_suffix(definition)
        if validation.min is not None and number < validation.min:
            return f"Minimum value is {_format_bound(validation.min)}{suffix}"
        if validation.max is not None and number > validation.max:
            return f"Maximum value is {_format_bound(validation.max)}{suffix}"
        if definition.type is FieldType.percentage and not 0 <= number <= 100:
            return "Percentage must be between 0 and 100"
        return None

    @staticmethod
    def _check_text(definition: FieldDefinition, value: FieldValue) -> Optional[str]:
        text = str(value)
        validation = definition.validation
        if validation.min_length is not None and len(text) < validation.min_length:
            return f"Minimum {validation.min_length} characters required"
        if validation.max_length is not None and len(text) > validation.max_length:
            return f"Maximum {validation.max_length} characters allowed"
        if validation.pattern is not None:
            try:
                matched = re.search(validation.pattern, text)
            except re.error:
                logger.warning(
                    "Ignoring invalid pattern on field",
                    extra={"field": definition.key},
                )
                return None
            if matched is None:
                return "Invalid format"
        return None

    @staticmethod
    def _check_select(definition: FieldDefinition, value: FieldValue) -> Optional[str]:
        if not definition.options:
            return None
        if str(value) not in {option.value for option in definition.options}:
            return "Please select a valid option"
        return None

    @staticmethod
    def _check_temporal(definition: FieldDefinition, value: FieldValue) -> Optional[str]:
        if not isinstance(value, str):
            return "Invalid date/time format"
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        parser = time.fromisoformat if definition.type is FieldType.time else datetime.fromisoformat
        try:
            parser(candidate)
        except ValueError:
            return "Please enter a valid date/time"
        return None

    @staticmethod
    def _check_advisory_range(definition: FieldDefinition, value: FieldValue) -> Optional[str]:
        if not definition.is_numeric or _is_empty(value):
            return None
        number = parse_number(value)
        if number is None:
            return None
        validation = definition.validation
        suffix = _unit_suffix(definition)
        if validation.warning_min is not None and number < validation.warning_min:
            return validation.warning_message or (
                f"Below recommended minimum ({_format_bound(validation.warning_min)}{suffix})"
            )
        if validation.warning_max is not None and number > validation.warning_max:
            return validation.warning_message or (
                f"Above recommended maximum ({_format_bound(validation.warning_max)}{suffix})"
            )
        return None


def validate_field(
    definition: FieldDefinition,
    value: FieldValue,
    all_values: Mapping[str, FieldValue],
    context: Optional[EquipmentContext] = None,
) -> FieldResult:
    return ValidationEngine().validate_field(definition, value, all_values, context)


def validate_form(
    fields: Union[FormTemplate, Sequence[FieldDefinition]],
    all_values: Mapping[str, FieldValue],
    context: Optional[EquipmentContext] = None,
    rules: Optional[Iterable[Union[RuleBinding, CrossFieldRule]]] = None,
) -> ValidationResult:
    return ValidationEngine().validate_form(fields, all_values, context, rules)
