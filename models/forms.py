"""Declarative field and rule definitions consumed by the validation engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class FieldType(str, Enum):
    number = "number"
    decimal = "decimal"
    temperature = "temperature"
    pressure = "pressure"
    percentage = "percentage"
    ppm = "ppm"
    flow = "flow"
    text = "text"
    select = "select"
    date = "date"
    time = "time"
    datetime = "datetime"


NUMERIC_TYPES = frozenset(
    {
        FieldType.number,
        FieldType.decimal,
        FieldType.temperature,
        FieldType.pressure,
        FieldType.percentage,
        FieldType.ppm,
        FieldType.flow,
    }
)

TEMPORAL_TYPES = frozenset({FieldType.date, FieldType.time, FieldType.datetime})


class FieldValidation(BaseModel):
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)
    pattern: Optional[str] = None
    warning_min: Optional[float] = None
    warning_max: Optional[float] = None
    warning_message: Optional[str] = None


class SelectOption(BaseModel):
    value: str
    label: str = ""


class ConditionOperator(str, Enum):
    eq = "eq"
    ne = "ne"
    gt = "gt"
    lt = "lt"
    gte = "gte"
    lte = "lte"
    in_ = "in"
    contains = "contains"


class ConditionAction(str, Enum):
    show = "show"
    hide = "hide"
    disable = "disable"


class DisplayCondition(BaseModel):
    """Hides, disables or shows a field depending on another field's value."""

    depends_on: str
    operator: ConditionOperator
    value: Any = None
    action: ConditionAction = ConditionAction.hide


class FieldDefinition(BaseModel):
    key: str = Field(..., min_length=1)
    label: str = ""
    type: FieldType = FieldType.number
    unit: Optional[str] = None
    validation: FieldValidation = Field(default_factory=FieldValidation)
    options: List[SelectOption] = Field(default_factory=list)
    conditions: List[DisplayCondition] = Field(default_factory=list)

    @property
    def display_label(self) -> str:
        return self.label or self.key

    @property
    def is_numeric(self) -> bool:
        return self.type in NUMERIC_TYPES


class RuleBinding(BaseModel):
    """Attach a cross-field rule, by its stable id, to a governing field.

    ``inputs`` maps rule roles (``inlet``, ``outlet``) to field keys for rules
    that read more than one value.
    """

    rule_id: str
    field: str
    inputs: Dict[str, str] = Field(default_factory=dict)


class FormTemplate(BaseModel):
    log_type: str
    fields: List[FieldDefinition] = Field(default_factory=list)
    rules: List[RuleBinding] = Field(default_factory=list)

    def get_field(self, key: str) -> Optional[FieldDefinition]:
        for definition in self.fields:
            if definition.key == key:
                return definition
        return None
