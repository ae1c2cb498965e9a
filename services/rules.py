"""Cross-field compliance rules.

Rule sets arrive as data (a stable ``rule_id`` bound to a governing field), but
each id parses into one of a closed set of rule classes with typed inputs. An
id the engine does not know becomes :class:`UnknownRule`, which logs and is
skipped so newer rule sets never crash an older engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Tuple

from models.equipment import EquipmentContext
from models.forms import RuleBinding
from models.records import FieldValue

logger = logging.getLogger(__name__)

DEFAULT_INLET_FIELD = "inletReading"
DEFAULT_OUTLET_FIELD = "outletReading"


class RuleId(str, Enum):
    destruction_efficiency = "thermal_efficiency_check"
    toxic_gas = "h2s_safety_check"
    flammability = "lel_threshold_check"
    temperature_band = "temperature_range_check"
    inlet_outlet = "inlet_outlet_consistency"


@dataclass(frozen=True)
class RuleOutcome:
    field: str
    error: Optional[str] = None
    warning: Optional[str] = None


def parse_number(value: FieldValue) -> Optional[float]:
    """Return a float for numeric values and numeric strings, else ``None``."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            return float(candidate)
        except ValueError:
            return None
    return None


def _format_number(value: float) -> str:
    return f"{value:g}"


@dataclass(frozen=True)
class CrossFieldRule:
    rule_id: str
    field: str

    @property
    def involved_fields(self) -> Tuple[str, ...]:
        return (self.field,)

    def evaluate(
        self,
        values: Mapping[str, FieldValue],
        context: EquipmentContext,
    ) -> Optional[RuleOutcome]:
        raise NotImplementedError


@dataclass(frozen=True)
class DestructionEfficiencyRule(CrossFieldRule):
    inlet_field: str = DEFAULT_INLET_FIELD
    outlet_field: str = DEFAULT_OUTLET_FIELD

    @property
    def involved_fields(self) -> Tuple[str, ...]:
        return (self.field, self.inlet_field, self.outlet_field)

    def evaluate(self, values, context):
        inlet = parse_number(values.get(self.inlet_field))
        outlet = parse_number(values.get(self.outlet_field))
        if inlet is None or outlet is None or inlet <= 0:
            return None
        efficiency = (inlet - outlet) / inlet * 100
        if efficiency < context.min_destruction_efficiency:
            return RuleOutcome(
                field=self.field,
                warning=(
                    f"Destruction efficiency {efficiency:.1f}% is below the "
                    f"{_format_number(context.min_destruction_efficiency)}% minimum"
                ),
            )
        return None


@dataclass(frozen=True)
class ToxicGasRule(CrossFieldRule):

    def evaluate(self, values, context):
        h2s = parse_number(values.get(self.field))
        if h2s is None:
            return None
        if h2s > context.h2s_limit:
            return RuleOutcome(
                field=self.field,
                error=f"H2S exceeds the safe operating limit ({_format_number(context.h2s_limit)} PPM)",
            )
        threshold = context.h2s_warning_threshold
        if h2s > threshold:
            if context.h2s_amp_required and threshold == context.h2s_amp_threshold:
                message = (
                    "H2S amplifier required: reading is above the project threshold "
                    f"({_format_number(threshold)} PPM)"
                )
            else:
                message = (
                    f"H2S approaching the safety threshold ({_format_number(threshold)} PPM), "
                    "monitor closely"
                )
            return RuleOutcome(field=self.field, warning=message)
        return None


@dataclass(frozen=True)
class FlammabilityRule(CrossFieldRule):

    def evaluate(self, values, context):
        lel = parse_number(values.get(self.field))
        if lel is None:
            return None
        if lel > context.lel_limit:
            return RuleOutcome(
                field=self.field,
                error=(
                    f"LEL exceeds the safety limit ({_format_number(context.lel_limit)}%), "
                    "immediate action required"
                ),
            )
        if context.lel_target is not None and lel > context.lel_target:
            return RuleOutcome(
                field=self.field,
                warning=f"Above the project LEL target ({_format_number(context.lel_target)}%)",
            )
        return None


@dataclass(frozen=True)
class TemperatureBandRule(CrossFieldRule):

    def evaluate(self, values, context):
        temperature = parse_number(values.get(self.field))
        if temperature is None or not context.has_temperature_band:
            return None
        low, high = context.operating_temp_min, context.operating_temp_max
        if low is not None and temperature < low:
            band = f"{_format_number(low)}-{_format_number(high)}" if high is not None else f">{_format_number(low)}"
            return RuleOutcome(
                field=self.field,
                warning=f"Below the equipment operating temperature band ({band})",
            )
        if high is not None and temperature > high:
            band = f"{_format_number(low)}-{_format_number(high)}" if low is not None else f"<{_format_number(high)}"
            return RuleOutcome(
                field=self.field,
                warning=f"Above the equipment operating temperature band ({band})",
            )
        return None


@dataclass(frozen=True)
class InletOutletRule(CrossFieldRule):
    inlet_field: str = DEFAULT_INLET_FIELD
    outlet_field: str = DEFAULT_OUTLET_FIELD

    @property
    def involved_fields(self) -> Tuple[str, ...]:
        return (self.field, self.inlet_field, self.outlet_field)

    def evaluate(self, values, context):
        inlet = parse_number(values.get(self.inlet_field))
        outlet = parse_number(values.get(self.outlet_field))
        if inlet is None or outlet is None:
            return None
        if outlet > inlet:
            return RuleOutcome(
                field=self.field,
                warning="Outlet reading higher than inlet, check system efficiency",
            )
        return None


@dataclass(frozen=True)
class UnknownRule(CrossFieldRule):

    def evaluate(self, values, context):
        logger.warning(
            "Skipping unknown validation rule",
            extra={"rule_id": self.rule_id, "field": self.field},
        )
        return None


def parse_rule(binding: RuleBinding) -> CrossFieldRule:
    """Turn a data-driven binding into its typed rule."""
    try:
        rule_id = RuleId(binding.rule_id)
    except ValueError:
        return UnknownRule(rule_id=binding.rule_id, field=binding.field)

    inlet = binding.inputs.get("inlet", DEFAULT_INLET_FIELD)
    outlet = binding.inputs.get("outlet", binding.field)

    if rule_id is RuleId.destruction_efficiency:
        return DestructionEfficiencyRule(
            rule_id=rule_id.value, field=binding.field, inlet_field=inlet, outlet_field=outlet
        )
    if rule_id is RuleId.toxic_gas:
        return ToxicGasRule(rule_id=rule_id.value, field=binding.field)
    if rule_id is RuleId.flammability:
        return FlammabilityRule(rule_id=rule_id.value, field=binding.field)
    if rule_id is RuleId.temperature_band:
        return TemperatureBandRule(rule_id=rule_id.value, field=binding.field)
    return InletOutletRule(
        rule_id=rule_id.value, field=binding.field, inlet_field=inlet, outlet_field=outlet
    )
