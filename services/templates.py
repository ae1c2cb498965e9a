"""Built-in log templates for the equipment types supported out of the box."""

from __future__ import annotations

from typing import Dict, Optional

from models.forms import FieldDefinition, FieldType, FieldValidation, FormTemplate, RuleBinding
from services.rules import RuleId


def _numeric(
    key: str,
    label: str,
    *,
    field_type: FieldType = FieldType.number,
    unit: Optional[str] = None,
    required: bool = False,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> FieldDefinition:
    return FieldDefinition(
        key=key,
        label=label,
        type=field_type,
        unit=unit,
        validation=FieldValidation(required=required, min=minimum, max=maximum),
    )


THERMAL = FormTemplate(
    log_type="thermal",
    fields=[
        _numeric("inletReading", "Inlet Reading", field_type=FieldType.ppm, unit="PPM",
                 required=True, minimum=0, maximum=1000),
        _numeric("outletReading", "Outlet Reading", field_type=FieldType.ppm, unit="PPM",
                 required=True, minimum=0, maximum=1000),
        _numeric("toInletReadingH2S", "Inlet H2S", field_type=FieldType.ppm, unit="PPM",
                 minimum=0, maximum=1000),
        _numeric("lelInletReading", "Inlet LEL", field_type=FieldType.percentage, unit="%"),
        _numeric("exhaustTemperature", "Exhaust Temperature", field_type=FieldType.temperature,
                 unit="°F", required=True, minimum=200, maximum=1500),
        _numeric("totalizer", "Totalizer", minimum=0),
    ],
    rules=[
        RuleBinding(rule_id=RuleId.inlet_outlet.value, field="outletReading"),
        RuleBinding(rule_id=RuleId.destruction_efficiency.value, field="outletReading"),
        RuleBinding(rule_id=RuleId.toxic_gas.value, field="toInletReadingH2S"),
        RuleBinding(rule_id=RuleId.flammability.value, field="lelInletReading"),
        RuleBinding(rule_id=RuleId.temperature_band.value, field="exhaustTemperature"),
    ],
)

DEGAS = FormTemplate(
    log_type="degas",
    fields=[
        _numeric("inletReading", "Inlet Reading", field_type=FieldType.percentage, unit="%",
                 required=True, minimum=0, maximum=100),
        _numeric("outletReading", "Outlet Reading", field_type=FieldType.percentage, unit="%",
                 required=True, minimum=0, maximum=100),
        _numeric("toInletReadingH2S", "Inlet H2S", field_type=FieldType.ppm, unit="PPM",
                 minimum=0, maximum=1000),
        _numeric("vaporInletFlowRateFPM", "Vapor Inlet Flow Rate", field_type=FieldType.flow,
                 unit="FPM", required=True, minimum=0),
        _numeric("vaporInletFlowRateBBL", "Vapor Inlet Flow Rate (BBL)", field_type=FieldType.flow,
                 unit="BBL", minimum=0),
        _numeric("tankRefillFlowRate", "Tank Refill Flow Rate", field_type=FieldType.flow, minimum=0),
        _numeric("combustionAirFlowRate", "Combustion Air Flow Rate", field_type=FieldType.flow,
                 minimum=0),
        _numeric("vacuumAtTankVaporOutlet", "Vacuum at Tank Vapor Outlet",
                 field_type=FieldType.pressure, unit="inH2O", required=True, minimum=2),
        _numeric("exhaustTemperature", "Exhaust Temperature", field_type=FieldType.temperature,
                 unit="°F", required=True, minimum=300, maximum=1200),
        _numeric("totalizer", "Totalizer", minimum=0),
    ],
    rules=[
        RuleBinding(rule_id=RuleId.inlet_outlet.value, field="outletReading"),
        RuleBinding(rule_id=RuleId.toxic_gas.value, field="toInletReadingH2S"),
        RuleBinding(rule_id=RuleId.temperature_band.value, field="exhaustTemperature"),
    ],
)

_TEMPLATES: Dict[str, FormTemplate] = {template.log_type: template for template in (THERMAL, DEGAS)}


def available_log_types() -> list[str]:
    return sorted(_TEMPLATES)


def get_template(log_type: str) -> FormTemplate:
    """Return a copy of the built-in template for ``log_type``.

    Unknown log types get an empty template with no field or rule checks.
    """
    normalized = log_type.strip().lower()
    template = _TEMPLATES.get(normalized)
    if template is None:
        return FormTemplate(log_type=normalized)
    return template.model_copy(deep=True)
