"""Read-only reference data about monitored equipment and its targets."""

from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

_MIN_TEMPERATURE = re.compile(r">\s*(\d+(?:\.\d+)?)")
_TEMPERATURE_RANGE = re.compile(r"(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)")
_LEL_TARGET = re.compile(r"(\d+(?:\.\d+)?)\s*%?\s*LEL", re.IGNORECASE)


class EquipmentContext(BaseModel):
    """Thresholds the validation rules read; never mutated by the engine."""

    model_config = ConfigDict(frozen=True)

    process_type: str = ""
    product: str = ""
    operating_temp_min: Optional[float] = None
    operating_temp_max: Optional[float] = None
    h2s_limit: float = Field(default=100.0, gt=0)
    h2s_warning: float = Field(default=50.0, ge=0)
    h2s_amp_required: bool = False
    h2s_amp_threshold: float = Field(default=10.0, ge=0)
    lel_limit: float = Field(default=25.0, gt=0)
    lel_target: Optional[float] = Field(default=10.0, ge=0)
    min_destruction_efficiency: float = Field(default=98.0, ge=0, le=100)

    @model_validator(mode="after")
    def _check_band(self) -> "EquipmentContext":
        low, high = self.operating_temp_min, self.operating_temp_max
        if low is not None and high is not None and low > high:
            raise ValueError("operating_temp_min must not exceed operating_temp_max")
        return self

    @property
    def has_temperature_band(self) -> bool:
        return self.operating_temp_min is not None or self.operating_temp_max is not None

    @property
    def h2s_warning_threshold(self) -> float:
        if self.h2s_amp_required:
            return min(self.h2s_warning, self.h2s_amp_threshold)
        return self.h2s_warning

    @classmethod
    def from_targets(
        cls,
        operating_temperature: str = "",
        facility_target: str = "",
        **overrides: Any,
    ) -> "EquipmentContext":
        """Build a context from the free-text targets stored on a project.

        ``operating_temperature`` accepts ``">1200"`` or ``"200-400"``;
        ``facility_target`` may mention a flammability target such as ``"10% LEL"``.
        """
        values: dict[str, Any] = {}
        if operating_temperature:
            range_match = _TEMPERATURE_RANGE.search(operating_temperature)
            min_match = _MIN_TEMPERATURE.search(operating_temperature)
            if min_match:
                values["operating_temp_min"] = float(min_match.group(1))
            elif range_match:
                values["operating_temp_min"] = float(range_match.group(1))
                values["operating_temp_max"] = float(range_match.group(2))
        if facility_target:
            lel_match = _LEL_TARGET.search(facility_target)
            if lel_match:
                values["lel_target"] = float(lel_match.group(1))
        values.update(overrides)
        return cls(**values)
