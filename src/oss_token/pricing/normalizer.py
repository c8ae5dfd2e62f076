"""Map raw project metrics of very different scales onto [0, 1]."""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class NormalizationType(str, Enum):
    LINEAR = "linear"
    LOGARITHMIC = "logarithmic"
    INVERSE = "inverse"


class NormalizationPolicy(BaseModel):
    type: NormalizationType = NormalizationType.LINEAR
    min: float
    max: float

    @model_validator(mode="after")
    def _validate_bounds(self) -> "NormalizationPolicy":
        if not (math.isfinite(self.min) and math.isfinite(self.max)):
            raise ValueError("Normalization bounds must be finite")
        if self.max <= self.min:
            raise ValueError("max must be greater than min")
        if self.type == NormalizationType.LOGARITHMIC and self.min <= 0:
            raise ValueError("Logarithmic normalization requires min > 0")
        if self.type == NormalizationType.INVERSE and self.min < 0:
            raise ValueError("Inverse normalization requires min >= 0")
        return self


class QualityParameter(BaseModel):
    """One weighted metric of the quality score, validated when loaded."""

    id: str
    weight: float = Field(..., ge=0, le=1)
    normalization: NormalizationPolicy
    enabled: bool = True


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def linear_normalize(value: float, minimum: float, maximum: float) -> float:
    if maximum <= minimum:
        raise ValueError("max must be greater than min")
    if math.isnan(value):
        return 0.0
    return _clamp((value - minimum) / (maximum - minimum))


def log_normalize(value: float, minimum: float, maximum: float) -> float:
    """Like :func:`linear_normalize` on a log scale, so 10 vs 100 stars counts as much as 1000 vs 10000."""

    if minimum <= 0 or maximum <= 0:
        raise ValueError("Logarithmic normalization requires positive bounds")
    if maximum <= minimum:
        raise ValueError("max must be greater than min")
    if math.isnan(value):
        return 0.0
    log_min = math.log(minimum)
    return _clamp((math.log(max(value, minimum)) - log_min) / (math.log(maximum) - log_min))


def inverse_normalize(value: float, minimum: float, maximum: float) -> float:
    """Smaller is better: ``minimum`` scores 1, ``maximum`` scores 0."""

    if minimum < 0:
        raise ValueError("Inverse normalization requires min >= 0")
    if math.isnan(value):
        return 0.0
    return linear_normalize(maximum + minimum - value, minimum, maximum)


_NORMALIZERS = {
    NormalizationType.LINEAR: linear_normalize,
    NormalizationType.LOGARITHMIC: log_normalize,
    NormalizationType.INVERSE: inverse_normalize,
}


def normalize(value: float, policy: NormalizationPolicy) -> float:
    return _NORMALIZERS[policy.type](float(value), policy.min, policy.max)
