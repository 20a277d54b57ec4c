"""Event and variant performance schemas."""
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentEvent(BaseModel):
    """An exposure or conversion recorded against a variant. Append-only."""

    experiment_id: str
    variant_id: str
    user_id: Optional[str] = None
    event_type: Literal["exposure", "conversion"]
    value: Optional[float] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "experiment_id": "exp_checkout_v2",
                "variant_id": "var_treatment",
                "user_id": "user_123",
                "event_type": "conversion",
                "value": 42.5
            }
        }


class VariantAggregate(BaseModel):
    """Counts an event log can compute without returning raw events."""

    impressions: int = 0
    conversions: int = 0
    value_sum: float = 0.0
    value_count: int = 0


class ConfidenceInterval(BaseModel):
    lower: float
    upper: float


class VariantPerformance(BaseModel):
    """Observed performance of a single variant."""

    variant_id: Optional[str] = None
    impressions: int
    conversions: int
    conversion_rate: float
    average_value: float
    confidence_interval: ConfidenceInterval
