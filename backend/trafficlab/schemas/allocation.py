"""Allocation, rebalancing and conflict schemas (plus request bodies)."""
from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional

from trafficlab.schemas.experiment import Assignment, ExperimentConfig, Variant
from trafficlab.schemas.events import ExperimentEvent
from trafficlab.schemas.segmentation import (
    SegmentDefinition,
    StratifiedUser,
    UserProfile,
)

ConflictAxis = Literal["feature_flags", "ui_elements", "target_pages"]
OperationType = Literal["all", "feature_flags", "ui_elements", "target_pages"]


class RebalancePlan(BaseModel):
    """Diff produced when an experiment's variant set changes.

    The persistence layer applies it; nothing here writes assignments.
    """

    to_keep: List[Assignment] = Field(default_factory=list)
    to_reassign: List[Assignment] = Field(default_factory=list)
    new_assignments: Dict[str, str] = Field(default_factory=dict)  # user_id -> variant_id


class Conflict(BaseModel):
    """Two experiments that touch the same flag, UI element or page."""

    experiment1: str
    experiment2: str
    reason: str
    axis: ConflictAxis
    overlap: List[str] = Field(default_factory=list)


class ConversionStats(BaseModel):
    conversions: int = Field(0, ge=0)
    participants: int = Field(0, ge=0)


# Request bodies

class AssignRequest(BaseModel):
    experiment_id: str
    user_id: str
    variants: List[Variant]

    class Config:
        json_schema_extra = {
            "example": {
                "experiment_id": "exp_checkout_v2",
                "user_id": "user_123",
                "variants": [
                    {"id": "control", "traffic_percentage": 50, "is_control": True},
                    {"id": "one_click", "traffic_percentage": 50}
                ]
            }
        }


class ExperimentVariants(BaseModel):
    id: str
    variants: List[Variant]


class AssignMultipleRequest(BaseModel):
    user_id: str
    experiments: List[ExperimentVariants]


class RebalanceRequest(BaseModel):
    experiment_id: str
    new_variants: List[Variant]
    existing_assignments: List[Assignment] = Field(default_factory=list)


class OptimizeRequest(BaseModel):
    variants: List[Variant]
    conversion_data: Dict[str, ConversionStats] = Field(default_factory=dict)
    exploration: Optional[float] = Field(None, ge=0, le=1)


class OptimizeResponse(BaseModel):
    allocation: Dict[str, float]


class ConflictCheckRequest(BaseModel):
    assignments: Dict[str, str]  # experiment_id -> variant_id
    experiment_configs: Dict[str, ExperimentConfig] = Field(default_factory=dict)


class SegmentRequest(BaseModel):
    users: List[UserProfile]
    segments: List[SegmentDefinition]


class SegmentOverlapRequest(BaseModel):
    segments: Dict[str, List[str]]


class StratifiedSamplingRequest(BaseModel):
    users: List[StratifiedUser]
    variants: List[Variant]
    stratum_weights: Optional[Dict[str, float]] = None


class PerformanceRequest(BaseModel):
    events: List[ExperimentEvent] = Field(default_factory=list)


class UserAssignRequest(BaseModel):
    user_id: str


class ReplaceVariantsRequest(BaseModel):
    variants: List[Variant]


class OptimizeExperimentResponse(BaseModel):
    experiment_id: str
    version: int
    allocation: Dict[str, float]
    plan: RebalancePlan
