"""Pydantic schemas for the allocation engine and its HTTP surface."""
from trafficlab.schemas.experiment import (
    Assignment,
    Experiment,
    ExperimentConfig,
    ExperimentStatus,
    Variant,
)
from trafficlab.schemas.events import ExperimentEvent, VariantAggregate, VariantPerformance
from trafficlab.schemas.allocation import Conflict, RebalancePlan
from trafficlab.schemas.segmentation import (
    SegmentCondition,
    SegmentDefinition,
    StratifiedUser,
    UserProfile,
)

__all__ = [
    "Assignment",
    "Conflict",
    "Experiment",
    "ExperimentConfig",
    "ExperimentEvent",
    "ExperimentStatus",
    "RebalancePlan",
    "SegmentCondition",
    "SegmentDefinition",
    "StratifiedUser",
    "UserProfile",
    "Variant",
    "VariantAggregate",
    "VariantPerformance",
]
