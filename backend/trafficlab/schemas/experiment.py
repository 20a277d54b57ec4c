"""Experiment, variant and assignment schemas."""
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
import enum


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle status."""
    DRAFT = "draft"
    RUNNING = "running"
    STOPPED = "stopped"


class Variant(BaseModel):
    """One arm of an experiment and the share of traffic it receives."""

    id: str = Field(..., min_length=1)
    experiment_id: Optional[str] = None
    name: Optional[str] = None
    traffic_percentage: float = Field(..., ge=0, le=100)
    is_control: bool = False
    config: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "var_control",
                "experiment_id": "exp_checkout_v2",
                "traffic_percentage": 50,
                "is_control": True,
                "config": {}
            }
        }


class ExperimentConfig(BaseModel):
    """What an experiment declares it touches.

    Only used to detect collisions between experiments that run at the
    same time; the allocation engine never applies these changes.
    """

    feature_flags: Dict[str, Any] = Field(default_factory=dict)
    ui_elements: Dict[str, Any] = Field(default_factory=dict)
    target_pages: List[str] = Field(default_factory=list)

    @field_validator("target_pages", mode="before")
    @classmethod
    def coerce_single_page(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class Experiment(BaseModel):
    """A running (or draft/stopped) experiment for one store."""

    id: str = Field(..., min_length=1)
    store_id: Optional[str] = None
    name: str = ""
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: List[Variant] = Field(default_factory=list)
    config: ExperimentConfig = Field(default_factory=ExperimentConfig)
    # Set by the store; bumped each time the variant set changes
    allocation_version: int = Field(1, ge=1)


class Assignment(BaseModel):
    """A user's stored variant for one experiment."""

    experiment_id: str
    user_id: str
    variant_id: str

    class Config:
        frozen = True
