"""Segmentation and stratified sampling schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "in",
    "not_in",
]


class SegmentCondition(BaseModel):
    """A single predicate over one user property."""

    property: str
    operator: ConditionOperator
    value: Any = None


class SegmentDefinition(BaseModel):
    """A named segment; a user belongs to it when every condition holds."""

    name: str
    conditions: List[SegmentCondition] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "name": "high_value_eu",
                "conditions": [
                    {"property": "lifetime_value", "operator": "greater_than", "value": 500},
                    {"property": "country", "operator": "in", "value": ["DE", "FR", "NL"]}
                ]
            }
        }


class UserProfile(BaseModel):
    """A user id and whatever properties the property lookup returned."""

    id: str
    properties: Dict[str, Any] = Field(default_factory=dict)


class SegmentOverlap(BaseModel):
    segments: List[str]
    users: List[str]
    percentage: float


class SegmentOverlapReport(BaseModel):
    overlaps: List[SegmentOverlap] = Field(default_factory=list)
    exclusivity: Dict[str, float] = Field(default_factory=dict)


class StratifiedUser(BaseModel):
    id: str
    stratum: str


class StratumAssignment(BaseModel):
    user_id: str
    variant_id: str
