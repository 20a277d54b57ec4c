"""Stateless analysis endpoints: conflicts, segmentation, performance."""
from fastapi import APIRouter, HTTPException
from typing import Dict, List

from trafficlab.config import get_settings
from trafficlab.exceptions import ConfigurationError
from trafficlab.schemas.allocation import (
    Conflict,
    ConflictCheckRequest,
    PerformanceRequest,
    SegmentOverlapRequest,
    SegmentRequest,
    StratifiedSamplingRequest,
)
from trafficlab.schemas.events import VariantPerformance
from trafficlab.schemas.segmentation import SegmentOverlapReport, StratumAssignment
from trafficlab.services.conflicts import detect_allocation_conflicts
from trafficlab.services.performance import get_variant_performance
from trafficlab.services.segmentation import (
    analyze_segment_overlap,
    segment_users,
    stratified_sampling,
)

router = APIRouter()
settings = get_settings()


@router.post("/conflicts/detect", response_model=List[Conflict])
async def detect_conflicts(request: ConflictCheckRequest):
    """Conflicts between the experiments one user is assigned to."""
    return detect_allocation_conflicts(request.assignments, request.experiment_configs)


@router.post("/segments")
async def classify_users(request: SegmentRequest) -> Dict[str, List[str]]:
    """Classify users into every segment whose conditions they meet."""
    return segment_users(request.users, request.segments)


@router.post("/segments/overlap", response_model=SegmentOverlapReport)
async def segment_overlap(request: SegmentOverlapRequest):
    return analyze_segment_overlap(request.segments)


@router.post("/segments/stratified", response_model=Dict[str, List[StratumAssignment]])
async def stratified(request: StratifiedSamplingRequest):
    """Assign users per stratum, optionally reweighting variants per stratum."""
    try:
        return stratified_sampling(request.users, request.variants, request.stratum_weights)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/performance/{variant_id}", response_model=VariantPerformance)
async def variant_performance(variant_id: str, request: PerformanceRequest):
    """Performance of a variant from an explicit list of events."""
    return get_variant_performance(variant_id, request.events, z=settings.confidence_z)
