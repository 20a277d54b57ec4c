"""Stateless allocation endpoints: bucketing, rebalancing, bandit optimization."""
from fastapi import APIRouter, HTTPException
from typing import Dict

from trafficlab.config import get_settings
from trafficlab.exceptions import ConfigurationError
from trafficlab.schemas.allocation import (
    AssignMultipleRequest,
    AssignRequest,
    OptimizeRequest,
    OptimizeResponse,
    RebalancePlan,
    RebalanceRequest,
)
from trafficlab.services.bandit import calculate_optimal_allocation
from trafficlab.services.bucketing import assign_to_multiple_experiments, assign_to_variant
from trafficlab.services.rebalancer import rebalance_traffic_allocation

router = APIRouter(prefix="/allocation")
settings = get_settings()


@router.post("/assign")
async def assign(request: AssignRequest) -> Dict[str, str]:
    """Bucket one user into one of the given variants."""
    try:
        variant_id = assign_to_variant(
            request.experiment_id,
            request.user_id,
            request.variants,
            strict=settings.strict_traffic_sum,
            tolerance=settings.traffic_sum_tolerance,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "experiment_id": request.experiment_id,
        "user_id": request.user_id,
        "variant_id": variant_id
    }


@router.post("/assign-multiple")
async def assign_multiple(request: AssignMultipleRequest) -> Dict[str, Dict[str, str]]:
    """Bucket one user into several experiments independently."""
    try:
        assignments = assign_to_multiple_experiments(
            request.experiments,
            request.user_id,
            strict=settings.strict_traffic_sum,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {"assignments": assignments}


@router.post("/rebalance", response_model=RebalancePlan)
async def rebalance(request: RebalanceRequest):
    """Diff existing assignments against a new variant list."""
    try:
        return rebalance_traffic_allocation(
            request.experiment_id,
            request.new_variants,
            request.existing_assignments,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/optimize", response_model=OptimizeResponse)
async def optimize(request: OptimizeRequest):
    """
    Thompson Sampling allocation from conversion data.

    The result is a proposal; apply it with /allocation/rebalance or
    PUT /experiments/{id}/variants.
    """
    exploration = settings.bandit_exploration if request.exploration is None else request.exploration
    try:
        allocation = calculate_optimal_allocation(
            request.variants,
            request.conversion_data,
            exploration=exploration,
            control_floor=settings.bandit_control_floor,
            min_allocation=settings.bandit_min_allocation,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return OptimizeResponse(allocation=allocation)
