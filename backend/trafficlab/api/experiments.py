"""Store-backed experiment endpoints.

These go through ExperimentService, which persists assignments, applies
rebalances and publishes allocation snapshots.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import redis

from trafficlab.config import get_settings
from trafficlab.database import get_db
from trafficlab.exceptions import ConfigurationError, ExperimentNotFound, ExperimentStateError
from trafficlab.schemas.allocation import (
    Conflict,
    OperationType,
    OptimizeExperimentResponse,
    ReplaceVariantsRequest,
    UserAssignRequest,
)
from trafficlab.schemas.events import ExperimentEvent, VariantPerformance
from trafficlab.schemas.experiment import Experiment
from trafficlab.services.experiments import ExperimentService
from trafficlab.services.snapshot_cache import RedisSnapshotCache
from trafficlab.services.store import SqlAlchemyEventLog, SqlAlchemyExperimentStore

router = APIRouter(prefix="/experiments")
settings = get_settings()

# Shared snapshots are optional; without Redis each worker loads from the store
snapshot_cache = None
if settings.snapshot_cache_enabled:
    snapshot_cache = RedisSnapshotCache(
        redis.from_url(settings.redis_url),
        ttl_seconds=settings.snapshot_ttl_seconds
    )


def get_experiment_service(db: Session = Depends(get_db)) -> ExperimentService:
    """Dependency building an ExperimentService on the request's session."""
    return ExperimentService(
        store=SqlAlchemyExperimentStore(db),
        events=SqlAlchemyEventLog(db),
        cache=snapshot_cache,
        settings=settings,
    )


@router.post("", response_model=Experiment, status_code=201)
async def create_experiment(
    experiment: Experiment,
    description: Optional[str] = None,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Create an experiment; the traffic split must be valid."""
    if service.store.get_experiment(experiment.id):
        raise HTTPException(status_code=409, detail=f"Experiment {experiment.id} already exists")
    try:
        return service.create_experiment(experiment, description=description or "")
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/{experiment_id}", response_model=Experiment)
async def get_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    experiment = service.store.get_experiment(experiment_id)
    if not experiment:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return experiment


@router.post("/{experiment_id}/start", response_model=Experiment)
async def start_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Start a draft experiment."""
    try:
        return service.start_experiment(experiment_id)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExperimentStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{experiment_id}/stop", response_model=Experiment)
async def stop_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Stop a running experiment; new users are no longer assigned."""
    try:
        return service.stop_experiment(experiment_id)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExperimentStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{experiment_id}/assign")
async def assign_user(
    experiment_id: str,
    request: UserAssignRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Assign a user and store the assignment (idempotent)."""
    try:
        variant_id = service.assign_variant(experiment_id, request.user_id)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExperimentStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "experiment_id": experiment_id,
        "user_id": request.user_id,
        "variant_id": variant_id
    }


@router.put("/{experiment_id}/variants")
async def replace_variants(
    experiment_id: str,
    request: ReplaceVariantsRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Replace the variant set, rebalance stored assignments, publish a new snapshot."""
    try:
        snapshot, plan = service.update_variants(experiment_id, request.variants)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "experiment_id": experiment_id,
        "version": snapshot.version,
        "kept": len(plan.to_keep),
        "reassigned": len(plan.to_reassign),
        "new_assignments": plan.new_assignments
    }


@router.post("/{experiment_id}/optimize", response_model=OptimizeExperimentResponse)
async def optimize_experiment(
    experiment_id: str,
    exploration: Optional[float] = Query(None, ge=0, le=1),
    service: ExperimentService = Depends(get_experiment_service)
):
    """Run Thompson Sampling on logged events and apply the new split."""
    try:
        allocation, snapshot, plan = service.optimize_allocation(experiment_id, exploration)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return OptimizeExperimentResponse(
        experiment_id=experiment_id,
        version=snapshot.version,
        allocation=allocation,
        plan=plan
    )


@router.post("/{experiment_id}/events", status_code=201)
async def record_events(
    experiment_id: str,
    events: List[ExperimentEvent],
    service: ExperimentService = Depends(get_experiment_service)
):
    """Append exposure/conversion events for the experiment's variants."""
    try:
        recorded = service.record_events(experiment_id, events)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {"recorded": recorded}


@router.get("/{experiment_id}/variants/{variant_id}/performance", response_model=VariantPerformance)
async def get_variant_performance(
    experiment_id: str,
    variant_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    try:
        return service.variant_performance(experiment_id, variant_id)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{experiment_id}/conflicts", response_model=List[Conflict])
async def get_potential_conflicts(
    experiment_id: str,
    operation_type: OperationType = "all",
    service: ExperimentService = Depends(get_experiment_service)
):
    """Pre-launch check against the store's other draft/running experiments."""
    try:
        return service.detect_potential_conflicts(experiment_id, operation_type)
    except ExperimentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
