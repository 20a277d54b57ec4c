"""Persistence collaborators for the allocation engine.

The engine itself only depends on the two protocols below. The SQLAlchemy
classes are the reference adapter used by the HTTP service; any other
store can be plugged into ExperimentService as long as it honours the
same contracts (idempotent assignment upsert keyed on experiment and
user, atomic application of a rebalance, aggregation queries for events).
"""
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import and_, case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from trafficlab.exceptions import ExperimentNotFound
from trafficlab.middleware.logging import get_logger
from trafficlab import models
from trafficlab.schemas.allocation import RebalancePlan
from trafficlab.schemas.events import ExperimentEvent, VariantAggregate
from trafficlab.schemas.experiment import (
    Assignment,
    Experiment,
    ExperimentConfig,
    ExperimentStatus,
    Variant,
)

logger = get_logger()


class ExperimentStore(Protocol):
    """CRUD store for experiments, variants and assignments."""

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]: ...

    def list_experiments(
        self,
        store_id: Optional[str] = None,
        statuses: Optional[Sequence[ExperimentStatus]] = None,
    ) -> List[Experiment]: ...

    def create_experiment(self, experiment: Experiment, description: str = "") -> Experiment: ...

    def get_allocation_state(self, experiment_id: str) -> Optional[Tuple[ExperimentStatus, int]]: ...

    def set_status(self, experiment_id: str, status: ExperimentStatus) -> Experiment: ...

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]: ...
    def upsert_assignment(self, assignment: Assignment) -> Assignment: ...

    def list_assignments(self, experiment_id: str) -> List[Assignment]: ...

    def move_assignments(self, experiment_id: str, new_assignments: Dict[str, str]) -> int: ...

    def apply_rebalance(
        self,
        experiment_id: str,
        variants: Sequence[Variant],
        plan: RebalancePlan,
    ) -> int: ...


class EventLog(Protocol):
    """Append-only event log with an aggregation query."""

    def append(self, event: ExperimentEvent) -> None: ...

    def extend(self, events: Iterable[ExperimentEvent]) -> int: ...

    def aggregate(self, experiment_id: str, variant_id: str) -> VariantAggregate: ...


def _variant_to_schema(row: models.Variant) -> Variant:
    return Variant(
        id=row.id,
        experiment_id=row.experiment_id,
        name=row.name,
        traffic_percentage=row.traffic_percentage,
        is_control=row.is_control,
        config=row.config or {},
    )


def _experiment_to_schema(row: models.Experiment) -> Experiment:
    return Experiment(
        id=row.id,
        store_id=row.store_id,
        name=row.name or "",
        status=row.status,
        variants=[_variant_to_schema(v) for v in row.variants],
        config=ExperimentConfig(**(row.config or {})),
        allocation_version=row.allocation_version or 1,
    )


def _assignment_to_schema(row: models.Assignment) -> Assignment:
    return Assignment(
        experiment_id=row.experiment_id,
        user_id=row.user_id,
        variant_id=row.variant_id,
    )


class SqlAlchemyExperimentStore:
    """ExperimentStore on a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def _get_row(self, experiment_id: str) -> Optional[models.Experiment]:
        return self.db.query(models.Experiment).filter(
            models.Experiment.id == experiment_id
        ).first()

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        row = self._get_row(experiment_id)
        return _experiment_to_schema(row) if row else None

    def list_experiments(
        self,
        store_id: Optional[str] = None,
        statuses: Optional[Sequence[ExperimentStatus]] = None,
    ) -> List[Experiment]:
        query = self.db.query(models.Experiment)
        if store_id is not None:
            query = query.filter(models.Experiment.store_id == store_id)
        if statuses:
            query = query.filter(models.Experiment.status.in_(list(statuses)))
        return [_experiment_to_schema(row) for row in query.order_by(models.Experiment.created_at.asc()).all()]

    def create_experiment(self, experiment: Experiment, description: str = "") -> Experiment:
        row = models.Experiment(
            id=experiment.id,
            store_id=experiment.store_id,
            name=experiment.name,
            description=description,
            status=experiment.status,
            config=experiment.config.model_dump(),
            allocation_version=1,
        )
        row.variants = [
            models.Variant(
                id=v.id,
                name=v.name,
                traffic_percentage=v.traffic_percentage,
                is_control=v.is_control,
                config=v.config,
            )
            for v in experiment.variants
        ]
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return _experiment_to_schema(row)

    def get_allocation_state(self, experiment_id: str) -> Optional[Tuple[ExperimentStatus, int]]:
        """Status and allocation version without loading variants."""
        state = self.db.query(
            models.Experiment.status,
            models.Experiment.allocation_version
        ).filter(models.Experiment.id == experiment_id).first()
        if state is None:
            return None
        return state.status, state.allocation_version

    def set_status(self, experiment_id: str, status: ExperimentStatus) -> Experiment:
        row = self._get_row(experiment_id)
        if row is None:
            raise ExperimentNotFound(experiment_id)
        row.status = status
        self.db.commit()
        self.db.refresh(row)
        return _experiment_to_schema(row)

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        row = self.db.query(models.Assignment).filter(
            models.Assignment.experiment_id == experiment_id,
            models.Assignment.user_id == user_id
        ).first()
        return _assignment_to_schema(row) if row else None

    def upsert_assignment(self, assignment: Assignment) -> Assignment:
        """
        Store a first-time assignment; existing rows win.

        Two requests racing on the same (experiment, user) computed the same
        variant, so whichever insert lands first is the right answer and the
        loser just reads it back.
        """
        existing = self.get_assignment(assignment.experiment_id, assignment.user_id)
        if existing:
            return existing

        self.db.add(models.Assignment(
            experiment_id=assignment.experiment_id,
            user_id=assignment.user_id,
            variant_id=assignment.variant_id,
        ))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            stored = self.get_assignment(assignment.experiment_id, assignment.user_id)
            logger.info(
                "assignment_upsert_race",
                experiment_id=assignment.experiment_id,
                user_id=assignment.user_id,
                stored_variant=stored.variant_id if stored else None,
            )
            if stored is None:
                raise
            return stored
        return assignment

    def list_assignments(self, experiment_id: str) -> List[Assignment]:
        rows = self.db.query(models.Assignment).filter(
            models.Assignment.experiment_id == experiment_id
        ).order_by(models.Assignment.id.asc()).all()
        return [_assignment_to_schema(row) for row in rows]

    def apply_rebalance(
        self,
        experiment_id: str,
        variants: Sequence[Variant],
        plan: RebalancePlan,
    ) -> int:
        """
        Replace the variant set and move reassigned users in one commit.

        Returns:
            The new allocation version
        """
        row = self._get_row(experiment_id)
        if row is None:
            raise ExperimentNotFound(experiment_id)

        current = {v.id: v for v in row.variants}
        wanted = {v.id: v for v in variants}

        for variant_id, variant_row in current.items():
            if variant_id not in wanted:
                row.variants.remove(variant_row)

        for variant_id, variant in wanted.items():
            variant_row = current.get(variant_id)
            if variant_row is None:
                row.variants.append(models.Variant(
                    id=variant.id,
                    name=variant.name,
                    traffic_percentage=variant.traffic_percentage,
                    is_control=variant.is_control,
                    config=variant.config,
                ))
            else:
                variant_row.name = variant.name
                variant_row.traffic_percentage = variant.traffic_percentage
                variant_row.is_control = variant.is_control
                variant_row.config = variant.config

        self._move_rows(experiment_id, plan.new_assignments)
        # Incremented in SQL so concurrent writers never reuse a version
        row.allocation_version = models.Experiment.allocation_version + 1

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(row)
        return row.allocation_version

    def _move_rows(self, experiment_id: str, new_assignments: Dict[str, str]) -> int:
        if not new_assignments:
            return 0
        rows = self.db.query(models.Assignment).filter(
            models.Assignment.experiment_id == experiment_id,
            models.Assignment.user_id.in_(list(new_assignments))
        ).all()
        for assignment_row in rows:
            assignment_row.variant_id = new_assignments[assignment_row.user_id]
        return len(rows)

    def move_assignments(self, experiment_id: str, new_assignments: Dict[str, str]) -> int:
        """Point existing assignments at new variants (user_id -> variant_id)."""
        moved = self._move_rows(experiment_id, new_assignments)
        if moved:
            self.db.commit()
        return moved


class SqlAlchemyEventLog:
    """EventLog on a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def append(self, event: ExperimentEvent) -> None:
        self.db.add(models.ExperimentEvent(
            experiment_id=event.experiment_id,
            variant_id=event.variant_id,
            user_id=event.user_id,
            event_type=event.event_type,
            value=event.value,
            timestamp=event.timestamp,
        ))
        self.db.commit()

    def extend(self, events: Iterable[ExperimentEvent]) -> int:
        count = 0
        for event in events:
            self.db.add(models.ExperimentEvent(
                experiment_id=event.experiment_id,
                variant_id=event.variant_id,
                user_id=event.user_id,
                event_type=event.event_type,
                value=event.value,
                timestamp=event.timestamp,
            ))
            count += 1
        self.db.commit()
        return count

    def aggregate(self, experiment_id: str, variant_id: str) -> VariantAggregate:
        """Count exposures/conversions and sum conversion values in the database."""
        Event = models.ExperimentEvent
        is_exposure = Event.event_type == "exposure"
        is_conversion = Event.event_type == "conversion"
        has_value = and_(is_conversion, Event.value.isnot(None))

        impressions, conversions, value_sum, value_count = self.db.query(
            func.sum(case((is_exposure, 1), else_=0)),
            func.sum(case((is_conversion, 1), else_=0)),
            func.sum(case((has_value, Event.value), else_=0.0)),
            func.sum(case((has_value, 1), else_=0)),
        ).filter(
            Event.experiment_id == experiment_id,
            Event.variant_id == variant_id
        ).one()

        return VariantAggregate(
            impressions=int(impressions or 0),
            conversions=int(conversions or 0),
            value_sum=float(value_sum or 0.0),
            value_count=int(value_count or 0),
        )

