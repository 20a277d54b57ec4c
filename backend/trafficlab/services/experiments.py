"""Experiment orchestration: snapshots, assignment persistence, rebalancing."""
import random
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from trafficlab.config import Settings, get_settings
from trafficlab.exceptions import ConfigurationError, ExperimentNotFound, ExperimentStateError
from trafficlab.middleware.logging import get_logger
from trafficlab.schemas.allocation import Conflict, RebalancePlan
from trafficlab.schemas.events import ExperimentEvent, VariantPerformance
from trafficlab.schemas.experiment import Assignment, Experiment, ExperimentStatus, Variant
from trafficlab.services.bandit import calculate_optimal_allocation
from trafficlab.services.bucketing import assign_to_variant, validate_traffic_split
from trafficlab.services.conflicts import detect_configuration_conflicts
from trafficlab.services.performance import conversion_data_from_aggregates, summarize_aggregate
from trafficlab.services.rebalancer import rebalance_traffic_allocation
from trafficlab.services.snapshot_cache import RedisSnapshotCache
from trafficlab.services.snapshots import AllocationSnapshot, SnapshotRegistry
from trafficlab.services.store import EventLog, ExperimentStore

logger = get_logger()

# One registry per process; every ExperimentService shares it
default_registry = SnapshotRegistry()


class ExperimentService:
    """Service tying the pure allocation components to a store and event log."""

    def __init__(
        self,
        store: ExperimentStore,
        events: EventLog,
        registry: Optional[SnapshotRegistry] = None,
        cache: Optional[RedisSnapshotCache] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.events = events
        self.registry = registry if registry is not None else default_registry
        self.cache = cache
        self.settings = settings or get_settings()
        self.rng = rng

    def _require_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if not experiment:
            raise ExperimentNotFound(experiment_id)
        return experiment

    def _require_state(self, experiment_id: str) -> Tuple[ExperimentStatus, int]:
        state = self.store.get_allocation_state(experiment_id)
        if state is None:
            raise ExperimentNotFound(experiment_id)
        return state

    def _snapshot_at(self, experiment_id: str, version: int) -> AllocationSnapshot:
        """
        A snapshot at least as new as the stored allocation version.

        Looks in the local registry, then the shared Redis cache, then the
        store. Anything older than ``version`` is skipped, so a worker never
        buckets against a variant set another worker has replaced.
        """
        snapshot = self.registry.get(experiment_id)
        if snapshot is not None and snapshot.version >= version:
            return snapshot

        if self.cache is not None:
            shared = self.cache.fetch(experiment_id)
            if shared is not None and shared.version >= version:
                self.registry.publish(shared)
                return self.registry.get(experiment_id)

        experiment = self._require_experiment(experiment_id)
        if not experiment.variants:
            raise ConfigurationError(f"Experiment {experiment_id} has no variants")
        snapshot = AllocationSnapshot.build(
            experiment_id,
            experiment.variants,
            version=experiment.allocation_version,
        )
        if self.registry.publish(snapshot) and self.cache is not None:
            self.cache.publish(snapshot)
        return self.registry.get(experiment_id)

    def get_snapshot(self, experiment_id: str) -> AllocationSnapshot:
        """Current allocation snapshot, revalidated against the stored version."""
        _, version = self._require_state(experiment_id)
        return self._snapshot_at(experiment_id, version)

    def _publish(self, experiment_id: str, variants: Sequence[Variant], version: int) -> AllocationSnapshot:
        snapshot = AllocationSnapshot.build(experiment_id, variants, version=version)
        self.registry.publish(snapshot)
        if self.cache is not None:
            self.cache.publish(snapshot)
        return snapshot

    def _bucket(self, experiment_id: str, user_id: str, snapshot: AllocationSnapshot) -> str:
        return assign_to_variant(
            experiment_id,
            user_id,
            snapshot.variants,
            strict=self.settings.strict_traffic_sum,
            tolerance=self.settings.traffic_sum_tolerance,
        )

    def assign_variant(self, experiment_id: str, user_id: str) -> str:
        """
        Assign a user in a running experiment and persist the assignment.

        Uses consistent hashing, so the same user always gets the same
        variant for an unchanged variant set and concurrent first calls
        converge on one stored row.

        Args:
            experiment_id: Experiment identifier
            user_id: Unique user identifier

        Returns:
            Variant id

        Raises:
            ExperimentNotFound: If the experiment does not exist
            ExperimentStateError: If the experiment is not running

        Example:
            >>> service = ExperimentService(store, events)
            >>> variant = service.assign_variant("exp_checkout_v2", "user_123")
            >>> print(variant)  # "control" or "one_click" deterministically
        """
        status, version = self._require_state(experiment_id)
        if status != ExperimentStatus.RUNNING:
            raise ExperimentStateError(
                experiment_id,
                status.value,
                f"Experiment {experiment_id} is {status.value}, not running",
            )

        snapshot = self._snapshot_at(experiment_id, version)
        stored = self.store.upsert_assignment(Assignment(
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=self._bucket(experiment_id, user_id, snapshot),
        ))
        variant_id = stored.variant_id

        # A variant set change may have committed while this row was written;
        # its rebalance pass could have missed the row, so check again
        _, latest = self._require_state(experiment_id)
        if latest > snapshot.version:
            snapshot = self._snapshot_at(experiment_id, latest)
            target = self._bucket(experiment_id, user_id, snapshot)
            if target != variant_id:
                self.store.move_assignments(experiment_id, {user_id: target})
                logger.info(
                    "assignment_repaired",
                    experiment_id=experiment_id,
                    user_id=user_id,
                    stale_variant=variant_id,
                    variant_id=target,
                    snapshot_version=snapshot.version,
                )
                variant_id = target

        logger.info(
            "variant_assigned",
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=variant_id,
            snapshot_version=snapshot.version,
        )
        return variant_id

    def assign_multiple(self, experiment_ids: Iterable[str], user_id: str) -> Dict[str, str]:
        """Assign a user in several experiments; each is bucketed independently."""
        return {
            experiment_id: self.assign_variant(experiment_id, user_id)
            for experiment_id in experiment_ids
        }

    def create_experiment(self, experiment: Experiment, description: str = "") -> Experiment:
        """
        Create a new experiment.

        Raises:
            ConfigurationError: If the traffic split is invalid
        """
        errors = validate_traffic_split(experiment.variants, self.settings.traffic_sum_tolerance)
        if errors:
            raise ConfigurationError("; ".join(errors))

        created = self.store.create_experiment(experiment, description=description)
        logger.info(
            "experiment_created",
            experiment_id=created.id,
            store_id=created.store_id,
            variants=[v.id for v in created.variants],
        )
        return created

    def start_experiment(self, experiment_id: str) -> Experiment:
        """Move a draft experiment to running so users can be assigned."""
        status, _ = self._require_state(experiment_id)
        if status != ExperimentStatus.DRAFT:
            raise ExperimentStateError(
                experiment_id,
                status.value,
                f"Only draft experiments can be started; {experiment_id} is {status.value}",
            )

        experiment = self.store.set_status(experiment_id, ExperimentStatus.RUNNING)
        logger.info("experiment_started", experiment_id=experiment_id)
        return experiment

    def stop_experiment(self, experiment_id: str) -> Experiment:
        """Stop a running experiment and drop its snapshots."""
        status, _ = self._require_state(experiment_id)
        if status != ExperimentStatus.RUNNING:
            raise ExperimentStateError(
                experiment_id,
                status.value,
                f"Only running experiments can be stopped; {experiment_id} is {status.value}",
            )

        experiment = self.store.set_status(experiment_id, ExperimentStatus.STOPPED)
        self.registry.discard(experiment_id)
        if self.cache is not None:
            self.cache.invalidate(experiment_id)
        logger.info("experiment_stopped", experiment_id=experiment_id)
        return experiment

    def update_variants(self, experiment_id: str, new_variants: Sequence[Variant]) -> Tuple[AllocationSnapshot, RebalancePlan]:
        """
        Replace an experiment's variant set.

        Existing assignments are diffed against the new set and the store
        applies the diff together with a version bump. Assignments written
        by other workers between the diff and the commit were bucketed
        against the previous set, so they get a second pass.
        """
        self._require_experiment(experiment_id)
        if self.settings.strict_traffic_sum:
            errors = validate_traffic_split(new_variants, self.settings.traffic_sum_tolerance)
            if errors:
                raise ConfigurationError("; ".join(errors))

        variants = [v.model_copy(update={"experiment_id": experiment_id}) for v in new_variants]
        plan = rebalance_traffic_allocation(
            experiment_id,
            variants,
            self.store.list_assignments(experiment_id),
        )
        version = self.store.apply_rebalance(experiment_id, variants, plan)
        snapshot = self._publish(experiment_id, variants, version)

        planned = set(plan.new_assignments)
        late = rebalance_traffic_allocation(
            experiment_id,
            variants,
            [a for a in self.store.list_assignments(experiment_id) if a.user_id not in planned],
        )
        if late.new_assignments:
            self.store.move_assignments(experiment_id, late.new_assignments)
            plan.to_reassign.extend(late.to_reassign)
            plan.new_assignments.update(late.new_assignments)
            logger.info(
                "late_assignments_rebalanced",
                experiment_id=experiment_id,
                moved=len(late.new_assignments),
                version=version,
            )
        return snapshot, plan

    def optimize_allocation(
        self,
        experiment_id: str,
        exploration: Optional[float] = None,
    ) -> Tuple[Dict[str, float], AllocationSnapshot, RebalancePlan]:
        """
        Run the bandit on observed events and apply the new split.

        Returns:
            Tuple of (allocation, new snapshot, rebalance plan)
        """
        snapshot = self.get_snapshot(experiment_id)
        aggregates = {
            v.id: self.events.aggregate(experiment_id, v.id)
            for v in snapshot.variants
        }

        allocation = calculate_optimal_allocation(
            snapshot.variants,
            conversion_data_from_aggregates(aggregates),
            exploration=self.settings.bandit_exploration if exploration is None else exploration,
            control_floor=self.settings.bandit_control_floor,
            min_allocation=self.settings.bandit_min_allocation,
            rng=self.rng,
        )

        new_variants = [
            v.model_copy(update={"traffic_percentage": allocation[v.id]})
            for v in snapshot.variants
        ]
        new_snapshot, plan = self.update_variants(experiment_id, new_variants)
        return allocation, new_snapshot, plan

    def record_events(self, experiment_id: str, events: Sequence[ExperimentEvent]) -> int:
        """Append events to the log after checking they belong to the experiment."""
        snapshot = self.get_snapshot(experiment_id)
        known = set(snapshot.percentages)
        for event in events:
            if event.experiment_id != experiment_id:
                raise ConfigurationError(
                    f"Event for experiment {event.experiment_id} posted to {experiment_id}"
                )
            if event.variant_id not in known:
                raise ConfigurationError(
                    f"Unknown variant {event.variant_id} for experiment {experiment_id}"
                )
        return self.events.extend(events)

    def variant_performance(self, experiment_id: str, variant_id: str) -> VariantPerformance:
        """Performance of one variant via the event log's aggregation query."""
        self._require_experiment(experiment_id)
        aggregate = self.events.aggregate(experiment_id, variant_id)
        return summarize_aggregate(aggregate, z=self.settings.confidence_z, variant_id=variant_id)

    def detect_potential_conflicts(self, experiment_id: str, operation_type: str = "all") -> List[Conflict]:
        """
        Check an experiment's declared config against the store's other experiments.

        Only experiments of the same store that are not stopped are compared.

        Raises:
            ExperimentNotFound: If the experiment does not exist
            ValueError: If operation_type is not "all" or a conflict axis
        """
        experiment = self._require_experiment(experiment_id)
        others = self.store.list_experiments(
            store_id=experiment.store_id,
            statuses=[ExperimentStatus.DRAFT, ExperimentStatus.RUNNING],
        )
        return detect_configuration_conflicts(experiment, others, operation_type)
