"""Immutable allocation snapshots and an atomically swapped registry.

Every assignment call reads the live {variant list, percentages} for an
experiment from a snapshot. The optimizer and rebalancer never edit a
snapshot in place: they build a new one and publish it, which replaces
the registry's whole mapping in a single reference assignment. A reader
therefore sees either the old snapshot or the new one, never a mix.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Sequence, Tuple
import threading

from trafficlab.middleware.logging import get_logger
from trafficlab.schemas.experiment import Variant
from trafficlab.services.bucketing import check_variants, sorted_variants

logger = get_logger()


@dataclass(frozen=True)
class AllocationSnapshot:
    """The variant set live for one experiment at one version."""

    experiment_id: str
    version: int
    variants: Tuple[Variant, ...]
    percentages: Mapping[str, float] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.experiment_id

    @classmethod
    def build(cls, experiment_id: str, variants: Sequence[Variant], version: int = 1) -> "AllocationSnapshot":
        """Create a snapshot with variants in canonical order."""
        check_variants(variants)
        ordered = tuple(sorted_variants(variants))
        percentages = MappingProxyType({v.id: v.traffic_percentage for v in ordered})
        return cls(
            experiment_id=experiment_id,
            version=version,
            variants=ordered,
            percentages=percentages,
        )

    def to_dict(self) -> Dict:
        return {
            "experiment_id": self.experiment_id,
            "version": self.version,
            "variants": [v.model_dump() for v in self.variants],
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "AllocationSnapshot":
        variants = [Variant(**v) for v in data["variants"]]
        return cls.build(data["experiment_id"], variants, version=int(data["version"]))


class SnapshotRegistry:
    """Process-local registry of the current snapshot per experiment.

    Reads take no lock. Writers serialize on a lock, copy the mapping, and
    swap it in.
    """

    def __init__(self):
        self._snapshots: Mapping[str, AllocationSnapshot] = MappingProxyType({})
        self._write_lock = threading.Lock()

    def get(self, experiment_id: str) -> Optional[AllocationSnapshot]:
        return self._snapshots.get(experiment_id)

    def publish(self, snapshot: AllocationSnapshot) -> bool:
        """
        Make a snapshot live.

        Returns:
            False if a snapshot with the same or a newer version is already live
        """
        with self._write_lock:
            current = self._snapshots.get(snapshot.experiment_id)
            if current is not None and current.version >= snapshot.version:
                return False

            updated = dict(self._snapshots)
            updated[snapshot.experiment_id] = snapshot
            self._snapshots = MappingProxyType(updated)

        logger.info(
            "snapshot_published",
            experiment_id=snapshot.experiment_id,
            version=snapshot.version,
            percentages=dict(snapshot.percentages),
        )
        return True

    def discard(self, experiment_id: str) -> None:
        with self._write_lock:
            if experiment_id not in self._snapshots:
                return
            updated = dict(self._snapshots)
            del updated[experiment_id]
            self._snapshots = MappingProxyType(updated)

    def __len__(self) -> int:
        return len(self._snapshots)
