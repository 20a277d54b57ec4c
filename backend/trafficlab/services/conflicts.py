"""Detect experiments that collide on flags, UI elements or pages.

Conflicts are warnings for a human to review. Nothing here blocks an
assignment or a launch.
"""
from typing import Iterable, List, Mapping, Optional

from trafficlab.middleware.logging import get_logger
from trafficlab.schemas.allocation import Conflict
from trafficlab.schemas.experiment import Experiment, ExperimentConfig

logger = get_logger()

AXES = ("feature_flags", "ui_elements", "target_pages")

_REASONS = {
    "feature_flags": "Feature flag conflict",
    "ui_elements": "UI element conflict",
    "target_pages": "Page targeting conflict",
}


def _overlap(config1: ExperimentConfig, config2: ExperimentConfig, axis: str) -> List[str]:
    first = getattr(config1, axis)
    second = set(getattr(config2, axis))
    # Keep the first config's order so reasons read predictably
    return [key for key in dict.fromkeys(first) if key in second]


def check_experiment_conflict(
    experiment1: str,
    experiment2: str,
    config1: Optional[ExperimentConfig],
    config2: Optional[ExperimentConfig],
    axes: Iterable[str] = AXES,
) -> List[Conflict]:
    """Compare two declared configs; one Conflict per colliding axis.

    A missing config on either side is not a conflict.
    """
    if config1 is None or config2 is None:
        return []

    conflicts = []
    for axis in axes:
        overlap = _overlap(config1, config2, axis)
        if overlap:
            conflicts.append(Conflict(
                experiment1=experiment1,
                experiment2=experiment2,
                reason=f"{_REASONS[axis]}: {', '.join(overlap)}",
                axis=axis,
                overlap=overlap,
            ))
    return conflicts


def detect_allocation_conflicts(
    assignments: Mapping[str, str],
    experiment_configs: Mapping[str, ExperimentConfig],
) -> List[Conflict]:
    """
    Check every pair of experiments a user is simultaneously assigned to.

    Args:
        assignments: experiment_id -> variant_id for one user
        experiment_configs: experiment_id -> declared configuration

    Returns:
        Conflicts in pair order (by position in ``assignments``)
    """
    experiment_ids = list(assignments)
    conflicts: List[Conflict] = []

    for i, exp1 in enumerate(experiment_ids):
        for exp2 in experiment_ids[i + 1:]:
            conflicts.extend(check_experiment_conflict(
                exp1,
                exp2,
                experiment_configs.get(exp1),
                experiment_configs.get(exp2),
            ))

    if conflicts:
        logger.warning(
            "conflicts_detected",
            mode="assignment",
            experiments=experiment_ids,
            count=len(conflicts),
        )
    return conflicts


def axes_for_operation(operation_type: str) -> tuple:
    """Axes inspected for an operation type ("all" or a single axis name)."""
    if operation_type == "all":
        return AXES
    if operation_type in AXES:
        return (operation_type,)
    raise ValueError(f"Unknown operation type: {operation_type}")


def detect_configuration_conflicts(
    experiment: Experiment,
    others: Iterable[Experiment],
    operation_type: str = "all",
) -> List[Conflict]:
    """Proactive check of one experiment's declared config against others.

    Used before launch, so no user assignments are involved.
    """
    axes = axes_for_operation(operation_type)
    conflicts: List[Conflict] = []
    checked = set()

    for other in others:
        if other.id == experiment.id or other.id in checked:
            continue
        checked.add(other.id)
        conflicts.extend(check_experiment_conflict(
            experiment.id, other.id, experiment.config, other.config, axes=axes
        ))

    if conflicts:
        logger.warning(
            "conflicts_detected",
            mode="proactive",
            experiment_id=experiment.id,
            operation_type=operation_type,
            compared=len(checked),
            count=len(conflicts),
        )
    return conflicts
