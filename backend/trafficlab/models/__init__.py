"""Database models."""
from trafficlab.models.experiment import Experiment, Variant
from trafficlab.models.assignment import Assignment
from trafficlab.models.event import ExperimentEvent

__all__ = ["Experiment", "Variant", "Assignment", "ExperimentEvent"]
