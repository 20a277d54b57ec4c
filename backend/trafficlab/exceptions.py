"""Exceptions raised by the allocation engine."""


class TrafficLabError(Exception):
    """Base class for allocation engine errors."""
    pass


class ConfigurationError(TrafficLabError):
    """Raised when an experiment or variant configuration cannot be used.

    Examples: an empty variant list, duplicate variant ids, negative traffic
    percentages, or (in strict mode) percentages that do not sum to 100.
    """
    pass


class ExperimentNotFound(TrafficLabError):
    """Raised when the experiment store has no record for an experiment id."""

    def __init__(self, experiment_id: str):
        super().__init__(f"Experiment not found: {experiment_id}")
        self.experiment_id = experiment_id


class ExperimentStateError(TrafficLabError):
    """Raised when an operation does not fit the experiment's status.

    Assigning users to an experiment that is not running, or starting
    and stopping from the wrong status.
    """

    def __init__(self, experiment_id: str, status: str, message: str):
        super().__init__(message)
        self.experiment_id = experiment_id
        self.status = status
