"""Exceptions raised by the experiment and variant services."""


class ExperimentNotFoundError(LookupError):
    """Raised when an experiment ID does not exist."""

    def __init__(self, experiment_id: str) -> None:
        super().__init__(f"Experiment not found: {experiment_id}")
        self.experiment_id = experiment_id


class VariantNotFoundError(LookupError):
    """Raised when a variant ID does not exist or is not part of an experiment."""

    def __init__(self, variant_id: str, detail: str = "") -> None:
        message = f"Variant not found: {variant_id}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.variant_id = variant_id


class InvalidTransitionError(Exception):
    """Raised when an experiment status change is not allowed from its current status."""


class ExperimentStateError(Exception):
    """Raised when an operation needs a running experiment and it is not running."""


class TrafficSplitError(ValueError):
    """Raised when a traffic split does not cover the variants or does not sum to 1."""
