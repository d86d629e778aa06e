"""Error taxonomy for example generation runs."""

from __future__ import annotations


class TrioPileupError(Exception):
    """Base class for all errors raised by triopileup."""


class ConfigurationError(TrioPileupError):
    """Invalid options or incompatible inputs; raised before any partition is processed."""


class LabelingError(ConfigurationError):
    """Labeling cannot produce usable training labels (e.g. no labeler algorithm selected)."""


class PartitionError(TrioPileupError):
    """A single partition could not be processed; other partitions are unaffected."""

    def __init__(self, message: str, *, partition: object = None) -> None:
        super().__init__(message)
        self.partition = partition


class SinkError(TrioPileupError):
    """Writing examples or candidates failed. Aborts the run."""

    def __init__(self, message: str, *, path: object = None) -> None:
        super().__init__(message)
        self.path = path
