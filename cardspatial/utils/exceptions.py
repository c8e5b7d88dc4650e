"""
Exception classes for cardspatial.

All exceptions in one place. Every one of them is fatal for a run.
"""


class CardSpatialError(Exception):
    """Base exception for all cardspatial errors."""

    pass


class DataError(CardSpatialError):
    """Data-related errors (missing, invalid format, etc.)."""

    pass


class DataNotFoundError(DataError):
    """Required data not found."""

    pass


class MissingFieldError(DataNotFoundError):
    """An expected metadata column is absent."""

    pass


class DataCompatibilityError(DataError):
    """Dimension or alignment mismatch between input objects."""

    pass


class FilteringExhaustedError(DataError):
    """No genes or spots survive the filtering thresholds."""

    pass


class ParameterError(CardSpatialError):
    """Invalid parameter errors."""

    pass


class ProcessingError(CardSpatialError):
    """Errors during analysis processing."""

    pass


class DependencyError(CardSpatialError):
    """Missing or incompatible dependency."""

    pass
