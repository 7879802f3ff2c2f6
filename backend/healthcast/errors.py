"""
Forecasting engine exceptions.

Everything raised by the formatter, engine, validator and stores derives from
HealthcastError so callers can catch the whole family in one place.
"""


class HealthcastError(Exception):
    """Base exception for the healthcast package."""
    pass


class MalformedInputError(HealthcastError, ValueError):
    """Raised when a historical row lacks a parseable date or a valid count."""
    pass


class InsufficientDataError(HealthcastError):
    """Raised when a series or sample is too short to be meaningful."""
    pass


class FittingDegenerateError(HealthcastError):
    """Raised when a model fit fails or produces unusable output."""
    pass


class DimensionMismatchError(HealthcastError, ValueError):
    """Raised when actual and predicted sequences differ in length."""
    pass


class EmptyInputError(HealthcastError, ValueError):
    """Raised when actual or predicted sequences are empty."""
    pass


class PersistenceError(HealthcastError):
    """Raised when the forecast store or history source fails."""
    pass
