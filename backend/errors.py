"""Typed failures surfaced by the report lifecycle core."""


class RetenError(Exception):
    """Base class for every failure a command can return."""


class ValidationError(RetenError):
    """Malformed input, rejected before any store call."""


class NotFoundError(RetenError):
    """Target report is missing or already outside the visibility window."""


class PersistenceError(RetenError):
    """Store unreachable or write rejected."""


class WriteConflictError(PersistenceError):
    """Conditional update lost against a concurrent writer."""
