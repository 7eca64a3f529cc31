"""Exceptions raised by model queries."""


class ModelError(Exception):
    """Base class for errors raised by models and model modifiers."""


class DimensionError(ModelError, ValueError):
    """An input, output or structure has a length other than the declared one."""


class UnsupportedOperationError(ModelError, NotImplementedError):
    """A query that is meaningless for a given model composition."""
