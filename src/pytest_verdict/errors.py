"""Exceptions raised by pytest-verdict."""


class VerdictError(Exception):
    """Base class for pytest-verdict errors."""
    pass


class InvalidPatternError(VerdictError, ValueError):
    """A skip rule branch or environment pattern is not an acceptable glob."""
    pass


class StoreError(VerdictError):
    """The result store could not be loaded or saved."""
    pass
