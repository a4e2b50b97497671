"""
Exception classes raised by the immunodose package.
"""


class ImmunodoseError(Exception):
    """Base class for all package errors."""
    pass


class InvalidConfigurationError(ImmunodoseError, ValueError):
    """Raised when a trial configuration or scenario fails validation."""
    pass


class NumericalFaultError(ImmunodoseError, ArithmeticError):
    """Raised when posterior quantities become non-finite during a trial."""
    pass


class TrialOrderingError(ImmunodoseError, RuntimeError):
    """Raised when trial steps are invoked out of order."""
    pass
