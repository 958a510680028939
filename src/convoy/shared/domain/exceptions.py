"""
Domain exceptions for Convoy.

All application errors inherit from ConvoyError.
"""


class ConvoyError(Exception):
    """Base class for all Convoy exceptions."""

    def __init__(self, message: str, context: dict = None):
        super().__init__(message)
        self.context = context or {}


class ConfigurationError(ConvoyError):
    """Raised when configuration is invalid or corrupt."""

    pass


class ReportError(ConvoyError):
    """Raised when report generation fails."""

    pass
