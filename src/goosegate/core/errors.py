"""Base exception for goosegate domain errors."""


class GooseGateError(Exception):
    """Base class for all goosegate errors."""

    pass
