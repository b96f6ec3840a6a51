"""Exception classes for BanksyScope."""


class BanksyScopeError(Exception):
    """Base exception for all BanksyScope errors."""

    pass


class ConfigurationError(BanksyScopeError, ValueError):
    """Invalid parameter grid or option; raised before any computation."""

    pass


class InputMismatchError(BanksyScopeError, ValueError):
    """Inputs disagree in shape (cell counts, coordinate dims, label lengths)."""

    pass


class ClusteringFailedError(BanksyScopeError, RuntimeError):
    """A single clustering run did not produce a usable partition."""

    pass
