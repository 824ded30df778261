# reliefmatch/core/errors.py
class ReliefMatchError(Exception):
    pass


class InvalidInputError(ReliefMatchError, ValueError):
    """Empty or missing input the caller should have rejected."""


class ProviderUnavailableError(ReliefMatchError):
    """A geocode/routing provider is unreachable, unconfigured or returned a non-2xx."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class NoRouteFoundError(ProviderUnavailableError):
    pass


class GeocodeUnavailableError(ReliefMatchError):
    """Every geocode provider failed for an address."""

    def __init__(self, address: str, errors=None):
        super().__init__(f"Could not geocode address: {address!r}")
        self.address = address
        self.errors = list(errors or [])


class PersistenceError(ReliefMatchError):
    pass
