"""Error types raised inside the transit engine."""

from dataclasses import dataclass


class TransitEngineError(Exception):
    """Base class for all transit engine errors."""

    pass


@dataclass
class ProviderUnavailable(TransitEngineError):
    """Raised when a network source or remote API cannot be used."""

    provider: str
    message: str

    def __str__(self) -> str:
        return f"Provider {self.provider} unavailable: {self.message}"


@dataclass
class DataNotFound(TransitEngineError):
    """Raised when a provider answered but had nothing for the query."""

    provider: str
    query: str

    def __str__(self) -> str:
        return f"No data from {self.provider} for {self.query}"


@dataclass
class StoreInitFailure(TransitEngineError):
    """Raised when the static data store cannot be opened or migrated."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"Static store at {self.path} failed to initialize: {self.message}"


@dataclass
class FeedParseError(TransitEngineError):
    """Raised when a single feed record cannot be parsed."""

    source: str
    record: str
    message: str

    def __str__(self) -> str:
        return f"Bad record in {self.source} ({self.message}): {self.record}"
