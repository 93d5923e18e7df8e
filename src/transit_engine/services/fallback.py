"""Ordered provider chains with a last-resort synthesized result.

Every public read operation is expressed as a list of providers tried in
priority order. The first usable result wins; a provider that raises or
returns nothing is skipped. Only when all providers are exhausted does the
fallback run, and its failure propagates.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from transit_engine.errors import DataNotFound
from transit_engine.models.responses import Provenance

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Provider(Generic[T]):
    """A named async callable producing a candidate result."""

    name: str
    fetch: Callable[[], Awaitable[T]]
    provenance: Provenance


@dataclass
class ChainResult(Generic[T]):
    """The winning value and which provider produced it."""

    value: T
    provider: str
    provenance: Provenance

    @property
    def synthesized(self) -> bool:
        return self.provenance == Provenance.SYNTHESIZED


def is_non_empty(value: Any) -> bool:
    """Default usability check: not None and, for containers, not empty."""
    if value is None:
        return False
    try:
        return len(value) > 0
    except TypeError:
        return True


async def first_success(
    providers: Sequence[Provider[T]],
    fallback: Provider[T],
    is_usable: Callable[[T], bool] = is_non_empty,
) -> ChainResult[T]:
    """Return the first usable provider result, else the fallback's.

    Args:
        providers: Providers in priority order.
        fallback: Last-resort provider; expected to always succeed.
        is_usable: Predicate deciding whether a result is acceptable.

    Returns:
        ChainResult naming the provider that produced the value.

    Raises:
        Exception: Whatever the fallback raises.
    """
    for provider in providers:
        try:
            value = await provider.fetch()
        except DataNotFound as e:
            logger.debug(f"{provider.name}: {e}")
            continue
        except Exception as e:
            logger.warning(f"{provider.name} unavailable: {e}")
            continue

        if is_usable(value):
            return ChainResult(value=value, provider=provider.name, provenance=provider.provenance)
        logger.debug(f"{provider.name} returned no usable data")

    logger.info(f"All providers exhausted, using {fallback.name}")
    value = await fallback.fetch()
    return ChainResult(value=value, provider=fallback.name, provenance=fallback.provenance)
