"""Resolve-with-fallback: walk a priority-ordered list of providers, keep the first usable result.

A provider is a named zero-argument callable. It signals "not usable" either by
returning None or by raising; both move resolution on to the next provider.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Provider = tuple[str, Callable[[], T | None]]
AsyncProvider = tuple[str, Callable[[], Awaitable[T | None]]]


class FallbackExhausted(Exception):
    """Raised when no provider produced a result and no last resort was given."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = errors
        detail = ", ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(f"All providers failed ({detail})")


def resolve_with_fallback(
    providers: Sequence[Provider],
    last_resort: T | None = None,
) -> tuple[str, T]:
    """Return (provider_name, result) from the first provider that yields a value.

    Args:
        providers: Priority-ordered (name, callable) pairs.
        last_resort: Returned under the name "last_resort" when every provider
            declines. When None, exhaustion raises instead.

    Raises:
        FallbackExhausted: If every provider declines and there is no last resort.
    """
    errors: dict[str, str] = {}
    for name, provider in providers:
        try:
            result = provider()
        except Exception as exc:
            logger.debug("Fallback provider %s failed: %s", name, exc)
            errors[name] = str(exc) or type(exc).__name__
            continue
        if result is not None:
            return name, result
        errors[name] = "no result"
    if last_resort is not None:
        return "last_resort", last_resort
    raise FallbackExhausted(errors)


async def aresolve_with_fallback(
    providers: Sequence[AsyncProvider],
    last_resort: T | None = None,
) -> tuple[str, T]:
    """Async twin of resolve_with_fallback for coroutine providers."""
    errors: dict[str, str] = {}
    for name, provider in providers:
        try:
            result = await provider()
        except Exception as exc:
            logger.debug("Fallback provider %s failed: %s", name, exc)
            errors[name] = str(exc) or type(exc).__name__
            continue
        if result is not None:
            return name, result
        errors[name] = "no result"
    if last_resort is not None:
        return "last_resort", last_resort
    raise FallbackExhausted(errors)
