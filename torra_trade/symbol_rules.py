"""Time-bounded cache of per-symbol exchange filters.

Rules change rarely within a session, so a trade decision reads them from
memory and only a miss or an expired entry goes to the exchange. Two
concurrent misses for one symbol may both fetch; the last write wins.
"""
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from .logging_setup import logger
from .models import SymbolRules


DEFAULT_TTL_SECONDS = 4 * 60 * 60


@dataclass
class _CachedRules:
    rules: SymbolRules
    expires_at: float


class SymbolRulesCache:
    """Cache SymbolRules per symbol with a TTL.

    Args:
        fetch: Async callable returning fresh SymbolRules for a symbol
        ttl_seconds: Lifetime of a cached entry
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[SymbolRules]],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CachedRules] = {}

    async def get(self, symbol: str) -> SymbolRules:
        key = symbol.upper()
        cached = self._entries.get(key)
        if cached is not None and self._clock() < cached.expires_at:
            return cached.rules

        rules = await self._fetch(key)
        self._entries[key] = _CachedRules(rules, self._clock() + self.ttl_seconds)
        logger.debug(
            f"Symbol rules cached | symbol={key} step={rules.step_size} tick={rules.tick_size} "
            f"min_qty={rules.min_qty} min_notional={rules.min_notional}"
        )
        return rules

    def invalidate(self, symbol: str) -> None:
        """Force the next get() for symbol to refetch."""
        self._entries.pop(symbol.upper(), None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, symbol: str) -> bool:
        cached = self._entries.get(symbol.upper())
        return cached is not None and self._clock() < cached.expires_at
