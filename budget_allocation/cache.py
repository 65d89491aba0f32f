"""Memoizing wrapper around :class:`EnhancementService`.

Lives outside the optimization core: the service stays correct when called
fresh every time, and this wrapper only short-circuits repeated requests.
Entries are keyed by a SHA-256 digest of a canonical, rounded JSON
serialization of the request and evicted by age and by least recent use.
Stored and returned results are deep copies, so callers may mutate them.
"""

import copy
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import asdict
from typing import Any

from budget_allocation.adapter import EnhancementService, parse_request
from budget_allocation.models import Assumptions, ChannelPriors, EnhancedModelResult, EnhancementOptions

logger = logging.getLogger(__name__)

_METRIC_DIGITS = {"cpm": 2, "ctr": 4, "cvr": 4}


def _round(value: float | None, digits: int) -> float | None:
    return None if value is None else round(value, digits)


def cache_key(
    budget: float,
    priors: ChannelPriors,
    assumptions: Assumptions,
    options: EnhancementOptions,
) -> str:
    """Canonical request digest.

    Budget is rounded to whole units, CPM bounds to 2 decimals, rate bounds
    and constraint shares to 4, deal size and target CAC to 2, so requests
    differing only by float noise share an entry.
    """
    payload = {
        "budget": round(budget),
        "priors": {
            channel: {
                metric: [round(getattr(prior, metric).low, digits), round(getattr(prior, metric).high, digits)]
                for metric, digits in _METRIC_DIGITS.items()
            }
            for channel, prior in priors.items()
        },
        "assumptions": {
            "goal": assumptions.goal,
            "avg_deal_size": _round(assumptions.avg_deal_size, 2),
            "target_cac": _round(assumptions.target_cac, 2),
            "min_pct": {channel: round(v, 4) for channel, v in assumptions.min_pct.items()},
            "max_pct": {channel: round(v, 4) for channel, v in assumptions.max_pct.items()},
        },
        "options": asdict(options),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class CachedEnhancer:
    """LRU + TTL cache in front of an enhancement service.

    Parameters
    ----------
    service : EnhancementService, optional
        Wrapped service.
    max_entries : int
        Capacity; the least recently used entry is evicted beyond it.
    ttl_seconds : float
        Entry lifetime.
    clock : Callable[[], float]
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        service: EnhancementService | None = None,
        max_entries: int = 100,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive.")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive.")
        self.service = service or EnhancementService()
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, EnhancedModelResult]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def enhance(
        self,
        budget: float,
        priors: ChannelPriors | Mapping[str, Any],
        assumptions: Assumptions | Mapping[str, Any],
        options: EnhancementOptions | Mapping[str, Any] | None = None,
    ) -> EnhancedModelResult:
        """Return a cached result or compute, store and return a fresh one."""
        budget, priors, assumptions, options = parse_request(budget, priors, assumptions, options)
        key = cache_key(budget, priors, assumptions, options)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry[0] < self.ttl_seconds:
                self._entries.move_to_end(key)
                self._hits += 1
                logger.debug("Cache hit %s", key[:12])
                return copy.deepcopy(entry[1])
            if entry is not None:
                del self._entries[key]
            self._misses += 1

        # Computed outside the lock; concurrent misses on one key both compute.
        result = self.service.enhance(budget, priors, assumptions, options)

        with self._lock:
            self._entries[key] = (self._clock(), copy.deepcopy(result))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache evicted %s", evicted[:12])
        return result

    def stats(self) -> dict[str, float]:
        """Hits, misses, current size and hit rate."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._entries),
                "hit_rate": self._hits / total if total else 0.0,
            }

    def clear(self) -> None:
        """Drop every entry and reset the counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
