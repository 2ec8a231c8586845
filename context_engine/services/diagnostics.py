# =============================================================================
# Process-Local Diagnostics
# =============================================================================
#
# Non-fatal failures are absorbed (never raised upward) and recorded here:
# cache hits/misses per namespace, cache backend errors, retrieval source
# failures, embedding failures, and assembly timings.
#
# One Diagnostics instance is created at process start and injected into
# the cache layer, the embedding gateway, every retrieval source and the
# assembler. Counters are guarded by a lock because the Celery worker and
# the request path may share a process.
# =============================================================================

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

# Most recent failures kept for inspection
_MAX_RECENT_FAILURES = 50


@dataclass
class SourceFailure:
    """A single absorbed retrieval failure."""

    source: str
    reason: str


@dataclass
class Diagnostics:
    """Counters and recent failures for one process."""

    cache_hits: Counter = field(default_factory=Counter)
    cache_misses: Counter = field(default_factory=Counter)
    cache_errors: int = 0
    source_failures: Counter = field(default_factory=Counter)
    recent_failures: deque = field(
        default_factory=lambda: deque(maxlen=_MAX_RECENT_FAILURES)
    )
    embedding_failures: int = 0
    assemblies: int = 0
    avg_assembly_ms: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_cache_hit(self, namespace: str) -> None:
        with self._lock:
            self.cache_hits[namespace] += 1

    def record_cache_miss(self, namespace: str) -> None:
        with self._lock:
            self.cache_misses[namespace] += 1

    def record_cache_error(self) -> None:
        with self._lock:
            self.cache_errors += 1

    def record_source_failure(self, source: str, reason: str) -> None:
        with self._lock:
            self.source_failures[source] += 1
            self.recent_failures.append(SourceFailure(source, reason))

    def record_embedding_failure(self) -> None:
        with self._lock:
            self.embedding_failures += 1

    def record_assembly(self, elapsed_ms: float) -> None:
        """Fold one assembly time into the running mean."""
        with self._lock:
            self.assemblies += 1
            self.avg_assembly_ms += (
                elapsed_ms - self.avg_assembly_ms
            ) / self.assemblies

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view, safe to log or serialise."""
        with self._lock:
            hits = sum(self.cache_hits.values())
            misses = sum(self.cache_misses.values())
            lookups = hits + misses
            return {
                "cache_hits": dict(self.cache_hits),
                "cache_misses": dict(self.cache_misses),
                "cache_hit_rate": round(hits / lookups, 4) if lookups else 0.0,
                "cache_errors": self.cache_errors,
                "source_failures": dict(self.source_failures),
                "recent_failures": [
                    {"source": f.source, "reason": f.reason}
                    for f in self.recent_failures
                ],
                "embedding_failures": self.embedding_failures,
                "assemblies": self.assemblies,
                "avg_assembly_ms": round(self.avg_assembly_ms, 2),
            }

    def reset(self) -> None:
        with self._lock:
            self.cache_hits.clear()
            self.cache_misses.clear()
            self.cache_errors = 0
            self.source_failures.clear()
            self.recent_failures.clear()
            self.embedding_failures = 0
            self.assemblies = 0
            self.avg_assembly_ms = 0.0
