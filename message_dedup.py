from __future__ import annotations

import time
from collections.abc import Callable


DEDUP_TTL_SECONDS = 300
DEDUP_SWEEP_THRESHOLD = 100


class DedupLedger:
    """Short-lived record of transport message ids that were already handled.

    Eviction is lazy: once the ledger holds ``sweep_threshold`` ids, every
    ``mark_seen`` drops the ids first seen more than ``ttl_seconds`` ago.
    An id that comes back after it was evicted is treated as new.
    """

    def __init__(
        self,
        ttl_seconds: float = DEDUP_TTL_SECONDS,
        sweep_threshold: int = DEDUP_SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_threshold = max(1, int(sweep_threshold))
        self._clock = clock
        self._seen: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def seen(self, message_id: str | None) -> bool:
        if not message_id:
            return False
        return message_id in self._seen

    def mark_seen(self, message_id: str | None) -> None:
        if not message_id:
            return
        now = self._clock()
        self._seen.setdefault(message_id, now)
        if len(self._seen) >= self.sweep_threshold:
            self._sweep(now)

    def _sweep(self, now: float) -> None:
        expired = [k for k, first_seen in self._seen.items() if now - first_seen > self.ttl_seconds]
        for key in expired:
            del self._seen[key]
