"""Idempotency utilities for safely handling duplicate placement requests.

This module stores and retrieves idempotency keys to de-duplicate
``place_order`` calls. It supports creating an idempotent record,
detecting conflicts when the same key is used with a different payload,
and finalizing a stored result so subsequent retries can short-circuit
without touching stock or payments again.

Finalized keys are forgotten ``ttl`` seconds after they were finalized;
a retry after that is treated as a new request.
"""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from .domain import Order
from .errors import IdempotencyConflict, IdempotencyInProgress, OrderError

DEFAULT_TTL = 24 * 3600.0


def canonical_hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.

    Args:
        payload: A JSON-serializable dictionary.

    Returns:
        str: Hex-encoded SHA-256 digest of the normalized payload.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _fresh(err: OrderError) -> OrderError:
    # same type and attributes, no traceback from earlier raises
    clone = type(err).__new__(type(err), *err.args)
    clone.__dict__.update(err.__dict__)
    return clone


@dataclass
class IdempotencyRecord:
    key: str
    request_hash: str
    done: bool = False
    order: Optional[Order] = None
    error: Optional[OrderError] = None
    finished_at: Optional[float] = None

    def replay(self) -> Order:
        """Return the stored order or raise a copy of the stored error."""
        if self.error is not None:
            raise _fresh(self.error) from self.error.__cause__
        return self.order


class IdempotencyRegistry:
    """Thread-safe in-memory registry of idempotency keys.

    Args:
        ttl: Seconds a finalized key is kept for replay; None keeps keys
            forever.
        clock: Time source; injectable for tests.
    """

    def __init__(self, ttl: Optional[float] = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, IdempotencyRecord] = {}
        # finalized keys in finalize order, i.e. oldest first
        self._finished: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def begin(self, key: str, payload: dict) -> tuple[bool, IdempotencyRecord]:
        """Get-or-create an idempotency record for ``key``.

        Behavior:
            - New key: create a record and return ``(False, rec)``; the
              caller runs the placement and then calls ``finalize``.
            - Known key, same payload, finalized: return ``(True, rec)``
              for replay.
            - Known key, same payload, still running: raise
              ``IdempotencyInProgress``.
            - Known key, different payload: raise ``IdempotencyConflict``.

        Returns:
            tuple[bool, IdempotencyRecord]: ``(existing, rec)``.
        """
        h = canonical_hash(payload)
        with self._lock:
            self._evict(self._clock())
            rec = self._records.get(key)
            if rec is None:
                rec = self._records[key] = IdempotencyRecord(key=key, request_hash=h)
                return False, rec
        if rec.request_hash != h:
            raise IdempotencyConflict(f"key {key!r} was used with a different payload")
        if not rec.done:
            raise IdempotencyInProgress(f"key {key!r} is still being processed")
        return True, rec

    def finalize(self, rec: IdempotencyRecord, order: Order | None = None, error: OrderError | None = None):
        """Store the final result so retries can replay it."""
        with self._lock:
            rec.order = order
            rec.error = error
            rec.done = True
            rec.finished_at = self._clock()
            if self._records.get(rec.key) is rec:
                self._finished[rec.key] = rec.finished_at
                self._finished.move_to_end(rec.key)

    def forget(self, rec: IdempotencyRecord) -> None:
        """Drop a record whose attempt ended without a replayable result."""
        with self._lock:
            if self._records.get(rec.key) is rec:
                del self._records[rec.key]
                self._finished.pop(rec.key, None)

    def _evict(self, now: float) -> None:
        if self.ttl is None:
            return
        while self._finished:
            key, finished_at = next(iter(self._finished.items()))
            if finished_at + self.ttl > now:
                break
            del self._finished[key]
            self._records.pop(key, None)
