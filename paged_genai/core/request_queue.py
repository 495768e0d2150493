"""
paged-genai :: Infer Request Pool

Fixed-size blocking pool of infer requests. Each pooled entry carries the
flag values last written into its state variables, so a holder can skip
writes that would not change anything.

    pool = InferRequestQueue(4, compiled.create_infer_request)
    with pool.acquire() as pooled:
        pooled.request.infer()

INL - 2025
"""

import queue
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator

from paged_genai.core.backend import InferRequest


@dataclass
class PooledRequest:
    """An infer request plus the flag values currently held in its state."""
    request: InferRequest
    state_flags: Dict[str, Any] = field(default_factory=dict)


class InferRequestQueue:
    """
    Bounded pool. acquire() blocks until an entry is free and always
    returns it, also when the caller raises.
    """

    def __init__(self, capacity: int, factory: Callable[[], InferRequest]):
        if capacity < 1:
            raise ValueError(f"Pool capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._free: "queue.Queue[PooledRequest]" = queue.Queue(maxsize=capacity)
        for _ in range(capacity):
            self._free.put(PooledRequest(factory()))

    @contextmanager
    def acquire(self) -> Iterator[PooledRequest]:
        pooled = self._free.get()
        try:
            yield pooled
        finally:
            self._free.put(pooled)

    @property
    def num_free(self) -> int:
        return self._free.qsize()
