"""
In-memory demand statistics reported by the job scheduler.

The scheduler owns the queue; it periodically reports, per label, how deep
the queue is, how many buildable items are waiting and how many executors
sit idle. The pool controller reads these figures when it recomputes the
idle floor after a node terminates.
"""

import logging
import time
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Queue samples older than this are discarded
DEFAULT_HORIZON = 300.0


@dataclass(frozen=True)
class LoadSample:
    """One demand report for a label."""

    timestamp: float
    queue_length: int
    compute_queue_length: int
    idle_executors: int


class QueueStatistics:
    """
    Time-windowed demand samples per label.

    Implements the DemandSignal protocol.
    """

    def __init__(
        self,
        horizon: float = DEFAULT_HORIZON,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.horizon = horizon
        self._clock = clock
        self._samples: dict[str, deque[LoadSample]] = defaultdict(deque)

    def record(
        self,
        label: str,
        queue_length: int,
        compute_queue_length: int,
        idle_executors: int,
    ) -> LoadSample:
        """Store a new sample for a label and prune expired ones."""
        now = self._clock()
        sample = LoadSample(
            timestamp=now,
            queue_length=max(0, queue_length),
            compute_queue_length=max(0, compute_queue_length),
            idle_executors=max(0, idle_executors),
        )
        samples = self._samples[label]
        samples.append(sample)
        while samples and now - samples[0].timestamp > self.horizon:
            samples.popleft()
        logger.debug(
            f"Load for {label!r}: queue={sample.queue_length} "
            f"buildable={sample.compute_queue_length} idle={sample.idle_executors}"
        )
        return sample

    def _latest(self, label: str) -> LoadSample | None:
        samples = self._samples.get(label)
        if not samples:
            return None
        return samples[-1]

    def queue_length(self, label: str, window: float = 10.0) -> int:
        latest = self._latest(label)
        if latest is None or self._clock() - latest.timestamp > window:
            return 0
        return latest.queue_length

    def compute_queue_length(self, label: str) -> int:
        latest = self._latest(label)
        return latest.compute_queue_length if latest else 0

    def idle_executors(self, label: str) -> int:
        latest = self._latest(label)
        return latest.idle_executors if latest else 0

    def labels(self) -> list[str]:
        return sorted(label for label, samples in self._samples.items() if samples)
