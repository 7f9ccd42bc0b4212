"""Thread-safe build progress tracking.

Node evaluations report into a shared state object from the event loop;
the CLI display thread reads it via snapshot().
"""

import threading
import time
from dataclasses import dataclass, field


@dataclass
class BuildProgress:
    """Thread-safe progress state shared between the build and display threads.

    ``nodes_started - nodes_finished`` is the number of node evaluations
    still outstanding; a build is fully joined when it reaches zero.
    """

    nodes_started: int = 0
    nodes_finished: int = 0
    leaves: int = 0
    branches: int = 0
    pruned: int = 0
    failed: int = 0
    queries: int = 0
    retries: int = 0
    max_depth_seen: int = 0
    stop_reasons: dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def record_node_started(self, depth: int) -> None:
        with self._lock:
            self.nodes_started += 1
            self.max_depth_seen = max(self.max_depth_seen, depth)

    def record_leaf(self, stopped_on: str | None) -> None:
        with self._lock:
            self.nodes_finished += 1
            self.leaves += 1
            if stopped_on:
                self.stop_reasons[stopped_on] = self.stop_reasons.get(stopped_on, 0) + 1

    def record_branch(self) -> None:
        with self._lock:
            self.nodes_finished += 1
            self.branches += 1

    def record_pruned(self) -> None:
        with self._lock:
            self.nodes_finished += 1
            self.pruned += 1

    def record_failed(self) -> None:
        with self._lock:
            self.nodes_finished += 1
            self.failed += 1

    def record_query(self) -> None:
        with self._lock:
            self.queries += 1

    def record_retry(self) -> None:
        with self._lock:
            self.retries += 1

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self.nodes_started - self.nodes_finished

    def snapshot(self) -> dict:
        """Return a consistent copy of the counters for rendering or storage."""
        with self._lock:
            return {
                "nodes_started": self.nodes_started,
                "nodes_finished": self.nodes_finished,
                "outstanding": self.nodes_started - self.nodes_finished,
                "leaves": self.leaves,
                "branches": self.branches,
                "pruned": self.pruned,
                "failed": self.failed,
                "queries": self.queries,
                "retries": self.retries,
                "max_depth_seen": self.max_depth_seen,
                "stop_reasons": dict(self.stop_reasons),
                "elapsed_seconds": round(time.monotonic() - self.started_at, 3),
            }
