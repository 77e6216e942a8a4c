"""Bounded per-node metric history for sparklines."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from livediagram.model import SparklineData

HISTORY_LENGTH = 20


@dataclass
class _Buffer:
    metric: str
    points: Deque[Tuple[str, float]] = field(default_factory=lambda: deque(maxlen=HISTORY_LENGTH))


class SparklineStore:
    """
    Ring buffers keyed by (diagram id, node id).

    Each snapshot cycle appends at most one point per node; only the most
    recent ``HISTORY_LENGTH`` points are kept.
    """

    def __init__(self, max_points: int = HISTORY_LENGTH) -> None:
        self.max_points = max_points
        self._lock = threading.Lock()
        self._buffers: Dict[Tuple[str, str], _Buffer] = {}

    def record(
        self,
        diagram_id: str,
        node_id: str,
        metrics: Dict[str, Optional[float]],
        timestamp: str,
    ) -> Optional[SparklineData]:
        """
        Append the first non-null metric (declaration order) and return the
        node's history, or None when the node has never had a value.
        """
        primary = next(((name, v) for name, v in metrics.items() if v is not None), None)
        key = (diagram_id, node_id)
        with self._lock:
            buf = self._buffers.get(key)
            if primary is not None:
                name, value = primary
                if buf is None:
                    buf = _Buffer(metric=name, points=deque(maxlen=self.max_points))
                    self._buffers[key] = buf
                buf.metric = name
                buf.points.append((timestamp, float(value)))
            if buf is None:
                return None
            return SparklineData(
                metric=buf.metric,
                values=[v for _, v in buf.points],
                timestamps=[t for t, _ in buf.points],
            )

    def history(self, diagram_id: str, node_id: str) -> List[float]:
        with self._lock:
            buf = self._buffers.get((diagram_id, node_id))
            return [v for _, v in buf.points] if buf else []

    def forget(self, diagram_id: str) -> int:
        """Drop every buffer of a diagram. Returns how many were removed."""
        with self._lock:
            stale = [k for k in self._buffers if k[0] == diagram_id]
            for k in stale:
                del self._buffers[k]
            return len(stale)
