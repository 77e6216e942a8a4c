"""
Live snapshot orchestration.

A snapshot cycle looks up the topology, fans out to every telemetry source
concurrently, merges what came back, scores nodes, classifies edges,
correlates alerts, detects fault cascades, builds the heatmap, records
sparkline history and caches the result per caller identity.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from livediagram.alerts import attach_alert_ids, correlate_alerts
from livediagram.cache import TTLCache, identity_key_prefix
from livediagram.config import LiveSettings
from livediagram.errors import DiagramNotFound
from livediagram.health import (
    max_throughput,
    resolve_edge_status,
    resolve_node_health,
    resolve_traffic_level,
)
from livediagram.merge import merge_partials
from livediagram.model import LiveEdge, LiveNode, Snapshot, TopologyStats
from livediagram.overlays import build_fault_impacts, build_traffic_heatmap
from livediagram.sparkline import SparklineStore
from livediagram.telemetry.alerts import AlertCollector
from livediagram.telemetry.base import Collector, PartialMetrics
from livediagram.topology import Topology, TopologyStore

logger = logging.getLogger(__name__)


def iso_timestamp(ts: float) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def snapshot_cache_key(identity: str, diagram_id: str) -> str:
    return f"{identity_key_prefix(identity)}:snapshot:{diagram_id}"


class LiveAggregator:
    """Builds live snapshots for diagrams held in a TopologyStore."""

    def __init__(
        self,
        store: TopologyStore,
        settings: LiveSettings,
        collectors: Optional[Sequence[Collector]] = None,
        alert_collector: Optional[AlertCollector] = None,
        snapshot_cache: Optional[TTLCache] = None,
        sparklines: Optional[SparklineStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            store: Topology repository (read only from here)
            settings: LiveSettings
            collectors: Metric collectors to fan out to on every cycle
            alert_collector: Source of fired alerts (optional)
            snapshot_cache: Cache of finished snapshots per (identity, diagram)
            sparklines: Per-node history buffers
            clock: Wall clock used for timestamps and cache expiry
        """
        self.store = store
        self.settings = settings
        self.collectors: List[Collector] = list(collectors or [])
        self.alert_collector = alert_collector
        self._clock = clock
        self.snapshot_cache = snapshot_cache or TTLCache(
            capacity=settings.snapshot_cache_size,
            ttl_seconds=settings.snapshot_cache_ttl_s,
            label="snapshot",
            clock=clock,
        )
        self.sparklines = sparklines or SparklineStore()
        self._skipped_sources: List[str] = []
        self._skipped_lock = threading.Lock()

        logger.info(
            f"LiveAggregator initialized with {len(self.collectors)} collector(s), "
            f"live collection {'enabled' if settings.live_enabled else 'disabled'}"
        )

    def build_snapshot(self, diagram_id: str, identity: Optional[str] = None) -> Snapshot:
        """
        Build (or serve from cache) the snapshot of one diagram.

        Raises:
            DiagramNotFound: the diagram id is not in the store
        """
        topology = self.store.get(diagram_id)
        if topology is None:
            raise DiagramNotFound(diagram_id)

        cache_key = snapshot_cache_key(identity, diagram_id) if identity else None
        if cache_key:
            cached = self.snapshot_cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Snapshot cache hit for diagram {diagram_id}")
                return cached

        started = time.monotonic()
        partials, raw_alerts = self._collect(topology, identity)
        snapshot = self._assemble(topology, partials, raw_alerts)

        if cache_key:
            self.snapshot_cache.set(cache_key, snapshot)
        logger.debug(
            f"Built snapshot for {diagram_id} in {(time.monotonic() - started) * 1000:.0f}ms "
            f"(resolved={snapshot.topology.resolved_bindings}, failed={snapshot.topology.failed_bindings})"
        )
        return snapshot

    def forget(self, diagram_id: str) -> None:
        """Drop history buffers of a diagram that no longer exists."""
        removed = self.sparklines.forget(diagram_id)
        logger.debug(f"Forgot {removed} sparkline buffer(s) of diagram {diagram_id}")

    def status(self) -> Dict[str, Any]:
        out = self.settings.describe()
        out["collectors"] = [c.source for c in self.collectors]
        out["diagrams"] = len(self.store)
        out["snapshotCache"] = asdict(self.snapshot_cache.stats())
        with self._skipped_lock:
            out["skippedSources"] = list(self._skipped_sources)
        return out

    # ----------------------------- collect -----------------------------

    def _collect(
        self,
        topology: Topology,
        identity: Optional[str],
    ) -> Tuple[List[PartialMetrics], List[Dict[str, Any]]]:
        if not self.settings.live_enabled:
            return [], []
        if not self.collectors and self.alert_collector is None:
            return [], []

        deadline = self.settings.source_deadline_s
        executor = ThreadPoolExecutor(
            max_workers=len(self.collectors) + 1,
            thread_name_prefix="live-collect",
        )
        started = time.monotonic()

        def _remaining() -> Optional[float]:
            if deadline is None:
                return None
            return max(0.0, deadline - (time.monotonic() - started))

        partials: List[PartialMetrics] = []
        raw_alerts: List[Dict[str, Any]] = []
        try:
            futures = [
                (collector, executor.submit(collector.collect, topology, identity))
                for collector in self.collectors
            ]
            alert_future = (
                executor.submit(self.alert_collector.collect, topology, identity)
                if self.alert_collector is not None
                else None
            )

            for collector, future in futures:
                try:
                    partials.append(future.result(timeout=_remaining()))
                except FutureTimeout:
                    logger.warning(f"{collector.source} missed the {deadline}s deadline for diagram {topology.id}")
                    partials.append(PartialMetrics.failed_source(collector.source, collector.attempted_scope(topology)))
                except Exception as e:
                    logger.warning(f"{collector.source} failed for diagram {topology.id}: {e}")
                    partials.append(PartialMetrics.failed_source(collector.source, collector.attempted_scope(topology)))

            if alert_future is not None:
                try:
                    raw_alerts = list(alert_future.result(timeout=_remaining()) or [])
                except FutureTimeout:
                    logger.warning(f"alerts missed the {deadline}s deadline for diagram {topology.id}")
                except Exception as e:
                    logger.warning(f"alerts failed for diagram {topology.id}: {e}")
        finally:
            # Stragglers finish in the background; their results are discarded
            executor.shutdown(wait=False, cancel_futures=True)

        skipped = sorted(p.source for p in partials if p.skipped)
        if skipped:
            logger.debug(f"Skipped unconfigured source(s) for diagram {topology.id}: {', '.join(skipped)}")
        with self._skipped_lock:
            self._skipped_sources = skipped
        return partials, raw_alerts

    # ----------------------------- assemble -----------------------------

    def _assemble(
        self,
        topology: Topology,
        partials: List[PartialMetrics],
        raw_alerts: List[Dict[str, Any]],
    ) -> Snapshot:
        merged = merge_partials(topology, partials)
        generated_at = iso_timestamp(self._clock())

        nodes: List[LiveNode] = []
        for spec in topology.nodes:
            metrics = merged.node_metrics.get(spec.id, {})
            health, score = resolve_node_health(spec, metrics)
            history = self.sparklines.record(topology.id, spec.id, metrics, generated_at)
            nodes.append(LiveNode(
                id=spec.id,
                health=health,
                health_score=score,
                metrics=dict(metrics),
                sparkline=list(history.values) if history else None,
                sparklines={history.metric: history} if history else {},
            ))

        peak = max_throughput(merged.edge_metrics.values())
        edges: List[LiveEdge] = []
        for spec in topology.edges:
            metrics = merged.edge_metrics[spec.id]
            edges.append(LiveEdge(
                id=spec.id,
                status=resolve_edge_status(metrics),
                metrics=metrics,
                traffic_level=resolve_traffic_level(metrics.throughput_bps, peak),
            ))

        alerts = correlate_alerts(raw_alerts, topology)
        attach_alert_ids(alerts, nodes, edges)

        return Snapshot(
            diagram_id=topology.id,
            generated_at=generated_at,
            refresh_interval_sec=topology.settings.refresh_interval_sec,
            nodes=nodes,
            edges=edges,
            alerts=alerts,
            topology=TopologyStats(
                node_count=len(nodes),
                edge_count=len(edges),
                resolved_bindings=merged.resolved_bindings,
                failed_bindings=merged.failed_bindings,
            ),
            fault_impacts=build_fault_impacts(topology, nodes),
            heatmap=build_traffic_heatmap(topology, merged.edge_metrics, peak),
        )
