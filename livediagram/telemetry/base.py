"""Shared result types and the collector contract for telemetry sources."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from livediagram.cache import TTLCache, identity_key_prefix
from livediagram.config import LiveSettings
from livediagram.errors import ConfigurationMissing
from livediagram.topology import MetricBinding, Topology

logger = logging.getLogger(__name__)

MetricMap = Dict[str, Optional[float]]


@dataclass
class EdgeFlow:
	"""Aggregated network flow between the two endpoints of an edge."""
	edge_id: str
	total_bytes: float = 0.0
	allowed_flows: float = 0.0
	denied_flows: float = 0.0
	throughput_bps: float = 0.0


@dataclass
class DependencyStats:
	"""Caller -> callee statistics from the dependency-call graph."""
	edge_id: str
	call_count: float = 0.0
	failed_count: float = 0.0
	avg_duration_ms: float = 0.0
	success_rate: float = 100.0  # 0-100
	requests_per_sec: float = 0.0


@dataclass
class ProbeStats:
	"""Latest active-probe result for an edge."""
	edge_id: str
	avg_latency_ms: float = 0.0
	max_latency_ms: float = 0.0
	packet_loss_percent: float = 0.0
	checks_total: int = 0
	checks_failed: int = 0
	status: str = "unknown"  # reachable | unreachable | unknown


@dataclass
class PartialMetrics:
	"""What one source contributed to a snapshot cycle."""
	source: str
	node_metrics: Dict[str, MetricMap] = field(default_factory=dict)
	edge_metrics: Dict[str, MetricMap] = field(default_factory=dict)
	flows: Dict[str, EdgeFlow] = field(default_factory=dict)
	dependencies: Dict[str, DependencyStats] = field(default_factory=dict)
	probes: Dict[str, ProbeStats] = field(default_factory=dict)
	attempted: int = 0
	failed: int = 0
	skipped: bool = False

	@classmethod
	def skipped_source(cls, source: str) -> "PartialMetrics":
		return cls(source=source, skipped=True)

	@classmethod
	def failed_source(cls, source: str, attempted: int) -> "PartialMetrics":
		return cls(source=source, attempted=attempted, failed=attempted)


def binding_signature(bindings: Iterable[Tuple[str, MetricBinding]]) -> str:
	"""Stable cache-key fragment for a set of named bindings."""
	parts = sorted(f"{name}={b.source}:{b.metric}:{b.aggregation}" for name, b in bindings)
	return ",".join(parts)


def as_number(value) -> float:
	"""Best-effort numeric coercion for query result cells; non-numbers become 0."""
	if isinstance(value, bool):
		return float(value)
	if isinstance(value, (int, float)):
		return float(value)
	if isinstance(value, str) and value.strip():
		try:
			return float(value)
		except ValueError:
			return 0.0
	return 0.0


def as_text(value) -> str:
	return value if isinstance(value, str) else ("" if value is None else str(value))


class Collector:
	"""
	Base class for telemetry sources.

	``collect`` never raises: a source that is not configured is skipped
	before any network call, and any failure while collecting degrades to an
	empty result whose ``failed`` count equals the attempted scope.
	"""

	source = "collector"
	identity_bound = False

	def __init__(
		self,
		client,
		settings: LiveSettings,
		cache: Optional[TTLCache] = None,
	) -> None:
		"""
		Args:
			client: AzureRestClient (or a test double with the same methods)
			settings: LiveSettings for endpoints, TTLs and feature flags
			cache: Per-source TTL cache (one is created when omitted)
		"""
		self.client = client
		self.settings = settings
		self.cache = cache or TTLCache(
			capacity=200,
			ttl_seconds=self.default_ttl(),
			label=self.source,
		)

	def default_ttl(self) -> float:
		return 60.0

	def ensure_configured(self, topology: Topology, identity: Optional[str]) -> None:
		"""Raise ConfigurationMissing when this source cannot run."""
		if self.identity_bound and not identity:
			raise ConfigurationMissing(f"{self.source} requires a caller identity")

	def attempted_scope(self, topology: Topology) -> int:
		raise NotImplementedError

	def gather(self, topology: Topology, identity: Optional[str]) -> PartialMetrics:
		raise NotImplementedError

	def cache_prefix(self, identity: Optional[str]) -> str:
		return f"{identity_key_prefix(identity)}:{self.source}"

	def collect(self, topology: Topology, identity: Optional[str] = None) -> PartialMetrics:
		try:
			self.ensure_configured(topology, identity)
		except ConfigurationMissing as e:
			logger.debug(f"Skipping {self.source}: {e}")
			return PartialMetrics.skipped_source(self.source)

		attempted = self.attempted_scope(topology)
		if attempted == 0:
			return PartialMetrics(source=self.source)

		try:
			result = self.gather(topology, identity)
		except ConfigurationMissing as e:
			logger.debug(f"Skipping {self.source}: {e}")
			return PartialMetrics.skipped_source(self.source)
		except Exception as e:
			logger.warning(f"{self.source} collection failed for diagram {topology.id}: {e}")
			return PartialMetrics.failed_source(self.source, attempted)

		result.attempted = attempted
		result.failed = min(result.failed, attempted)
		return result
