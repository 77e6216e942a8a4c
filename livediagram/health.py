"""Health scoring for nodes and status classification for edges."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from livediagram.model import (
	EDGE_DEGRADED,
	EDGE_DOWN,
	EDGE_IDLE,
	EDGE_NORMAL,
	HEALTH_CRITICAL,
	HEALTH_OK,
	HEALTH_UNKNOWN,
	HEALTH_WARNING,
	TRAFFIC_BURST,
	TRAFFIC_HIGH,
	TRAFFIC_LOW,
	TRAFFIC_MEDIUM,
	TRAFFIC_NONE,
	EdgeMetrics,
)
from livediagram.topology import HealthRule, NodeSpec

logger = logging.getLogger(__name__)

OK_THRESHOLD = 0.70
WARNING_THRESHOLD = 0.40
EQUALITY_EPSILON = 0.001
NO_DATA_SCORE = 0.5
UNRULED_OK_SCORE = 0.75

ERROR_RATE_DOWN = 25.0
ERROR_RATE_DEGRADED = 5.0
LATENCY_DEGRADED_MS = 2000.0

TRAFFIC_BREAKPOINTS = (
	(0.80, TRAFFIC_BURST),
	(0.50, TRAFFIC_HIGH),
	(0.15, TRAFFIC_MEDIUM),
)


@dataclass
class HealthScore:
	score: float
	has_data: bool


def evaluate_rule(value: float, rule: HealthRule) -> bool:
	if rule.op == "<":
		return value < rule.threshold
	if rule.op == ">":
		return value > rule.threshold
	if rule.op == "<=":
		return value <= rule.threshold
	if rule.op == ">=":
		return value >= rule.threshold
	if rule.op == "==":
		return abs(value - rule.threshold) < EQUALITY_EPSILON
	return False


def compute_health_score(
	metrics: Dict[str, Optional[float]],
	rules: Iterable[HealthRule],
) -> HealthScore:
	"""
	Weighted share of passing rules among the rules that have data.

	Rules whose metric is missing or null do not count at all. With no rule
	evaluable the score is 0.5 and ``has_data`` is False.
	"""
	total_weight = 0.0
	passing_weight = 0.0
	for rule in rules:
		value = metrics.get(rule.metric)
		if value is None:
			continue
		total_weight += rule.weight
		if evaluate_rule(value, rule):
			passing_weight += rule.weight

	if total_weight <= 0:
		return HealthScore(score=NO_DATA_SCORE, has_data=False)
	score = min(1.0, max(0.0, passing_weight / total_weight))
	return HealthScore(score=score, has_data=True)


def score_to_health(score: float, has_data: bool = True) -> str:
	if not has_data:
		return HEALTH_UNKNOWN
	if score >= OK_THRESHOLD:
		return HEALTH_OK
	if score >= WARNING_THRESHOLD:
		return HEALTH_WARNING
	return HEALTH_CRITICAL


def resolve_node_health(node: NodeSpec, metrics: Dict[str, Optional[float]]) -> Tuple[str, float]:
	"""(health, score rounded to 2 decimals) for one node."""
	if node.has_composite():
		result = compute_health_score(metrics, node.health_rules())
		return score_to_health(result.score, result.has_data), round(result.score, 2)

	if any(v is not None for v in metrics.values()):
		return HEALTH_OK, UNRULED_OK_SCORE
	return HEALTH_UNKNOWN, NO_DATA_SCORE


def resolve_edge_status(metrics: EdgeMetrics) -> str:
	"""First match wins: error rate, latency, zero throughput, then no data at all."""
	if metrics.error_rate is not None and metrics.error_rate > ERROR_RATE_DOWN:
		return EDGE_DOWN
	if metrics.error_rate is not None and metrics.error_rate > ERROR_RATE_DEGRADED:
		return EDGE_DEGRADED
	if metrics.latency_ms is not None and metrics.latency_ms > LATENCY_DEGRADED_MS:
		return EDGE_DEGRADED
	if metrics.throughput_bps is not None and metrics.throughput_bps == 0:
		return EDGE_IDLE
	if metrics.is_empty():
		return EDGE_IDLE
	return EDGE_NORMAL


def max_throughput(edge_metrics: Iterable[EdgeMetrics]) -> float:
	"""Shared denominator for traffic levels and heatmap normalization."""
	return max([1.0] + [m.throughput_bps for m in edge_metrics if m.throughput_bps is not None])


def resolve_traffic_level(throughput_bps: Optional[float], max_throughput_bps: float) -> str:
	if throughput_bps is None or throughput_bps <= 0:
		return TRAFFIC_NONE
	ratio = throughput_bps / max(1.0, max_throughput_bps)
	for breakpoint, level in TRAFFIC_BREAKPOINTS:
		if ratio >= breakpoint:
			return level
	return TRAFFIC_LOW
