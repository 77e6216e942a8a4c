"""Fired platform alerts for the subscriptions a topology references."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from livediagram.alerts import alert_essentials
from livediagram.cache import TTLCache, identity_key_prefix
from livediagram.config import LiveSettings
from livediagram.errors import LiveDiagramError
from livediagram.topology import Topology, subscription_of

logger = logging.getLogger(__name__)

ALERTS_API_VERSION = "2023-01-01"
ACTIVE_ALERTS_FILTER = (
	"properties/essentials/monitorCondition eq 'Fired' "
	"and properties/essentials/alertState ne 'Closed'"
)


class AlertCollector:
	"""
	Fetches fired, non-closed alerts (top 100 per subscription).

	Like the metric collectors, ``collect`` never raises. Alerts are only
	read with the caller's own identity; without one the feed is empty.
	"""

	source = "alerts"

	def __init__(self, client, settings: LiveSettings, cache: Optional[TTLCache] = None) -> None:
		self.client = client
		self.settings = settings
		self.cache = cache or TTLCache(capacity=50, ttl_seconds=settings.alerts_cache_ttl_s, label="alerts")

	def subscriptions(self, topology: Topology) -> List[str]:
		subs: List[str] = []
		for node in topology.nodes:
			sub = subscription_of(node.resource_ref)
			if sub and sub not in subs:
				subs.append(sub)
		return subs

	def collect(self, topology: Topology, identity: Optional[str] = None) -> List[Dict[str, Any]]:
		if not identity:
			logger.debug("Skipping alerts: no caller identity")
			return []
		subs = self.subscriptions(topology)
		if not subs:
			return []

		key = f"{identity_key_prefix(identity)}:alerts:{','.join(sorted(subs))}"
		cached = self.cache.get(key)
		if cached is not None:
			return list(cached)

		alerts: List[Dict[str, Any]] = []
		for sub in subs:
			try:
				body = self.client.get_json(
					self.client.arm_url(f"/subscriptions/{sub}/providers/Microsoft.AlertsManagement/alerts"),
					identity,
					params={
						"api-version": ALERTS_API_VERSION,
						"$filter": ACTIVE_ALERTS_FILTER,
						"$top": 100,
					},
				)
			except LiveDiagramError as e:
				logger.warning(f"Fetching alerts failed for subscription {sub}: {e}")
				continue
			values = (body.get("value") or []) if isinstance(body, dict) else None
			if not isinstance(values, list):
				logger.warning(f"Unexpected alerts payload for subscription {sub}")
				continue
			for raw in values:
				if isinstance(alert_essentials(raw).get("targetResource"), str):
					alerts.append(raw)
				else:
					logger.debug(f"Dropping malformed alert record from subscription {sub}")

		self.cache.set(key, alerts)
		return list(alerts)
