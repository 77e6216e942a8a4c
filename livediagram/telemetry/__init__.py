"""
Telemetry source adapters.

Each collector resolves one family of bindings or edge signals and returns a
PartialMetrics; collectors never raise out of ``collect``.
"""

from __future__ import annotations

from typing import List, Optional

from livediagram.cache import TTLCache
from livediagram.config import LiveSettings
from livediagram.telemetry.alerts import AlertCollector
from livediagram.telemetry.appinsights import AppInsightsCollector
from livediagram.telemetry.base import Collector, PartialMetrics
from livediagram.telemetry.client import AzureRestClient
from livediagram.telemetry.connection_monitor import ConnectionMonitorCollector
from livediagram.telemetry.credentials import CredentialProvider, PassthroughCredentials
from livediagram.telemetry.dependencies import DependencyCollector
from livediagram.telemetry.flow_logs import FlowLogCollector
from livediagram.telemetry.ip_map import IpResourceMapper
from livediagram.telemetry.monitor import MonitorCollector
from livediagram.telemetry.traffic_analytics import TrafficAnalyticsCollector

__all__ = [
    "AlertCollector",
    "AppInsightsCollector",
    "AzureRestClient",
    "Collector",
    "ConnectionMonitorCollector",
    "CredentialProvider",
    "DependencyCollector",
    "FlowLogCollector",
    "MonitorCollector",
    "PartialMetrics",
    "PassthroughCredentials",
    "TrafficAnalyticsCollector",
    "build_collectors",
]


def build_collectors(settings: LiveSettings, client: Optional[AzureRestClient] = None) -> List[Collector]:
    """The six metric collectors, sharing one REST client, each with its own cache."""
    client = client or AzureRestClient(settings)
    ip_mapper = IpResourceMapper(
        client,
        settings,
        TTLCache(capacity=20, ttl_seconds=settings.flow_log_cache_ttl_s, label="ip_map"),
    )
    return [
        MonitorCollector(client, settings),
        AppInsightsCollector(client, settings),
        TrafficAnalyticsCollector(client, settings),
        FlowLogCollector(client, settings, ip_mapper=ip_mapper),
        ConnectionMonitorCollector(client, settings),
        DependencyCollector(client, settings),
    ]
