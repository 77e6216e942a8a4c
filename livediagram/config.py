"""Environment-driven settings for the live diagram service."""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}, using default {default}")
        return default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    return int(_env_float(env, name, float(default)))


def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


@dataclass
class LiveSettings:
    """Settings for telemetry sources, caches and the HTTP surface."""

    live_enabled: bool = False
    arm_endpoint: str = "https://management.azure.com"
    log_analytics_endpoint: str = "https://api.loganalytics.io"

    # Application telemetry (component name inside the node's resource group)
    app_insights_app_id: Optional[str] = None

    # Flow analytics
    traffic_analytics_enabled: bool = False
    log_analytics_workspace_id: Optional[str] = None
    log_analytics_table: str = "NTANetAnalytics"

    # Raw flow logs
    flow_log_storage_account: Optional[str] = None
    flow_log_container: str = "insights-logs-networksecuritygroupflowevent"
    flow_log_max_blobs: int = 10

    # Active probes
    connection_monitor_enabled: bool = False

    # Cache TTLs (seconds)
    metrics_cache_ttl_s: float = 60.0
    app_insights_cache_ttl_s: float = 60.0
    alerts_cache_ttl_s: float = 60.0
    traffic_cache_ttl_s: float = 60.0
    flow_log_cache_ttl_s: float = 120.0
    connection_monitor_cache_ttl_s: float = 120.0
    snapshot_cache_ttl_s: float = 30.0
    snapshot_cache_size: int = 20

    metrics_concurrency: int = 6
    http_timeout_s: float = 10.0
    source_deadline_s: Optional[float] = 30.0
    service_token: Optional[str] = None

    diagrams_dir: str = "diagrams"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "LiveSettings":
        """Build settings from environment variables (defaults when unset)."""
        env = os.environ if env is None else env
        deadline = _env_float(env, "LIVE_SOURCE_DEADLINE_S", 30.0)
        return cls(
            live_enabled=_env_bool(env, "AZURE_LIVE_DIAGRAM_ENABLED"),
            arm_endpoint=_env_str(env, "AZURE_ARM_ENDPOINT", cls.arm_endpoint).rstrip("/"),
            log_analytics_endpoint=_env_str(
                env, "AZURE_LOG_ANALYTICS_ENDPOINT", cls.log_analytics_endpoint
            ).rstrip("/"),
            app_insights_app_id=_env_str(env, "AZURE_APP_INSIGHTS_APP_ID"),
            traffic_analytics_enabled=_env_bool(env, "AZURE_TRAFFIC_ANALYTICS_ENABLED"),
            log_analytics_workspace_id=_env_str(env, "AZURE_LOG_ANALYTICS_WORKSPACE_ID"),
            log_analytics_table=_env_str(env, "AZURE_LOG_ANALYTICS_TABLE", cls.log_analytics_table),
            flow_log_storage_account=_env_str(env, "AZURE_NSG_FLOW_LOG_STORAGE_ACCOUNT"),
            flow_log_container=_env_str(env, "AZURE_NSG_FLOW_LOG_CONTAINER", cls.flow_log_container),
            flow_log_max_blobs=max(1, _env_int(env, "AZURE_NSG_FLOW_LOG_MAX_BLOBS", cls.flow_log_max_blobs)),
            connection_monitor_enabled=_env_bool(env, "AZURE_CONNECTION_MONITOR_ENABLED"),
            metrics_cache_ttl_s=_env_float(env, "AZURE_LIVE_METRICS_CACHE_TTL_MS", 60_000) / 1000.0,
            app_insights_cache_ttl_s=_env_float(env, "AZURE_APP_INSIGHTS_CACHE_TTL_MS", 60_000) / 1000.0,
            alerts_cache_ttl_s=_env_float(env, "AZURE_MONITOR_ALERTS_CACHE_TTL_MS", 60_000) / 1000.0,
            traffic_cache_ttl_s=_env_float(env, "AZURE_LOG_ANALYTICS_CACHE_TTL_MS", 60_000) / 1000.0,
            flow_log_cache_ttl_s=_env_float(env, "AZURE_NSG_FLOW_LOG_CACHE_TTL_MS", 120_000) / 1000.0,
            connection_monitor_cache_ttl_s=_env_float(
                env, "AZURE_CONNECTION_MONITOR_CACHE_TTL_MS", 120_000
            ) / 1000.0,
            snapshot_cache_ttl_s=_env_float(env, "LIVE_SNAPSHOT_CACHE_TTL_MS", 30_000) / 1000.0,
            metrics_concurrency=max(1, _env_int(env, "LIVE_METRICS_CONCURRENCY", cls.metrics_concurrency)),
            http_timeout_s=_env_float(env, "LIVE_HTTP_TIMEOUT_S", cls.http_timeout_s),
            source_deadline_s=deadline if deadline > 0 else None,
            service_token=_env_str(env, "LIVE_SERVICE_TOKEN"),
            diagrams_dir=_env_str(env, "LIVE_DIAGRAMS_DIR", cls.diagrams_dir),
        )

    def describe(self) -> Dict[str, Any]:
        """Non-secret view of the configuration for the status endpoint."""
        return {
            "azureEnabled": self.live_enabled,
            "sources": {
                "monitor": self.live_enabled,
                "appInsights": bool(self.app_insights_app_id),
                "trafficAnalytics": self.traffic_analytics_enabled and bool(self.log_analytics_workspace_id),
                "flowLogs": bool(self.flow_log_storage_account),
                "connectionMonitor": self.connection_monitor_enabled,
                "dependencies": bool(self.app_insights_app_id),
            },
            "serviceTokenConfigured": bool(self.service_token),
            "cacheTtlMs": {
                "metrics": int(self.metrics_cache_ttl_s * 1000),
                "appInsights": int(self.app_insights_cache_ttl_s * 1000),
                "alerts": int(self.alerts_cache_ttl_s * 1000),
                "trafficAnalytics": int(self.traffic_cache_ttl_s * 1000),
                "flowLogs": int(self.flow_log_cache_ttl_s * 1000),
                "connectionMonitor": int(self.connection_monitor_cache_ttl_s * 1000),
                "snapshot": int(self.snapshot_cache_ttl_s * 1000),
            },
        }
