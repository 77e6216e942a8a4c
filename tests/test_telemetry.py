import json
import threading
import time
from datetime import datetime, timezone

import pytest
import requests

from conftest import ARM, SUB, SUB2, FakeClock, make_topology, rid

from livediagram.config import LiveSettings
from livediagram.errors import ConfigurationMissing, SourceUnavailable
from livediagram.telemetry import build_collectors
from livediagram.telemetry.alerts import AlertCollector
from livediagram.telemetry.appinsights import AppInsightsCollector, component_id_for
from livediagram.telemetry.client import AzureRestClient, BlobInfo, table_to_rows
from livediagram.telemetry.connection_monitor import ConnectionMonitorCollector
from livediagram.telemetry.credentials import PassthroughCredentials
from livediagram.telemetry.dependencies import DependencyCollector, resolve_name
from livediagram.telemetry.flow_logs import FlowLogCollector, parse_flow_tuple
from livediagram.telemetry.ip_map import IpResourceMapper
from livediagram.telemetry.monitor import MonitorCollector, pick_last_point
from livediagram.telemetry.pool import run_worker_pool
from livediagram.telemetry.traffic_analytics import TrafficAnalyticsCollector

VM1 = rid("Microsoft.Compute/virtualMachines/vm1")
VM2 = rid("Microsoft.Compute/virtualMachines/vm2")
WEB_SUBNET = rid("Microsoft.Network/virtualNetworks/vnet/subnets/web-subnet")
DB_SUBNET = rid("Microsoft.Network/virtualNetworks/vnet/subnets/db-subnet")


def _series(**metrics):
    return {"value": [
        {"name": {"value": name}, "timeseries": [{"data": points}]}
        for name, points in metrics.items()
    ]}


# ----------------------------- worker pool -----------------------------

def test_worker_pool_keeps_order_and_captures_failures():
    def work(item):
        if item == 3:
            raise ValueError("boom")
        return item * 10

    results = run_worker_pool(range(6), work, concurrency=3)

    assert [r.item for r in results] == list(range(6))
    assert [r.value for r in results if r.ok] == [0, 10, 20, 40, 50]
    assert isinstance(results[3].error, ValueError)


def test_worker_pool_respects_concurrency():
    lock = threading.Lock()
    active = [0]
    peak = [0]

    def work(item):
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.02)
        with lock:
            active[0] -= 1
        return item

    run_worker_pool(range(10), work, concurrency=2)
    assert peak[0] <= 2


def test_worker_pool_empty():
    assert run_worker_pool([], lambda i: i) == []


# ----------------------------- monitor -----------------------------

def _monitor_topology():
    return make_topology(
        [
            {"id": "vm1", "azureResourceId": VM1, "bindings": {
                "cpu": {"source": "monitor", "metric": "Percentage CPU"},
                "reqs": {"source": "monitor", "metric": "Requests", "aggregation": "rate"},
                "health": {"source": "composite", "rules": [{"metric": "cpu", "op": "<", "threshold": 80}]},
            }},
            {"id": "vm2", "azureResourceId": VM2, "bindings": {
                "cpu": {"source": "monitor", "metric": "Percentage CPU"},
            }},
        ],
        [{"id": "vm1-vm2", "source": "vm1", "target": "vm2", "bindings": {
            "throughput": {"source": "monitor", "metric": "Network Out Total", "aggregation": "total"},
        }}],
    )


def test_pick_last_point():
    points = [{"average": 1.0, "count": 0}, {"average": 42.5, "maximum": 90, "count": 120}]
    assert pick_last_point(points, "avg") == 42.5
    assert pick_last_point(points, "p95") == 42.5
    assert pick_last_point(points, "p99") == 90
    assert pick_last_point(points, "rate") == 2.0
    assert pick_last_point(points, "min") is None
    assert pick_last_point([{"count": 0}], "rate") is None
    assert pick_last_point([{"count": 0}], "rate", rate_requires_count=False) == 0.0
    assert pick_last_point([], "avg") is None


def test_monitor_resolves_node_and_edge_bindings(settings, fake_client):
    fake_client.on("GET", "virtualMachines/vm1/providers/microsoft.insights/metrics", _series(**{
        "Percentage CPU": [{"average": 10.0}, {"average": 42.5}],
        "Requests": [{"count": 120}],
        "Network Out Total": [{"total": 1000.0}],
    }))
    fake_client.on("GET", "virtualMachines/vm2/providers/microsoft.insights/metrics", SourceUnavailable("throttled", 429))

    partial = MonitorCollector(fake_client, settings).collect(_monitor_topology(), "token")

    assert partial.node_metrics["vm1"] == {"cpu": 42.5, "reqs": 2.0}
    assert partial.node_metrics["vm2"] == {}
    assert partial.edge_metrics["vm1-vm2"] == {"throughput": 1000.0}
    assert partial.attempted == 4
    assert partial.failed == 1

    node_call = [c for c in fake_client.calls_to("GET", "vm1") if "Requests" in c[2]["metricnames"]][0]
    assert node_call[2]["metricnames"] == "Percentage CPU,Requests"
    assert node_call[2]["aggregation"] == "Average,Count"
    assert node_call[2]["timespan"] == "PT5M"
    assert node_call[2]["interval"] == "PT1M"


def test_monitor_caches_per_identity(settings, fake_client):
    fake_client.on("GET", "/metrics", _series(**{"Percentage CPU": [{"average": 5.0}]}))
    collector = MonitorCollector(fake_client, settings)
    topology = make_topology([{"id": "vm1", "azureResourceId": VM1, "bindings": {
        "cpu": {"source": "monitor", "metric": "Percentage CPU"},
    }}])

    collector.collect(topology, "alice")
    collector.collect(topology, "alice")
    assert len(fake_client.calls) == 1

    collector.collect(topology, "bob")
    assert len(fake_client.calls) == 2


def test_monitor_requires_identity(settings, fake_client):
    partial = MonitorCollector(fake_client, settings).collect(_monitor_topology(), None)
    assert partial.skipped is True
    assert (partial.attempted, partial.failed) == (0, 0)
    assert fake_client.calls == []


def test_malformed_metrics_payload_fails_only_that_target(settings, fake_client):
    fake_client.on("GET", "vm1/providers", "not-an-object")
    fake_client.on("GET", "vm2/providers", _series(**{"Percentage CPU": [{"average": 3.0}]}))

    partial = MonitorCollector(fake_client, settings).collect(_monitor_topology(), "token")

    assert partial.node_metrics["vm2"] == {"cpu": 3.0}
    assert partial.failed == 3


# ----------------------------- application telemetry -----------------------------

def test_component_id_for():
    assert component_id_for(VM1, "appi-prod") == (
        f"/subscriptions/{SUB}/resourceGroups/rg-test/providers/microsoft.insights/components/appi-prod"
    )
    assert component_id_for("not-a-resource", "appi-prod") is None
    assert component_id_for(VM1, None) is None


def test_app_insights_edge_bindings(fake_client):
    settings = LiveSettings(live_enabled=True, app_insights_app_id="appi-prod")
    topology = make_topology(
        [{"id": "api", "azureResourceId": VM1}, {"id": "db"}, {"id": "orphan"}],
        [
            {"id": "api-db", "source": "api", "target": "db", "bindings": {
                "latency": {"source": "appInsights", "metric": "dependencies/duration", "aggregation": "p95"},
                "peak": {"source": "appInsights", "metric": "dependencies/duration", "aggregation": "p99"},
            }},
            {"id": "orphan-db", "source": "orphan", "target": "db", "bindings": {
                "latency": {"source": "appInsights", "metric": "dependencies/duration"},
            }},
        ],
    )
    fake_client.on("GET", "components/appi-prod/providers/microsoft.insights/metrics", _series(**{
        "dependencies/duration": [{"average": 120.0, "maximum": 300.0}],
    }))

    partial = AppInsightsCollector(fake_client, settings).collect(topology, "token")

    assert partial.edge_metrics == {"api-db": {"latency": 120.0, "peak": 300.0}}
    assert partial.attempted == 2
    call = fake_client.calls[0]
    assert call[2]["aggregation"] == "avg,max"


def test_app_insights_not_configured(settings, fake_client):
    partial = AppInsightsCollector(fake_client, settings).collect(_monitor_topology(), "token")
    assert partial.skipped is True


# ----------------------------- flow analytics -----------------------------

def _network_topology():
    return make_topology(
        [
            {"id": "web", "azureResourceId": WEB_SUBNET, "endpoint": "10.0.1.4"},
            {"id": "db", "azureResourceId": DB_SUBNET, "endpoint": "10.0.2.4"},
            {"id": "cache", "endpoint": "10.0.3.4"},
        ],
        [
            {"id": "web-db", "source": "web", "target": "db"},
            {"id": "web-cache", "source": "web", "target": "cache"},
        ],
    )


def test_traffic_analytics_subnet_then_ip_pairs(fake_client):
    settings = LiveSettings(live_enabled=True, traffic_analytics_enabled=True, log_analytics_workspace_id="ws-1")

    def query(url, params, kql):
        assert kql.startswith("NTANetAnalytics\n")
        if "SrcSubnet" in kql:
            return [{"SrcSubnet": "vnet/db-subnet", "DestSubnet": "vnet/web-subnet",
                     "TotalBytes": 3000, "AllowedFlows": 5, "DeniedFlows": 1}]
        return [
            {"SrcIp": "10.0.1.4", "DestIp": "10.0.3.4", "TotalBytes": "600", "AllowedFlows": 2, "DeniedFlows": 0},
            {"SrcIp": "10.0.1.4", "DestIp": "10.0.2.4", "TotalBytes": 999999, "AllowedFlows": 9, "DeniedFlows": 0},
        ]

    fake_client.on("QUERY", "workspaces/ws-1", query)
    partial = TrafficAnalyticsCollector(fake_client, settings).collect(_network_topology(), "token")

    assert set(partial.flows) == {"web-db", "web-cache"}
    assert partial.flows["web-db"].throughput_bps == 80
    assert partial.flows["web-db"].denied_flows == 1
    assert partial.flows["web-cache"].throughput_bps == 16
    assert partial.attempted == 2
    assert partial.failed == 0


def test_traffic_analytics_ip_matches_whole_addresses(fake_client):
    settings = LiveSettings(live_enabled=True, traffic_analytics_enabled=True, log_analytics_workspace_id="ws-1")
    topology = make_topology(
        [
            {"id": "src", "endpoint": "10.0.5.5"},
            {"id": "near", "endpoint": "10.0.0.12"},
            {"id": "prefixed", "endpoint": "110.0.0.1"},
            {"id": "multi", "endpoint": "10.0.0.1, 10.0.0.2"},
        ],
        [
            {"id": "src-near", "source": "src", "target": "near"},
            {"id": "src-prefixed", "source": "src", "target": "prefixed"},
            {"id": "src-multi", "source": "src", "target": "multi"},
        ],
    )

    def query(url, params, kql):
        if "SrcSubnet" in kql:
            return []
        return [
            {"SrcIp": "10.0.5.5", "DestIp": "10.0.0.1", "TotalBytes": 300, "AllowedFlows": 1, "DeniedFlows": 0},
            {"SrcIp": "10.0.5.5", "DestIp": "10.0.0.3", "TotalBytes": 900, "AllowedFlows": 1, "DeniedFlows": 0},
        ]

    fake_client.on("QUERY", "workspaces/ws-1", query)
    partial = TrafficAnalyticsCollector(fake_client, settings).collect(topology, "token")

    assert set(partial.flows) == {"src-multi"}
    assert partial.flows["src-multi"].total_bytes == 300


def test_traffic_analytics_total_failure(fake_client):
    settings = LiveSettings(live_enabled=True, traffic_analytics_enabled=True, log_analytics_workspace_id="ws-1")
    fake_client.on("QUERY", "workspaces/ws-1", SourceUnavailable("forbidden", 403))

    partial = TrafficAnalyticsCollector(fake_client, settings).collect(_network_topology(), "token")

    assert partial.flows == {}
    assert partial.failed == partial.attempted == 2


def test_traffic_analytics_disabled(settings, fake_client):
    partial = TrafficAnalyticsCollector(fake_client, settings).collect(_network_topology(), "token")
    assert partial.skipped is True
    assert fake_client.calls == []


# ----------------------------- raw flow logs -----------------------------

def test_parse_flow_tuple():
    v1 = parse_flow_tuple("1714559400,10.0.1.4,10.0.2.4,443,51000,T,O,A")
    assert (v1.src_ip, v1.dest_ip, v1.action, v1.total_bytes) == ("10.0.1.4", "10.0.2.4", "A", 0)
    assert v1.flow_state is None

    v2 = parse_flow_tuple("1714559400,10.0.1.4,10.0.2.4,443,51000,T,O,A,B,10,1800,8,600")
    assert v2.flow_state == "B"
    assert (v2.packets_src_to_dest, v2.bytes_src_to_dest, v2.packets_dest_to_src) == (10, 1800, 8)
    assert v2.total_bytes == 2400

    assert parse_flow_tuple("garbage") is None
    assert parse_flow_tuple("abc,10.0.1.4,10.0.2.4,443,51000,T,O,A") is None


def _flow_document(*tuples):
    return json.dumps({"records": [{
        "time": "2024-05-01T10:00:00Z",
        "properties": {"Version": 2, "flows": [{"rule": "DefaultRule_AllowVnetInBound", "flows": [
            {"mac": "000D3A000000", "flowTuples": list(tuples)},
        ]}]},
    }]}).encode("utf-8")


def test_flow_logs_aggregate_recent_blobs(fake_client):
    settings = LiveSettings(live_enabled=True, flow_log_storage_account="flowlogs")
    now = datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)
    ts = int(now.timestamp())
    topology = make_topology(
        [
            {"id": "web", "azureResourceId": VM1},
            {"id": "db", "azureResourceId": DB_SUBNET},
        ],
        [{"id": "web-db", "source": "web", "target": "db"}],
    )

    base = "resourceId=/SUBSCRIPTIONS/X/RESOURCEGROUPS/RG/PROVIDERS/MICROSOFT.NETWORK/NETWORKSECURITYGROUPS/NSG"
    current = f"{base}/y=2024/m=05/d=01/h=10/m=00/macAddress=000D3A000000/PT1H.json"
    previous = f"{base}/y=2024/m=05/d=01/h=09/m=00/macAddress=000D3A000000/PT1H.json"
    broken = f"{base}/y=2024/m=05/d=01/h=10/m=00/macAddress=000D3A000001/PT1H.json"
    stale = f"{base}/y=2024/m=05/d=01/h=07/m=00/macAddress=000D3A000000/PT1H.json"

    fake_client.on("LISTBLOBS", "flowlogs/insights-logs-networksecuritygroupflowevent", [
        BlobInfo(previous, datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)),
        BlobInfo(current, datetime(2024, 5, 1, 10, 29, tzinfo=timezone.utc)),
        BlobInfo(broken, datetime(2024, 5, 1, 10, 28, tzinfo=timezone.utc)),
        BlobInfo(stale, datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)),
        BlobInfo(f"{base}/y=2024/m=05/d=01/h=10/readme.txt", None),
    ])
    fake_client.on("BLOB", current, _flow_document(
        f"{ts - 60},10.0.1.4,10.0.2.4,443,51000,T,O,A,B,10,1800,8,1800",
        f"{ts - 30},10.0.2.4,10.0.1.4,1433,52000,T,I,D",
        "garbage",
        f"{ts - 7200},10.0.1.4,10.0.2.4,443,51000,T,O,A,B,10,99999,8,99999",
    ))
    fake_client.on("BLOB", previous, _flow_document(
        f"{ts - 600},10.0.1.4,10.0.2.4,443,51001,T,O,A,E,5,3600,5,0",
    ))
    fake_client.on("BLOB", broken, b"{not json")
    fake_client.on("LIST", "/networkInterfaces", [
        {"id": "nic-web", "properties": {
            "virtualMachine": {"id": VM1.upper()},
            "ipConfigurations": [{"properties": {"privateIPAddress": "10.0.1.4"}}],
        }},
        {"id": "nic-pool", "properties": {
            "ipConfigurations": [{"properties": {
                "privateIPAddress": "10.0.2.4",
                "subnet": {"id": DB_SUBNET},
            }}],
        }},
    ])

    collector = FlowLogCollector(fake_client, settings, clock=FakeClock(now.timestamp()))
    partial = collector.collect(topology, "token")

    flow = partial.flows["web-db"]
    assert flow.total_bytes == 7200
    assert (flow.allowed_flows, flow.denied_flows) == (2, 1)
    assert flow.throughput_bps == 16
    assert partial.failed == 0
    read = [c[1] for c in fake_client.calls_to("BLOB")]
    assert stale not in "".join(read)
    assert read[0].endswith(current)


def test_flow_logs_not_configured(settings, fake_client):
    partial = FlowLogCollector(fake_client, settings).collect(_network_topology(), "token")
    assert partial.skipped is True


def test_ip_mapper_uses_endpoints_and_survives_failed_subscription(settings, fake_client):
    topology = make_topology([
        {"id": "web", "azureResourceId": VM1},
        {"id": "other", "azureResourceId": rid("Microsoft.Compute/virtualMachines/x", subscription=SUB2)},
        {"id": "edge", "endpoint": "192.168.0.9"},
    ])
    fake_client.on("LIST", f"/subscriptions/{SUB}/providers/Microsoft.Network/networkInterfaces", [
        {"id": "nic", "properties": {
            "virtualMachine": {"id": VM1},
            "ipConfigurations": [{"properties": {"privateIPAddress": "10.0.1.4"}}],
        }},
    ])

    ip_map = IpResourceMapper(fake_client, settings).build(topology, "token")

    assert ip_map["10.0.1.4"].node_id == "web"
    assert ip_map["192.168.0.9"].node_id == "edge"
    assert IpResourceMapper.resolve(ip_map, "10.0.1.4", "10.9.9.9") == ("web", None)


# ----------------------------- connection monitor -----------------------------

def test_connection_monitor_maps_test_groups_to_edges(fake_client):
    settings = LiveSettings(live_enabled=True, connection_monitor_enabled=True)
    watcher = rid("Microsoft.Network/networkWatchers/nw1")
    monitor = f"{watcher}/connectionMonitors/cm1"
    topology = make_topology(
        [{"id": "vm1", "azureResourceId": VM1}, {"id": "vm2", "azureResourceId": VM2}],
        [{"id": "vm1-vm2", "source": "vm1", "target": "vm2"}],
    )
    fake_client.on("LIST", "nw1/connectionMonitors", [{"id": monitor, "properties": {
        "endpoints": [
            {"name": "src", "resourceId": VM1.upper()},
            {"name": "dst", "address": "vm2"},
        ],
        "testGroups": [{"name": "tg-web", "sources": ["src"], "destinations": ["dst"]}],
    }}])
    fake_client.on("LIST", "/networkWatchers", [{"id": watcher}])
    fake_client.on("POST", "cm1/query", {"states": [{
        "name": "tg-web/src/dst",
        "connectionState": "Reachable",
        "avgLatencyInMs": 12.5,
        "maxLatencyInMs": 40,
        "probesSent": 200,
        "probesFailed": 3,
    }]})

    partial = ConnectionMonitorCollector(fake_client, settings).collect(topology, "token")

    probe = partial.probes["vm1-vm2"]
    assert probe.avg_latency_ms == 12.5
    assert probe.max_latency_ms == 40
    assert probe.packet_loss_percent == 1.5
    assert (probe.checks_total, probe.checks_failed) == (200, 3)
    assert probe.status == "reachable"


def test_connection_monitor_all_scopes_failing_marks_failure(fake_client):
    settings = LiveSettings(live_enabled=True, connection_monitor_enabled=True)
    topology = make_topology(
        [{"id": "vm1", "azureResourceId": VM1}, {"id": "vm2", "azureResourceId": VM2}],
        [{"id": "vm1-vm2", "source": "vm1", "target": "vm2"}],
    )
    partial = ConnectionMonitorCollector(fake_client, settings).collect(topology, "token")
    assert partial.probes == {}
    assert partial.failed == partial.attempted == 1


# ----------------------------- dependency calls -----------------------------

def test_resolve_name_strategies():
    index = {"orders-api": "api", "ordersdb": "sql", "sql": "sql", "api": "api"}
    assert resolve_name("Orders-API", index) == "api"
    assert resolve_name("ordersdb.database.windows.net", index) == "sql"
    assert resolve_name("https://orders-api.internal/v1", index) == "api"
    assert resolve_name("", index) is None
    assert resolve_name("unrelated", {"x": "x"}) is None


def test_dependencies_merge_rows_into_edges(fake_client):
    settings = LiveSettings(live_enabled=True, app_insights_app_id="appi-prod")
    topology = make_topology(
        [
            {"id": "api", "label": "orders-api", "azureResourceId": rid("Microsoft.Web/sites/orders-api")},
            {"id": "sql", "label": "Orders DB", "azureResourceId": rid("Microsoft.Sql/servers/ordersdb")},
        ],
        [{"id": "api-sql", "source": "api", "target": "sql"}],
    )
    fake_client.on("AIQUERY", "/components/appi-prod", [
        {"target": "ordersdb.database.windows.net", "type": "SQL", "cloud_RoleName": "orders-api",
         "callCount": 300, "failedCount": 3, "avgDurationMs": 20.0},
        {"target": "ordersdb.database.windows.net", "type": "Azure SQL", "cloud_RoleName": "orders-api",
         "callCount": 300, "failedCount": 0, "avgDurationMs": 40.0},
        {"target": "orders-api", "type": "HTTP", "cloud_RoleName": "orders-api",
         "callCount": 5, "failedCount": 0, "avgDurationMs": 1.0},
    ])

    partial = DependencyCollector(fake_client, settings).collect(topology, "token")

    stats = partial.dependencies["api-sql"]
    assert stats.call_count == 600
    assert stats.failed_count == 3
    assert stats.avg_duration_ms == 30.0
    assert stats.success_rate == 99.5
    assert stats.requests_per_sec == 2.0
    assert "dependencies" in fake_client.calls[0][3]


def test_dependencies_without_component(fake_client):
    settings = LiveSettings(live_enabled=True, app_insights_app_id="appi-prod")
    partial = DependencyCollector(fake_client, settings).collect(make_topology([{"id": "a"}]), "token")
    assert partial.skipped is True


# ----------------------------- alerts -----------------------------

def test_alert_collector_isolates_failing_subscription(settings, fake_client):
    topology = make_topology([
        {"id": "vm1", "azureResourceId": VM1},
        {"id": "x", "azureResourceId": rid("Microsoft.Compute/virtualMachines/x", subscription=SUB2)},
    ])
    fake_client.on("GET", f"/subscriptions/{SUB}/providers/Microsoft.AlertsManagement/alerts", {"value": [
        {"name": "a1", "properties": {"essentials": {"targetResource": VM1, "severity": "Sev1"}}},
    ]})

    alerts = AlertCollector(fake_client, settings).collect(topology, "token")

    assert [a["name"] for a in alerts] == ["a1"]
    call = fake_client.calls_to("GET", SUB)[0]
    assert call[2]["$top"] == 100
    assert "monitorCondition eq 'Fired'" in call[2]["$filter"]


def test_alert_collector_drops_malformed_records(settings, fake_client):
    topology = make_topology([{"id": "vm1", "azureResourceId": VM1}])
    fake_client.on("GET", "Microsoft.AlertsManagement/alerts", {"value": [
        {"name": "x", "properties": ["oops"]},
        {"name": "y", "properties": {"essentials": {"targetResource": {"id": 1}}}},
        {"name": "ok", "properties": {"essentials": {"targetResource": VM1}}},
        "garbage",
    ]})

    alerts = AlertCollector(fake_client, settings).collect(topology, "token")

    assert [a["name"] for a in alerts] == ["ok"]


def test_alert_collector_ignores_unexpected_payload(settings, fake_client):
    topology = make_topology([{"id": "vm1", "azureResourceId": VM1}])
    fake_client.on("GET", "Microsoft.AlertsManagement/alerts", {"value": {"name": "not-a-list"}})

    assert AlertCollector(fake_client, settings).collect(topology, "token") == []


def test_alert_collector_requires_identity(settings, fake_client):
    assert AlertCollector(fake_client, settings).collect(_monitor_topology(), None) == []
    assert fake_client.calls == []


# ----------------------------- collectors never raise -----------------------------

def test_collectors_are_total(fake_client):
    settings = LiveSettings(
        live_enabled=True,
        app_insights_app_id="appi",
        traffic_analytics_enabled=True,
        log_analytics_workspace_id="ws",
        flow_log_storage_account="acct",
        connection_monitor_enabled=True,
    )
    topology = _monitor_topology()
    for route in ("GET", "POST", "LIST", "QUERY", "AIQUERY", "LISTBLOBS", "BLOB"):
        fake_client.on(route, "", RuntimeError("unexpected"))

    for collector in build_collectors(settings, fake_client):
        partial = collector.collect(topology, "token")
        assert partial.failed <= partial.attempted
        assert partial.source == collector.source


# ----------------------------- REST client -----------------------------

class _Response:
    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self.content = content

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Session:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses, token="svc-token"):
    settings = LiveSettings(service_token=token, http_timeout_s=3)
    session = _Session(*responses)
    return AzureRestClient(settings, session=session), session


def test_rest_client_sends_bearer_and_timeout():
    client, session = _client(_Response(payload={"ok": True}))
    assert client.get_json(f"{ARM}/x", "caller-token", params={"a": 1}) == {"ok": True}
    method, url, kwargs = session.requests[0]
    assert kwargs["headers"]["Authorization"] == "Bearer caller-token"
    assert kwargs["timeout"] == 3
    assert kwargs["params"] == {"a": 1}


def test_rest_client_falls_back_to_service_token():
    client, session = _client(_Response(payload={}))
    client.get_json(f"{ARM}/x", None)
    assert session.requests[0][2]["headers"]["Authorization"] == "Bearer svc-token"


def test_rest_client_without_any_credential():
    client, session = _client(_Response(payload={}), token=None)
    with pytest.raises(ConfigurationMissing):
        client.get_json(f"{ARM}/x", None)
    assert session.requests == []


def test_rest_client_errors_become_source_unavailable():
    client, _ = _client(_Response(status_code=403, payload={}))
    with pytest.raises(SourceUnavailable) as exc:
        client.get_json(f"{ARM}/x", "t")
    assert exc.value.status == 403

    client, _ = _client(requests.ConnectionError("refused"))
    with pytest.raises(SourceUnavailable):
        client.get_json(f"{ARM}/x", "t")

    client, _ = _client(_Response(payload=None))
    with pytest.raises(SourceUnavailable):
        client.get_json(f"{ARM}/x", "t")


def test_list_arm_follows_next_link():
    client, session = _client(
        _Response(payload={"value": [1, 2], "nextLink": f"{ARM}/page2?skip=2"}),
        _Response(payload={"value": [3]}),
    )
    assert client.list_arm("/subscriptions/s/things", "t", params={"api-version": "v"}) == [1, 2, 3]
    assert session.requests[0][1] == f"{ARM}/subscriptions/s/things"
    assert session.requests[1][1] == f"{ARM}/page2?skip=2"
    assert session.requests[1][2]["params"] is None


def test_query_workspace_returns_rows():
    client, session = _client(_Response(payload={"tables": [{
        "name": "PrimaryResult",
        "columns": [{"name": "SrcIp", "type": "string"}, {"name": "TotalBytes", "type": "long"}],
        "rows": [["10.0.0.1", 10], ["10.0.0.2", 20]],
    }]}))
    rows = client.query_workspace("ws", "T | take 2", "t")
    assert rows == [{"SrcIp": "10.0.0.1", "TotalBytes": 10}, {"SrcIp": "10.0.0.2", "TotalBytes": 20}]
    method, url, kwargs = session.requests[0]
    assert (method, url) == ("POST", "https://api.loganalytics.io/v1/workspaces/ws/query")
    assert kwargs["json"] == {"query": "T | take 2"}


def test_table_to_rows_errors():
    assert table_to_rows({"tables": []}) == []
    with pytest.raises(SourceUnavailable):
        table_to_rows({"error": {"message": "bad query"}})
    with pytest.raises(SourceUnavailable):
        table_to_rows([])


def test_list_blobs_parses_xml_and_markers():
    page1 = (
        b'<?xml version="1.0" encoding="utf-8"?><EnumerationResults><Blobs>'
        b"<Blob><Name>a/PT1H.json</Name><Properties>"
        b"<Last-Modified>Wed, 01 May 2024 10:29:00 GMT</Last-Modified></Properties></Blob>"
        b"</Blobs><NextMarker>m2</NextMarker></EnumerationResults>"
    )
    page2 = (
        b'<?xml version="1.0" encoding="utf-8"?><EnumerationResults><Blobs>'
        b"<Blob><Name>b/PT1H.json</Name><Properties /></Blob>"
        b"</Blobs><NextMarker /></EnumerationResults>"
    )
    client, session = _client(_Response(content=page1), _Response(content=page2))

    blobs = client.list_blobs("acct", "container", "t", prefix="resourceId=")

    assert [b.name for b in blobs] == ["a/PT1H.json", "b/PT1H.json"]
    assert blobs[0].last_modified == datetime(2024, 5, 1, 10, 29, tzinfo=timezone.utc)
    assert blobs[1].last_modified is None
    assert session.requests[0][1] == "https://acct.blob.core.windows.net/container"
    assert session.requests[1][2]["params"]["marker"] == "m2"
    assert session.requests[0][2]["headers"]["x-ms-version"]


def test_passthrough_credentials():
    assert PassthroughCredentials().token_for("caller", "aud") == "caller"
    assert PassthroughCredentials("svc").token_for(None, "aud") == "svc"
    with pytest.raises(ConfigurationMissing):
        PassthroughCredentials().token_for(None, "aud")
