"""
Live topology aggregation package.

Modules:
- topology: diagram declarations (nodes, edges, metric bindings) and the topology store
- model: live snapshot types returned to clients
- telemetry: metric source adapters, REST client, worker pool, alert feed
- merge: precedence rules that combine source results per node and edge
- health: node health scoring, edge status and traffic level
- alerts: alert correlation onto nodes and edges
- overlays: fault impact detection and traffic heatmap
- sparkline: per-node metric history
- aggregator: snapshot orchestration and snapshot cache
- api / stream: REST + server-sent events surface
"""
