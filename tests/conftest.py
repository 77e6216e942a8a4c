import copy
import os
import sys
import threading
from pathlib import Path

os.environ.setdefault("AZURE_LIVE_DIAGRAM_ENABLED", "false")
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from livediagram.config import LiveSettings
from livediagram.errors import SourceUnavailable
from livediagram.telemetry.base import PartialMetrics
from livediagram.topology import Topology

SUB = "00000000-0000-0000-0000-000000000001"
SUB2 = "00000000-0000-0000-0000-000000000002"
ARM = "https://management.azure.com"


def rid(provider_path, subscription=SUB, resource_group="rg-test"):
    return f"/subscriptions/{subscription}/resourceGroups/{resource_group}/providers/{provider_path}"


def make_topology(nodes, edges=(), diagram_id="diag", refresh=30):
    return Topology.from_dict({
        "id": diagram_id,
        "name": diagram_id,
        "version": "1",
        "nodes": list(nodes),
        "edges": list(edges),
        "settings": {"refreshIntervalSec": refresh},
    })


def chain_topology(ids=("A", "B", "C", "D")):
    nodes = [{"id": i, "label": i} for i in ids]
    edges = [
        {"id": f"{a}-{b}", "source": a, "target": b}
        for a, b in zip(ids, ids[1:])
    ]
    return make_topology(nodes, edges)


class FakeRestClient:
    """
    Route-table stand-in for AzureRestClient.

    Routes match on (method, URL fragment); the first match wins. A route's
    response may be a value (deep-copied), an exception instance (raised) or
    a callable ``(url, params, body) -> value``. Unrouted calls raise
    SourceUnavailable like a 404 would.
    """

    def __init__(self):
        self.routes = []
        self.calls = []
        self._lock = threading.Lock()

    def on(self, method, fragment, response):
        self.routes.append((method, fragment, response))
        return self

    def calls_to(self, method, fragment=""):
        return [c for c in self.calls if c[0] == method and fragment in c[1]]

    def _dispatch(self, method, url, params=None, body=None):
        with self._lock:
            self.calls.append((method, url, params, body))
        for m, fragment, response in self.routes:
            if m != method or fragment not in url:
                continue
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(url, params, body)
            return copy.deepcopy(response)
        raise SourceUnavailable(f"no route for {method} {url}", status=404)

    def arm_url(self, path):
        return path if path.startswith("http") else f"{ARM}{path}"

    def get_json(self, url, identity, *, audience=None, params=None):
        return self._dispatch("GET", url, params)

    def post_json(self, url, body, identity, *, audience=None, params=None):
        return self._dispatch("POST", url, params, body)

    def list_arm(self, path, identity, params=None):
        return self._dispatch("LIST", self.arm_url(path), params)

    def query_workspace(self, workspace_id, kql, identity):
        return self._dispatch("QUERY", f"workspaces/{workspace_id}", body=kql)

    def query_app_insights(self, component_id, kql, identity):
        return self._dispatch("AIQUERY", component_id, body=kql)

    def list_blobs(self, account, container, identity, prefix=None):
        return self._dispatch("LISTBLOBS", f"{account}/{container}", {"prefix": prefix})

    def read_blob(self, account, container, name, identity):
        return self._dispatch("BLOB", f"{account}/{container}/{name}")


class FakeCollector:
    """Collector double returning a canned PartialMetrics (or raising / blocking)."""

    def __init__(self, source, result=None, error=None, attempted=0, block=None):
        self.source = source
        self.result = result if result is not None else PartialMetrics(source=source)
        self.error = error
        self.attempted = attempted
        self.block = block
        self.calls = 0

    def collect(self, topology, identity=None):
        self.calls += 1
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        return self.result

    def attempted_scope(self, topology):
        return self.attempted


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings():
    return LiveSettings(live_enabled=True, metrics_concurrency=2, source_deadline_s=5.0)


@pytest.fixture
def fake_client():
    return FakeRestClient()


@pytest.fixture
def clock():
    return FakeClock()
