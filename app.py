from __future__ import annotations

import os
import logging
from pathlib import Path

from livediagram.aggregator import LiveAggregator
from livediagram.api import create_app
from livediagram.config import LiveSettings
from livediagram.telemetry import AlertCollector, AzureRestClient, build_collectors
from livediagram.topology import TopologyStore

logger = logging.getLogger(__name__)


def diagrams_path(settings: LiveSettings) -> Path:
	"""Declaration directory; relative paths fall back to the repo root."""
	path = Path(settings.diagrams_dir)
	if path.is_absolute() or path.is_dir():
		return path
	return Path(__file__).parent / path


def seed_store(store: TopologyStore, settings: LiveSettings) -> int:
	"""Load diagram declarations into the store. Safe to call multiple times."""
	return store.load_dir(str(diagrams_path(settings)))


def build_app(settings: LiveSettings | None = None):
	"""Build the Flask app with a seeded topology store and the live aggregator."""
	settings = settings or LiveSettings.from_env()
	store = TopologyStore()
	seed_store(store, settings)

	client = AzureRestClient(settings)
	aggregator = LiveAggregator(
		store,
		settings,
		collectors=build_collectors(settings, client),
		alert_collector=AlertCollector(client, settings),
	)
	if not settings.live_enabled:
		logger.info("Live collection disabled, snapshots are built from topology only")

	return create_app(store, aggregator)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")), threaded=True)
