"""Gunicorn configuration to ensure diagrams are loaded in each worker."""
import sys

# Gunicorn config variables
bind = "0.0.0.0:8080"
workers = 2
threads = 4
timeout = 120
worker_class = "gthread"  # SSE streams hold a thread each
preload_app = False  # Don't preload - let each worker import fresh


def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    try:
        # Import here to avoid circular imports
        from app import seed_store

        app = getattr(worker, "wsgi", None)
        if app is None or not hasattr(app, "config"):
            print(f"[Worker {worker.pid}] WARNING: App or config not found", file=sys.stderr, flush=True)
            return

        store = app.config.get("topology_store")
        aggregator = app.config.get("live_aggregator")
        if store is None or aggregator is None:
            print(f"[Worker {worker.pid}] WARNING: No topology store found in app.config", file=sys.stderr, flush=True)
            return

        # Ensure declarations are present - re-seed if needed
        if len(store) == 0:
            loaded = seed_store(store, aggregator.settings)
            print(f"[Worker {worker.pid}] Loaded {loaded} diagram(s)", file=sys.stderr, flush=True)
        else:
            print(f"[Worker {worker.pid}] Store already has {len(store)} diagram(s)", file=sys.stderr, flush=True)
    except Exception as e:
        print(f"[Worker {worker.pid}] ERROR in post_worker_init: {e}", file=sys.stderr, flush=True)
        import traceback
        traceback.print_exc(file=sys.stderr)
