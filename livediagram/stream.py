"""Server-sent event stream of live snapshots."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Iterator, Optional

from livediagram.errors import DiagramNotFound

logger = logging.getLogger(__name__)


def format_event(payload: Dict[str, Any], event: Optional[str] = None) -> str:
    data = json.dumps(payload, separators=(",", ":"))
    if event:
        return f"event: {event}\ndata: {data}\n\n"
    return f"data: {data}\n\n"


def snapshot_events(
    aggregator,
    diagram_id: str,
    identity: Optional[str] = None,
    stop_event: Optional[threading.Event] = None,
    max_events: Optional[int] = None,
) -> Iterator[str]:
    """
    Yield one ``data:`` frame per snapshot: immediately, then every
    ``refreshIntervalSec`` of the diagram.

    If the diagram disappears the stream emits an ``error`` event and ends.
    The loop also ends when ``stop_event`` is set or ``max_events`` frames
    have been sent.
    """
    stop_event = stop_event or threading.Event()
    sent = 0
    while not stop_event.is_set():
        try:
            snapshot = aggregator.build_snapshot(diagram_id, identity)
        except DiagramNotFound as e:
            logger.info(f"Stream for diagram {diagram_id} ended: {e}")
            yield format_event({"error": str(e), "diagramId": diagram_id}, event="error")
            return

        yield format_event(snapshot.to_dict())
        sent += 1
        if max_events is not None and sent >= max_events:
            return
        stop_event.wait(snapshot.refresh_interval_sec)
