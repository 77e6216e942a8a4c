"""Error taxonomy for live diagram aggregation."""

from __future__ import annotations

from typing import Optional


class LiveDiagramError(Exception):
    """Base class for all live diagram errors."""


class DiagramNotFound(LiveDiagramError):
    """The requested diagram id is not in the topology store."""

    def __init__(self, diagram_id: str) -> None:
        super().__init__(f"diagram not found: {diagram_id}")
        self.diagram_id = diagram_id


class InvalidTopology(LiveDiagramError):
    """A topology declaration could not be parsed."""


class SourceUnavailable(LiveDiagramError):
    """
    A telemetry backend call failed (network, auth, quota, malformed payload).

    Raised inside adapters and absorbed at the adapter boundary.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ConfigurationMissing(LiveDiagramError):
    """A source's prerequisite configuration (or credential) is absent."""
