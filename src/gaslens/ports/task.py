# gaslens/ports/task.py
from __future__ import annotations

from typing import Any, Protocol
from ..domain.models import CollectionProgress


class ResumableTask(Protocol):
    """Long-running resumable task as seen by the collection loop.

    Any orchestrator can sit behind this; the loop only needs heartbeats, a
    cooperative stop flag and a place to hand over its cursor between segments.
    """

    def heartbeat(self, **details: Any) -> None:
        """Signal liveness while a batch is in flight."""

    def report_progress(self, progress: CollectionProgress) -> None:
        """Publish the latest progress snapshot (queryable from outside)."""

    def stop_requested(self) -> bool:
        """True once an external stop has been requested."""

    async def checkpoint(self, progress: CollectionProgress) -> None:
        """Persist the cursor before the loop restarts as a new segment."""
