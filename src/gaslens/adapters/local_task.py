from __future__ import annotations
import asyncio, dataclasses, json, logging, os, time
from typing import Any, Callable

from ..domain.models import ChunkRec, CollectionProgress
from ..ports.storage import ManifestSink
from ..ports.task import ResumableTask

logger = logging.getLogger(__name__)


class LocalTask(ResumableTask):
    """In-process stand-in for a durable-execution runtime.

    Stop requests come from ``request_stop`` (wired to SIGINT/SIGTERM by the
    CLI); checkpoints go to a JSON file plus the run manifest.
    """

    def __init__(
        self,
        checkpoint_path: str,
        manifest: ManifestSink | None = None,
        on_progress: Callable[[CollectionProgress], None] | None = None,
    ) -> None:
        self.checkpoint_path = checkpoint_path
        self.manifest = manifest
        self.on_progress = on_progress
        self._stop = asyncio.Event()
        self.progress: CollectionProgress | None = None
        self.last_heartbeat: dict[str, Any] = {}
        self.last_heartbeat_at: float | None = None
        os.makedirs(os.path.dirname(checkpoint_path) or ".", exist_ok=True)

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.warning("stop requested; finishing the current batch")
        self._stop.set()

    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def heartbeat(self, **details: Any) -> None:
        self.last_heartbeat = details
        self.last_heartbeat_at = time.monotonic()
        logger.debug("heartbeat %s", details)

    def report_progress(self, progress: CollectionProgress) -> None:
        self.progress = dataclasses.replace(progress)
        if self.on_progress is not None:
            self.on_progress(self.progress)

    async def checkpoint(self, progress: CollectionProgress) -> None:
        state = dataclasses.asdict(progress)
        state["updated_at"] = time.time()
        await asyncio.to_thread(self._write_json, self.checkpoint_path, state)
        if self.manifest is not None:
            await self.manifest.append(ChunkRec(
                from_block=progress.current_block, to_block=progress.current_block,
                status="checkpoint", events=progress.events_collected,
                updated_at=state["updated_at"], details={"segment": progress.segments},
            ))
        logger.info("checkpoint at block %d (segment %d, %d events)",
                    progress.current_block, progress.segments, progress.events_collected)

    @staticmethod
    def _write_json(path: str, state: dict) -> None:
        tmp = path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(state, f, indent=2); f.flush(); os.fsync(f.fileno())
        os.replace(tmp, path)

    def load_checkpoint(self) -> dict | None:
        if not os.path.exists(self.checkpoint_path):
            return None
        with open(self.checkpoint_path, "r") as f:
            return json.load(f)
