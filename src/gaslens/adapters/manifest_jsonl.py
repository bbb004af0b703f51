from __future__ import annotations
import os, json, asyncio
from dataclasses import asdict
from ..ports.storage import ManifestSink
from ..domain.models import ChunkRec

class JSONLManifest(ManifestSink):
    """One JSON line per batch/checkpoint record, fsync'd on every append."""

    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    async def append(self, rec: ChunkRec) -> None:
        line = json.dumps(asdict(rec), separators=(",", ":")) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._write_line, self.path, line)

    @staticmethod
    def _write_line(path: str, line: str) -> None:
        with open(path, "a", buffering=1) as f:
            f.write(line); f.flush(); os.fsync(f.fileno())

    def records(self) -> list[ChunkRec]:
        if not os.path.exists(self.path):
            return []
        out: list[ChunkRec] = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if line:
                    out.append(ChunkRec(**json.loads(line)))
        return out
