"""
Whole-collection JSON persistence shared by the task store and cache index.
"""

import asyncio
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

# One lock per process guards every collection file written through this module.
_WRITE_LOCK = threading.RLock()


class JsonCollectionStore:
    """
    A JSON array of records persisted as a single file.

    Every mutation rewrites the whole file atomically (temp file + os.replace)
    while holding a process-wide lock, so readers never observe a torn write.
    Subclasses expose typed async methods that run the synchronous core in a
    worker thread.
    """

    def __init__(self, file_path: Path, max_parallel: int = 4):
        self.file_path = Path(file_path)
        self._semaphore = asyncio.Semaphore(max_parallel)

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous store function off the event loop."""
        async with self._semaphore:
            return await asyncio.to_thread(func, *args)

    def _read_sync(self) -> list[dict[str, Any]]:
        if not self.file_path.is_file():
            return []
        try:
            with open(self.file_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            log.error(
                f"[red]Corrupt store file '{self.file_path.name}', treating as "
                f"empty: {e}[/red]"
            )
            return []
        if not isinstance(data, list):
            log.error(f"[red]Store file '{self.file_path.name}' is not a list.[/red]")
            return []
        return data

    def _write_sync(self, records: list[dict[str, Any]]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.file_path.name}.", dir=self.file_path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.file_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _mutate_sync(self, mutate) -> Any:
        """Read-modify-write under the process-wide lock."""
        with _WRITE_LOCK:
            records = self._read_sync()
            result = mutate(records)
            self._write_sync(records)
            return result
