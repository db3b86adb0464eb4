"""
Running markers: one lock file per task whose presence means a worker for that
task is active, possibly in another supervisor process.
"""

import json
import logging
import os
import socket
from dataclasses import asdict, dataclass
from pathlib import Path

from vodcache.models.task import now_ms

log = logging.getLogger(__name__)

MARKER_PREFIX = "download-task-"
MARKER_SUFFIX = ".running"


@dataclass
class MarkerRecord:
    pid: int
    host: str
    acquired_at: int


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    except OSError:
        return False
    return True


class RunningMarkers:
    """Creates, inspects and reclaims `download-task-{id}.running` files."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def path_for(self, task_id: str) -> Path:
        return self.data_dir / f"{MARKER_PREFIX}{task_id}{MARKER_SUFFIX}"

    def read(self, task_id: str) -> MarkerRecord | None:
        path = self.path_for(task_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return MarkerRecord(
                pid=int(data["pid"]),
                host=str(data["host"]),
                acquired_at=int(data.get("acquired_at", 0)),
            )
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError):
            # Legacy markers carry a bare timestamp and no owner.
            return MarkerRecord(pid=0, host="", acquired_at=0)

    def is_stale(self, record: MarkerRecord) -> bool:
        """A marker is stale when its owner ran on this host and has exited."""
        return record.host == socket.gethostname() and not pid_alive(record.pid)

    def exists(self, task_id: str) -> bool:
        """
        True if a live marker exists. A stale marker is removed and reported as
        absent.
        """
        record = self.read(task_id)
        if record is None:
            return False
        if self.is_stale(record):
            log.warning(
                f"[yellow]Reclaiming stale running marker of task {task_id} "
                f"(pid {record.pid} is gone).[/yellow]"
            )
            self.release(task_id)
            return False
        return True

    def acquire(self, task_id: str, pid: int | None = None) -> bool:
        """
        Creates the marker exclusively. Returns False if a live marker already
        exists.
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if self.exists(task_id):
            return False
        record = MarkerRecord(
            pid=pid if pid is not None else os.getpid(),
            host=socket.gethostname(),
            acquired_at=now_ms(),
        )
        try:
            with open(self.path_for(task_id), "x", encoding="utf-8") as f:
                json.dump(asdict(record), f)
        except FileExistsError:
            return False
        return True

    def update_owner(self, task_id: str, pid: int) -> None:
        """Hands the marker over to the spawned worker process."""
        record = MarkerRecord(pid=pid, host=socket.gethostname(), acquired_at=now_ms())
        path = self.path_for(task_id)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(asdict(record)), encoding="utf-8")
        os.replace(tmp, path)

    def release(self, task_id: str, owner_pid: int | None = None) -> None:
        """
        Removes the marker. With `owner_pid`, a marker that has since been
        taken over by another process is left in place.
        """
        if owner_pid is not None:
            record = self.read(task_id)
            if record is None:
                return
            if record.pid != owner_pid:
                log.debug(
                    f"Running marker of {task_id} now belongs to pid {record.pid}, "
                    "leaving it."
                )
                return
        try:
            self.path_for(task_id).unlink(missing_ok=True)
        except OSError as e:
            log.error(f"[red]Could not remove running marker of {task_id}: {e}[/red]")

    def active_task_ids(self) -> set[str]:
        """Task ids with a live marker on disk."""
        if not self.data_dir.is_dir():
            return set()
        ids = set()
        for path in self.data_dir.glob(f"{MARKER_PREFIX}*{MARKER_SUFFIX}"):
            task_id = path.name[len(MARKER_PREFIX) : -len(MARKER_SUFFIX)]
            if self.exists(task_id):
                ids.add(task_id)
        return ids
