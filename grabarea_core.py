# grabarea_core.py
# GRAB-AREA CORE ENGINE
# Version: 1.0.0

"""
GRAB-AREA CORE ENGINE
=====================
A thread-safe download queue for area archiving.

GUARANTEES:
- No duplicate enqueue: an area id is pending at most once
- Dedup against archived (name+id), queued (id) and failed (name) areas
- Parent areas are expanded into their sub-areas at discovery time
- Single-flight drain: at most one archive call outstanding
- Every drained entry ends with exactly one success or failure record
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, List, Tuple, Any, Iterable

from grabarea_records import OutcomeRecorder, RunLog, RUN_OUTPUT_LOG_NAME

# =========================================================
# CONSTANTS
# =========================================================

# Seconds between archive calls (rate limit on the drain loop)
DEFAULT_DRAIN_DELAY = 1.0

# Wait ceiling while the queue is empty; enqueues wake the loop early
IDLE_POLL_SECONDS = 1.0

# Join timeout for the drain thread on stop (None = wait for in-flight archive)
STOP_JOIN_TIMEOUT = None

DEFAULT_OUTPUT_DIR = str(Path.home() / "Downloads" / "grab-area Archive")


# =========================================================
# ERRORS
# =========================================================
class GrabAreaError(Exception):
    """Base error for the area archiver."""


class TransportError(GrabAreaError):
    """The search or discovery request failed outright."""


class MalformedResponseError(GrabAreaError):
    """The remote service answered with a bad or incomplete body."""


class UnitDiscoveryError(GrabAreaError):
    """Resolving one area's identifiers or sub-areas failed."""


class ArchiveError(GrabAreaError):
    """The archive call for one area failed."""


# =========================================================
# DATA MODEL
# =========================================================
@dataclass
class QueueEntry:
    """One area waiting to be archived."""
    name: str
    id: str
    key: str = ''
    is_sub_item: bool = False
    parent_id: Optional[str] = None
    payload: Any = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(
            name=data.get('name', ''),
            id=data.get('id', ''),
            key=data.get('key') or '',
            is_sub_item=bool(data.get('is_sub_item', data.get('subArea', False))),
            parent_id=data.get('parent_id', data.get('parentId')),
            payload=data.get('payload', data.get('areaData')),
        )


@dataclass
class ArchiveStatus:
    success: bool
    msg: str = ''


# =========================================================
# QUEUE MANAGER
# =========================================================
class QueueManager:
    """
    Owner of the download queue and the failed-area set.

    All queue and failed-set mutations happen under ``queue_lock``. The drain
    loop runs in one dedicated thread and awaits each archive call before the
    next pop, which is what bounds archiving to one call at a time.

    The ``client`` must provide ``search``, ``resolve_identifiers``,
    ``discover_children`` and ``archive`` (see grabarea_remote.AreaClient).
    """

    def __init__(self, client, recorder: OutcomeRecorder = None,
                 output_dir: str = None, drain_delay: float = DEFAULT_DRAIN_DELAY,
                 run_log: RunLog = None):
        self.output_dir = Path(output_dir) if output_dir else Path(DEFAULT_OUTPUT_DIR)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        # ===== LOGGING =====
        self.run_log = run_log or RunLog(self.output_dir / RUN_OUTPUT_LOG_NAME)

        # ===== COLLABORATORS =====
        self.client = client
        self.recorder = recorder or OutcomeRecorder(self.output_dir, log=self._log,
                                                    run_log=self.run_log)

        # ===== QUEUE STATE =====
        self.queue_lock = threading.RLock()
        self.work_available = threading.Condition(self.queue_lock)
        self._queue = deque()
        self._failed_names = set()

        # ===== DRAIN LOOP =====
        self.drain_delay = drain_delay
        self.stop_event = threading.Event()
        self.drain_thread = None
        self._logs_prepared = False
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

        # ===== STATS =====
        self.stats_lock = threading.Lock()
        self.enqueued_total = 0
        self.archived_this_run = 0
        self.failed_this_run = 0

    def _log(self, message: str, level: str = "info"):
        self.run_log.write(message, level)

    # ----- dedup index -----

    def archived(self, name: str, area_id: str) -> bool:
        return self.recorder.is_area_archived(name, area_id)

    def queued(self, area_id: str) -> bool:
        with self.queue_lock:
            return any(entry.id == area_id for entry in self._queue)

    def previously_failed(self, name: str) -> bool:
        with self.queue_lock:
            return name in self._failed_names

    def _mark_failed(self, name: str):
        with self.queue_lock:
            self._failed_names.add(name)

    # ----- snapshots -----

    def pending(self) -> List[QueueEntry]:
        with self.queue_lock:
            return list(self._queue)

    def failed_names(self) -> set:
        with self.queue_lock:
            return set(self._failed_names)

    def __len__(self):
        with self.queue_lock:
            return len(self._queue)

    # ----- enqueuer -----

    def submit_explicit(self, items: Iterable):
        """
        Push entries onto the queue verbatim (seeding and retries).

        No dedup and no expansion happen here.
        """
        entries = [item if isinstance(item, QueueEntry) else QueueEntry.from_dict(item)
                   for item in items]
        with self.work_available:
            self._queue.extend(entries)
            self.work_available.notify_all()
        with self.stats_lock:
            self.enqueued_total += len(entries)
        if entries:
            self._log(f"Queued {len(entries)} explicit areas. Queue contains {len(self)} areas", "info")

    def submit_search(self, term: str):
        """
        Queue every new area matching a search term, including sub-areas.

        Args:
            term: Search term (case-insensitive)

        Raises:
            TransportError: the search request failed
            MalformedResponseError: the response had no usable ``areas`` list

        Returns once the whole result list is processed. A failure on one
        area is recorded and does not abort the batch.
        """
        query = term.strip().lower()
        self._log(f"Searching: {query}", "info")
        areas = self.client.search(query)

        batch = []
        batch_ids = set()

        def seen(name, area_id):
            return (area_id in batch_ids or self.queued(area_id)
                    or self.previously_failed(name) or self.archived(name, area_id))

        for area in areas:
            name = area.get('name', '')
            raw_id = area.get('id', '')
            raw_key = area.get('key') or ''

            if seen(name, raw_id):
                continue

            try:
                identifiers = self.client.resolve_identifiers(raw_id, False)
                root = QueueEntry(
                    name=name,
                    id=identifiers['id'],
                    key=identifiers.get('key') or '',
                    is_sub_item=False,
                    parent_id=None,
                    payload=identifiers.get('payload'),
                )
                if root.id != raw_id and seen(name, root.id):
                    continue
            except Exception as e:
                self._discovery_failed(name, raw_id, raw_key, e)
                continue

            self._log(f"Queueing {name}", "info")
            batch.append(root)
            batch_ids.add(root.id)

            try:
                children = self.client.discover_children(root.id)
            except Exception as e:
                self._discovery_failed(name, root.id, root.key, e)
                continue

            new_children = 0
            for child in children:
                if not isinstance(child, QueueEntry):
                    child = QueueEntry.from_dict(child)
                child.is_sub_item = True
                child.parent_id = root.id
                if seen(child.name, child.id):
                    continue
                batch.append(child)
                batch_ids.add(child.id)
                new_children += 1
            if new_children:
                self._log(f"Queued {new_children} new sub-areas for download.", "info")

        added = self._commit_batch(batch)
        if added:
            self._log(f"Queued {added} new areas for download. Queue contains {len(self)} areas", "success")

    def _discovery_failed(self, name: str, area_id: str, key: str, error: Exception):
        self._log(f"✗ Discovery failed for {name}: {error}", "error")
        self._mark_failed(name)
        try:
            self.recorder.record_failure(name, area_id, key, error)
        except Exception as e:
            self._log(f"✗ Could not record discovery failure for {name}: {e}", "error")

    def _commit_batch(self, batch: List[QueueEntry]) -> int:
        # Re-check under the lock: a concurrent search may have queued the same ids
        with self.work_available:
            pending_ids = {entry.id for entry in self._queue}
            added = [entry for entry in batch if entry.id not in pending_ids]
            self._queue.extend(added)
            if added:
                self.work_available.notify_all()
        with self.stats_lock:
            self.enqueued_total += len(added)
        return len(added)

    # ----- drain loop -----

    def _prepare_logs(self):
        if self._logs_prepared:
            return
        self.recorder.create_archive_log()
        self.recorder.rotate_run_output_log()
        self.recorder.rotate_failed_downloads_log()
        self._logs_prepared = True

    def start_drain_loop(self, interval: float = None):
        """
        Start the drain thread, archiving one area every ``interval`` seconds.

        Log setup runs once per manager; calling this again while the loop is
        running only updates the interval. If a stopped thread is still
        finishing its archive call, the new thread waits for it before the
        first pop.
        """
        if interval is not None:
            self.drain_delay = interval
        self._prepare_logs()

        previous = self.drain_thread
        if previous and previous.is_alive() and not self.stop_event.is_set():
            return

        # Each thread owns its stop event; a stopped thread never sees it cleared
        self.stop_event = threading.Event()
        self.drain_thread = threading.Thread(target=self._drain_loop,
                                             args=(self.stop_event, previous),
                                             daemon=True, name="grabarea-drain")
        self.drain_thread.start()
        self._log(f"Download queue started with {self.drain_delay} second download delay", "success")

    def _drain_loop(self, stop_event: threading.Event, previous: threading.Thread = None):
        if previous is not None:
            previous.join()

        while not stop_event.is_set():
            with self.work_available:
                if not self._queue:
                    self.work_available.wait(timeout=IDLE_POLL_SECONDS)
                    continue

            self.process_step()

            if self.drain_delay > 0:
                stop_event.wait(self.drain_delay)

    def process_step(self) -> Optional[QueueEntry]:
        """
        Archive the next area in the queue.

        Returns the retired entry, or None when the queue was empty. Never
        raises: every outcome becomes a success or failure record.
        """
        with self.queue_lock:
            if not self._queue:
                return None
            entry = self._queue.popleft()
            with self._in_flight_lock:
                self._in_flight += 1

        try:
            try:
                status = self._archive_entry(entry)
            except Exception as e:
                status = ArchiveStatus(False, str(e) or e.__class__.__name__)

            try:
                if status.success:
                    self._record_success(entry, status)
                else:
                    self._record_failure(entry, status.msg)
            except Exception as e:
                self._log(f"✗ Could not record outcome for {entry.name}: {e}", "error")
        finally:
            with self._in_flight_lock:
                self._in_flight -= 1

        return entry

    def _archive_entry(self, entry: QueueEntry) -> ArchiveStatus:
        status = self.client.archive(entry.name, entry.id, entry.key, entry.payload)
        if isinstance(status, dict):
            status = ArchiveStatus(bool(status.get('success')), status.get('msg', ''))
        return status

    def _record_success(self, entry: QueueEntry, status: ArchiveStatus):
        self._log(status.msg or f"✓ Archived: {entry.name}", "success")
        self.recorder.record_success(entry.name, entry.id, entry.key,
                                     entry.is_sub_item, entry.parent_id)
        with self.stats_lock:
            self.archived_this_run += 1

    def _record_failure(self, entry: QueueEntry, reason: str):
        self._log(f"Failure logged for {entry.name}: {reason}", "error")
        self._mark_failed(entry.name)
        with self.stats_lock:
            self.failed_this_run += 1
        self.recorder.record_failure(entry.name, entry.id, entry.key, reason)

    def stop(self, timeout: Optional[float] = STOP_JOIN_TIMEOUT):
        """
        Stop the drain loop after the in-flight archive finishes.

        With a ``timeout`` the call may return while that archive is still
        running; the thread reference is kept until it exits.
        """
        self.stop_event.set()
        with self.work_available:
            self.work_available.notify_all()

        if self.drain_thread and self.drain_thread.is_alive():
            self.drain_thread.join(timeout=timeout)
        if self.drain_thread and not self.drain_thread.is_alive():
            self.drain_thread = None
        self._log("Download queue stopped", "info")

    def wait_until_idle(self, poll: float = 0.2, timeout: Optional[float] = None) -> bool:
        """Block until the queue is empty and nothing is in flight."""
        deadline = time.time() + timeout if timeout is not None else None
        while True:
            with self.queue_lock, self._in_flight_lock:
                idle = self._in_flight == 0 and not self._queue
            if idle:
                return True
            if deadline is not None and time.time() >= deadline:
                return False
            time.sleep(poll)

    # ----- ui bridge -----

    def get_stats(self) -> Dict[str, Any]:
        with self.queue_lock, self._in_flight_lock:
            in_flight = self._in_flight
            queue_depth = len(self._queue)
        with self.stats_lock:
            stats = {
                "enqueued_total": self.enqueued_total,
                "archived_this_run": self.archived_this_run,
                "failed_this_run": self.failed_this_run,
            }
        _, last_log_index = self.run_log.since(0)
        stats.update({
            "queue_depth": queue_depth,
            "failed_areas": len(self.failed_names()),
            "archived_count": self.recorder.archived_count(),
            "in_flight": in_flight,
            "drain_active": bool(self.drain_thread and self.drain_thread.is_alive()),
            "last_log_index": last_log_index,
            "heartbeat": time.time(),
        })
        return stats

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        return self.run_log.since(from_index)

    def update_config(self, drain_delay: float = None):
        if drain_delay is not None:
            self.drain_delay = drain_delay
            self._log(f"⚙ Updated drain_delay: {drain_delay}s", "info")
