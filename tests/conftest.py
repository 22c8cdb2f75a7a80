"""
Pytest configuration and fixtures for grab-area tests.

Provides:
- FakeClient: scripted search/resolve/children/archive collaborator
- FakeRecorder: in-memory outcome recorder
- QueueManager fixture wired to both, with no drain delay
"""

import threading
import time

import pytest

from grabarea_core import ArchiveStatus, QueueEntry, QueueManager, TransportError


class FakeClient:
    """Scripted remote collaborator that also tracks archive concurrency."""

    def __init__(self):
        self.search_results = {}
        self.identifiers = {}
        self.children = {}
        self.archive_results = {}
        self.archive_delay = 0.0
        self.archive_hook = None

        self.searches = []
        self.resolved = []
        self.archived = []
        self.active = 0
        self.max_active = 0
        self.lock = threading.Lock()

    def close(self):
        pass

    def add_area(self, name, area_id, key='', children=None):
        self.identifiers[area_id] = {'id': area_id, 'key': key, 'payload': {'areaId': area_id}}
        self.children[area_id] = children or []
        return {'name': name, 'id': area_id}

    def search(self, term):
        self.searches.append(term)
        result = self.search_results.get(term, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    def resolve_identifiers(self, raw_id, force_refresh=False):
        self.resolved.append(raw_id)
        result = self.identifiers.get(raw_id)
        if result is None:
            raise TransportError(f"Unknown area {raw_id}")
        if isinstance(result, Exception):
            raise result
        return result

    def discover_children(self, resolved_id):
        result = self.children.get(resolved_id, [])
        if isinstance(result, Exception):
            raise result
        return [QueueEntry(name=name, id=child_id, is_sub_item=True, parent_id=resolved_id)
                for name, child_id in result]

    def archive(self, name, area_id, key, payload):
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.archive_hook:
                self.archive_hook(area_id)
            if self.archive_delay:
                time.sleep(self.archive_delay)
            self.archived.append(area_id)
            result = self.archive_results.get(area_id, ArchiveStatus(True, f"Archived {name}"))
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self.lock:
                self.active -= 1


class FakeRecorder:
    """In-memory recorder with the OutcomeRecorder interface."""

    def __init__(self):
        self.archived_keys = set()
        self.successes = []
        self.failures = []
        self.setup_calls = {'create': 0, 'rotate_run': 0, 'rotate_failed': 0}

    def create_archive_log(self):
        self.setup_calls['create'] += 1

    def rotate_run_output_log(self):
        self.setup_calls['rotate_run'] += 1

    def rotate_failed_downloads_log(self):
        self.setup_calls['rotate_failed'] += 1

    def is_area_archived(self, name, area_id):
        return (name, area_id) in self.archived_keys

    def archived_count(self):
        return len(self.successes)

    def record_success(self, name, area_id, key, is_sub_item=False, parent_id=None):
        self.successes.append((name, area_id, key, is_sub_item, parent_id))

    def record_failure(self, name, area_id, key, reason):
        self.failures.append((name, area_id, key, str(reason)))


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def manager(client, recorder, tmp_path):
    qm = QueueManager(client, recorder, output_dir=str(tmp_path), drain_delay=0)
    yield qm
    qm.stop(timeout=5)
