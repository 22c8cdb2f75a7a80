# grabarea_remote.py
# GRAB-AREA REMOTE CLIENT
# Version: 1.0.0

"""
GRAB-AREA REMOTE CLIENT
=======================
HTTP side of the archiver: area search, identifier resolution, sub-area
discovery and bundle download, all over one shared requests.Session.

Every request carries CONNECTION_TIMEOUT so a hung call ends as a failure
instead of stalling the drain loop.
"""

import json
import os
import random
import threading
import time
from pathlib import Path
from typing import Dict, List, Any

import requests

from grabarea_core import (
    ArchiveError,
    ArchiveStatus,
    MalformedResponseError,
    QueueEntry,
    TransportError,
    UnitDiscoveryError,
)

# =========================================================
# CONSTANTS
# =========================================================

DEFAULT_BASE_URL = "http://app.anyland.com"

# Connection Timeout (seconds, applied to every request)
CONNECTION_TIMEOUT = 15

# Download Chunk Size (128KB)
DOWNLOAD_CHUNK_SIZE = 131072

# Global Backoff Range after 429/503
BACKOFF_MIN_SECONDS = 30
BACKOFF_MAX_SECONDS = 60

USER_AGENT = "grab-area/1.0 (Area Archiving Tool)"

BUNDLE_FILE_NAME = "bundle"
PAYLOAD_FILE_NAME = "area.json"


class AreaClient:
    """
    Remote collaborator for QueueManager.

    Endpoints (relative to ``base_url``):
    - POST /area/search       form ``term``   -> ``{"areas": [...]}``
    - POST /area/load         form ``areaId`` -> area data with ``areaId``/``areaKey``
    - POST /area/getsubareas  form ``areaId`` -> ``{"subAreas": [...]}``
    - GET  /area/bundle/<id>  query ``key``   -> raw bundle bytes
    """

    def __init__(self, output_dir, base_url: str = DEFAULT_BASE_URL,
                 session: requests.Session = None, headers: Dict[str, str] = None,
                 timeout: float = CONNECTION_TIMEOUT, log=None):
        self.output_dir = Path(output_dir)
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._log = log or (lambda message, level="info": None)

        # ===== SESSION PERSISTENCE =====
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})
        if headers:
            self.session.headers.update(headers)

        # ===== IDENTIFIER CACHE =====
        self._identifier_cache: Dict[str, Dict[str, Any]] = {}
        self.cache_lock = threading.Lock()

        # ===== GLOBAL BACKOFF =====
        self.global_backoff_until = 0.0
        self.backoff_lock = threading.Lock()
        self.closed = threading.Event()

    def close(self):
        self.closed.set()
        self.session.close()

    # ----- backoff -----

    def _trigger_backoff(self, duration: int = None):
        if duration is None:
            duration = random.randint(BACKOFF_MIN_SECONDS, BACKOFF_MAX_SECONDS)
        with self.backoff_lock:
            self.global_backoff_until = time.time() + duration
        self._log(f"🚨 GLOBAL BACKOFF TRIGGERED: {duration}s", "warning")

    def _wait_for_backoff(self):
        while not self.closed.is_set():
            with self.backoff_lock:
                remaining = self.global_backoff_until - time.time()
            if remaining <= 0:
                break
            time.sleep(min(0.5, remaining))

    def _post_json(self, path: str, form: Dict[str, Any], error_cls=TransportError) -> Any:
        """POST a form and decode the JSON answer."""
        self._wait_for_backoff()
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, data=form, timeout=self.timeout)
        except requests.RequestException as e:
            raise error_cls(f"Request to {path} failed: {e}") from e

        if response.status_code == 429:
            self._trigger_backoff()
            raise error_cls("Rate limited (429)")
        if response.status_code == 503:
            self._trigger_backoff(duration=60)
            raise error_cls("Service unavailable (503)")
        if response.status_code != 200:
            raise error_cls(f"HTTP {response.status_code} from {path}")

        if not response.content:
            raise MalformedResponseError("Missing body")
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Body from {path} is not JSON") from e

    # ----- search -----

    def search(self, term: str) -> List[Dict[str, Any]]:
        """
        Run an area search.

        Raises:
            TransportError: request failed outright
            MalformedResponseError: body missing, flagged as error, or without
                an ``areas`` list
        """
        results = self._post_json("/area/search", {'term': term})

        if not isinstance(results, dict):
            raise MalformedResponseError("Search response is not an object")
        if results.get('error'):
            raise MalformedResponseError(f"Search returned an error: {results['error']}")

        areas = results.get('areas')
        if not isinstance(areas, list):
            raise MalformedResponseError("No areas found in response")

        found = [area for area in areas if isinstance(area, dict)]
        if len(found) != len(areas):
            self._log(f"⚠ Ignored {len(areas) - len(found)} malformed search results", "warning")
        self._log(f"🔍 Search '{term}' matched {len(found)} areas", "info")
        return found

    # ----- expansion -----

    def resolve_identifiers(self, raw_id: str, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Resolve an area's canonical id, key and payload.

        Results are cached per raw id unless ``force_refresh`` is set.

        Raises:
            UnitDiscoveryError: the area could not be loaded
        """
        if not force_refresh:
            with self.cache_lock:
                cached = self._identifier_cache.get(raw_id)
            if cached is not None:
                return cached

        try:
            data = self._post_json("/area/load", {'areaId': raw_id},
                                   error_cls=UnitDiscoveryError)
        except MalformedResponseError as e:
            raise UnitDiscoveryError(f"Area {raw_id}: {e}") from e

        if not isinstance(data, dict) or not data.get('areaId'):
            raise UnitDiscoveryError(f"Area {raw_id}: no identifiers in response")

        identifiers = {
            'id': data['areaId'],
            'key': data.get('areaKey') or '',
            'payload': data,
        }
        with self.cache_lock:
            self._identifier_cache[raw_id] = identifiers
        return identifiers

    def discover_children(self, resolved_id: str) -> List[QueueEntry]:
        """
        List and resolve the sub-areas of an area.

        Errors propagate; an area without sub-areas yields an empty list.
        """
        try:
            data = self._post_json("/area/getsubareas", {'areaId': resolved_id},
                                   error_cls=UnitDiscoveryError)
        except MalformedResponseError as e:
            raise UnitDiscoveryError(f"Sub-areas of {resolved_id}: {e}") from e

        if not isinstance(data, dict):
            raise UnitDiscoveryError(f"Sub-areas of {resolved_id}: response is not an object")

        children = []
        for sub_area in data.get('subAreas') or []:
            if not isinstance(sub_area, dict) or not sub_area.get('id'):
                raise UnitDiscoveryError(f"Sub-areas of {resolved_id}: entry without id")
            identifiers = self.resolve_identifiers(sub_area['id'])
            children.append(QueueEntry(
                name=sub_area.get('name', identifiers['id']),
                id=identifiers['id'],
                key=identifiers['key'],
                is_sub_item=True,
                parent_id=resolved_id,
                payload=identifiers['payload'],
            ))
        return children

    # ----- archive -----

    def archive(self, name: str, area_id: str, key: str, payload: Any) -> ArchiveStatus:
        """
        Download one area's bundle and store its payload next to it.

        The bundle streams to a ``.part`` file and is renamed into place only
        when complete. HTTP failures come back as a failed status; transport
        failures raise ArchiveError.
        """
        self._wait_for_backoff()

        area_dir = self.output_dir / area_id
        final_path = area_dir / BUNDLE_FILE_NAME
        part_path = Path(str(final_path) + ".part")
        part_path.parent.mkdir(parents=True, exist_ok=True)

        url = f"{self.base_url}/area/bundle/{area_id}"
        params = {'key': key} if key else None

        try:
            response = self.session.get(url, params=params, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise ArchiveError(f"Download of {name} failed: {e}") from e

        with response:
            if response.status_code == 429:
                self._trigger_backoff()
                return ArchiveStatus(False, "Rate limited (429)")
            if response.status_code == 503:
                self._trigger_backoff(duration=60)
                return ArchiveStatus(False, "Service unavailable (503)")
            if response.status_code != 200:
                return ArchiveStatus(False, f"HTTP {response.status_code}")

            expected_size = int(response.headers.get('Content-Length') or 0)
            try:
                with open(part_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            except requests.RequestException as e:
                part_path.unlink(missing_ok=True)
                raise ArchiveError(f"Download of {name} interrupted: {e}") from e
            except OSError:
                part_path.unlink(missing_ok=True)
                raise

        written = part_path.stat().st_size
        if expected_size > 0 and written != expected_size:
            part_path.unlink(missing_ok=True)
            return ArchiveStatus(False, f"Incomplete download: {written}/{expected_size} bytes")

        os.replace(str(part_path), str(final_path))
        self._write_payload(area_dir / PAYLOAD_FILE_NAME, payload)

        return ArchiveStatus(True, f"✓ Archived: {name} ({written} bytes)")

    def _write_payload(self, path: Path, payload: Any):
        """Store the discovery payload as received."""
        if payload is None:
            return
        if isinstance(payload, bytes):
            path.write_bytes(payload)
        elif isinstance(payload, str):
            path.write_text(payload, encoding='utf-8')
        else:
            path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding='utf-8')
