# grabarea_records.py
# GRAB-AREA OUTCOME RECORDER
# Version: 1.0.0

"""
GRAB-AREA OUTCOME RECORDER
==========================
Durable bookkeeping for the download queue.

ARTIFACTS (all under the output directory):
- archive_log.db       : SQLite WAL archive index of completed areas
- failed_downloads.log : append-only failure log (tab separated)
- run_output.log       : run log written by RunLog, rotated at drain start
"""

import sqlite3
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Tuple, Dict

ARCHIVE_DB_NAME = "archive_log.db"
FAILED_LOG_NAME = "failed_downloads.log"
RUN_OUTPUT_LOG_NAME = "run_output.log"

# Bounded in-memory log buffer (polled by the CLI)
LOG_BUFFER_SIZE = 50000

ARCHIVE_SCHEMA = """
CREATE TABLE IF NOT EXISTS archived (
    name TEXT NOT NULL,
    area_id TEXT NOT NULL,
    area_key TEXT NOT NULL DEFAULT '',
    is_sub_item INTEGER NOT NULL DEFAULT 0,
    parent_id TEXT,
    archived_at TEXT NOT NULL,
    PRIMARY KEY (name, area_id)
);

CREATE INDEX IF NOT EXISTS idx_parent_id ON archived(parent_id);
"""


def _rotate(path: Path) -> Optional[Path]:
    """Move a non-empty log aside with a timestamp suffix."""
    if not path.exists() or path.stat().st_size == 0:
        return None
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
    rotated = path.with_name(f"{path.stem}.{stamp}{path.suffix}")
    path.replace(rotated)
    return rotated


class RunLog:
    """
    Thread-safe run log: file + bounded buffer.

    Lines look like ``[HH:MM:SS] [LEVEL] message``. Indexes passed to
    ``since`` count every line ever written, so polling keeps working after
    the buffer starts dropping old lines.
    """

    def __init__(self, log_file: Path, max_lines: int = LOG_BUFFER_SIZE):
        self.log_file = Path(log_file)
        self.lines = deque(maxlen=max_lines)
        self.total = 0
        self.lock = threading.Lock()

    def write(self, message: str, level: str = "info"):
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted = f"[{timestamp}] [{level.upper()}] {message}"

        with self.lock:
            try:
                with open(self.log_file, 'a', encoding='utf-8') as f:
                    f.write(formatted + "\n")
            except OSError:
                # The buffer still carries the line when the disk is unavailable
                pass
            self.lines.append(formatted)
            self.total += 1

    def rotate(self) -> Optional[Path]:
        with self.lock:
            return _rotate(self.log_file)

    def since(self, from_index: int = 0) -> Tuple[List[str], int]:
        """
        Get buffered lines from a specific index.

        Returns:
            Tuple of (log_lines, new_index)
        """
        with self.lock:
            lines = list(self.lines)
            total = self.total
        first_buffered = total - len(lines)
        return lines[max(0, from_index - first_buffered):], total


class OutcomeRecorder:
    """
    Durable success/failure records for archived areas.

    Successes go to a SQLite archive index (WAL mode) which also answers
    ``is_area_archived``. Failures are appended to a plain text log that
    operators can edit by hand.
    """

    def __init__(self, output_dir, log=None, run_log: RunLog = None):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.output_dir / ARCHIVE_DB_NAME
        self.failed_log_path = self.output_dir / FAILED_LOG_NAME
        self.run_output_path = self.output_dir / RUN_OUTPUT_LOG_NAME

        self.write_lock = threading.Lock()
        self._log = log or (lambda message, level="info": None)
        self.run_log = run_log

    def _get_db_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    # ----- setup hooks -----

    def create_archive_log(self):
        """Create the archive index if it does not exist yet. Idempotent."""
        conn = self._get_db_connection()
        try:
            conn.executescript(ARCHIVE_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def rotate_failed_downloads_log(self) -> Optional[Path]:
        with self.write_lock:
            rotated = _rotate(self.failed_log_path)
        if rotated:
            self._log(f"Rotated failed log to {rotated.name}", "info")
        return rotated

    def rotate_run_output_log(self) -> Optional[Path]:
        # Rotate under the run log's own lock so no write lands mid-rename
        if self.run_log is not None:
            return self.run_log.rotate()
        with self.write_lock:
            return _rotate(self.run_output_path)

    # ----- queries -----

    def is_area_archived(self, name: str, area_id: str) -> bool:
        if not self.db_path.exists():
            return False
        conn = self._get_db_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM archived WHERE name = ? AND area_id = ? LIMIT 1",
                (name, area_id)
            ).fetchone()
        except sqlite3.OperationalError:
            # Schema not created yet
            return False
        finally:
            conn.close()
        return row is not None

    def archived_count(self) -> int:
        if not self.db_path.exists():
            return 0
        conn = self._get_db_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM archived").fetchone()[0] or 0
        except sqlite3.OperationalError:
            return 0
        finally:
            conn.close()

    def read_failures(self) -> List[Dict[str, str]]:
        """Parse the current failed-download log."""
        if not self.failed_log_path.exists():
            return []
        failures = []
        for line in self.failed_log_path.read_text(encoding='utf-8').splitlines():
            parts = line.split("\t")
            if len(parts) < 5:
                continue
            failures.append({
                "timestamp": parts[0],
                "name": parts[1],
                "id": parts[2],
                "key": parts[3],
                "reason": "\t".join(parts[4:]),
            })
        return failures

    # ----- records -----

    def record_success(self, name: str, area_id: str, key: str,
                       is_sub_item: bool = False, parent_id: Optional[str] = None):
        conn = self._get_db_connection()
        try:
            with self.write_lock:
                conn.execute(
                    "INSERT OR REPLACE INTO archived "
                    "(name, area_id, area_key, is_sub_item, parent_id, archived_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (name, area_id, key or '', int(bool(is_sub_item)), parent_id,
                     datetime.now().isoformat(timespec='seconds'))
                )
                conn.commit()
        finally:
            conn.close()

    def record_failure(self, name: str, area_id: str, key: str, reason):
        reason_text = " ".join(str(reason).split()) or "Unknown error"
        line = "\t".join([
            datetime.now().isoformat(timespec='seconds'),
            _clean(name), _clean(area_id), _clean(key), reason_text
        ])
        with self.write_lock:
            with open(self.failed_log_path, 'a', encoding='utf-8') as f:
                f.write(line + "\n")


def _clean(value) -> str:
    if value is None:
        return ''
    return " ".join(str(value).split())
