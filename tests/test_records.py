"""Tests for the durable outcome recorder and run log."""

from grabarea_records import (
    ARCHIVE_DB_NAME,
    FAILED_LOG_NAME,
    OutcomeRecorder,
    RunLog,
)


class TestArchiveLog:
    """Tests for the SQLite archive index."""

    def test_missing_log_means_nothing_archived(self, tmp_path):
        recorder = OutcomeRecorder(tmp_path)
        assert not recorder.is_area_archived("Castle", "a1")
        assert recorder.archived_count() == 0

    def test_create_is_idempotent(self, tmp_path):
        recorder = OutcomeRecorder(tmp_path)
        recorder.create_archive_log()
        recorder.record_success("Castle", "a1", "k1")
        recorder.create_archive_log()

        assert (tmp_path / ARCHIVE_DB_NAME).exists()
        assert recorder.archived_count() == 1

    def test_archived_lookup_uses_name_and_id(self, tmp_path):
        recorder = OutcomeRecorder(tmp_path)
        recorder.create_archive_log()
        recorder.record_success("Castle", "a1", "k1")

        assert recorder.is_area_archived("Castle", "a1")
        assert not recorder.is_area_archived("Castle", "a2")
        assert not recorder.is_area_archived("Keep", "a1")

    def test_sub_item_linkage_is_stored(self, tmp_path):
        recorder = OutcomeRecorder(tmp_path)
        recorder.create_archive_log()
        recorder.record_success("Tower", "s1", "", is_sub_item=True, parent_id="a1")

        conn = recorder._get_db_connection()
        row = conn.execute(
            "SELECT is_sub_item, parent_id FROM archived WHERE area_id = 's1'"
        ).fetchone()
        conn.close()
        assert row == (1, "a1")


class TestFailedLog:
    """Tests for the append-only failed-download log."""

    def test_failures_append_and_parse(self, tmp_path):
        recorder = OutcomeRecorder(tmp_path)
        recorder.record_failure("Castle", "a1", "k1", "timeout")
        recorder.record_failure("Keep", None, None, ValueError("bad\nbody"))

        failures = recorder.read_failures()
        assert [(f["name"], f["id"], f["key"], f["reason"]) for f in failures] == [
            ("Castle", "a1", "k1", "timeout"),
            ("Keep", "", "", "bad body"),
        ]

    def test_rotation_moves_previous_log_aside(self, tmp_path):
        recorder = OutcomeRecorder(tmp_path)
        recorder.record_failure("Castle", "a1", "", "timeout")

        rotated = recorder.rotate_failed_downloads_log()

        assert rotated is not None and rotated.exists()
        assert rotated.name.startswith("failed_downloads.")
        assert not (tmp_path / FAILED_LOG_NAME).exists()
        assert recorder.read_failures() == []

    def test_rotation_without_log_is_noop(self, tmp_path):
        recorder = OutcomeRecorder(tmp_path)
        assert recorder.rotate_failed_downloads_log() is None
        assert recorder.rotate_run_output_log() is None


class TestRunLog:
    """Tests for the run log buffer and file."""

    def test_write_formats_and_buffers(self, tmp_path):
        log = RunLog(tmp_path / "run_output.log")
        log.write("Queueing Castle", "success")

        lines, index = log.since(0)
        assert index == 1
        assert lines[0].endswith("[SUCCESS] Queueing Castle")
        assert "Queueing Castle" in (tmp_path / "run_output.log").read_text()

    def test_since_is_incremental(self, tmp_path):
        log = RunLog(tmp_path / "run_output.log")
        log.write("one")
        _, index = log.since(0)
        log.write("two")

        lines, new_index = log.since(index)
        assert len(lines) == 1 and lines[0].endswith("two")
        assert new_index == 2

    def test_since_keeps_counting_past_buffer_size(self, tmp_path):
        log = RunLog(tmp_path / "run_output.log", max_lines=3)
        for word in ["one", "two", "three", "four", "five"]:
            log.write(word)

        lines, index = log.since(0)
        assert index == 5
        assert [line.split()[-1] for line in lines] == ["three", "four", "five"]

        log.write("six")
        lines, index = log.since(index)
        assert [line.split()[-1] for line in lines] == ["six"]
        assert index == 6

    def test_recorder_rotates_through_run_log(self, tmp_path):
        log = RunLog(tmp_path / "run_output.log")
        log.write("previous run")
        recorder = OutcomeRecorder(tmp_path, run_log=log)

        rotated = recorder.rotate_run_output_log()
        log.write("this run")

        assert "previous run" in rotated.read_text()
        current = (tmp_path / "run_output.log").read_text()
        assert "this run" in current and "previous run" not in current
