"""Tests for the service runner and log viewer helpers."""

from run_services import SERVICES, setup_logging, stop_all
from unittest.mock import Mock, patch
import view_logs
from view_logs import find_latest_logs, read_tail, new_lines, follow_log


class TestSetupLogging:
    """Log file layout."""

    def test_one_log_per_service(self, tmp_path):
        logs_dir = tmp_path / "logs"
        paths = setup_logging(logs_dir)
        assert logs_dir.is_dir()
        assert set(paths) == set(SERVICES)
        assert all(path.parent == logs_dir and path.name.startswith(name) for name, path in paths.items())


class TestStopAll:
    """Shutdown of child processes."""

    def test_only_running_processes_are_terminated(self):
        running, finished = Mock(), Mock()
        running.poll.return_value = None
        finished.poll.return_value = 0

        stop_all({"incremental_sync": running, "daily_full_sync": finished})

        running.terminate.assert_called_once()
        finished.terminate.assert_not_called()


class TestLogViewer:
    """Log discovery and tails."""

    def test_missing_logs_directory(self, tmp_path):
        assert find_latest_logs(tmp_path / "missing") is None

    def test_latest_log_per_service(self, tmp_path):
        log = tmp_path / "incremental_sync_20240101_000000.log"
        log.write_text("line\n")

        latest = find_latest_logs(tmp_path)

        assert latest["incremental_sync"] == str(log)
        assert latest["daily_full_sync"] is None

    def test_read_tail(self, tmp_path):
        log = tmp_path / "daily_full_sync_1.log"
        log.write_text("".join(f"line {i}\n" for i in range(10)))
        assert read_tail(log, 3) == ["line 7\n", "line 8\n", "line 9\n"]

    def test_new_lines_skips_existing_content(self, tmp_path):
        log = tmp_path / "incremental_sync_1.log"
        log.write_text("old line\n")

        def append(_):
            with open(log, "a") as f:
                f.write("new line\n")

        lines = new_lines(log)
        with patch.object(view_logs.time, "sleep", side_effect=append) as sleep:
            assert next(lines) == "new line"
        sleep.assert_called_once_with(0.1)
        lines.close()

    def test_follow_stops_on_interrupt(self, tmp_path, capsys):
        log = tmp_path / "daily_full_sync_1.log"
        log.write_text("")

        with patch.object(view_logs.time, "sleep", side_effect=KeyboardInterrupt):
            follow_log(log)

        assert "Stopped following log" in capsys.readouterr().out

    def test_follow_missing_file(self, tmp_path, capsys):
        follow_log(tmp_path / "missing.log")
        assert "Log file not found" in capsys.readouterr().out
