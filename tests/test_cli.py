from unittest.mock import patch

import pytest

from clipforge.cli import main
from clipforge.jobs import OperationKind
from clipforge.orchestrator import Orchestrator
from clipforge.queue import JobDescriptor, SQLiteQueue

from conftest import FakeTranscoder


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["clipforge", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_run_help():
    """Test run subcommand help."""
    with patch("sys.argv", ["clipforge", "run", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_check_command_ffmpeg_found(capsys):
    """Test check command when ffmpeg is found."""
    with patch("sys.argv", ["clipforge", "check"]):
        with patch("clipforge.cli.check_ffmpeg", return_value=True):
            main()
            captured = capsys.readouterr()
            assert "ffmpeg found" in captured.out.lower()


def test_cli_check_command_ffmpeg_not_found(capsys):
    """Test check command when ffmpeg is not runnable."""
    with patch("sys.argv", ["clipforge", "check"]):
        with patch("clipforge.cli.check_ffmpeg", return_value=False):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 1
            captured = capsys.readouterr()
            assert "not runnable" in captured.out.lower()


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    with patch("sys.argv", ["clipforge"]):
        main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()


def test_cli_queue_status(tmp_path, capsys, source, request_two_ranges):
    db = tmp_path / "queue.db"
    queue = SQLiteQueue(str(db))
    queue.enqueue(JobDescriptor(job_id="j1", job_key=source.key, source=source,
                                request=request_two_ranges))
    queue.close()

    with patch("sys.argv", ["clipforge", "queue", "status", "--db", str(db)]):
        main()

    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Pending:              1" in out
    assert "Total:                1" in out


def test_cli_run_missing_input(tmp_path, capsys):
    with patch("sys.argv", ["clipforge", "run", "--input", str(tmp_path / "nope.mp4")]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert "Input not found" in capsys.readouterr().out


def test_cli_run_job(tmp_path, capsys, source_file):
    def fake_orchestrator(config):
        return Orchestrator(config, transcoder=FakeTranscoder())

    argv = [
        "clipforge", "run",
        "--input", str(source_file),
        "--key", "cli-track",
        "--ranges", "0:05-0:15, 0:20-0:30",
        "--aspect", "16:9", "--aspect", "9:16",
        "--title", "Night Drive",
        "--work-root", str(tmp_path / "work"),
        "--storage-root", str(tmp_path / "storage"),
    ]
    with patch("sys.argv", argv), \
            patch("clipforge.cli.probe_duration", return_value=120.0), \
            patch("clipforge.cli.Orchestrator", side_effect=fake_orchestrator):
        with pytest.raises(SystemExit) as exc_info:
            main()

    assert exc_info.value.code == 0
    out = capsys.readouterr().out
    assert "JOB COMPLETED" in out
    assert "Operations:           4/4 completed" in out
    assert "Archive:              store://system/exports/" in out
    assert list((tmp_path / "storage" / "system" / "exports").glob("*-Night_Drive_-_Exports.zip"))


def test_cli_run_job_failure_exit_code(tmp_path, capsys, source_file):
    def failing_orchestrator(config):
        return Orchestrator(config, transcoder=FakeTranscoder(fail_kinds={OperationKind.SUBCLIP}))

    argv = [
        "clipforge", "run", "--input", str(source_file), "--ranges", "0:05-0:15",
        "--work-root", str(tmp_path / "work"), "--storage-root", str(tmp_path / "storage"),
    ]
    with patch("sys.argv", argv), \
            patch("clipforge.cli.probe_duration", return_value=None), \
            patch("clipforge.cli.Orchestrator", side_effect=failing_orchestrator):
        with pytest.raises(SystemExit) as exc_info:
            main()

    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "Could not read source duration" in out
    assert "JOB FAILED" in out
    assert "All operations failed" in out
