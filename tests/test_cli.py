"""Tests for the command-line front end."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from docspace_ops.cli import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_PREREQUISITE,
    EXIT_STARTING,
    EXIT_USAGE,
    DocSpaceManager,
    main,
)
from docspace_ops.errors import RuntimeUnavailableError, UnknownServiceError, UsageError
from docspace_ops.runtime import ContainerStatus, HealthStatus


@pytest.fixture
def as_root():
    with patch("docspace_ops.cli.os.geteuid", return_value=0), \
            patch("docspace_ops.cli.shutil.which", return_value="/usr/bin/docker"):
        yield


@pytest.fixture
def cli(runtime, registry, settings, as_root):
    def run(*argv):
        args = DocSpaceManager.parse_args(list(argv))
        return DocSpaceManager(args, settings=settings, runtime=runtime, registry=registry).run()
    return run


class TestParsing:
    """Argument handling."""

    def test_unknown_command_is_usage_error(self):
        """Bad arguments exit with the usage code."""
        with pytest.raises(SystemExit) as exc:
            DocSpaceManager.parse_args(["bogus"])
        assert exc.value.code == EXIT_USAGE

    def test_bad_option_value_is_usage_error(self):
        """Non-numeric --timeout is rejected."""
        with pytest.raises(SystemExit) as exc:
            DocSpaceManager.parse_args(["stop", "--timeout", "soon"])
        assert exc.value.code == EXIT_USAGE

    def test_global_and_sub_verbose_are_separate(self):
        """--verbose before the command enables debug; -v after it is command detail."""
        args = DocSpaceManager.parse_args(["--verbose", "status", "-v", "api"])
        assert args.debug and args.detail
        assert args.service == "api"


class TestMainExitCodes:
    """Exception to exit-code mapping."""

    @pytest.fixture(autouse=True)
    def quiet_settings(self, settings):
        with patch("docspace_ops.cli.load_settings", return_value=settings):
            yield

    @pytest.mark.parametrize("error,code", [
        (UnknownServiceError("nginx", ["all"]), EXIT_USAGE),
        (UsageError("follow needs one service"), EXIT_USAGE),
        (RuntimeUnavailableError("daemon down"), EXIT_PREREQUISITE),
        (KeyboardInterrupt(), EXIT_INTERRUPTED),
        (ValueError("surprise"), EXIT_FAILURE),
    ])
    def test_errors_map_to_exit_codes(self, error, code):
        """Each error class ends the run with its exit code."""
        with patch.object(DocSpaceManager, "run", side_effect=error):
            assert main(["status"]) == code

    def test_non_root_stop_is_prerequisite_failure(self):
        """Lifecycle commands require root."""
        with patch("docspace_ops.cli.os.geteuid", return_value=1000):
            assert main(["stop"]) == EXIT_PREREQUISITE

    def test_missing_docker_is_prerequisite_failure(self):
        """No docker binary means nothing can be done."""
        with patch("docspace_ops.cli.shutil.which", return_value=None):
            assert main(["status"]) == EXIT_PREREQUISITE


class TestLifecycleCommands:
    """start / stop / restart."""

    def test_start_prints_summary(self, cli, runtime, capsys):
        """A successful start exits 0 and lists every service."""
        assert cli("start", "infrastructure") == EXIT_OK
        out = capsys.readouterr().out
        assert "Start Summary (infrastructure)" in out
        assert "Succeeded: 4  Failed: 0" in out

    def test_start_failure_exits_nonzero_with_hint(self, cli, runtime, capsys):
        """A failed service gives exit 1 and a logs suggestion."""
        runtime.fail_to_start.add("onlyoffice-router")
        assert cli("start", "router") == EXIT_FAILURE
        assert "docspace-ops logs router" in capsys.readouterr().out

    def test_stop_uses_timeout_option(self, cli, runtime):
        """--timeout bounds each graceful stop."""
        runtime.add("onlyoffice-proxy")
        assert cli("stop", "proxy", "--timeout", "12") == EXIT_OK
        assert runtime.calls_to("stop") == [("stop", "onlyoffice-proxy", 12)]

    def test_unknown_selection_raises(self, cli):
        """An unknown service name is reported as such."""
        with pytest.raises(UnknownServiceError):
            cli("start", "nginx")

    def test_restart_all_checks_running_count(self, cli, all_running, settings, capsys):
        """A full restart reports the running container count."""
        assert cli("restart", "--wait", "0") == EXIT_OK
        out = capsys.readouterr().out
        assert "Current Status" in out
        assert f"Restart complete: {len(all_running.containers)} containers running." in out

    def test_restart_warns_below_expected(self, cli, runtime, settings, capsys):
        """Fewer containers than expected produce a warning."""
        runtime.add("onlyoffice-proxy")
        settings.expected_running = 50
        cli("restart", "--wait", "0")
        assert "expected at least 50" in capsys.readouterr().out


class TestStatusCommand:
    """status output and exit codes."""

    def test_raw_output(self, cli, runtime, capsys):
        """--raw prints name:status lines."""
        runtime.add("onlyoffice-proxy", health=HealthStatus.HEALTHY)
        runtime.add("onlyoffice-router", ContainerStatus.EXITED)

        code = cli("status", "infrastructure", "--raw")

        lines = capsys.readouterr().out.splitlines()
        assert lines == [
            "mysql-server:not-found",
            "document-server:not-found",
            "proxy:healthy",
            "router:down",
        ]
        assert code == EXIT_FAILURE

    def test_all_healthy(self, cli, all_running, capsys):
        """All healthy containers exit 0 with the healthy overall line."""
        for state in all_running.containers.values():
            state.health = HealthStatus.HEALTHY
        assert cli("status") == EXIT_OK
        assert "All Services Healthy" in capsys.readouterr().out

    def test_starting_exit_code(self, cli, all_running):
        """A starting service gives the in-progress exit code."""
        all_running.containers["onlyoffice-api"].health = HealthStatus.STARTING
        assert cli("status") == EXIT_STARTING

    def test_verbose_shows_ports(self, cli, runtime, capsys):
        """-v adds creation date and ports."""
        runtime.add("onlyoffice-proxy", created="2024-05-01T10:00:00Z",
                    ports={"80/tcp": [{"HostPort": "80"}]})
        cli("status", "proxy", "-v")
        assert "(Created: 2024-05-01, Ports: 80/tcp)" in capsys.readouterr().out


class TestHealthCommand:
    """health command."""

    def test_summary_only_checks_containers(self, cli, all_running):
        """--summary runs container checks only."""
        assert cli("health", "--summary") == EXIT_OK
        assert all_running.calls_to("exec") == []

    def test_fix_runs_remediation(self, cli, all_running, capsys):
        """--fix attempts remediation when issues are found."""
        all_running.containers["onlyoffice-studio"].health = HealthStatus.UNHEALTHY

        assert cli("health", "--summary", "--fix") == EXIT_FAILURE

        assert all_running.calls_to("restart") == [("restart", "onlyoffice-studio")]
        out = capsys.readouterr().out
        assert "[OK] restart-unhealthy onlyoffice-studio" in out
        assert "Wait 30 seconds" in out

    def test_fix_skipped_when_healthy(self, cli, all_running):
        """No remediation runs for a healthy deployment."""
        cli("health", "--summary", "--fix")
        assert all_running.calls_to("restart") == []


class TestLogsAndExec:
    """logs and exec commands."""

    def test_follow_refused_for_groups(self, cli, all_running):
        """Follow mode needs exactly one service."""
        with pytest.raises(UsageError):
            cli("logs", "frontend", "-f")

    def test_logs_for_group_prints_headers(self, cli, runtime, capsys):
        """Each existing container gets a header; missing ones are skipped."""
        runtime.add("onlyoffice-api")
        runtime.add("onlyoffice-sdk")

        assert cli("logs", "api", "-n", "20") == EXIT_OK

        out = capsys.readouterr().out
        assert "=== api ===" in out and "=== sdk ===" in out
        assert "=== api-system ===" not in out
        assert runtime.calls_to("logs")[0] == ("logs", "onlyoffice-api", 20, False)

    def test_logs_missing_single_service(self, cli, capsys):
        """A single missing service is an error."""
        assert cli("logs", "proxy") == EXIT_FAILURE

    def test_exec_runs_command(self, cli, runtime, capsys):
        """exec passes the command through and returns its exit code."""
        runtime.add("onlyoffice-proxy")
        runtime.exec_results[("nginx", "-t")] = subprocess.CompletedProcess([], 0, "syntax is ok\n", "")

        assert cli("exec", "proxy", "nginx", "-t") == EXIT_OK
        assert "syntax is ok" in capsys.readouterr().out

    def test_exec_requires_running_service(self, cli, runtime, capsys):
        """A stopped service suggests starting it."""
        runtime.add("onlyoffice-proxy", ContainerStatus.EXITED)
        assert cli("exec", "proxy", "ls") == EXIT_FAILURE
        assert "docspace-ops start proxy" in capsys.readouterr().out

    def test_exec_rejects_groups(self, cli, all_running):
        """A group cannot be an exec target."""
        with pytest.raises(UsageError):
            cli("exec", "frontend", "ls")

    def test_exec_info_lists_suggestions(self, cli, runtime, capsys):
        """--info shows container details and service-specific commands."""
        runtime.add("onlyoffice-mysql-server", image="mysql:8.0")
        assert cli("exec", "--info", "mysql-server") == EXIT_OK
        out = capsys.readouterr().out
        assert "Image: mysql:8.0" in out
        assert "mysqladmin status" in out


class TestMaintenanceCommands:
    """uninstall, discover, validate-storage."""

    def test_uninstall_nothing_found(self, cli, runtime, settings, tmp_path, capsys):
        """A clean host exits 0 without prompting."""
        runtime.networks.clear()
        settings.compose_dir = str(tmp_path / "absent")
        assert cli("uninstall") == EXIT_OK
        assert "Nothing to uninstall" in capsys.readouterr().out

    def test_uninstall_declined(self, cli, runtime):
        """Answering no leaves everything in place."""
        runtime.add("onlyoffice-proxy")
        with patch("builtins.input", return_value="n"):
            assert cli("uninstall") == EXIT_OK
        assert runtime.mutations == []

    def test_uninstall_without_terminal(self, cli, runtime):
        """No terminal and no --force aborts."""
        runtime.add("onlyoffice-proxy")
        with patch("builtins.input", side_effect=EOFError):
            assert cli("uninstall") == EXIT_FAILURE
        assert runtime.mutations == []

    def test_uninstall_dry_run(self, cli, runtime, capsys):
        """--dry-run reports without mutating or prompting."""
        runtime.add("onlyoffice-proxy")
        assert cli("uninstall", "--dry-run") == EXIT_OK
        assert runtime.mutations == []
        assert "Dry Run" in capsys.readouterr().out

    def test_uninstall_keep_storage(self, cli, runtime, settings, capsys):
        """--keep-storage removes the deployment but leaves the storage directory."""
        runtime.add("onlyoffice-proxy")
        kept = Path(settings.storage_mount) / "files.db"
        kept.write_text("data")

        assert cli("uninstall", "--force", "--keep-storage") == EXIT_OK

        assert "onlyoffice-proxy" not in runtime.containers
        assert kept.exists()
        assert "kept (--keep-storage)" in capsys.readouterr().out

    def test_discover(self, cli, runtime, settings, tmp_path, capsys):
        """discover writes a snapshot under the requested directory."""
        runtime.add("onlyoffice-proxy")
        assert cli("discover", "--output", str(tmp_path / "snap")) == EXIT_OK
        assert str(tmp_path / "snap") in capsys.readouterr().out

    def test_validate_storage_fails_without_directories(self, cli, runtime):
        """Missing data directories make validation fail."""
        assert cli("validate-storage") == EXIT_FAILURE
