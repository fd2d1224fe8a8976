import argparse
import logging
import os
import shutil
import sys
import time

from . import __version__
from .compose import ComposeProject
from .config import load_settings
from .discovery import ArchitectureCapture
from .engine import OrchestrationEngine, RestartOptions, StartOptions, StopOptions
from .errors import (
    ConfigError,
    OrchestratorError,
    PrerequisiteError,
    RuntimeCommandError,
    RuntimeUnavailableError,
    UnknownServiceError,
    UsageError,
)
from .health import HealthEvaluator, HealthOptions, ServiceVerdict, aggregate, classify
from .probes import ProbeStatus
from .runtime import ContainerStatus, DockerRuntime, HealthStatus
from .storage import StorageValidator, validation_passed
from .topology import ALL, default_registry
from .uninstall import Uninstaller

# --- Logging Setup ---
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
log = logging.getLogger(__name__)

# --- Exit Codes ---
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_STARTING = 2
EXIT_PREREQUISITE = 3
EXIT_USAGE = 64
EXIT_INTERRUPTED = 130

PROBE_MARKS = {
    ProbeStatus.PASS: "OK",
    ProbeStatus.WARN: "WARN",
    ProbeStatus.CRITICAL: "FAIL",
    ProbeStatus.ERROR: "ERROR",
    ProbeStatus.SKIPPED: "SKIP",
}

COMMON_COMMANDS = [
    ("bash", "Open interactive shell"),
    ("ps aux", "List processes"),
    ("df -h", "Show disk usage"),
    ("free -h", "Show memory usage"),
]

SUGGESTED_COMMANDS = {
    "mysql-server": [
        ("mysql -u root -p", "Connect to MySQL"),
        ("mysqladmin status", "Show MySQL status"),
        ("mysql -e 'SHOW DATABASES;'", "List databases"),
        ("cat /etc/mysql/my.cnf", "Show MySQL config"),
    ],
    "proxy": [
        ("nginx -t", "Test configuration"),
        ("nginx -s reload", "Reload configuration"),
        ("cat /etc/nginx/nginx.conf", "Show nginx config"),
        ("ls /var/log/nginx/", "List log files"),
    ],
    "document-server": [
        ("supervisorctl status", "Show services status"),
        ("cat /etc/onlyoffice/documentserver/local.json", "Show document server config"),
        ("ls /var/www/onlyoffice/", "List document server files"),
    ],
}


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with a dedicated exit code."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def status_label(state):
    if not state.exists:
        return "Not Found"
    if state.status is ContainerStatus.RUNNING:
        return {
            HealthStatus.HEALTHY: "Running (Healthy)",
            HealthStatus.UNHEALTHY: "Running (Unhealthy)",
            HealthStatus.STARTING: "Starting",
        }.get(state.health, "Running")
    if state.status in (ContainerStatus.EXITED, ContainerStatus.CREATED, ContainerStatus.DEAD):
        return "Stopped"
    return state.status.value.title()


class DocSpaceManager:
    """Front end for every docspace-ops sub-command."""

    def __init__(self, args, settings=None, runtime=None, registry=None):
        self.args = args
        self.log = log
        self.settings = settings or load_settings(getattr(args, "config", None))
        self.runtime = runtime or DockerRuntime(
            timeout=self.settings.command_timeout,
            compose_timeout=self.settings.compose_timeout,
        )
        self.registry = registry or default_registry(self.settings.container_prefix)
        self.compose = ComposeProject(self.settings.compose_dir)
        self.engine = OrchestrationEngine(self.registry, self.runtime, self.settings, self.compose)
        self.health = HealthEvaluator(self.registry, self.runtime, self.settings, self.compose)

    # --- Prerequisites ---
    def _check_prerequisites(self, root=False, compose_dir=False):
        if root and os.geteuid() != 0:
            raise PrerequisiteError("This command must be run as root (use sudo)")
        if shutil.which(self.runtime.docker_bin) is None:
            raise PrerequisiteError("Docker not found. DocSpace requires Docker to be installed.")
        if compose_dir and not self.compose.exists():
            raise PrerequisiteError(
                f"DocSpace not found at {self.settings.compose_dir}. Please install DocSpace first."
            )
        version = self.runtime.ping()
        self.log.debug("Docker engine version: %s", version)

    def _selection(self):
        return getattr(self.args, "service", None) or ALL

    # --- Output helpers ---
    def _print_suggestions(self, hints):
        if hints:
            print("\nNext steps:")
            for hint in hints:
                print(f"  {hint}")

    def _print_batch(self, batch):
        print(f"\n--- {batch.operation.title()} Summary ({batch.selection}) ---")
        for result in batch.results:
            outcome = result.outcome.value if result.outcome else "unknown"
            line = f"  {result.name:<26} {outcome}"
            if result.removed:
                line += " (removed)"
            if result.reason:
                line += f": {result.reason}"
            print(line)
        print(f"  Succeeded: {len(batch.succeeded)}  Failed: {len(batch.failed)}")
        if batch.network_error:
            print(f"  Network '{self.settings.network_name}': {batch.network_error}")
        self._print_suggestions(batch.suggestions())

    def _print_status(self, services, detail=False, quiet=False, raw=False):
        states = []
        for service in services:
            container = self.registry.container_name(service)
            try:
                state = self.runtime.inspect(container)
                label = status_label(state)
                verdict = classify(state)
            except RuntimeCommandError as e:
                self.log.debug("Could not inspect %s: %s", container, e)
                state, label, verdict = None, "Unknown", ServiceVerdict.UNKNOWN
            states.append((service, state, label, verdict))

            if raw:
                print(f"{service.name}:{verdict.value}")
            elif quiet:
                print(f"{service.name}: {label}")
            elif detail and state is not None and state.exists:
                ports = " ".join(state.published_ports) or "none"
                created = state.created.split("T")[0] or "unknown"
                print(f"  {service.name:<26} {label} (Created: {created}, Ports: {ports})")
            else:
                print(f"  {service.name:<26} {label}")
        return states

    # --- Lifecycle commands ---
    def _handle_start(self):
        self._check_prerequisites(root=True, compose_dir=True)
        options = StartOptions(ssl=self.args.ssl, force_recreate=self.args.force)
        batch = self.engine.start(self._selection(), options)
        self._print_batch(batch)
        return EXIT_OK if batch.ok else EXIT_FAILURE

    def _handle_stop(self):
        self._check_prerequisites(root=True)
        timeout = self.settings.stop_timeout if self.args.timeout is None else self.args.timeout
        options = StopOptions(force=self.args.force, remove=self.args.remove, timeout_seconds=timeout)
        batch = self.engine.stop(self._selection(), options)
        self._print_batch(batch)
        return EXIT_OK if batch.ok else EXIT_FAILURE

    def _handle_restart(self):
        self._check_prerequisites(root=True, compose_dir=True)
        selection = self._selection()
        services = self.registry.resolve(selection)
        print("\n--- Current Status ---")
        self._print_status(services, quiet=True)

        options = RestartOptions(hard=self.args.hard, wait_seconds=self.args.wait, ssl=self.args.ssl)
        result = self.engine.restart(selection, options)
        self._print_batch(result.stop)
        self._print_batch(result.start)

        if selection == ALL and result.start.results:
            self._check_stabilized()
        return EXIT_OK if result.ok else EXIT_FAILURE

    def _check_stabilized(self):
        wait = self.settings.stabilize_seconds
        if wait > 0:
            self.log.info("Allowing %s seconds for all services to stabilize...", wait)
            time.sleep(wait)
        running = self.runtime.list_containers(prefix=self.settings.container_prefix, running_only=True)
        expected = self.settings.expected_running
        if len(running) >= expected:
            print(f"\nRestart complete: {len(running)} containers running.")
        else:
            print(f"\nWarning: only {len(running)} containers running (expected at least {expected}).")
            print("  Check current status: docspace-ops status")

    # --- Observation commands ---
    def _handle_status(self):
        self._check_prerequisites(compose_dir=True)
        selection = self._selection()
        services = self.registry.resolve(selection)
        quiet, raw = self.args.quiet, self.args.raw

        if not (quiet or raw):
            title = "Service Status" if selection == ALL else f"{selection.title()} Services"
            print(f"\n--- DocSpace - {title} ---")
            print(time.strftime("%a %b %d %H:%M:%S %Y"))
        states = self._print_status(services, detail=self.args.detail, quiet=quiet, raw=raw)
        verdicts = [verdict for _, _, _, verdict in states]

        if not (quiet or raw):
            total = len(states)
            running = sum(1 for _, s, _, _ in states if s is not None and s.running)
            healthy = verdicts.count(ServiceVerdict.HEALTHY)
            print("\nSummary:")
            print(f"  Total Services: {total}")
            print(f"  Running: {running}")
            print(f"  Healthy: {healthy}")
            print(f"  Stopped: {total - running}")
            if total and healthy == total:
                overall = "All Services Healthy"
            elif total and running == total:
                overall = "All Services Running (Some Unhealthy)"
            elif running:
                overall = "Partially Running"
            else:
                overall = "All Services Stopped"
            print(f"  Overall Status: {overall}")
            self._print_suggestions([
                "View logs: docspace-ops logs <service>",
                "Start stopped services: docspace-ops start",
                "Restart unhealthy services: docspace-ops restart <service>",
            ])
        return aggregate(verdicts).exit_code

    def _handle_health(self):
        self._check_prerequisites()
        summary = self.args.summary
        options = HealthOptions(
            protocol=not summary,
            web=self.args.web and not summary,
            storage=not summary,
            resources=not summary,
            verbose=self.args.detail,
        )
        report = self.health.evaluate(self._selection(), options)

        print("\n--- Container Health ---")
        for sh in report.services:
            line = f"  {sh.name:<26} {sh.verdict.value}"
            if sh.error:
                line += f" ({sh.error})"
            print(line)
            for probe in sh.probes:
                print(f"    [{PROBE_MARKS[probe.status]}] {probe.name}: {probe.message}")
        if report.probes:
            print("\n--- Host Checks ---")
            for probe in report.probes:
                print(f"  [{PROBE_MARKS[probe.status]}] {probe.name}: {probe.message}")
                if self.args.detail and probe.details:
                    for key, value in probe.details.items():
                        print(f"      {key}: {value}")

        counts = report.counts()
        print("\n--- Health Summary ---")
        print(f"  Services: {counts['total']}  Running: {counts['running']}  "
              f"Healthy: {counts['healthy']}  Unhealthy: {counts['unhealthy']}  "
              f"Starting: {counts['starting']}  Stopped: {counts['stopped']}")
        print(f"  Overall: {report.overall.value.upper()}")

        if self.args.fix and report.overall.exit_code != EXIT_OK:
            print("\n--- Attempting Automatic Fixes ---")
            report.remediation = self.health.attempt_remediation()
            if not report.remediation.actions:
                print("  Nothing to fix automatically.")
            for action in report.remediation.actions:
                mark = "OK" if action.succeeded else "FAIL"
                print(f"  [{mark}] {action.name} {action.target}: {action.detail}")

        self._print_suggestions(report.suggestions())
        return report.overall.exit_code

    def _handle_logs(self):
        self._check_prerequisites()
        services = self.registry.resolve(self._selection())
        if self.args.follow and len(services) > 1:
            raise UsageError("Follow mode works with a single service only")

        lines = self.settings.log_lines if self.args.lines is None else self.args.lines
        shown = 0
        for service in services:
            container = self.registry.container_name(service)
            if not self.runtime.inspect(container).exists:
                if len(services) == 1:
                    print(f"Error: Service '{service.name}' not found")
                    return EXIT_FAILURE
                self.log.debug("Skipping %s: container not found", container)
                continue
            if self.args.follow:
                return self.runtime.logs(container, tail=lines, since=self.args.since,
                                         until=self.args.until, timestamps=self.args.timestamps,
                                         follow=True)
            if len(services) > 1:
                print(f"\n=== {service.name} ===")
            text = self.runtime.logs(container, tail=lines, since=self.args.since,
                                     until=self.args.until, timestamps=self.args.timestamps)
            print(text, end="" if text.endswith("\n") else "\n")
            shown += 1
        if not shown:
            print("No containers found for this selection.")
            return EXIT_FAILURE
        return EXIT_OK

    def _exec_target(self):
        services = self.registry.resolve(self.args.service)
        if len(services) != 1:
            raise UsageError(f"'{self.args.service}' is a group; exec needs a single service")
        return services[0]

    def _handle_exec(self):
        self._check_prerequisites()
        service = self._exec_target()
        container = self.registry.container_name(service)
        state = self.runtime.inspect(container)

        if self.args.info:
            return self._print_exec_info(service, container, state)
        if not state.exists:
            print(f"Error: Service '{service.name}' not found")
            return EXIT_FAILURE
        if not state.running:
            print(f"Error: Service '{service.name}' is not running")
            print(f"  Start it with: docspace-ops start {service.name}")
            return EXIT_FAILURE

        command = list(self.args.command)
        if command and command[0] == "--":
            command = command[1:]
        if not command:
            raise UsageError("No command given to execute")

        print(f"Executing in service '{service.name}': {' '.join(command)}")
        result = self.runtime.exec(container, command, interactive=self.args.interactive,
                                   user=self.args.user, workdir=self.args.workdir)
        if not self.args.interactive:
            if result.stdout:
                print(result.stdout, end="")
            if result.stderr:
                print(result.stderr, end="", file=sys.stderr)
        return result.returncode

    def _print_exec_info(self, service, container, state):
        print(f"\n--- Service Information: {service.name} ---")
        print(f"Container: {container}")
        print(f"Status: {state.status.value}")
        print(f"Health: {state.health.value}")
        print(f"Image: {state.image or 'unknown'}")
        if not state.running:
            print("\nService is not running")
            print(f"  Start it with: docspace-ops start {service.name}")
            return EXIT_FAILURE
        print("\nService is running and ready for commands")
        print(f"\nSuggested commands for '{service.name}':")
        for command, description in SUGGESTED_COMMANDS.get(service.name, COMMON_COMMANDS):
            print(f"  {command:<48} # {description}")
        return EXIT_OK

    # --- Maintenance commands ---
    def _handle_uninstall(self):
        self._check_prerequisites(root=True)
        uninstaller = Uninstaller(self.runtime, self.settings)
        inventory = uninstaller.inventory()
        if inventory.empty:
            print("No DocSpace installation found. Nothing to uninstall.")
            return EXIT_OK

        print("\n--- Found DocSpace Components ---")
        print(f"  Containers: {len(inventory.containers)}")
        for name in inventory.containers:
            print(f"    {name}")
        print(f"  Volumes: {', '.join(inventory.volumes) or 'none'}")
        print(f"  Networks: {', '.join(inventory.networks) or 'none'}")
        print(f"  Install directory: {inventory.install_dir or 'none'}")
        data = inventory.data_dir or "none"
        if inventory.data_dir and self.args.keep_data:
            data += " (kept)"
        elif inventory.data_dir and self.args.keep_storage:
            data += " (directory structure kept)"
        print(f"  Data directory: {data}")

        if not (self.args.force or self.args.dry_run):
            try:
                confirm = input("\nThis will permanently remove the components listed above. Continue? [y/N]: ")
            except EOFError:
                self.log.error("Uninstall requires interactive confirmation (or --force). Aborting.")
                return EXIT_FAILURE
            if confirm.strip().lower() not in ("y", "yes"):
                self.log.info("Uninstall cancelled.")
                return EXIT_OK

        steps = uninstaller.run(inventory, dry_run=self.args.dry_run, keep_data=self.args.keep_data,
                                keep_storage=self.args.keep_storage)
        title = "Dry Run (nothing removed)" if self.args.dry_run else "Uninstall Summary"
        print(f"\n--- {title} ---")
        for step in steps:
            if step.skipped:
                state = "skipped"
            else:
                state = "ok" if step.succeeded else "FAILED"
            line = f"  {step.name:<12} {state}"
            if step.removed:
                line += f" [{', '.join(step.removed)}]"
            if step.detail:
                line += f": {step.detail}"
            print(line)
        return EXIT_OK if all(step.succeeded for step in steps) else EXIT_FAILURE

    def _handle_discover(self):
        self._check_prerequisites()
        capture = ArchitectureCapture(self.runtime, self.registry, self.settings, self.compose)
        report = capture.capture(self.args.output)
        print(f"\nArchitecture snapshot written to: {report.path}")
        print(f"  Files: {len(report.written)}")
        for step, reason in report.failures.items():
            print(f"  [FAIL] {step}: {reason}")
        return EXIT_OK if report.ok else EXIT_FAILURE

    def _handle_validate_storage(self):
        self._check_prerequisites()
        results = StorageValidator(self.runtime, self.settings).validate()
        print(f"\n--- Storage Validation: {self.settings.storage_mount} ---")
        for result in results:
            print(f"  [{PROBE_MARKS[result.status]}] {result.name}: {result.message}")
        passed = validation_passed(results)
        print("\nStorage validation passed." if passed else "\nStorage validation failed.")
        return EXIT_OK if passed else EXIT_FAILURE

    # --- Dispatch ---
    def run(self):
        handlers = {
            "start": self._handle_start,
            "stop": self._handle_stop,
            "restart": self._handle_restart,
            "status": self._handle_status,
            "health": self._handle_health,
            "logs": self._handle_logs,
            "exec": self._handle_exec,
            "uninstall": self._handle_uninstall,
            "discover": self._handle_discover,
            "validate-storage": self._handle_validate_storage,
        }
        return handlers[self.args.command_name]()

    @staticmethod
    def parse_args(argv=None):
        parser = ArgumentParser(
            prog="docspace-ops",
            description="Manage a DocSpace container deployment.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
        parser.add_argument(
            "--verbose",
            "--debug",
            dest="debug",
            action="store_true",
            help="Enable detailed debug logging.",
        )
        parser.add_argument(
            "--config",
            metavar="FILE",
            help="YAML settings file (default: $DOCSPACE_OPS_CONFIG or /etc/docspace-ops.yml).",
        )
        commands = parser.add_subparsers(dest="command_name", metavar="COMMAND", parser_class=ArgumentParser)
        commands.required = True

        def selection(sub):
            sub.add_argument("service", nargs="?", default=None,
                             help="Service or group (infrastructure, api, frontend, backend); default all.")

        # Lifecycle
        start = commands.add_parser("start", help="Start services in dependency order.")
        selection(start)
        start.add_argument("--force", action="store_true", help="Recreate containers even if running.")
        start.add_argument("--ssl", action="store_true", help="Use the SSL proxy configuration.")

        stop = commands.add_parser("stop", help="Stop services in reverse dependency order.")
        selection(stop)
        stop.add_argument("--force", action="store_true", help="Kill instead of stopping gracefully.")
        stop.add_argument("--remove", action="store_true", help="Remove containers after stopping.")
        stop.add_argument("--timeout", type=int, default=None, metavar="SECONDS",
                          help="Graceful stop timeout per service (default from settings).")

        restart = commands.add_parser("restart", help="Stop then start services.")
        selection(restart)
        restart.add_argument("--hard", action="store_true", help="Kill and remove before starting again.")
        restart.add_argument("--wait", type=int, default=None, metavar="SECONDS",
                             help="Seconds between stop and start (default from settings).")
        restart.add_argument("--ssl", action="store_true", help="Use the SSL proxy configuration.")

        # Observation
        status = commands.add_parser("status", help="Show service status.")
        selection(status)
        status.add_argument("-v", "--verbose", dest="detail", action="store_true",
                            help="Show creation date and mapped ports.")
        status.add_argument("-q", "--quiet", action="store_true", help="Only service names and status.")
        status.add_argument("--raw", action="store_true", help="name:status lines for scripting.")

        health = commands.add_parser("health", help="Run health checks.")
        selection(health)
        health.add_argument("--fix", action="store_true", help="Attempt safe automatic fixes.")
        health.add_argument("--web", action="store_true", help="Probe HTTP(S) access through the proxy.")
        health.add_argument("--summary", action="store_true", help="Container checks only.")
        health.add_argument("-v", "--verbose", dest="detail", action="store_true",
                            help="Show probe details.")

        logs = commands.add_parser("logs", help="Show service logs.")
        selection(logs)
        logs.add_argument("-n", "--lines", type=int, default=None, help="Number of lines (default 100).")
        logs.add_argument("--since", help="Show logs since timestamp or relative time (e.g. 10m).")
        logs.add_argument("--until", help="Show logs until timestamp or relative time.")
        logs.add_argument("-t", "--timestamps", action="store_true", help="Show timestamps.")
        logs.add_argument("-f", "--follow", action="store_true", help="Follow output (single service).")

        exec_ = commands.add_parser("exec", help="Run a command inside a service container.")
        exec_.add_argument("service", help="Service name.")
        exec_.add_argument("command", nargs=argparse.REMAINDER, help="Command to run.")
        exec_.add_argument("--info", action="store_true", help="Show container info and suggested commands.")
        exec_.add_argument("-i", "--interactive", action="store_true", help="Allocate a TTY.")
        exec_.add_argument("--user", default="root", help="User to run as.")
        exec_.add_argument("--workdir", help="Working directory inside the container.")

        # Maintenance
        uninstall = commands.add_parser("uninstall", help="Remove the deployment from this host.")
        uninstall.add_argument("--force", action="store_true", help="Do not ask for confirmation.")
        uninstall.add_argument("--dry-run", action="store_true", help="Show what would be removed.")
        uninstall.add_argument("--keep-data", action="store_true", help="Keep the storage mount contents.")
        uninstall.add_argument("--keep-storage", action="store_true",
                               help="Keep the storage directory and its contents in place.")

        discover = commands.add_parser("discover", help="Capture a bounded architecture snapshot.")
        discover.add_argument("--output", metavar="DIR", help="Snapshot base directory (default from settings).")

        commands.add_parser("validate-storage", help="Validate the persistent storage mount.")

        return parser.parse_args(argv)


def main(argv=None):
    try:
        arguments = DocSpaceManager.parse_args(argv)
        if arguments.debug:
            logging.getLogger().setLevel(logging.DEBUG)
        log.debug("Parsed arguments: %s", arguments)

        manager = DocSpaceManager(arguments)
        return manager.run()

    except KeyboardInterrupt:
        log.info("Operation cancelled by user.")
        return EXIT_INTERRUPTED
    except (UnknownServiceError, UsageError, ConfigError) as e:
        log.error("%s", e)
        return EXIT_USAGE
    except (PrerequisiteError, RuntimeUnavailableError) as e:
        log.critical("%s", e)
        return EXIT_PREREQUISITE
    except OrchestratorError as e:
        log.error("%s", e)
        return EXIT_FAILURE
    except Exception as e:
        log.critical("An unexpected error occurred: %s", e,
                     exc_info=logging.getLogger().level <= logging.DEBUG)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
