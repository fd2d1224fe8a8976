"""Thin client over the ``docker`` CLI.

Every call asks Docker for JSON and returns typed records. Nothing is cached;
each method re-queries the engine. All calls carry a timeout except log
follow mode and interactive exec, which run until the user stops them.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import (
    PrerequisiteError,
    RuntimeCommandError,
    RuntimeTimeoutError,
    RuntimeUnavailableError,
)

log = logging.getLogger(__name__)

_DEFAULT = object()

_DAEMON_DOWN_MARKERS = (
    "Cannot connect to the Docker daemon",
    "error during connect",
    "Is the docker daemon running",
)
_NOT_FOUND_MARKERS = ("No such object", "No such container", "No such network", "No such volume")


class ContainerStatus(str, Enum):
    NOT_CREATED = "not-created"
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    RESTARTING = "restarting"
    PAUSED = "paused"
    REMOVING = "removing"
    DEAD = "dead"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value):
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class HealthStatus(str, Enum):
    NONE = "none"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @classmethod
    def parse(cls, value):
        try:
            return cls(str(value or "none").lower())
        except ValueError:
            return cls.NONE


@dataclass
class Mount:
    source: str
    destination: str
    type: str = "bind"


@dataclass
class ContainerState:
    """Snapshot of one container as reported by ``docker inspect``."""

    name: str
    status: ContainerStatus
    health: HealthStatus = HealthStatus.NONE
    created: str = ""
    started_at: str = ""
    image: str = ""
    ports: dict = field(default_factory=dict)
    mounts: list = field(default_factory=list)
    networks: dict = field(default_factory=dict)

    @property
    def exists(self):
        return self.status is not ContainerStatus.NOT_CREATED

    @property
    def running(self):
        return self.status is ContainerStatus.RUNNING

    @property
    def published_ports(self):
        """Container ports that are mapped to the host, e.g. ['80/tcp']."""
        return sorted(port for port, bindings in self.ports.items() if bindings)

    @classmethod
    def missing(cls, name):
        return cls(name=name, status=ContainerStatus.NOT_CREATED)

    @classmethod
    def from_inspect(cls, data):
        state = data.get("State") or {}
        health = (state.get("Health") or {}).get("Status")
        settings = data.get("NetworkSettings") or {}
        networks = {
            net: (conf or {}).get("IPAddress", "")
            for net, conf in (settings.get("Networks") or {}).items()
        }
        mounts = [
            Mount(m.get("Source", ""), m.get("Destination", ""), m.get("Type", "bind"))
            for m in data.get("Mounts") or []
        ]
        return cls(
            name=(data.get("Name") or "").lstrip("/"),
            status=ContainerStatus.parse(state.get("Status", "unknown")),
            health=HealthStatus.parse(health),
            created=data.get("Created", ""),
            started_at=state.get("StartedAt", ""),
            image=(data.get("Config") or {}).get("Image", ""),
            ports=settings.get("Ports") or {},
            mounts=mounts,
            networks=networks,
        )


@dataclass
class ContainerSummary:
    """One row of ``docker ps``."""

    name: str
    state: str
    status_text: str = ""
    image: str = ""
    ports: str = ""

    @property
    def running(self):
        return self.state == ContainerStatus.RUNNING.value

    @property
    def health(self):
        text = self.status_text.lower()
        if "(unhealthy)" in text:
            return HealthStatus.UNHEALTHY
        if "(healthy)" in text:
            return HealthStatus.HEALTHY
        if "health: starting" in text:
            return HealthStatus.STARTING
        return HealthStatus.NONE

    @classmethod
    def from_ps(cls, row):
        state = row.get("State", "")
        status_text = row.get("Status", "")
        if not state:
            # Older engines omit State; derive it from the status text.
            state = "running" if status_text.startswith("Up") else "exited"
        return cls(
            name=row.get("Names", ""),
            state=state,
            status_text=status_text,
            image=row.get("Image", ""),
            ports=row.get("Ports", ""),
        )


def _load_json(result, text):
    try:
        return json.loads(text)
    except ValueError as e:
        raise RuntimeCommandError(result.args, result.returncode, f"unparseable output: {e}") from e


def _json_lines(result):
    rows = []
    for line in (result.stdout or "").splitlines():
        line = line.strip()
        if line:
            rows.append(_load_json(result, line))
    return rows


class DockerRuntime:
    """Runtime client backed by the docker CLI."""

    def __init__(self, timeout=30, compose_timeout=300, docker_bin="docker"):
        self.timeout = timeout
        self.compose_timeout = compose_timeout
        self.docker_bin = docker_bin

    # --- Core command execution ---
    def _run_command(
        self,
        cmd_list,
        timeout=_DEFAULT,
        check=True,
        capture_output=True,
        suppress_logs=False,
        **kwargs,
    ):
        """Run a command, translating failures into runtime errors."""
        if timeout is _DEFAULT:
            timeout = self.timeout
        if suppress_logs:
            log.debug("Running command: %s", " ".join(cmd_list))
        else:
            log.info("Running command: %s", " ".join(cmd_list))
        try:
            result = subprocess.run(
                cmd_list,
                capture_output=capture_output,
                text=True,
                timeout=timeout,
                check=False,
                **kwargs,
            )
        except FileNotFoundError as e:
            raise PrerequisiteError(f"Required command not found: {cmd_list[0]}") from e
        except subprocess.TimeoutExpired as e:
            log.error("Command timed out after %ss: %s", timeout, " ".join(cmd_list))
            raise RuntimeTimeoutError(cmd_list, timeout) from e

        if capture_output:
            if result.stdout:
                log.debug("Command stdout:\n%s", result.stdout.strip())
            if result.stderr and result.stderr.strip():
                log.debug("Command stderr:\n%s", result.stderr.strip())

        if check and result.returncode != 0:
            stderr = result.stderr or ""
            if any(marker in stderr for marker in _DAEMON_DOWN_MARKERS):
                raise RuntimeUnavailableError(stderr.strip() or "Docker daemon is not reachable")
            if not suppress_logs:
                log.error("Command failed: %s", " ".join(cmd_list))
                log.error("Return Code: %s", result.returncode)
                if stderr.strip():
                    log.error("STDERR:\n%s", stderr.strip())
            raise RuntimeCommandError(cmd_list, result.returncode, stderr)
        return result

    def _docker(self, *args, **kwargs):
        return self._run_command([self.docker_bin, *args], **kwargs)

    @staticmethod
    def _is_not_found(error):
        return any(marker in error.stderr for marker in _NOT_FOUND_MARKERS)

    # --- Engine ---
    def ping(self):
        """Return the server version, or raise RuntimeUnavailableError."""
        try:
            result = self._docker("info", "--format", "{{json .ServerVersion}}", suppress_logs=True)
        except RuntimeCommandError as e:
            raise RuntimeUnavailableError(str(e)) from e
        return _load_json(result, result.stdout.strip() or '""')

    # --- Containers ---
    def list_containers(self, prefix=None, running_only=False, status=None, health=None):
        args = ["ps", "--no-trunc", "--format", "{{json .}}"]
        if not running_only:
            args.insert(1, "-a")
        if prefix:
            args.extend(["--filter", f"name=^{prefix}"])
        if status:
            args.extend(["--filter", f"status={status}"])
        if health:
            args.extend(["--filter", f"health={health}"])
        result = self._docker(*args, suppress_logs=True)
        rows = [ContainerSummary.from_ps(row) for row in _json_lines(result)]
        if prefix:
            # The name filter is a substring match on some engines.
            rows = [row for row in rows if row.name.startswith(prefix)]
        return sorted(rows, key=lambda row: row.name)

    def inspect(self, name):
        try:
            result = self._docker("inspect", "--type", "container", name, suppress_logs=True)
        except RuntimeCommandError as e:
            if self._is_not_found(e):
                return ContainerState.missing(name)
            raise
        data = _load_json(result, result.stdout or "[]")
        if not data:
            return ContainerState.missing(name)
        state = ContainerState.from_inspect(data[0])
        state.name = state.name or name
        return state

    def inspect_raw(self, name):
        result = self._docker("inspect", name, suppress_logs=True)
        return result.stdout

    def compose_up(self, compose_files, services=(), force_recreate=False, project_dir=None):
        args = ["compose"]
        for compose_file in compose_files:
            args.extend(["-f", str(compose_file)])
        if project_dir:
            args.extend(["--project-directory", str(project_dir)])
        args.extend(["up", "-d"])
        if force_recreate:
            args.append("--force-recreate")
        args.extend(services)
        return self._docker(*args, timeout=self.compose_timeout)

    def start(self, name):
        self._docker("start", name)

    def stop(self, name, timeout=30):
        # Give the CLI call room beyond the engine's own grace period.
        self._docker("stop", f"--time={timeout}", name, timeout=timeout + self.timeout)

    def kill(self, name):
        self._docker("kill", name)

    def restart(self, name, timeout=30):
        self._docker("restart", f"--time={timeout}", name, timeout=timeout + self.timeout)

    def remove(self, *names, force=False):
        if not names:
            return
        args = ["rm"]
        if force:
            args.append("--force")
        self._docker(*args, *names)

    def exec(self, name, command, interactive=False, user=None, workdir=None,
             env=None, timeout=_DEFAULT, check=False):
        args = ["exec"]
        if interactive:
            args.append("-it")
        if user:
            args.extend(["--user", user])
        if workdir:
            args.extend(["--workdir", workdir])
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(name)
        args.extend(command)
        if interactive:
            return self._docker(*args, timeout=None, capture_output=False, check=check)
        return self._docker(*args, timeout=timeout, check=check, suppress_logs=True)

    def logs(self, name, tail=None, since=None, until=None, timestamps=False, follow=False):
        """Return log text, or stream to stdout until interrupted when following."""
        args = ["logs"]
        if follow:
            args.append("-f")
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if since:
            args.extend(["--since", since])
        if until:
            args.extend(["--until", until])
        if timestamps:
            args.append("-t")
        args.append(name)
        if follow:
            return self._docker(*args, timeout=None, capture_output=False).returncode
        # The engine writes container stderr to our stderr; keep both streams.
        result = self._run_command(
            [self.docker_bin, *args],
            capture_output=False,
            suppress_logs=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        return result.stdout or ""

    def top(self, name):
        return self._docker("top", name, suppress_logs=True).stdout

    # --- Networks ---
    def list_networks(self):
        result = self._docker("network", "ls", "--format", "{{json .}}", suppress_logs=True)
        return sorted(row.get("Name", "") for row in _json_lines(result))

    def network_exists(self, name):
        return name in self.list_networks()

    def create_network(self, name):
        self._docker("network", "create", name)

    def remove_network(self, *names):
        if names:
            self._docker("network", "rm", *names)

    def inspect_network(self, name):
        return self._docker("network", "inspect", name, suppress_logs=True).stdout

    # --- Volumes ---
    def list_volumes(self):
        result = self._docker("volume", "ls", "--format", "{{json .}}", suppress_logs=True)
        return sorted(row.get("Name", "") for row in _json_lines(result))

    def remove_volume(self, *names):
        if names:
            self._docker("volume", "rm", *names)

    def inspect_volume(self, name):
        return self._docker("volume", "inspect", name, suppress_logs=True).stdout


def first_published_port(state: ContainerState, container_port: str) -> Optional[str]:
    for binding in state.ports.get(container_port) or []:
        if binding.get("HostPort"):
            return binding["HostPort"]
    return None
