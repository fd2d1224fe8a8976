"""Shared fixtures: an in-memory runtime that records every call."""

import subprocess

import pytest

from docspace_ops.config import Settings
from docspace_ops.errors import RuntimeCommandError
from docspace_ops.runtime import ContainerState, ContainerStatus, ContainerSummary, HealthStatus
from docspace_ops.topology import default_registry

MUTATIONS = {
    "compose_up", "start", "stop", "kill", "restart", "remove",
    "create_network", "remove_network", "remove_volume",
}


def make_state(name, status=ContainerStatus.RUNNING, health=HealthStatus.NONE, **kwargs):
    return ContainerState(name=name, status=status, health=health, **kwargs)


class FakeRuntime:
    """Stands in for DockerRuntime; containers live in ``self.containers``."""

    docker_bin = "docker"

    def __init__(self):
        self.containers = {}
        self.networks = set()
        self.volumes = []
        self.calls = []
        self.failures = {}
        self.exec_results = {}
        self.fail_to_start = set()
        self.stuck = set()
        self.logs_text = {}

    # --- Test helpers ---
    def add(self, name, status=ContainerStatus.RUNNING, health=HealthStatus.NONE, **kwargs):
        self.containers[name] = make_state(name, status, health, **kwargs)
        return self.containers[name]

    @property
    def mutations(self):
        return [call for call in self.calls if call[0] in MUTATIONS]

    def calls_to(self, method):
        return [call for call in self.calls if call[0] == method]

    def _record(self, method, *args):
        self.calls.append((method, *args))
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    # --- Runtime interface ---
    def ping(self):
        self._record("ping")
        return "24.0.0"

    def list_containers(self, prefix=None, running_only=False, status=None, health=None):
        self._record("list_containers", prefix)
        rows = []
        for name, state in sorted(self.containers.items()):
            if prefix and not name.startswith(prefix):
                continue
            if running_only and not state.running:
                continue
            if status and state.status.value != status:
                continue
            if health and state.health.value != health:
                continue
            text = "Up 5 minutes" if state.running else "Exited (0) 5 minutes ago"
            if state.health is not HealthStatus.NONE:
                text += f" ({state.health.value})"
            rows.append(ContainerSummary(name, state.status.value, text))
        return rows

    def inspect(self, name):
        self._record("inspect", name)
        return self.containers.get(name) or ContainerState.missing(name)

    def inspect_raw(self, name):
        self._record("inspect_raw", name)
        return '[{"Name": "/%s"}]' % name

    def compose_up(self, compose_files, services=(), force_recreate=False, project_dir=None):
        self._record("compose_up", tuple(compose_files), tuple(services))
        for name in services:
            if name in self.fail_to_start:
                self.containers[name] = make_state(name, ContainerStatus.EXITED)
            else:
                self.containers[name] = make_state(name)
        return subprocess.CompletedProcess([], 0, "", "")

    def start(self, name):
        self._record("start", name)
        self.containers[name].status = ContainerStatus.RUNNING

    def stop(self, name, timeout=30):
        self._record("stop", name, timeout)
        if name not in self.stuck:
            self.containers[name].status = ContainerStatus.EXITED

    def kill(self, name):
        self._record("kill", name)
        self.containers[name].status = ContainerStatus.EXITED

    def restart(self, name, timeout=30):
        self._record("restart", name)
        self.containers[name] = make_state(name)

    def remove(self, *names, force=False):
        self._record("remove", names, force)
        for name in names:
            self.containers.pop(name, None)

    def exec(self, name, command, interactive=False, user=None, workdir=None,
             env=None, timeout=None, check=False):
        self._record("exec", name, tuple(command))
        result = self.exec_results.get(tuple(command))
        if isinstance(result, Exception):
            raise result
        return result or subprocess.CompletedProcess(command, 0, "", "")

    def logs(self, name, tail=None, since=None, until=None, timestamps=False, follow=False):
        self._record("logs", name, tail, follow)
        if follow:
            return 0
        return self.logs_text.get(name, f"log line from {name}\n")

    def top(self, name):
        self._record("top", name)
        return "PID USER CMD\n1 root init\n"

    def list_networks(self):
        self._record("list_networks")
        return sorted(self.networks)

    def network_exists(self, name):
        self._record("network_exists", name)
        return name in self.networks

    def create_network(self, name):
        self._record("create_network", name)
        self.networks.add(name)

    def remove_network(self, *names):
        self._record("remove_network", names)
        self.networks.difference_update(names)

    def inspect_network(self, name):
        self._record("inspect_network", name)
        return '[{"Name": "%s"}]' % name

    def list_volumes(self):
        self._record("list_volumes")
        return list(self.volumes)

    def remove_volume(self, *names):
        self._record("remove_volume", names)
        for name in names:
            self.volumes.remove(name)


def command_error(stderr="boom"):
    return RuntimeCommandError(["docker", "fake"], 1, stderr)


@pytest.fixture
def runtime():
    fake = FakeRuntime()
    fake.networks.add("onlyoffice")
    return fake


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def settings(tmp_path):
    compose_dir = tmp_path / "compose"
    compose_dir.mkdir()
    storage = tmp_path / "data"
    storage.mkdir()
    return Settings(
        compose_dir=str(compose_dir),
        storage_mount=str(storage),
        settle_seconds=0,
        restart_wait=0,
        stabilize_seconds=0,
        discovery_dir=str(tmp_path / "capture"),
    )


@pytest.fixture
def all_running(runtime, registry):
    """Every registered service has a running container."""
    for service in registry.services:
        runtime.add(registry.container_name(service))
    return runtime
