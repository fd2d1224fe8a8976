"""Dependency-ordered lifecycle operations (start / stop / restart).

Batches are best effort: a failing service is recorded and the remaining
services are still attempted. There is no rollback.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import (
    InvalidTransition,
    RuntimeCommandError,
    RuntimeTimeoutError,
    TransitionTimeoutError,
)
from .runtime import ContainerStatus
from .topology import ALL

log = logging.getLogger(__name__)

# Statuses that `docker ps` (without -a) lists, i.e. that need stopping.
_ACTIVE = (ContainerStatus.RUNNING, ContainerStatus.RESTARTING, ContainerStatus.PAUSED)


class ServiceState(str, Enum):
    UNKNOWN = "unknown"
    NOT_RUNNING = "not-running"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


_TRANSITIONS = {
    ServiceState.UNKNOWN: {
        ServiceState.NOT_RUNNING,
        ServiceState.STARTING,
        ServiceState.RUNNING,
        ServiceState.STOPPING,
        ServiceState.FAILED,
    },
    ServiceState.NOT_RUNNING: {ServiceState.STARTING},
    ServiceState.STARTING: {ServiceState.RUNNING, ServiceState.FAILED},
    ServiceState.RUNNING: {ServiceState.STOPPING},
    ServiceState.STOPPING: {ServiceState.NOT_RUNNING, ServiceState.FAILED},
    ServiceState.FAILED: set(),
}


class Outcome(str, Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already-running"
    STOPPED = "stopped"
    NOT_RUNNING = "not-running"
    FAILED = "failed"


@dataclass
class StartOptions:
    ssl: bool = False
    force_recreate: bool = False
    settle: bool = True


@dataclass
class StopOptions:
    force: bool = False
    remove: bool = False
    timeout_seconds: int = 30


@dataclass
class RestartOptions:
    hard: bool = False
    wait_seconds: Optional[int] = None
    ssl: bool = False


@dataclass
class ServiceResult:
    service: object
    outcome: Optional[Outcome] = None
    state: ServiceState = ServiceState.UNKNOWN
    reason: str = ""
    error: Optional[Exception] = None
    removed: bool = False
    history: list = field(default_factory=list)

    @property
    def name(self):
        return self.service.name

    @property
    def ok(self):
        return self.outcome is not None and self.outcome is not Outcome.FAILED

    def advance(self, target):
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.name, self.state.value, target.value)
        self.history.append(self.state)
        self.state = target

    def fail(self, reason, error=None):
        if self.state is not ServiceState.FAILED:
            self.advance(ServiceState.FAILED)
        self.outcome = Outcome.FAILED
        self.reason = reason
        self.error = error
        return self


@dataclass
class BatchResult:
    operation: str
    selection: str = ALL
    results: list = field(default_factory=list)
    network_error: Optional[str] = None

    @property
    def order(self):
        return [r.name for r in self.results]

    @property
    def succeeded(self):
        return [r for r in self.results if r.ok]

    @property
    def failed(self):
        return [r for r in self.results if not r.ok]

    @property
    def ok(self):
        return not self.failed

    def suggestions(self):
        hints = []
        if self.network_error:
            hints.append("Check the shared network: docker network ls")
        if not self.failed:
            return hints
        target = "" if self.selection == ALL else f" {self.selection}"
        if self.operation == "stop":
            hints.append(f"Retry with force: docspace-ops stop --force{target}")
        else:
            hints.extend(f"Check logs: docspace-ops logs {r.name}" for r in self.failed)
            hints.append(f"Retry with recreation: docspace-ops start --force{target}")
        hints.append("Check current status: docspace-ops status")
        return hints


@dataclass
class RestartResult:
    stop: BatchResult
    start: BatchResult

    @property
    def ok(self):
        return self.stop.ok and self.start.ok


class OrchestrationEngine:
    """
    Drives service lifecycle transitions in dependency order using the
    topology registry and a runtime client.
    """

    def __init__(self, registry, runtime, settings, compose=None):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings
        self.compose = compose
        self.log = log

    # --- Helpers ---
    def _resolve(self, selection):
        if selection is None or isinstance(selection, str):
            return selection or ALL, self.registry.resolve(selection)
        services = tuple(selection)
        return ",".join(s.name for s in services), services

    def _compose_files(self, service, ssl):
        file_name = service.ssl_compose_file if ssl and service.ssl_compose_file else None
        if file_name is None and self.compose is not None:
            file_name = self.compose.locate(self.registry.container_name(service))
        file_name = file_name or service.compose_file
        return [str(self.settings.compose_path / file_name)]

    def _observe(self, result, container):
        try:
            return self.runtime.inspect(container)
        except RuntimeCommandError as e:
            result.fail(f"could not inspect container: {e}", e)
            return None

    def _ensure_network(self):
        """Create the shared network if missing. Returns an error message or None."""
        name = self.settings.network_name
        try:
            if self.runtime.network_exists(name):
                self.log.debug("Network '%s' exists.", name)
                return None
            self.log.info("Creating network '%s'...", name)
            self.runtime.create_network(name)
            return None
        except RuntimeCommandError as e:
            self.log.warning("Could not ensure network '%s': %s", name, e)
            return str(e)

    # --- Start ---
    def start(self, selection=None, options=None):
        options = options or StartOptions()
        label, services = self._resolve(selection)
        ordered = self.registry.dependency_order(services)
        batch = BatchResult("start", label)
        self.log.info("Start order: %s", ", ".join(s.name for s in ordered))

        batch.network_error = self._ensure_network()
        for position, service in enumerate(ordered):
            last = position == len(ordered) - 1
            result = self._start_one(service, options, settle=options.settle and not last)
            batch.results.append(result)
        return batch

    def _start_one(self, service, options, settle):
        result = ServiceResult(service)
        container = self.registry.container_name(service)

        state = self._observe(result, container)
        if state is None:
            return result
        if state.running and not options.force_recreate:
            result.advance(ServiceState.RUNNING)
            result.outcome = Outcome.ALREADY_RUNNING
            self.log.info("%s is already running.", service.name)
            return result

        if options.force_recreate and state.exists:
            self.log.info("Recreating %s: removing the existing container first.", service.name)
            if state.status in _ACTIVE:
                result.advance(ServiceState.RUNNING)
                result.advance(ServiceState.STOPPING)
            try:
                if result.state is ServiceState.STOPPING:
                    self.runtime.stop(container, timeout=self.settings.stop_timeout)
                self.runtime.remove(container, force=True)
            except RuntimeCommandError as e:
                return result.fail(f"could not remove old container: {e}", e)
        result.advance(ServiceState.NOT_RUNNING)

        result.advance(ServiceState.STARTING)
        self.log.info("Starting %s...", service.name)
        try:
            self.runtime.compose_up(
                self._compose_files(service, options.ssl),
                [container],
                force_recreate=options.force_recreate,
            )
        except RuntimeTimeoutError as e:
            err = TransitionTimeoutError(service.name, "start", e.timeout)
            return result.fail(str(err), err)
        except RuntimeCommandError as e:
            return result.fail(f"start command failed: {e.stderr or e}", e)

        if settle and self.settings.settle_seconds > 0:
            self.log.debug("Waiting %ss for %s to settle...", self.settings.settle_seconds, service.name)
            time.sleep(self.settings.settle_seconds)

        state = self._observe(result, container)
        if state is None:
            return result
        if not state.running:
            return result.fail(f"runtime reports '{state.status.value}' after start")
        result.advance(ServiceState.RUNNING)
        result.outcome = Outcome.STARTED
        return result

    # --- Stop ---
    def stop(self, selection=None, options=None):
        options = options or StopOptions(timeout_seconds=self.settings.stop_timeout)
        label, services = self._resolve(selection)
        ordered = self.registry.reverse_dependency_order(services)
        batch = BatchResult("stop", label)
        mode = "force (kill)" if options.force else f"graceful ({options.timeout_seconds}s timeout per service)"
        self.log.info("Stop order: %s [%s]", ", ".join(s.name for s in ordered), mode)

        for service in ordered:
            batch.results.append(self._stop_one(service, options))
        return batch

    def _stop_one(self, service, options):
        result = ServiceResult(service)
        container = self.registry.container_name(service)

        state = self._observe(result, container)
        if state is None:
            return result
        if state.status not in _ACTIVE:
            result.advance(ServiceState.NOT_RUNNING)
            result.outcome = Outcome.NOT_RUNNING
            self.log.info("%s is not running.", service.name)
            if options.remove and state.exists:
                self._remove(result, container)
            return result

        result.advance(ServiceState.RUNNING)
        result.advance(ServiceState.STOPPING)
        self.log.info("Stopping %s...", service.name)
        try:
            if options.force:
                self.runtime.kill(container)
            else:
                self.runtime.stop(container, timeout=options.timeout_seconds)
        except RuntimeTimeoutError as e:
            err = TransitionTimeoutError(service.name, "stop", options.timeout_seconds)
            return result.fail(str(err), err)
        except RuntimeCommandError as e:
            return result.fail(f"stop command failed: {e.stderr or e}", e)

        state = self._observe(result, container)
        if state is None:
            return result
        if state.status in _ACTIVE:
            err = TransitionTimeoutError(service.name, "stop", options.timeout_seconds)
            return result.fail(str(err), err)

        result.advance(ServiceState.NOT_RUNNING)
        result.outcome = Outcome.STOPPED
        if options.remove:
            self._remove(result, container)
        return result

    def _remove(self, result, container):
        try:
            self.runtime.remove(container)
            result.removed = True
        except RuntimeCommandError as e:
            result.outcome = Outcome.FAILED
            result.reason = f"stopped but could not remove: {e.stderr or e}"
            result.error = e

    # --- Restart ---
    def restart(self, selection=None, options=None):
        options = options or RestartOptions()
        stop_options = StopOptions(
            force=options.hard,
            remove=options.hard,
            timeout_seconds=self.settings.stop_timeout,
        )
        stopped = self.stop(selection, stop_options)

        wait = self.settings.restart_wait if options.wait_seconds is None else options.wait_seconds
        if wait > 0:
            self.log.info("Waiting %s seconds before starting...", wait)
            time.sleep(wait)

        started = self.start(selection, StartOptions(ssl=options.ssl))
        return RestartResult(stopped, started)
