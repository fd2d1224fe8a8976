"""Health evaluation: container state plus protocol, storage and host probes.

Every probe is fail-soft. A probe that cannot complete degrades the report
instead of raising, and the overall verdict is a pure reduction over what
was actually probed.
"""

import logging
import os
import re
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import psutil
import requests
import urllib3

from .errors import ProbeFailure, ProbeNegative, RuntimeCommandError
from .probes import ProbeResult, ProbeStatus, run_probe, threshold_status
from .runtime import ContainerStatus, HealthStatus, first_published_port
from .storage import probe_mount
from .topology import PROBE_HTTP, PROBE_MYSQL

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_STARTING = 2

ROUTER_INTERNAL_URL = "http://onlyoffice-router:8092"


class ServiceVerdict(str, Enum):
    HEALTHY = "healthy"
    RUNNING = "running"
    STARTING = "starting"
    UNHEALTHY = "unhealthy"
    DOWN = "down"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"


class OverallVerdict(str, Enum):
    HEALTHY = "healthy"
    RUNNING = "running"
    STARTING = "starting"
    ISSUES = "issues"
    UNHEALTHY = "unhealthy"

    @property
    def exit_code(self):
        if self in (OverallVerdict.HEALTHY, OverallVerdict.RUNNING):
            return EXIT_OK
        if self is OverallVerdict.STARTING:
            return EXIT_STARTING
        return EXIT_ISSUES


def classify(state):
    """Map a container snapshot onto a service verdict."""
    if not state.exists:
        return ServiceVerdict.NOT_FOUND
    if state.status is not ContainerStatus.RUNNING:
        return ServiceVerdict.DOWN
    return {
        HealthStatus.HEALTHY: ServiceVerdict.HEALTHY,
        HealthStatus.UNHEALTHY: ServiceVerdict.UNHEALTHY,
        HealthStatus.STARTING: ServiceVerdict.STARTING,
    }.get(state.health, ServiceVerdict.RUNNING)


def aggregate(verdicts, probe_statuses=()):
    """Reduce per-service verdicts and probe outcomes to one overall verdict."""
    verdicts = list(verdicts)
    probe_statuses = list(probe_statuses)
    if not verdicts and not probe_statuses:
        return OverallVerdict.ISSUES
    if ServiceVerdict.UNHEALTHY in verdicts or ProbeStatus.CRITICAL in probe_statuses:
        return OverallVerdict.UNHEALTHY
    if ServiceVerdict.STARTING in verdicts:
        return OverallVerdict.STARTING
    down = (ServiceVerdict.DOWN, ServiceVerdict.NOT_FOUND, ServiceVerdict.UNKNOWN)
    if any(v in down for v in verdicts) or ProbeStatus.ERROR in probe_statuses:
        return OverallVerdict.ISSUES
    if ServiceVerdict.HEALTHY in verdicts or not verdicts:
        return OverallVerdict.HEALTHY
    return OverallVerdict.RUNNING


@dataclass
class HealthOptions:
    containers: bool = True
    protocol: bool = True
    web: bool = False
    storage: bool = True
    resources: bool = True
    verbose: bool = False


@dataclass
class ServiceHealth:
    service: object
    verdict: ServiceVerdict
    state: Optional[object] = None
    probes: list = field(default_factory=list)
    error: str = ""

    @property
    def name(self):
        return self.service.name


@dataclass
class RemediationAction:
    name: str
    target: str
    succeeded: bool
    detail: str = ""


@dataclass
class RemediationReport:
    actions: list = field(default_factory=list)

    @property
    def applied(self):
        return [a for a in self.actions if a.succeeded]

    @property
    def failed(self):
        return [a for a in self.actions if not a.succeeded]


@dataclass
class HealthReport:
    services: list = field(default_factory=list)
    probes: list = field(default_factory=list)
    overall: OverallVerdict = OverallVerdict.ISSUES
    remediation: Optional[RemediationReport] = None

    def all_probes(self):
        found = list(self.probes)
        for sh in self.services:
            found.extend(sh.probes)
        return found

    def counts(self):
        verdicts = [sh.verdict for sh in self.services]
        running = (ServiceVerdict.HEALTHY, ServiceVerdict.RUNNING,
                   ServiceVerdict.STARTING, ServiceVerdict.UNHEALTHY)
        return {
            "total": len(verdicts),
            "running": sum(1 for v in verdicts if v in running),
            "healthy": verdicts.count(ServiceVerdict.HEALTHY),
            "unhealthy": verdicts.count(ServiceVerdict.UNHEALTHY),
            "starting": verdicts.count(ServiceVerdict.STARTING),
            "stopped": sum(1 for v in verdicts if v not in running),
        }

    def suggestions(self):
        hints = []
        verdicts = [sh.verdict for sh in self.services]
        if ServiceVerdict.UNHEALTHY in verdicts or ServiceVerdict.DOWN in verdicts:
            hints.append("Run 'docspace-ops health --fix' to attempt automatic fixes")
        if ServiceVerdict.NOT_FOUND in verdicts or ServiceVerdict.DOWN in verdicts:
            hints.append("Start stopped services: docspace-ops start")
        for probe in self.all_probes():
            if not probe.failed:
                continue
            if probe.name == "storage":
                hints.append(
                    f"Storage at {probe.target} needs manual attention ({probe.message}); "
                    "free space or grow the volume, capacity is not changed automatically"
                )
            elif probe.name == "database":
                hints.append("Check database logs: docspace-ops logs mysql-server")
            elif probe.name.startswith("http"):
                hints.append("Check proxy logs: docspace-ops logs proxy")
            elif probe.name in ("memory", "root-disk"):
                hints.append(f"Host {probe.name} is under pressure: {probe.message}")
        if self.overall is OverallVerdict.STARTING:
            hints.append("Services are starting: wait a few minutes and check again")
        if self.remediation and self.remediation.applied:
            hints.append("Wait 30 seconds and run the health check again")
        return hints


class HealthEvaluator:
    def __init__(self, registry, runtime, settings, compose=None):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings
        self.compose = compose

    # --- Container checks ---
    def check_service(self, service, options=None):
        options = options or HealthOptions()
        container = self.registry.container_name(service)
        try:
            state = self.runtime.inspect(container)
        except RuntimeCommandError as e:
            return ServiceHealth(service, ServiceVerdict.UNKNOWN, error=str(e))

        health = ServiceHealth(service, classify(state), state)
        if options.protocol and service.probe == PROBE_MYSQL:
            health.probes.append(
                run_probe("database", self.probe_database, container, state,
                          verbose=options.verbose, target=container)
            )
        if options.web and service.probe == PROBE_HTTP:
            health.probes.extend(self.probe_web(service, state, verbose=options.verbose))
        return health

    # --- Protocol probes ---
    def probe_database(self, container, state, verbose=False):
        if not state.running:
            return ProbeResult("database", ProbeStatus.SKIPPED, "MySQL server not running", container)
        ping = self.runtime.exec(container, ["mysqladmin", "ping", "-h", "localhost"])
        if ping.returncode != 0:
            raise ProbeNegative("database", "MySQL server not responding")

        details = {}
        if verbose:
            version = self.runtime.exec(container, ["mysql", "--version"])
            match = re.search(r"(Distrib|Ver) ([0-9.]+)", version.stdout or "")
            details["version"] = match.group(2) if match else "unknown"
            status = self.runtime.exec(container, ["mysqladmin", "status"])
            match = re.search(r"Uptime: ([0-9]+)", status.stdout or "")
            details["uptime_seconds"] = int(match.group(1)) if match else None
        return ProbeResult("database", ProbeStatus.PASS, "MySQL server responding", container, details)

    def http_get(self, name, url, verify=True):
        try:
            with warnings.catch_warnings():
                if not verify:
                    # Self-signed certificates are expected on the HTTPS probe
                    warnings.simplefilter("ignore", urllib3.exceptions.InsecureRequestWarning)
                response = requests.get(url, timeout=self.settings.http_timeout, verify=verify)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ProbeNegative(name, f"{url} not accessible ({e.__class__.__name__})") from e
        except requests.RequestException as e:
            raise ProbeFailure(name, f"{url}: {e}") from e
        if response.status_code >= 400:
            raise ProbeNegative(name, f"{url} returned HTTP {response.status_code}")
        return ProbeResult(name, ProbeStatus.PASS, f"{url} accessible", url,
                           {"status_code": response.status_code})

    def _host_port(self, service, state, container_port, default):
        port = first_published_port(state, f"{container_port}/tcp")
        if port is None and self.compose is not None:
            port = self.compose.host_port(service.compose_file, self.registry.container_name(service),
                                          container_port)
        return port or default

    def probe_http(self, scheme, service, state, container_port, verify=True):
        """Resolve the host port for ``container_port`` and GET the site on it."""
        port = self._host_port(service, state, container_port, str(container_port))
        host = self.settings.http_host
        url = f"{scheme}://{host}" if port == str(container_port) else f"{scheme}://{host}:{port}"
        return self.http_get(scheme, url, verify=verify)

    def probe_web(self, service, state, verbose=False):
        if not state.running:
            return [ProbeResult("http", ProbeStatus.CRITICAL,
                                f"{service.name} not running - web access unavailable")]
        base = f"://{self.settings.http_host}"
        results = [run_probe("http", self.probe_http, "http", service, state, 80, target="http" + base)]

        if "443/tcp" in state.published_ports:
            results.append(run_probe("https", self.probe_http, "https", service, state, 443,
                                     verify=False, target="https" + base))
        else:
            results.append(ProbeResult("https", ProbeStatus.SKIPPED, "HTTPS not configured"))

        if verbose:
            container = self.registry.container_name(service)
            results.append(run_probe("http-routing", self.probe_internal_routing, container, target=container))
        return results

    def probe_internal_routing(self, container):
        result = self.runtime.exec(container, ["curl", "-s", "-f", ROUTER_INTERNAL_URL])
        if result.returncode != 0:
            return ProbeResult("http-routing", ProbeStatus.WARN, "Internal routing issues", container)
        return "Internal routing functional"

    # --- Host probes ---
    def probe_resources(self, verbose=False):
        results = [
            run_probe("memory", self._probe_memory, target="memory"),
            run_probe("root-disk", self._probe_root_disk, target="/"),
        ]
        if verbose:
            results.append(run_probe("load", self._probe_load))
        return results

    def _probe_memory(self):
        mem = psutil.virtual_memory()
        used_mb = (mem.total - mem.available) // (1024 * 1024)
        total_mb = mem.total // (1024 * 1024)
        status = threshold_status(mem.percent, self.settings.warn_percent, self.settings.critical_percent)
        return ProbeResult("memory", status, f"Memory usage: {mem.percent:.0f}% ({used_mb}M/{total_mb}M)",
                           "memory", {"percent": mem.percent})

    def _probe_root_disk(self):
        usage = psutil.disk_usage("/")
        status = threshold_status(usage.percent, self.settings.warn_percent, self.settings.critical_percent)
        return ProbeResult("root-disk", status, f"Root disk usage: {usage.percent:.0f}%", "/",
                           {"percent": usage.percent})

    def _probe_load(self):
        try:
            load = os.getloadavg()
        except OSError as e:
            raise ProbeFailure("load", str(e)) from e
        return ProbeResult("load", ProbeStatus.PASS,
                           "System load: " + ", ".join(f"{value:.2f}" for value in load),
                           details={"load": list(load)})

    # --- Evaluation ---
    def evaluate(self, selection=None, options=None):
        options = options or HealthOptions()
        services = self.registry.resolve(selection)
        report = HealthReport()

        if options.containers:
            for service in services:
                report.services.append(self.check_service(service, options))
        if options.storage:
            mount = self.settings.storage_mount
            report.probes.append(
                run_probe("storage", probe_mount, mount, self.settings.warn_percent,
                          self.settings.critical_percent, target=mount)
            )
        if options.resources:
            report.probes.extend(self.probe_resources(verbose=options.verbose))

        report.overall = aggregate(
            [sh.verdict for sh in report.services],
            [p.status for p in report.all_probes()],
        )
        return report

    # --- Remediation ---
    def attempt_remediation(self):
        """Apply the bounded set of safe fixes once and report each action."""
        report = RemediationReport()
        prefix = self.settings.container_prefix

        try:
            unhealthy = self.runtime.list_containers(prefix=prefix, running_only=True, health="unhealthy")
        except RuntimeCommandError as e:
            report.actions.append(RemediationAction("restart-unhealthy", prefix + "*", False, str(e)))
            unhealthy = []
        for container in unhealthy:
            log.info("Restarting unhealthy container %s", container.name)
            try:
                self.runtime.restart(container.name, timeout=self.settings.stop_timeout)
                report.actions.append(RemediationAction("restart-unhealthy", container.name, True, "restarted"))
            except RuntimeCommandError as e:
                report.actions.append(RemediationAction("restart-unhealthy", container.name, False, str(e)))

        network = self.settings.network_name
        try:
            if not self.runtime.network_exists(network):
                log.info("Creating missing network %s", network)
                self.runtime.create_network(network)
                report.actions.append(RemediationAction("create-network", network, True, "created"))
        except RuntimeCommandError as e:
            report.actions.append(RemediationAction("create-network", network, False, str(e)))

        try:
            exited = [c.name for c in self.runtime.list_containers(prefix=prefix, status="exited")]
            if exited:
                log.info("Removing stopped containers: %s", ", ".join(exited))
                self.runtime.remove(*exited)
                report.actions.append(RemediationAction("remove-stopped", ", ".join(exited), True,
                                                        f"removed {len(exited)} container(s)"))
        except RuntimeCommandError as e:
            report.actions.append(RemediationAction("remove-stopped", prefix + "*", False, str(e)))

        return report
