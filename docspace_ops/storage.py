"""Checks for the persistent storage mount used by the deployment.

Provisioning the (encrypted) volume is done with host tooling; this module
only verifies that what the containers rely on is present and usable.
"""

import logging
import os
import time
from datetime import datetime
from pathlib import Path

import psutil

from .errors import ProbeFailure, ProbeNegative
from .probes import ProbeResult, ProbeStatus, run_probe, threshold_status

log = logging.getLogger(__name__)

CONTAINER_DATA_DIR = "/app/onlyoffice/data"
CONTAINER_LOG_DIR = "/var/log/onlyoffice"
HEALTH_TEST_FILE = "health_check_test.tmp"
PERFORMANCE_TEST_FILE = "performance_test.tmp"
PERSISTENCE_TEST_FILE = "persistence_test.txt"
PERFORMANCE_TEST_BYTES = 10 * 1024 * 1024


def disk_usage(path):
    try:
        return psutil.disk_usage(str(path))
    except OSError as e:
        raise ProbeFailure("storage", f"cannot read usage of {path}: {e}") from e


def write_test(path, file_name=HEALTH_TEST_FILE, payload=b"test\n"):
    test_file = Path(path) / file_name
    try:
        with open(test_file, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    finally:
        if test_file.exists():
            test_file.unlink()


def probe_mount(path, warn_percent, critical_percent, require_mount=True):
    """Filesystem probe: present, mounted, writable and under the usage bands."""
    if not os.path.isdir(path):
        raise ProbeNegative("storage", f"{path} does not exist")
    if require_mount and not os.path.ismount(path):
        raise ProbeNegative("storage", f"{path} is not mounted")

    usage = disk_usage(path)
    try:
        write_test(path)
    except OSError as e:
        raise ProbeNegative("storage", f"write access to {path} failed: {e}") from e

    status = threshold_status(usage.percent, warn_percent, critical_percent)
    label = {ProbeStatus.PASS: "healthy", ProbeStatus.WARN: "warning", ProbeStatus.CRITICAL: "critical"}[status]
    return ProbeResult(
        "storage",
        status,
        f"Storage usage: {usage.percent:.0f}% ({label})",
        target=str(path),
        details={
            "total": usage.total,
            "used": usage.used,
            "free": usage.free,
            "percent": usage.percent,
        },
    )


class StorageValidator:
    """Runs the storage validation suite against the configured mount."""

    def __init__(self, runtime, settings):
        self.runtime = runtime
        self.settings = settings
        self.mount = Path(settings.storage_mount)

    def validate(self):
        checks = [
            ("mount-point", self.check_mount_point),
            ("directories", self.check_directories),
            ("container-access", self.check_container_access),
            ("volume-mappings", self.check_volume_mappings),
            ("storage-health", self.check_storage_health),
            ("persistence", self.check_persistence),
        ]
        results = []
        for name, check in checks:
            log.debug("Running storage check: %s", name)
            results.append(run_probe(name, check, target=str(self.mount)))
        return results

    def _running_containers(self):
        rows = self.runtime.list_containers(prefix=self.settings.container_prefix, running_only=True)
        return [row.name for row in rows]

    def check_mount_point(self):
        if not self.mount.is_dir():
            raise ProbeNegative("mount-point", f"{self.mount} does not exist")
        if not os.access(self.mount, os.W_OK):
            raise ProbeNegative("mount-point", f"{self.mount} is not writable")
        mounted = os.path.ismount(self.mount)
        if not mounted:
            return ProbeResult("mount-point", ProbeStatus.WARN,
                               f"{self.mount} exists but is not a separate mount", str(self.mount))
        return f"{self.mount} is mounted and writable"

    def check_directories(self):
        missing = [d for d in self.settings.storage_dirs if not (self.mount / d).is_dir()]
        if missing:
            raise ProbeNegative("directories", f"missing: {', '.join(missing)}")
        return f"all {len(self.settings.storage_dirs)} directories present"

    def check_container_access(self):
        running = self._running_containers()
        if not running:
            return ProbeResult("container-access", ProbeStatus.SKIPPED, "no running containers to test from")
        container = running[0]
        probe = self.runtime.exec(container, ["test", "-d", CONTAINER_DATA_DIR])
        if probe.returncode != 0:
            return ProbeResult("container-access", ProbeStatus.WARN,
                               f"{CONTAINER_DATA_DIR} not visible in {container}", container)

        test_file = f"{CONTAINER_DATA_DIR}/test_write_access.tmp"
        write = self.runtime.exec(container, ["sh", "-c", f"echo test > {test_file} && rm {test_file}"])
        if write.returncode != 0:
            raise ProbeNegative("container-access", f"{container} cannot write to {CONTAINER_DATA_DIR}")

        logs = self.runtime.exec(container, ["test", "-d", CONTAINER_LOG_DIR])
        note = "" if logs.returncode == 0 else f" ({CONTAINER_LOG_DIR} not visible)"
        return f"{container} can read and write {CONTAINER_DATA_DIR}{note}"

    def check_volume_mappings(self):
        mapped = []
        for container in self._running_containers():
            state = self.runtime.inspect(container)
            if any(m.source.startswith(str(self.mount)) for m in state.mounts):
                mapped.append(container)
        if not mapped:
            raise ProbeNegative("volume-mappings", f"no running container mounts a path under {self.mount}")
        return ProbeResult("volume-mappings", ProbeStatus.PASS,
                           f"{len(mapped)} container(s) use {self.mount}", str(self.mount),
                           details={"containers": mapped})

    def check_storage_health(self):
        result = probe_mount(self.mount, self.settings.warn_percent,
                             self.settings.critical_percent, require_mount=False)
        started = time.monotonic()
        try:
            write_test(self.mount, PERFORMANCE_TEST_FILE, b"\0" * PERFORMANCE_TEST_BYTES)
        except OSError as e:
            raise ProbeNegative("storage-health", f"10 MiB write test failed: {e}") from e
        elapsed = time.monotonic() - started
        result.name = "storage-health"
        result.details["write_seconds"] = round(elapsed, 3)
        result.message += f", 10 MiB written in {elapsed:.2f}s"
        return result

    def check_persistence(self):
        test_file = self.mount / PERSISTENCE_TEST_FILE
        content = f"DocSpace storage test - {datetime.now().isoformat()}"
        try:
            test_file.write_text(content, encoding="utf-8")
            read_back = test_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ProbeNegative("persistence", f"could not write/read {test_file}: {e}") from e
        finally:
            if test_file.exists():
                test_file.unlink()
        if read_back != content:
            raise ProbeNegative("persistence", "content read back does not match what was written")
        return "data written and read back intact"


def validation_passed(results):
    return not any(r.failed for r in results)
