"""Bounded snapshot of a running deployment's architecture.

Everything written is size-capped and every runtime call is time-bounded.
A step that fails leaves an ``*.error.txt`` note in the snapshot and the
capture moves on.
"""

import json
import logging
import re
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

import yaml
from dotenv import dotenv_values

from .errors import OrchestratorError

log = logging.getLogger(__name__)

MAX_CONTAINERS = 25
MAX_INSPECT_BYTES = 100 * 1024
MAX_LOG_LINES = 50
MAX_LOG_BYTES = 50 * 1024
MAX_COMPOSE_BYTES = 1024 * 1024

SECRET_KEY_PATTERN = re.compile(r"password|secret|key|token", re.IGNORECASE)


def truncate(text, limit):
    data = (text or "").encode("utf-8")
    if len(data) <= limit:
        return text or ""
    return data[:limit].decode("utf-8", errors="ignore") + f"\n... (truncated at {limit} bytes)\n"


def sanitize_env(values):
    """Drop every entry whose key looks like a credential."""
    return {k: v for k, v in values.items() if not SECRET_KEY_PATTERN.search(k)}


@dataclass
class CaptureReport:
    path: Path
    written: list = field(default_factory=list)
    failures: dict = field(default_factory=dict)

    @property
    def ok(self):
        return not self.failures


class ArchitectureCapture:
    def __init__(self, runtime, registry, settings, compose=None):
        self.runtime = runtime
        self.registry = registry
        self.settings = settings
        self.compose = compose

    def _write(self, report, relative, content):
        target = report.path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        report.written.append(relative)

    def _step(self, report, name, func, *args):
        log.info("Capturing %s...", name)
        try:
            func(report, *args)
        except (OrchestratorError, OSError, ValueError) as e:
            log.warning("Capture step '%s' failed: %s", name, e)
            report.failures[name] = str(e)
            self._write(report, f"{name}.error.txt", f"{name} could not be captured: {e}\n")

    # --- Steps ---
    def _containers(self, report):
        rows = self.runtime.list_containers(prefix=self.settings.container_prefix)
        self._write(report, "containers.json", json.dumps([asdict(r) for r in rows], indent=2))
        return rows

    def _container_details(self, report):
        rows = self.runtime.list_containers(prefix=self.settings.container_prefix)
        if len(rows) > MAX_CONTAINERS:
            self._write(report, "container_details/limit_notice.txt",
                        f"... (limiting to first {MAX_CONTAINERS} of {len(rows)} containers)\n")
        mounts = {}
        for row in rows[:MAX_CONTAINERS]:
            base = f"container_details/{row.name}"
            try:
                raw = self.runtime.inspect_raw(row.name)
                self._write(report, f"{base}_inspect.json", truncate(raw, MAX_INSPECT_BYTES))
            except OrchestratorError as e:
                self._write(report, f"{base}_inspect.json", json.dumps({"error": str(e)}))
            try:
                logs = self.runtime.logs(row.name, tail=MAX_LOG_LINES)
                self._write(report, f"{base}_logs.txt", truncate(logs, MAX_LOG_BYTES))
            except OrchestratorError as e:
                self._write(report, f"{base}_logs.txt", f"Could not capture logs: {e}\n")
            if row.running:
                try:
                    self._write(report, f"{base}_processes.txt", self.runtime.top(row.name))
                except OrchestratorError as e:
                    self._write(report, f"{base}_processes.txt", f"Could not capture processes: {e}\n")
            else:
                self._write(report, f"{base}_processes.txt", "Container not running\n")
            try:
                state = self.runtime.inspect(row.name)
                mounts[row.name] = [asdict(m) for m in state.mounts]
            except OrchestratorError as e:
                mounts[row.name] = {"error": str(e)}
        self._write(report, "mounts.json", json.dumps(mounts, indent=2))

    def _compose_files(self, report):
        if self.compose is None or not self.compose.exists():
            self._write(report, "compose_files.txt", f"No compose directory at {self.settings.compose_dir}\n")
            return
        notes = []
        target_dir = report.path / "compose_configs"
        target_dir.mkdir(parents=True, exist_ok=True)
        for compose_path in self.compose.files():
            size = compose_path.stat().st_size
            if size >= MAX_COMPOSE_BYTES:
                notes.append(f"Skipped large file: {compose_path} ({size} bytes)")
                continue
            shutil.copy2(compose_path, target_dir / compose_path.name)
            report.written.append(f"compose_configs/{compose_path.name}")
            notes.append(str(compose_path))
        self._write(report, "compose_files.txt", "\n".join(notes) + "\n")

    def _networks(self, report):
        names = [n for n in self.runtime.list_networks() if self.settings.network_name in n]
        sections = []
        for name in names:
            sections.append(f"--- Network: {name} ---\n{self.runtime.inspect_network(name)}")
        self._write(report, "networks.txt", "\n".join(sections) or "No deployment networks found\n")

    def _environment(self, report):
        env_path = Path(self.settings.compose_dir) / ".env"
        if not env_path.is_file():
            self._write(report, "env_sanitized.txt", f"No .env file at {env_path}\n")
            return
        clean = sanitize_env(dotenv_values(env_path))
        lines = [f"{k}={v if v is not None else ''}" for k, v in sorted(clean.items())]
        self._write(report, "env_sanitized.txt", "\n".join(lines) + "\n")

    def _summary(self, report):
        running = {
            row.name for row in self.runtime.list_containers(
                prefix=self.settings.container_prefix, running_only=True)
        }
        groups = {}
        known = set()
        for group, members in self.registry.groups.items():
            names = [self.registry.container_name(s) for s in members]
            known.update(names)
            groups[group] = [n for n in names if n in running]
        summary = {
            "captured_at": datetime.now().isoformat(timespec="seconds"),
            "compose_dir": self.settings.compose_dir,
            "storage_mount": self.settings.storage_mount,
            "network": self.settings.network_name,
            "running_containers": len(running),
            "groups": groups,
            "unregistered": sorted(running - known),
        }
        self._write(report, "architecture-summary.yml", yaml.safe_dump(summary, sort_keys=False))

    # --- Entry point ---
    def capture(self, output_dir=None):
        base = Path(output_dir or self.settings.discovery_dir)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        report = CaptureReport(base / f"capture_{stamp}")
        report.path.mkdir(parents=True, exist_ok=True)
        log.info("Capturing architecture into %s", report.path)

        self._step(report, "containers", self._containers)
        self._step(report, "container-details", self._container_details)
        self._step(report, "compose-files", self._compose_files)
        self._step(report, "networks", self._networks)
        self._step(report, "environment", self._environment)
        self._step(report, "summary", self._summary)
        return report
