"""Removal of a DocSpace deployment from the host."""

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .errors import RuntimeCommandError

log = logging.getLogger(__name__)


@dataclass
class Inventory:
    containers: list = field(default_factory=list)
    volumes: list = field(default_factory=list)
    networks: list = field(default_factory=list)
    install_dir: str = ""
    data_dir: str = ""

    @property
    def empty(self):
        return not (self.containers or self.volumes or self.networks
                    or self.install_dir or self.data_dir)


@dataclass
class StepResult:
    name: str
    succeeded: bool = True
    skipped: bool = False
    removed: list = field(default_factory=list)
    detail: str = ""


class Uninstaller:
    """Builds an inventory of what the deployment left behind and removes it.

    Each step runs independently; a failure in one step is reported and the
    next step is still attempted.
    """

    def __init__(self, runtime, settings):
        self.runtime = runtime
        self.settings = settings
        self.log = log

    # --- Inventory ---
    def inventory(self):
        found = Inventory()
        prefix = self.settings.container_prefix
        found.containers = [c.name for c in self.runtime.list_containers(prefix=prefix)]

        pattern = re.compile(self.settings.volume_pattern)
        found.volumes = [v for v in self.runtime.list_volumes() if pattern.search(v)]
        found.networks = [n for n in self.runtime.list_networks() if self.settings.network_name in n]

        if os.path.isdir(self.settings.compose_dir):
            found.install_dir = self.settings.compose_dir
        mount = Path(self.settings.storage_mount)
        if mount.is_dir() and any(mount.iterdir()):
            found.data_dir = str(mount)
        return found

    # --- Steps ---
    def _remove_containers(self, names, dry_run):
        step = StepResult("containers", removed=list(names))
        if not names:
            step.skipped = True
            return step
        if dry_run:
            step.detail = "would stop and remove"
            return step
        problems = []
        try:
            running = [c.name for c in self.runtime.list_containers(
                prefix=self.settings.container_prefix, running_only=True)]
        except RuntimeCommandError as e:
            self.log.warning("Could not list running containers: %s", e)
            running = []
        for name in running:
            self.log.info("Stopping %s...", name)
            try:
                self.runtime.stop(name, timeout=self.settings.stop_timeout)
            except RuntimeCommandError as e:
                # The forced remove below still takes the container down.
                self.log.warning("Could not stop %s: %s", name, e)
                problems.append(f"stop {name}: {e}")
        try:
            self.runtime.remove(*names, force=True)
        except RuntimeCommandError as e:
            step.succeeded = False
            problems.append(str(e))
        step.detail = "; ".join(problems)
        return step

    def _remove_volumes(self, names, dry_run):
        step = StepResult("volumes", removed=list(names))
        if not names:
            step.skipped = True
            return step
        if dry_run:
            step.detail = "would remove"
            return step
        failed = []
        for name in names:
            try:
                self.runtime.remove_volume(name)
            except RuntimeCommandError as e:
                self.log.warning("Could not remove volume %s: %s", name, e)
                failed.append(name)
        if failed:
            step.succeeded = False
            step.removed = [n for n in names if n not in failed]
            step.detail = "could not remove: " + ", ".join(failed)
        return step

    def _remove_networks(self, names, dry_run):
        step = StepResult("networks", removed=list(names))
        if not names:
            step.skipped = True
            return step
        if dry_run:
            step.detail = "would remove"
            return step
        try:
            self.runtime.remove_network(*names)
        except RuntimeCommandError as e:
            step.succeeded = False
            step.detail = str(e)
        return step

    def _remove_install_dir(self, path, dry_run):
        step = StepResult("install-dir", removed=[path] if path else [])
        if not path:
            step.skipped = True
            return step
        if dry_run:
            step.detail = "would delete"
            return step
        try:
            shutil.rmtree(path)
        except OSError as e:
            step.succeeded = False
            step.detail = str(e)
        return step

    def _clear_data_dir(self, path, keep_data, dry_run, keep_storage=False):
        step = StepResult("data", removed=[path] if path else [])
        if not path or keep_data:
            step.skipped = True
            step.removed = []
            step.detail = "kept (--keep-data)" if keep_data and path else ""
            return step
        if dry_run:
            step.detail = "would clear contents (mount point kept)"
            return step
        if keep_storage:
            step.skipped = True
            step.removed = []
            step.detail = "kept (--keep-storage)"
            self.log.info("Keeping storage directory structure at %s", path)
            return step
        # Only the contents go; the mount point itself stays.
        try:
            entries = list(Path(path).iterdir())
        except OSError as e:
            step.succeeded = False
            step.detail = str(e)
            return step
        failed = []
        for entry in entries:
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as e:
                self.log.warning("Could not remove %s: %s", entry, e)
                failed.append(entry.name)
        if failed:
            step.succeeded = False
            step.detail = "could not remove: " + ", ".join(failed)
        return step

    def run(self, inventory=None, dry_run=False, keep_data=False, keep_storage=False):
        inventory = inventory or self.inventory()
        return [
            self._remove_containers(inventory.containers, dry_run),
            self._remove_volumes(inventory.volumes, dry_run),
            self._remove_networks(inventory.networks, dry_run),
            self._remove_install_dir(inventory.install_dir, dry_run),
            self._clear_data_dir(inventory.data_dir, keep_data, dry_run, keep_storage),
        ]
