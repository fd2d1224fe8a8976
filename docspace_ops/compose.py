"""Read-only view over the deployment's docker-compose files."""

import logging
from pathlib import Path

import yaml

log = logging.getLogger(__name__)

COMPOSE_SUFFIXES = (".yml", ".yaml")


class ComposeProject:
    def __init__(self, compose_dir):
        self.compose_dir = Path(compose_dir)
        self._configs = {}

    def exists(self):
        return self.compose_dir.is_dir()

    def files(self):
        if not self.exists():
            return []
        return sorted(
            p for p in self.compose_dir.iterdir()
            if p.is_file() and p.suffix in COMPOSE_SUFFIXES
        )

    def path(self, file_name):
        return self.compose_dir / file_name

    def load(self, file_name):
        """Parse one compose file; returns None if it is missing or invalid."""
        if file_name in self._configs:
            return self._configs[file_name]
        compose_path = self.path(file_name)
        config = None
        if not compose_path.is_file():
            log.debug("Compose file '%s' not found.", compose_path)
        else:
            try:
                with open(compose_path, "r", encoding="utf-8") as f:
                    config = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                log.warning("Failed to load compose file %s: %s", compose_path, e)
        self._configs[file_name] = config if isinstance(config, dict) else None
        return self._configs[file_name]

    def service_names(self, file_name):
        config = self.load(file_name) or {}
        services = config.get("services")
        return list(services.keys()) if isinstance(services, dict) else []

    def locate(self, compose_service):
        """Name of the compose file that defines the service, if any."""
        for compose_path in self.files():
            if compose_service in self.service_names(compose_path.name):
                return compose_path.name
        return None

    def host_port(self, file_name, compose_service, container_port):
        """Host port published for a container port, from the compose file."""
        config = self.load(file_name)
        if not config:
            return None
        services = config.get("services")
        service = services.get(compose_service) if isinstance(services, dict) else None
        # `ports:` with no entries loads as None
        ports = service.get("ports") if isinstance(service, dict) else None
        for p in ports or []:
            if isinstance(p, dict):
                if str(p.get("target")) == str(container_port) and p.get("published"):
                    return str(p["published"])
                continue
            parts = str(p).split("/")[0].split(":")
            if len(parts) >= 2 and parts[-1] == str(container_port):
                return parts[-2]
        return None
