"""Static service topology of a DocSpace deployment.

The registry is the single source of truth for service names, group
membership and dependency edges. It is built once and never mutated.
"""

import heapq
from dataclasses import dataclass
from typing import Optional

from .errors import TopologyError, UnknownServiceError

ALL = "all"

INFRASTRUCTURE = "infrastructure"
API = "api"
FRONTEND = "frontend"
BACKEND = "backend"

PROBE_HTTP = "http"
PROBE_MYSQL = "mysql"


@dataclass(frozen=True)
class Service:
    """A logical deployment unit mapped to one container."""

    name: str
    group: str
    depends_on: tuple = ()
    compose_file: str = "docspace.yml"
    ssl_compose_file: Optional[str] = None
    probe: Optional[str] = None
    description: str = ""


class TopologyRegistry:
    def __init__(self, services, groups, container_prefix="onlyoffice-"):
        self.container_prefix = container_prefix
        self._services = {}
        self._index = {}
        for svc in services:
            if svc.name in self._services:
                raise TopologyError(f"Duplicate service '{svc.name}'")
            self._index[svc.name] = len(self._index)
            self._services[svc.name] = svc

        self._groups = {}
        for group_name, members in groups.items():
            # A group may share a service's name ("api"); the group wins and the
            # service stays reachable through its container name.
            if group_name == ALL:
                raise TopologyError(f"'{ALL}' is reserved")
            for member in members:
                if member not in self._services:
                    raise TopologyError(f"Group '{group_name}' references unknown service '{member}'")
            self._groups[group_name] = tuple(self._services[m] for m in members)

        self._validate_edges()
        self._order = self._topological_sort()

    # --- Construction checks ---
    def _validate_edges(self):
        for svc in self._services.values():
            for dep in svc.depends_on:
                if dep not in self._services:
                    raise TopologyError(f"'{svc.name}' depends on unknown service '{dep}'")
                if dep == svc.name:
                    raise TopologyError(f"'{svc.name}' depends on itself")

    def _topological_sort(self):
        """Kahn's algorithm, smallest declaration index first among ready nodes."""
        indegree = {name: len(svc.depends_on) for name, svc in self._services.items()}
        dependents = {name: [] for name in self._services}
        for svc in self._services.values():
            for dep in svc.depends_on:
                dependents[dep].append(svc.name)

        ready = [(self._index[name], name) for name, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            _, name = heapq.heappop(ready)
            order.append(name)
            for child in dependents[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, (self._index[child], child))

        if len(order) != len(self._services):
            stuck = sorted(n for n, deg in indegree.items() if deg > 0)
            raise TopologyError(f"Dependency cycle involving: {', '.join(stuck)}")
        return order

    # --- Lookups ---
    @property
    def services(self):
        return tuple(self._services.values())

    @property
    def groups(self):
        return dict(self._groups)

    def container_name(self, service):
        name = service.name if isinstance(service, Service) else service
        return f"{self.container_prefix}{name}"

    def get(self, name):
        try:
            return self._services[name]
        except KeyError:
            raise UnknownServiceError(name, self.valid_selections()) from None

    def find_by_container(self, container_name):
        if container_name.startswith(self.container_prefix):
            return self._services.get(container_name[len(self.container_prefix):])
        return None

    def valid_selections(self):
        names = [ALL, *self._groups]
        names.extend(n for n in self._services if n not in self._groups)
        return names

    def resolve(self, name_or_group=None):
        """Resolve a group, a service (or its container name) or 'all'."""
        if name_or_group is None or name_or_group == ALL:
            return self.services
        if name_or_group in self._groups:
            return self._groups[name_or_group]
        if name_or_group in self._services:
            return (self._services[name_or_group],)
        svc = self.find_by_container(name_or_group)
        if svc is not None:
            return (svc,)
        raise UnknownServiceError(name_or_group, self.valid_selections())

    # --- Ordering ---
    def dependency_order(self, services):
        """Order services so that dependencies come first."""
        wanted = set()
        for svc in services:
            self.get(svc.name)
            wanted.add(svc.name)
        return [self._services[name] for name in self._order if name in wanted]

    def reverse_dependency_order(self, services):
        return list(reversed(self.dependency_order(services)))

    def dependencies_of(self, name):
        return tuple(self._services[dep] for dep in self.get(name).depends_on)


def _app(name, group, description):
    return Service(name, group, depends_on=("router",), description=description)


DEFAULT_SERVICES = (
    Service("mysql-server", INFRASTRUCTURE, compose_file="db.yml",
            probe=PROBE_MYSQL, description="MySQL database"),
    Service("document-server", INFRASTRUCTURE, compose_file="ds.yml",
            description="Document conversion and editing server"),
    Service("proxy", INFRASTRUCTURE, depends_on=("mysql-server", "document-server"),
            compose_file="proxy.yml", ssl_compose_file="proxy-ssl.yml",
            probe=PROBE_HTTP, description="Public web proxy"),
    Service("router", INFRASTRUCTURE, depends_on=("proxy",),
            description="Internal request router"),
    _app("api", API, "Public REST API"),
    _app("api-system", API, "System API"),
    _app("sdk", API, "SDK service"),
    _app("studio", FRONTEND, "Studio web interface"),
    _app("login", FRONTEND, "Login frontend"),
    _app("files", FRONTEND, "File management"),
    _app("files-services", FRONTEND, "File background services"),
    _app("doceditor", FRONTEND, "Document editor frontend"),
    _app("socket", FRONTEND, "Websocket gateway"),
    _app("studio-notify", FRONTEND, "Notification service"),
    _app("people-server", BACKEND, "People and user directory"),
    _app("backup", BACKEND, "Backup service"),
    _app("backup-background-tasks", BACKEND, "Backup background worker"),
    _app("ssoauth", BACKEND, "SSO authentication"),
    _app("clear-events", BACKEND, "Event cleanup worker"),
)

DEFAULT_GROUPS = {
    INFRASTRUCTURE: ("mysql-server", "document-server", "proxy", "router"),
    API: ("api", "api-system", "sdk"),
    FRONTEND: ("studio", "login", "files", "files-services", "doceditor", "socket", "studio-notify"),
    BACKEND: ("people-server", "backup", "backup-background-tasks", "ssoauth", "clear-events"),
}


def default_registry(container_prefix="onlyoffice-"):
    return TopologyRegistry(DEFAULT_SERVICES, DEFAULT_GROUPS, container_prefix=container_prefix)
