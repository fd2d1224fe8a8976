"""Tests for the service topology registry."""

import itertools
import random

import pytest

from docspace_ops.errors import TopologyError, UnknownServiceError
from docspace_ops.topology import ALL, Service, TopologyRegistry, default_registry


def names(services):
    return [s.name for s in services]


def random_dag(seed, size=12):
    """Acyclic graph: every edge points at an earlier-declared service."""
    rng = random.Random(seed)
    declared = [f"svc{i}" for i in range(size)]
    rng.shuffle(declared)
    services = []
    for i, name in enumerate(declared):
        deps = tuple(rng.sample(declared[:i], k=rng.randint(0, min(i, 3))))
        services.append(Service(name, "g", depends_on=deps))
    # Declaration order independent of edge direction.
    rng.shuffle(services)
    return TopologyRegistry(services, {"g": tuple(s.name for s in services)})


class TestResolve:
    """Selection grammar."""

    def test_group_members_in_canonical_order(self, registry):
        """A group resolves to its members in declared order."""
        assert names(registry.resolve("infrastructure")) == [
            "mysql-server", "document-server", "proxy", "router",
        ]

    def test_group_resolution_is_deterministic(self, registry):
        """Resolving a group twice yields the same members in the same order."""
        for group in registry.groups:
            assert registry.resolve(group) == registry.resolve(group)

    def test_all_and_none_select_every_service(self, registry):
        """'all' and no argument both select every service."""
        assert registry.resolve(None) == registry.services
        assert registry.resolve(ALL) == registry.services
        assert len(registry.services) == 19

    def test_service_name_resolves_to_singleton(self, registry):
        """An exact service name selects that service alone."""
        assert names(registry.resolve("studio")) == ["studio"]

    def test_container_name_resolves_to_service(self, registry):
        """The full container name is accepted too."""
        assert names(registry.resolve("onlyoffice-proxy")) == ["proxy"]

    def test_group_wins_over_same_named_service(self, registry):
        """'api' is a group; the api service is reachable by container name."""
        assert names(registry.resolve("api")) == ["api", "api-system", "sdk"]
        assert names(registry.resolve("onlyoffice-api")) == ["api"]

    def test_unknown_token_is_named_in_error(self, registry):
        """Unknown input raises and names the offending token."""
        with pytest.raises(UnknownServiceError) as exc:
            registry.resolve("nginx")
        assert exc.value.token == "nginx"
        assert "nginx" in str(exc.value)
        assert "infrastructure" in exc.value.valid

    def test_find_by_container(self, registry):
        """Container names map back to services."""
        assert registry.find_by_container("onlyoffice-router").name == "router"
        assert registry.find_by_container("other-router") is None


class TestDependencyOrder:
    """Topological ordering."""

    def test_infrastructure_order(self, registry):
        """Database and document server first, then proxy, then router."""
        order = names(registry.dependency_order(registry.resolve("infrastructure")))
        assert set(order[:2]) == {"mysql-server", "document-server"}
        assert order[2:] == ["proxy", "router"]

    def test_infrastructure_reverse_order(self, registry):
        """Router stops first, then proxy, then the leaves."""
        order = names(registry.reverse_dependency_order(registry.resolve("infrastructure")))
        assert order[:2] == ["router", "proxy"]
        assert set(order[2:]) == {"mysql-server", "document-server"}

    def test_full_order_puts_router_before_apps(self, registry):
        """Every application service comes after the router."""
        order = names(registry.dependency_order(registry.services))
        router = order.index("router")
        for group in ("api", "frontend", "backend"):
            for svc in registry.resolve(group):
                assert order.index(svc.name) > router

    def test_order_is_deterministic(self, registry):
        """Repeated calls give the same sequence."""
        first = registry.dependency_order(registry.services)
        assert all(registry.dependency_order(registry.services) == first for _ in range(5))

    def test_subset_respects_transitive_dependencies(self, registry):
        """Filtering keeps mysql-server ahead of router even without proxy."""
        subset = [registry.get("router"), registry.get("mysql-server")]
        assert names(registry.dependency_order(subset)) == ["mysql-server", "router"]

    @pytest.mark.parametrize("seed", range(20))
    def test_random_graphs_order_and_reverse(self, seed):
        """Dependencies precede dependents and reverse is the exact inverse."""
        reg = random_dag(seed)
        order = reg.dependency_order(reg.services)
        position = {svc.name: i for i, svc in enumerate(order)}
        for svc in reg.services:
            for dep in svc.depends_on:
                assert position[dep] < position[svc.name]
        assert reg.reverse_dependency_order(reg.services) == list(reversed(order))

    def test_ties_broken_by_declaration_order(self):
        """Independent services keep declaration order."""
        reg = TopologyRegistry(
            [Service("c", "g"), Service("a", "g"), Service("b", "g", depends_on=("c",))],
            {"g": ("a", "b", "c")},
        )
        assert names(reg.dependency_order(reg.services)) == ["c", "a", "b"]


class TestConstruction:
    """Registry validation."""

    def test_cycle_rejected(self):
        """A dependency cycle raises TopologyError."""
        services = [Service("a", "g", depends_on=("b",)), Service("b", "g", depends_on=("a",))]
        with pytest.raises(TopologyError, match="cycle"):
            TopologyRegistry(services, {})

    def test_dangling_dependency_rejected(self):
        """Depending on an undeclared service raises TopologyError."""
        with pytest.raises(TopologyError, match="unknown service"):
            TopologyRegistry([Service("a", "g", depends_on=("ghost",))], {})

    def test_group_with_unknown_member_rejected(self):
        """Groups may only list declared services."""
        with pytest.raises(TopologyError):
            TopologyRegistry([Service("a", "g")], {"g": ("a", "b")})

    def test_all_is_reserved(self):
        """A group cannot be called 'all'."""
        with pytest.raises(TopologyError):
            TopologyRegistry([Service("a", "g")], {ALL: ("a",)})

    def test_container_prefix_applies(self):
        """Container names use the configured prefix."""
        reg = default_registry(container_prefix="ds-")
        assert reg.container_name(reg.get("proxy")) == "ds-proxy"

    def test_groups_partition_services(self, registry):
        """Every service belongs to exactly one group."""
        members = list(itertools.chain.from_iterable(registry.groups.values()))
        assert sorted(names(members)) == sorted(names(registry.services))
