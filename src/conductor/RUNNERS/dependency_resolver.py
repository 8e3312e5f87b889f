"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, Iterable, List, Optional, Set

from ..errors import CycleError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import DependencyCondition

WHITE, GREY, BLACK = 0, 1, 2


class DependencyGraph:
    """
    Directed graph of "must be ready before" relationships.

    An edge A -> B means A has to satisfy B's declared condition before B starts.
    Nodes keep their declaration order so every derived ordering is deterministic.
    """
    def __init__(self, nodes: Iterable[str], dependencies: Dict[str, Dict[str, DependencyCondition]]):
        self.nodes: List[str] = list(nodes)
        self.dependencies: Dict[str, Dict[str, DependencyCondition]] = {
            name: dict(dependencies.get(name, {})) for name in self.nodes
        }
        self.dependents: Dict[str, List[str]] = {name: [] for name in self.nodes}
        for name in self.nodes:
            for dep in self.dependencies[name]:
                self.dependents[dep].append(name)
        self._order: Optional[List[str]] = None

    def find_cycle(self) -> Optional[List[str]]:
        """
        Depth-first search with three-colour marking.

        :return: The cycle path (first node repeated at the end), or None.
        """
        color = {name: WHITE for name in self.nodes}
        path: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            color[name] = GREY
            path.append(name)
            for dep in self.dependencies[name]:
                if color[dep] == GREY:
                    return path[path.index(dep):] + [dep]
                if color[dep] == WHITE:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            path.pop()
            color[name] = BLACK
            return None

        for name in self.nodes:
            if color[name] == WHITE:
                cycle = visit(name)
                if cycle:
                    return cycle
        return None

    def startup_order(self) -> List[str]:
        """
        A topological order: every service appears after all of its dependencies.
        """
        if self._order is None:
            ordered: List[str] = []
            done: Set[str] = set()

            def visit(name: str):
                if name in done:
                    return
                done.add(name)
                for dep in self.dependencies[name]:
                    visit(dep)
                ordered.append(name)

            for name in self.nodes:
                visit(name)
            self._order = ordered
        return list(self._order)

    def teardown_order(self) -> List[str]:
        """
        The exact reverse of startup_order().
        """
        return list(reversed(self.startup_order()))

    def waves(self) -> List[List[str]]:
        """
        Groups services into layers; every member of a layer only depends on earlier layers.
        """
        depth: Dict[str, int] = {}
        for name in self.startup_order():
            deps = self.dependencies[name]
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)
        layers: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self.nodes:
            layers[depth[name]].append(name)
        return layers

    def transitive_dependents(self, name: str) -> Set[str]:
        """All services that directly or indirectly depend on name."""
        return self._walk(name, self.dependents)

    def transitive_dependencies(self, name: str) -> Set[str]:
        """All services name directly or indirectly depends on."""
        return self._walk(name, {n: list(d) for n, d in self.dependencies.items()})

    @staticmethod
    def _walk(start: str, edges: Dict[str, List[str]]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(edges[start])
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(edges[current])
        return seen

    def subgraph(self, names: Iterable[str], include_dependencies: bool = True) -> "DependencyGraph":
        """
        Restricts the graph to names, optionally pulling in everything they depend on.
        """
        selected = set(names)
        unknown = selected - set(self.nodes)
        if unknown:
            raise KeyError(f"no such service: {', '.join(sorted(unknown))}")
        if include_dependencies:
            for name in list(selected):
                selected |= self.transitive_dependencies(name)
        nodes = [n for n in self.nodes if n in selected]
        deps = {n: {d: c for d, c in self.dependencies[n].items() if d in selected} for n in nodes}
        return DependencyGraph(nodes, deps)


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def build(self, config: OrchestrationConfig) -> DependencyGraph:
        """
        Builds the dependency graph of a configuration.

        :param config: The orchestration configuration.
        :return: An acyclic DependencyGraph.
        :raises CycleError: If a circular dependency is detected.
        """
        dependencies = {
            name: {
                dep: d.condition or DependencyCondition.STARTED
                for dep, d in svc.depends_on.items() if dep in config.services
            }
            for name, svc in config.services.items()
        }
        graph = DependencyGraph(config.services.keys(), dependencies)
        cycle = graph.find_cycle()
        if cycle:
            raise CycleError(cycle)
        return graph

    def resolve_order(self, config: OrchestrationConfig) -> List[str]:
        """
        Determines the correct order to start services using topological sort.

        :param config: The orchestration configuration.
        :return: Service names in the order they should be started.
        :raises CycleError: If a circular dependency is detected.
        """
        return self.build(config).startup_order()
