"""Dependency graph builder for module execution ordering."""

import heapq
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from infra_deploy.state.models import DependencyEdge, Module, ModuleId
from infra_deploy.utils.errors import (
    ConfigurationError,
    CrossEnvironmentDependencyError,
    CycleError,
    UnknownDependencyError,
)


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    module: Module
    index: int  # Declaration position, used to break ties
    dependencies: Set[ModuleId] = field(default_factory=set)  # Producers
    dependents: Set[ModuleId] = field(default_factory=set)  # Consumers
    edges: List[DependencyEdge] = field(default_factory=list)  # Incoming edges


class DependencyGraph:
    """Directed acyclic graph of module dependencies.

    Build it with ``DependencyGraph.build``; a graph that exists is always
    valid, so ordering queries never fail.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[ModuleId, DependencyNode] = {}
        self._order: List[ModuleId] = []

    @classmethod
    def build(
        cls,
        modules: Iterable[Module],
        edges: Optional[Iterable[DependencyEdge]] = None
    ) -> "DependencyGraph":
        """Build and validate a graph.

        Args:
            modules: Modules in declaration order
            edges: Dependency edges (defaults to those declared on the modules)

        Returns:
            Validated dependency graph

        Raises:
            CycleError: If the dependencies form a cycle (including self-edges)
            CrossEnvironmentDependencyError: If an edge crosses environments
            UnknownDependencyError: If an edge names an undeclared producer
        """
        graph = cls()
        modules = list(modules)
        for index, module in enumerate(modules):
            if module.id in graph.nodes:
                raise ConfigurationError(f"Module '{module.id}' is declared more than once")
            graph.nodes[module.id] = DependencyNode(module=module, index=index)

        if edges is None:
            edges = [edge for module in modules for edge in module.edges()]

        for edge in edges:
            graph._add_edge(edge)

        graph._order = graph._topological_sort()
        return graph

    def _add_edge(self, edge: DependencyEdge) -> None:
        consumer, producer = edge.consumer, edge.producer
        if consumer not in self.nodes:
            raise ConfigurationError(f"Dependency edge names undeclared consumer '{consumer}'")
        if consumer == producer:
            raise CycleError([str(consumer), str(consumer)])
        if consumer.environment != producer.environment:
            raise CrossEnvironmentDependencyError(str(consumer), str(producer))
        if producer not in self.nodes:
            raise UnknownDependencyError(str(consumer), str(producer))

        self.nodes[consumer].dependencies.add(producer)
        self.nodes[consumer].edges.append(edge)
        self.nodes[producer].dependents.add(consumer)

    def _topological_sort(self) -> List[ModuleId]:
        # Kahn's algorithm; the ready set is a heap on declaration index
        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        ready = [(node.index, node_id) for node_id, node in self.nodes.items() if not node.dependencies]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node_id = heapq.heappop(ready)
            result.append(node_id)
            for dependent_id in self.nodes[node_id].dependents:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(ready, (self.nodes[dependent_id].index, dependent_id))

        if len(result) != len(self.nodes):
            remaining = set(self.nodes) - set(result)
            raise CycleError(self._find_cycle(remaining))

        return result

    def _find_cycle(self, candidates: Set[ModuleId]) -> List[str]:
        """Find one cycle among nodes left over by the topological sort."""
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {node_id: 0 for node_id in candidates}
        stack: List[ModuleId] = []

        def dfs(node_id: ModuleId) -> Optional[List[ModuleId]]:
            color[node_id] = 1
            stack.append(node_id)
            producers = sorted(
                (p for p in self.nodes[node_id].dependencies if p in candidates),
                key=lambda p: self.nodes[p].index
            )
            for producer in producers:
                if color[producer] == 1:
                    # Consumer -> producer path back to the first repeated node
                    return stack[stack.index(producer):] + [producer]
                if color[producer] == 0:
                    found = dfs(producer)
                    if found:
                        return found
            stack.pop()
            color[node_id] = 2
            return None

        for node_id in sorted(candidates, key=lambda n: self.nodes[n].index):
            if color[node_id] == 0:
                cycle = dfs(node_id)
                if cycle:
                    return [str(n) for n in cycle]
        return [str(n) for n in candidates]

    @property
    def modules(self) -> List[Module]:
        """Modules in declaration order."""
        return [node.module for node in sorted(self.nodes.values(), key=lambda n: n.index)]

    def order(self) -> List[Module]:
        """Modules in execution order (producers before consumers).

        Returns:
            Modules sorted topologically, ties broken by declaration order
        """
        return [self.nodes[node_id].module for node_id in self._order]

    def destruction_order(self) -> List[Module]:
        """Modules in destruction order (consumers before producers)."""
        return list(reversed(self.order()))

    def waves(self) -> List[List[Module]]:
        """Group modules into levels that can run in parallel.

        Returns:
            List of waves; modules in a wave never depend on each other
        """
        level: Dict[ModuleId, int] = {}
        for node_id in self._order:
            producers = self.nodes[node_id].dependencies
            level[node_id] = max((level[p] + 1 for p in producers), default=0)

        waves: Dict[int, List[Module]] = defaultdict(list)
        for node_id in self._order:
            waves[level[node_id]].append(self.nodes[node_id].module)
        return [waves[i] for i in sorted(waves)]

    def get_module(self, module_id: ModuleId) -> Optional[Module]:
        node = self.nodes.get(module_id)
        return node.module if node else None

    def index_of(self, module_id: ModuleId) -> int:
        return self.nodes[module_id].index

    def edges_of(self, module_id: ModuleId) -> List[DependencyEdge]:
        """Incoming edges of a module, in declaration order."""
        if module_id not in self.nodes:
            return []
        return list(self.nodes[module_id].edges)

    def get_dependencies(self, module_id: ModuleId) -> Set[ModuleId]:
        """Get direct producers of a module."""
        if module_id not in self.nodes:
            return set()
        return set(self.nodes[module_id].dependencies)

    def get_dependents(self, module_id: ModuleId) -> Set[ModuleId]:
        """Get direct consumers of a module."""
        if module_id not in self.nodes:
            return set()
        return set(self.nodes[module_id].dependents)

    def get_all_dependencies(self, module_id: ModuleId) -> Set[ModuleId]:
        """Get all transitive producers of a module."""
        return self._walk(module_id, lambda node: node.dependencies)

    def get_all_dependents(self, module_id: ModuleId) -> Set[ModuleId]:
        """Get all transitive consumers of a module."""
        return self._walk(module_id, lambda node: node.dependents)

    def _walk(self, start: ModuleId, neighbours) -> Set[ModuleId]:
        visited = set()
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current in visited or current not in self.nodes:
                continue
            visited.add(current)
            queue.extend(n for n in neighbours(self.nodes[current]) if n not in visited)
        visited.discard(start)
        return visited

    def subgraph(self, module_ids: Iterable[ModuleId]) -> "DependencyGraph":
        """Graph restricted to the given modules.

        Edges to producers outside the selection are dropped; the caller
        resolves those from recorded state.
        """
        selected = set(module_ids)
        unknown = selected - set(self.nodes)
        if unknown:
            raise ConfigurationError(
                f"Unknown modules: {', '.join(sorted(str(m) for m in unknown))}"
            )
        modules = [m for m in self.modules if m.id in selected]
        edges = [
            edge
            for module in modules
            for edge in self.nodes[module.id].edges
            if edge.producer in selected
        ]
        return DependencyGraph.build(modules, edges)

    def __contains__(self, module_id: ModuleId) -> bool:
        return module_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)
