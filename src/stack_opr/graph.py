"""Graph module for stack-based orchestration.

Builds a dependency graph from Stack.resources (explicit depends_on plus
implicit references) and orders it into waves with Kahn's algorithm:
- waves(): dependencies before dependents (create/update)
- destroy_waves(): dependents before dependencies (delete)

Nodes inside a wave have no edges between them and may run concurrently.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from errors import CycleError, UnresolvedReferenceError
from stack import ResourceDecl, Stack

logger = logging.getLogger(__name__)


@dataclass
class ResourceNode:
    """A node in the resource graph with dependency edges.

    Attributes:
        decl: The underlying ResourceDecl
        index: Declaration order (tie-break within a wave)
        dependencies: Addresses that must be applied first
        dependents: Addresses that must be applied after
        depth: Wave index once ordered (0 for nodes without dependencies)
    """
    decl: ResourceDecl
    index: int
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    depth: int = 0

    @property
    def address(self) -> str:
        return self.decl.address

    @property
    def type(self) -> str:
        return self.decl.type

    def __repr__(self) -> str:
        return f"ResourceNode({self.address}, depth={self.depth})"


def kahn_waves(order: list[str], edges: dict[str, list[str]]) -> list[list[str]]:
    """Group nodes into waves with Kahn's algorithm.

    Args:
        order: All node keys in declaration order
        edges: key -> keys that must come before it

    Returns:
        Waves of keys; each wave keeps declaration order

    Raises:
        CycleError: If some nodes never reach in-degree zero
    """
    position = {key: i for i, key in enumerate(order)}
    in_degree = {key: len(edges.get(key, [])) for key in order}
    after: dict[str, list[str]] = {key: [] for key in order}
    for key in order:
        for dep in edges.get(key, []):
            after[dep].append(key)

    waves: list[list[str]] = []
    ready = [key for key in order if in_degree[key] == 0]
    while ready:
        wave = sorted(ready, key=position.__getitem__)
        waves.append(wave)
        ready = []
        for key in wave:
            for nxt in after[key]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    ready.append(nxt)

    remaining = [key for key in order if in_degree[key] > 0]
    if remaining:
        raise CycleError(remaining)
    return waves


class ResourceGraph:
    """Dependency graph built from a Stack's resources.

    Construction validates the graph (unresolved references, cycles) and
    computes waves once; the graph is immutable afterwards.
    """

    def __init__(self, stack: Stack):
        """Build the resource graph.

        Args:
            stack: Stack whose resources form the graph

        Raises:
            UnresolvedReferenceError: If a reference or depends_on names an undeclared resource
            CycleError: If the dependency edges form a cycle
        """
        self.stack = stack
        self._nodes: dict[str, ResourceNode] = {}
        self._build_graph(stack.resources)
        self._waves = kahn_waves(list(self._nodes), self._edges())
        for depth, wave in enumerate(self._waves):
            for address in wave:
                self._nodes[address].depth = depth
        logger.debug(f"Built graph for stack '{stack.name}': "
                     f"{len(self._nodes)} resources in {len(self._waves)} waves")

    def _build_graph(self, resources: list[ResourceDecl]) -> None:
        """Create nodes, then wire dependency/dependent edges."""
        for i, decl in enumerate(resources):
            self._nodes[decl.address] = ResourceNode(decl=decl, index=i)

        for decl in resources:
            node = self._nodes[decl.address]
            for dep in decl.dependencies:
                if dep == decl.address:
                    raise CycleError([decl.address])
                if dep not in self._nodes:
                    raise UnresolvedReferenceError(decl.address, dep)
                node.dependencies.append(dep)
                self._nodes[dep].dependents.append(decl.address)

    def _edges(self) -> dict[str, list[str]]:
        return {address: list(node.dependencies) for address, node in self._nodes.items()}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    def get_node(self, address: str) -> ResourceNode:
        """Get a ResourceNode by address.

        Raises:
            KeyError: If address not found
        """
        return self._nodes[address]

    def waves(self) -> list[list[ResourceNode]]:
        """Return nodes grouped into creation waves (dependencies first)."""
        return [[self._nodes[a] for a in wave] for wave in self._waves]

    def destroy_waves(self) -> list[list[ResourceNode]]:
        """Return nodes grouped into destruction waves (dependents first)."""
        reverse = {address: list(node.dependents) for address, node in self._nodes.items()}
        return [[self._nodes[a] for a in wave]
                for wave in kahn_waves(list(self._nodes), reverse)]

    def create_order(self) -> list[ResourceNode]:
        """Flatten waves() into a single ordered list."""
        return [node for wave in self.waves() for node in wave]

    def destroy_order(self) -> list[ResourceNode]:
        """Flatten destroy_waves() into a single ordered list."""
        return [node for wave in self.destroy_waves() for node in wave]


def reverse_waves(addresses: Iterable[str], dependencies: dict[str, list[str]],
                  order: Optional[list[str]] = None) -> list[list[str]]:
    """Order addresses for deletion: dependents before their dependencies.

    Only edges between members of ``addresses`` count; dependencies outside
    the set are ignored.

    Args:
        addresses: Resources to order
        dependencies: address -> addresses it depends on
        order: Optional tie-break order (defaults to the order of addresses)
    """
    members = list(addresses)
    if order is not None:
        rank = {a: i for i, a in enumerate(order)}
        members.sort(key=lambda a: rank.get(a, len(rank)))
    member_set = set(members)
    # a depends on b => a must be deleted before b => b waits on a
    waits_on: dict[str, list[str]] = {a: [] for a in members}
    for a in members:
        for b in dependencies.get(a, []):
            if b in member_set and b != a:
                waits_on[b].append(a)
    return kahn_waves(members, waits_on)
