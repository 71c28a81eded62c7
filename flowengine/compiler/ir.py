"""Internal representation of a workflow graph — output of parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

LOOP_SPEC_ID = "loop"
LOOP_END_SPEC_ID = "loop-end"


# ── Nodes & edges ───────────────────────────────────────────────


@dataclass(frozen=True)
class Node:
    id: str
    spec_id: str
    config: Mapping[str, Any] = field(default_factory=dict)
    title: str | None = None
    index: int = 0  # declaration order

    def __post_init__(self) -> None:
        if not isinstance(self.config, MappingProxyType):
            object.__setattr__(self, "config", MappingProxyType(dict(self.config)))

    def cfg(self, key: str, default: Any = None) -> Any:
        value = self.config.get(key)
        return default if value is None else value


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    id: str | None = None
    index: int = 0  # declaration order

    @property
    def label(self) -> str:
        return self.id or f"{self.source}->{self.target}"


# ── Loop scopes ─────────────────────────────────────────────────


@dataclass(frozen=True)
class LoopScope:
    """A loop node, its paired loop-end node and the nodes re-run per element.

    ``body`` contains every node on a path loop → … → loop-end, including the
    loop-end itself but not the loop node.  Without a loop-end the body is
    empty and each element is its own iteration result.
    """

    loop_id: str
    end_id: str | None
    body: frozenset[str] = frozenset()

    @property
    def inner(self) -> frozenset[str]:
        """Body nodes hidden from the enclosing scheduler (all but loop-end)."""
        if self.end_id is None:
            return self.body
        return self.body - {self.end_id}


# ── Graph ───────────────────────────────────────────────────────


class Graph:
    """Nodes and edges plus precomputed adjacency (edges in declaration order)."""

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]):
        self.nodes: dict[str, Node] = {}
        self.duplicate_ids: list[str] = []
        for node in nodes:
            if node.id in self.nodes:
                self.duplicate_ids.append(node.id)
                continue
            self.nodes[node.id] = node
        self.edges: list[Edge] = sorted(edges, key=lambda e: e.index)
        self._incoming: dict[str, list[Edge]] = {nid: [] for nid in self.nodes}
        self._outgoing: dict[str, list[Edge]] = {nid: [] for nid in self.nodes}
        for edge in self.edges:
            if edge.target in self._incoming:
                self._incoming[edge.target].append(edge)
            if edge.source in self._outgoing:
                self._outgoing[edge.source].append(edge)
        self.loop_scopes: dict[str, LoopScope] = {}

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def node(self, node_id: str) -> Node:
        return self.nodes[node_id]

    def incoming(self, node_id: str) -> list[Edge]:
        return self._incoming.get(node_id, [])

    def outgoing(self, node_id: str) -> list[Edge]:
        return self._outgoing.get(node_id, [])

    def nodes_of(self, spec_id: str) -> list[Node]:
        return [n for n in self.nodes.values() if n.spec_id == spec_id]

    def dangling_edges(self) -> list[Edge]:
        return [e for e in self.edges if e.source not in self.nodes or e.target not in self.nodes]

    # ── Traversal ───────────────────────────────────────────────

    def descendants(self, node_id: str) -> set[str]:
        seen: set[str] = set()
        stack = [e.target for e in self.outgoing(node_id)]
        while stack:
            current = stack.pop()
            if current in seen or current not in self.nodes:
                continue
            seen.add(current)
            stack.extend(e.target for e in self.outgoing(current))
        return seen

    def ancestors(self, node_id: str) -> set[str]:
        seen: set[str] = set()
        stack = [e.source for e in self.incoming(node_id)]
        while stack:
            current = stack.pop()
            if current in seen or current not in self.nodes:
                continue
            seen.add(current)
            stack.extend(e.source for e in self.incoming(current))
        return seen

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a node-id path, or None when the graph is acyclic."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {nid: WHITE for nid in self.nodes}
        parent: dict[str, str] = {}

        for root in self.nodes:
            if color[root] != WHITE:
                continue
            stack: list[tuple[str, int]] = [(root, 0)]
            color[root] = GREY
            while stack:
                current, idx = stack[-1]
                out = self.outgoing(current)
                if idx < len(out):
                    stack[-1] = (current, idx + 1)
                    nxt = out[idx].target
                    if nxt not in color:
                        continue
                    if color[nxt] == GREY:
                        path = [nxt, current]
                        walker = current
                        while walker != nxt and walker in parent:
                            walker = parent[walker]
                            path.append(walker)
                        path.reverse()
                        return path
                    if color[nxt] == WHITE:
                        parent[nxt] = current
                        color[nxt] = GREY
                        stack.append((nxt, 0))
                else:
                    color[current] = BLACK
                    stack.pop()
        return None

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties broken by node declaration order."""
        indegree = {nid: 0 for nid in self.nodes}
        for edge in self.edges:
            if edge.source in self.nodes and edge.target in self.nodes:
                indegree[edge.target] += 1
        ready = [nid for nid in self.nodes if indegree[nid] == 0]
        order: list[str] = []
        while ready:
            ready.sort(key=lambda nid: self.nodes[nid].index)
            current = ready.pop(0)
            order.append(current)
            for edge in self.outgoing(current):
                if edge.target in indegree:
                    indegree[edge.target] -= 1
                    if indegree[edge.target] == 0:
                        ready.append(edge.target)
        return order

    def depth(self) -> int:
        """Length of the longest path, counted in nodes."""
        longest: dict[str, int] = {}
        for nid in self.topological_order():
            preds = [longest[e.source] for e in self.incoming(nid) if e.source in longest]
            longest[nid] = 1 + max(preds, default=0)
        return max(longest.values(), default=0)

    # ── Loop scopes ─────────────────────────────────────────────

    def owning_loop(self, node_id: str) -> str | None:
        """Innermost loop whose body contains *node_id*."""
        owner: str | None = None
        size = None
        for scope in self.loop_scopes.values():
            if node_id in scope.body and (size is None or len(scope.body) < size):
                owner, size = scope.loop_id, len(scope.body)
        return owner

    def loop_for_end(self, end_id: str) -> str | None:
        for scope in self.loop_scopes.values():
            if scope.end_id == end_id:
                return scope.loop_id
        return None

    def loop_depth(self, loop_id: str) -> int:
        """Nesting level of *loop_id*; 1 for a top-level loop."""
        level = 1
        current = loop_id
        while True:
            parent = self.owning_loop(current)
            if parent is None:
                return level
            level += 1
            current = parent

    def hidden_by(self, members: Iterable[str]) -> set[str]:
        """Nodes owned by loops among *members* (re-run per element, not scheduled here)."""
        member_set = set(members)
        hidden: set[str] = set()
        for scope in self.loop_scopes.values():
            if scope.loop_id in member_set:
                hidden |= scope.inner
        return hidden
