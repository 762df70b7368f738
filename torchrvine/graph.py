"""Weighted undirected graphs over variable index sets and Prim's maximum spanning tree."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import torch


@dataclass(frozen=True)
class Node:
    id: int
    indices: tuple[int, ...] = field(default=())

    def __post_init__(self):
        object.__setattr__(self, "id", int(self.id))
        object.__setattr__(self, "indices", tuple(int(i) for i in self.indices))


@dataclass(frozen=True)
class Edge:
    a: Node
    b: Node
    weight: float
    conditioned: tuple[int, ...]
    conditioning: tuple[int, ...]

    @classmethod
    def between(cls, a: Node, b: Node, weight: float) -> "Edge":
        sa = set(a.indices)
        sb = set(b.indices)
        return cls(
            a=a,
            b=b,
            weight=float(weight),
            conditioned=tuple(sorted(sa ^ sb)),
            conditioning=tuple(sorted(sa & sb)),
        )

    def other(self, node: Node) -> Node:
        if node == self.a:
            return self.b
        if node == self.b:
            return self.a
        raise ValueError(f"node {node.id} is not an endpoint of this edge")

    def touches(self, node: Node) -> bool:
        return node == self.a or node == self.b

    def shared_node(self, other: "Edge") -> Node | None:
        for n in (self.a, self.b):
            if other.touches(n):
                return n
        return None


class Graph:
    """Undirected graph; every edge is registered under both endpoints in insertion order."""

    def __init__(self, nodes: Iterable[Node] = ()):
        self._nodes: list[Node] = []
        self._adj: dict[Node, list[Edge]] = {}
        self._edges: list[Edge] = []
        for n in nodes:
            self.add_node(n)

    def add_node(self, node: Node) -> Node:
        if node not in self._adj:
            self._nodes.append(node)
            self._adj[node] = []
        return node

    def add_edge(self, a: Node, b: Node, weight: float) -> Edge:
        return self._insert(Edge.between(a, b, weight))

    def _insert(self, edge: Edge) -> Edge:
        if edge.a not in self._adj or edge.b not in self._adj:
            raise ValueError("both endpoints must be added before the edge")
        if edge.a == edge.b:
            raise ValueError("self loops are not allowed")
        self._adj[edge.a].append(edge)
        self._adj[edge.b].append(edge)
        self._edges.append(edge)
        return edge

    @property
    def nodes(self) -> tuple[Node, ...]:
        return tuple(self._nodes)

    def neighbors(self, node: Node) -> list[Edge]:
        return list(self._adj[node])

    def edges(self) -> list[Edge]:
        return list(self._edges)

    def num_nodes(self) -> int:
        return len(self._nodes)

    def num_edges(self) -> int:
        return len(self._edges)

    def is_empty(self) -> bool:
        return not self._nodes

    def is_connected(self) -> bool:
        if not self._nodes:
            return False
        seen = {self._nodes[0]}
        stack = [self._nodes[0]]
        while stack:
            node = stack.pop()
            for e in self._adj[node]:
                nxt = e.other(node)
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        return len(seen) == len(self._nodes)

    def __repr__(self) -> str:
        return f"Graph(num_nodes={self.num_nodes()}, num_edges={self.num_edges()})"


def max_spanning_tree(graph: Graph | None, generator: torch.Generator | None = None) -> Graph | None:
    """Maximum spanning tree by absolute edge weight (Prim).

    The start node is drawn with ``generator`` (seeded with 0 when omitted).
    Candidate edges are scanned over tree nodes in the order they joined the
    tree, then each node's adjacency list in insertion order; only a strictly
    larger |weight| replaces the current candidate. Returns ``None`` for a
    missing, empty or disconnected graph.
    """
    if graph is None or graph.is_empty() or not graph.is_connected():
        return None

    if generator is None:
        generator = torch.Generator()
        generator.manual_seed(0)
    nodes = graph.nodes
    start = nodes[int(torch.randint(len(nodes), (1,), generator=generator).item())]

    tree = Graph(nodes)
    in_tree = [start]
    seen = {start}
    while len(in_tree) < len(nodes):
        best = None
        best_w = -1.0
        for node in in_tree:
            for e in graph.neighbors(node):
                if e.other(node) in seen:
                    continue
                w = abs(e.weight)
                if best is None or w > best_w:
                    best = e
                    best_w = w
        # Connectedness guarantees a crossing edge.
        tree._insert(best)
        nxt = best.b if best.a in seen else best.a
        in_tree.append(nxt)
        seen.add(nxt)
    return tree
