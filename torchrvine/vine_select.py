"""Tree-by-tree R-vine structure selection.

Each level builds a dependence graph weighted by Kendall's tau, keeps its
maximum spanning tree and selects one pair copula per tree edge. The
h-function transforms of a level feed the next one, whose graph only joins
edges that share a node (proximity condition).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

import torch

from . import stats
from .bicop import Bicop
from .families import BicopFamily
from .fit_controls import FitControlsVinecop
from .graph import Edge, Graph, Node, max_spanning_tree
from .logging import get_logger

_log = get_logger(__name__)


@dataclass
class VineTree:
    tree: Graph
    pair_copulas: dict[Edge, Bicop] = field(default_factory=dict)
    pair_data: dict[Edge, torch.Tensor] = field(default_factory=dict)
    level: int = 0

    def str(self) -> str:
        lines = [f"<torchrvine.VineTree> level {self.level}"]
        for e in self.tree.edges():
            cop = self.pair_copulas.get(e)
            cond = ",".join(str(i) for i in e.conditioned)
            given = ",".join(str(i) for i in e.conditioning)
            label = f"{cond}|{given}" if given else cond
            lines.append(f"  {label}: tau={e.weight:.4f} {cop if cop is not None else '-'}")
        return "\n".join(lines)


def _tau_weight(x: torch.Tensor, y: torch.Tensor) -> float:
    tau = stats.kendall_tau(x, y)
    return 0.0 if math.isnan(tau) else tau


def dependence_graph(samples: torch.Tensor, nodes: Sequence[Node] | None = None) -> Graph:
    """Complete graph over the columns of ``samples`` weighted by Kendall's tau."""
    samples = torch.as_tensor(samples, dtype=torch.float64)
    if samples.ndim != 2:
        raise ValueError("samples must have shape (n, d)")
    d = int(samples.shape[1])
    if nodes is None:
        nodes = [Node(i, (i,)) for i in range(d)]
    if len(nodes) != d:
        raise ValueError(f"got {len(nodes)} nodes for {d} sample columns")
    g = Graph(nodes)
    for i in range(d):
        for j in range(i + 1, d):
            g.add_edge(nodes[i], nodes[j], _tau_weight(samples[:, i], samples[:, j]))
    return g


def _column_pairs(graph: Graph, samples: torch.Tensor) -> dict[Edge, torch.Tensor]:
    pos = {n: i for i, n in enumerate(graph.nodes)}
    return {e: torch.stack([samples[:, pos[e.a]], samples[:, pos[e.b]]], dim=1) for e in graph.edges()}


def select_tree(
    data: torch.Tensor | None,
    controls: FitControlsVinecop | None = None,
    generator: torch.Generator | None = None,
    nodes: Sequence[Node] | None = None,
    *,
    graph: Graph | None = None,
    pair_data: dict[Edge, torch.Tensor] | None = None,
    level: int = 0,
    logger=None,
) -> VineTree:
    """Select one vine tree.

    With ``data`` the level graph is the dependence graph of its columns.
    Higher levels pass ``graph`` and the matching ``pair_data`` from
    :func:`proximity_graph` instead. Edges whose |tau| is below
    ``controls.threshold`` get the independence copula.
    """
    if controls is None:
        controls = FitControlsVinecop()
    log = logger or _log
    if graph is None:
        if data is None:
            raise ValueError("either data or graph must be given")
        samples = torch.as_tensor(data, dtype=torch.float64)
        graph = dependence_graph(samples, nodes)
        pair_data = _column_pairs(graph, samples)
    elif pair_data is None:
        raise ValueError("pair_data is required together with graph")

    tree = max_spanning_tree(graph, generator)
    if tree is None:
        raise ValueError("dependence graph is empty or disconnected")

    out = VineTree(tree=tree, level=int(level))
    for e in tree.edges():
        pair = pair_data[e]
        if abs(e.weight) < float(controls.threshold):
            cop = Bicop(family=BicopFamily.indep).fit(pair, controls, logger=log)
        else:
            cop = Bicop().select(pair, controls, logger=log)
        out.pair_copulas[e] = cop
        out.pair_data[e] = pair
        if controls.show_trace:
            log.info(
                "edge_selected",
                level=int(level),
                conditioned=list(e.conditioned),
                conditioning=list(e.conditioning),
                tau=e.weight,
                family=cop.family.value,
                rotation=cop.rotation,
                parameters=cop.parameters.tolist(),
            )
    return out


def next_level_samples(vine_tree: VineTree) -> dict[Edge, tuple[torch.Tensor, torch.Tensor]]:
    """Per tree edge (a, b): (F(b | a), F(a | b)) from the fitted pair copula."""
    out = {}
    for e in vine_tree.tree.edges():
        cop = vine_tree.pair_copulas[e]
        pair = vine_tree.pair_data[e]
        out[e] = (cop.hfunc1(pair), cop.hfunc2(pair))
    return out


def next_level_nodes(tree: Graph) -> dict[Edge, Node]:
    """One node per tree edge carrying the union of the endpoint index sets."""
    out = {}
    for i, e in enumerate(tree.edges()):
        out[e] = Node(i, tuple(sorted(set(e.a.indices) | set(e.b.indices))))
    return out


def proximity_graph(vine_tree: VineTree) -> tuple[Graph, dict[Edge, torch.Tensor]]:
    """Next-level graph: tree edges become nodes, joined only when they share a node.

    Returns the graph (weights = Kendall's tau of the conditional samples) and
    the (n, 2) observation pair of every new edge.
    """
    samples = next_level_samples(vine_tree)
    node_of = next_level_nodes(vine_tree.tree)
    old_edges = vine_tree.tree.edges()
    g = Graph(node_of[e] for e in old_edges)
    pair_data: dict[Edge, torch.Tensor] = {}

    def conditional(e: Edge, common: Node) -> torch.Tensor:
        h1, h2 = samples[e]
        # Conditioning on endpoint a gives F(b | a), on endpoint b F(a | b).
        return h1 if common == e.a else h2

    for i, e in enumerate(old_edges):
        for f in old_edges[i + 1:]:
            common = e.shared_node(f)
            if common is None:
                continue
            x = conditional(e, common)
            y = conditional(f, common)
            new_edge = g.add_edge(node_of[e], node_of[f], _tau_weight(x, y))
            pair_data[new_edge] = torch.stack([x, y], dim=1)
    return g, pair_data


def select_structure(
    data: torch.Tensor,
    controls: FitControlsVinecop | None = None,
    *,
    generator: torch.Generator | None = None,
    trunc_lvl: int | None = None,
    logger=None,
) -> list[VineTree]:
    """Select all vine trees level by level (optionally truncated after ``trunc_lvl`` trees)."""
    if controls is None:
        controls = FitControlsVinecop()
    samples = torch.as_tensor(data, dtype=torch.float64)
    d = int(samples.shape[1])
    n_levels = d - 1 if trunc_lvl is None else min(d - 1, int(trunc_lvl))

    trees: list[VineTree] = []
    if n_levels < 1:
        return trees
    vt = select_tree(samples, controls, generator, logger=logger)
    trees.append(vt)
    for level in range(1, n_levels):
        graph, pair_data = proximity_graph(vt)
        vt = select_tree(None, controls, generator, graph=graph, pair_data=pair_data, level=level, logger=logger)
        trees.append(vt)
    return trees
