"""torchrvine: pure-PyTorch R-vine building blocks.

Pair-copula families with maximum-likelihood and goodness-of-fit selection,
Kendall's tau weighted dependence graphs and tree-by-tree structure selection.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .families import BicopFamily, UnsupportedOperationError, family_library
from .bicop import Bicop
from .fit_controls import FitControlsBicop, FitControlsVinecop
from .graph import Edge, Graph, Node, max_spanning_tree
from .select import gof_pvalue, gof_statistic, select_by_gof, select_by_loglik
from .vine_select import (
    VineTree,
    dependence_graph,
    next_level_nodes,
    next_level_samples,
    proximity_graph,
    select_structure,
    select_tree,
)
from .integrate import bisection_invert, simpson_integrate
from .stats import empirical_copula, kendall_tau, rank_normalize

import torch


def simulate_uniform(
    n: int,
    d: int,
    *,
    seeds: list[int] | tuple[int, ...] = (),
) -> torch.Tensor:
    """Simulate from the multivariate uniform distribution."""
    g = None
    if seeds:
        g = torch.Generator()
        g.manual_seed(int(seeds[0]))
    return torch.rand((int(n), int(d)), generator=g, dtype=torch.float64)


# ---------------------------------------------------------------------------
# Individual family shortcut names
# ---------------------------------------------------------------------------
indep = BicopFamily.indep
gaussian = BicopFamily.gaussian
student = BicopFamily.student
clayton = BicopFamily.clayton
frank = BicopFamily.frank
gumbel = BicopFamily.gumbel
fgm = BicopFamily.fgm
galambos = BicopFamily.galambos

# ---------------------------------------------------------------------------
# Family convenience lists
# ---------------------------------------------------------------------------
one_par = [BicopFamily.gaussian, BicopFamily.clayton, BicopFamily.frank, BicopFamily.gumbel,
           BicopFamily.fgm, BicopFamily.galambos]
two_par = [BicopFamily.student]
parametric = one_par + two_par
rotationless = [BicopFamily.indep, BicopFamily.gaussian, BicopFamily.student, BicopFamily.frank,
                BicopFamily.fgm, BicopFamily.galambos]
archimedean = [BicopFamily.clayton, BicopFamily.frank, BicopFamily.gumbel]
elliptical = [BicopFamily.gaussian, BicopFamily.student]
extreme_value = [BicopFamily.gumbel, BicopFamily.galambos]
all = list(BicopFamily)


__all__ = [
    "BicopFamily",
    "Bicop",
    "UnsupportedOperationError",
    "FitControlsBicop",
    "FitControlsVinecop",
    "family_library",
    # Graphs and trees
    "Node",
    "Edge",
    "Graph",
    "max_spanning_tree",
    "VineTree",
    "dependence_graph",
    "select_tree",
    "select_structure",
    "next_level_samples",
    "next_level_nodes",
    "proximity_graph",
    # Selection
    "select_by_loglik",
    "select_by_gof",
    "gof_pvalue",
    "gof_statistic",
    # Numerics
    "simpson_integrate",
    "bisection_invert",
    "rank_normalize",
    "kendall_tau",
    "empirical_copula",
    "simulate_uniform",
    # Individual family shortcut names
    "indep",
    "gaussian",
    "student",
    "clayton",
    "frank",
    "gumbel",
    "fgm",
    "galambos",
    # Family convenience lists
    "one_par",
    "two_par",
    "parametric",
    "rotationless",
    "archimedean",
    "elliptical",
    "extreme_value",
    "all",
]
