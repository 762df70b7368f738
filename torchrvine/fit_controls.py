"""Fitting controls for pair copulas and vine tree selection."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .families import BicopFamily, normalize_family


@dataclass
class FitControlsBicop:
    family_set: list[BicopFamily] = field(default_factory=list)
    selection_criterion: str = "loglik"  # "loglik", "aic", "bic"
    selection_method: str = "loglik"  # "loglik" or "gof"
    allow_rotations: bool = True
    gof_bootstrap_samples: int = 100
    quadrature_nodes: int = 1000
    max_iter: int = 100  # optimizer iterations per golden-section search
    tol: float = 1e-8
    num_threads: int = 1  # parallel candidate / bootstrap tasks (1 = sequential)
    seeds: Sequence[int] = ()
    show_trace: bool = False

    def __post_init__(self):
        self.family_set = [normalize_family(f) for f in self.family_set]
        if self.selection_criterion not in ("loglik", "aic", "bic"):
            raise ValueError("selection_criterion must be one of 'loglik','aic','bic'")
        if self.selection_method not in ("loglik", "gof"):
            raise ValueError("selection_method must be 'loglik' or 'gof'")
        if int(self.gof_bootstrap_samples) < 1:
            raise ValueError("gof_bootstrap_samples must be >= 1")
        if int(self.quadrature_nodes) < 1:
            raise ValueError("quadrature_nodes must be >= 1")
        if int(self.max_iter) < 1:
            raise ValueError("max_iter must be >= 1")
        if not (float(self.tol) > 0.0):
            raise ValueError("tol must be positive")
        if int(self.num_threads) < 1:
            raise ValueError("num_threads must be >= 1")
        self.seeds = tuple(int(s) for s in self.seeds)

    def str(self) -> str:
        """Human-readable summary."""
        fam_names = ", ".join(f.value.capitalize() for f in self.family_set) if self.family_set else "all"
        parts = [
            f"Family set: {fam_names}",
            f"Selection criterion: {self.selection_criterion}",
            f"Selection method: {self.selection_method}",
            f"Allow rotations: {self.allow_rotations}",
            f"Bootstrap samples: {self.gof_bootstrap_samples}",
            f"Quadrature nodes: {self.quadrature_nodes}",
            f"Max iterations: {self.max_iter}",
            f"Tolerance: {self.tol}",
            f"Number of threads: {self.num_threads}",
            f"Seeds: {list(self.seeds) if self.seeds else 'none'}",
            f"Show trace: {self.show_trace}",
        ]
        return "\n".join(parts)


@dataclass
class FitControlsVinecop(FitControlsBicop):
    tree_criterion: str = "tau"
    threshold: float = 0.0

    def __post_init__(self):
        super().__post_init__()
        if self.tree_criterion != "tau":
            raise ValueError("tree_criterion must be 'tau'")
        if not (0.0 <= float(self.threshold) <= 1.0):
            raise ValueError("threshold must be in [0, 1]")

    def str(self) -> str:
        """Human-readable summary."""
        base = super().str()
        parts = [
            base,
            f"Tree criterion: {self.tree_criterion}",
            f"Threshold: {self.threshold}",
        ]
        return "\n".join(parts)
