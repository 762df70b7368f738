"""Bounded derivative-free maximizers used for maximum-likelihood fitting.

Pure Python/torch: golden-section search for one-parameter families and
coordinate descent with golden-section sub-steps for the rest.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

import torch

from .logging import get_logger

_log = get_logger(__name__)

_INVPHI = (math.sqrt(5.0) - 1.0) / 2.0


@dataclass
class OptimizeResult:
    x: torch.Tensor
    fun: float  # objective value at x (maximized)
    n_eval: int
    converged: bool = True


def _safe(v: float) -> float:
    # NaN objective values never win a comparison.
    return v if v == v else -math.inf


def golden_section_maximize(
    f: Callable[[float], float],
    *,
    a: float,
    b: float,
    x0: float | None = None,
    max_iter: int = 100,
    tol: float = 1e-8,
    logger=None,
) -> OptimizeResult:
    """Bounded 1D maximization using golden section search.

    Assumes f is unimodal-ish on [a, b]. When ``x0`` is given it is evaluated
    as well and returned if it beats the bracketed optimum, so the result is
    never worse than the start value.
    """
    if not (a < b):
        raise ValueError("require a < b")

    c = b - (b - a) * _INVPHI
    d = a + (b - a) * _INVPHI
    fc = _safe(f(float(c)))
    fd = _safe(f(float(d)))
    n_eval = 2

    converged = False
    for _ in range(int(max_iter)):
        if abs(b - a) <= tol * (1.0 + abs(a) + abs(b)):
            converged = True
            break
        if fc >= fd:
            b, d, fd = d, c, fc
            c = b - (b - a) * _INVPHI
            fc = _safe(f(float(c)))
        else:
            a, c, fc = c, d, fd
            d = a + (b - a) * _INVPHI
            fd = _safe(f(float(d)))
        n_eval += 1
    else:
        converged = abs(b - a) <= tol * (1.0 + abs(a) + abs(b))

    if fc >= fd:
        x, fun = c, fc
    else:
        x, fun = d, fd

    if x0 is not None:
        x0 = float(x0)
        f0 = _safe(f(x0))
        n_eval += 1
        if f0 > fun:
            x, fun = x0, f0

    if not converged:
        (logger or _log).warning("optimizer_iteration_cap", method="golden_section", max_iter=int(max_iter), x=float(x))
    return OptimizeResult(x=torch.tensor(float(x), dtype=torch.float64), fun=float(fun), n_eval=n_eval, converged=converged)


def coordinate_descent_maximize(
    f: Callable[[torch.Tensor], float],
    *,
    x0: torch.Tensor,
    lb: torch.Tensor,
    ub: torch.Tensor,
    max_outer: int = 10,
    max_inner: int = 100,
    tol: float = 1e-8,
    logger=None,
) -> OptimizeResult:
    """Derivative-free coordinate descent with 1D golden-section substeps.

    Sweeps the coordinates in order until a full sweep improves the objective
    by less than ``tol`` (relative), or ``max_outer`` sweeps were made.
    """
    x = torch.as_tensor(x0, dtype=torch.float64).reshape(-1).clone()
    lb = torch.as_tensor(lb, dtype=torch.float64).reshape(-1)
    ub = torch.as_tensor(ub, dtype=torch.float64).reshape(-1)
    if x.numel() != lb.numel() or x.numel() != ub.numel():
        raise ValueError("x0, lb, ub must have the same length")
    x = torch.max(torch.min(x, ub), lb)

    best = _safe(float(f(x)))
    n_eval = 1
    converged = False
    inner_ok = True

    for _ in range(int(max_outer)):
        start_best = best
        for k in range(int(x.numel())):
            a = float(lb[k].item())
            b = float(ub[k].item())
            if not (a < b):
                continue

            def fk(v: float, _k=k) -> float:
                xk = x.clone()
                xk[_k] = float(v)
                return float(f(xk))

            res = golden_section_maximize(fk, a=a, b=b, x0=float(x[k].item()), max_iter=max_inner, tol=tol, logger=logger)
            n_eval += res.n_eval
            inner_ok = inner_ok and res.converged
            if res.fun >= best:
                x[k] = float(res.x.item())
                best = float(res.fun)

        if best - start_best <= tol * (1.0 + abs(best)):
            converged = True
            break

    if not converged:
        (logger or _log).warning("optimizer_iteration_cap", method="coordinate_descent", max_outer=int(max_outer), fun=best)
    return OptimizeResult(x=x, fun=best, n_eval=n_eval, converged=converged and inner_ok)
