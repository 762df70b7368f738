"""Numerical kernels: composite Simpson quadrature and bounded bisection."""

from __future__ import annotations

from typing import Callable

import torch

from .logging import get_logger

_log = get_logger(__name__)


def _simpson_weights(n: int, *, dtype=torch.float64, device=None) -> torch.Tensor:
    # Nodes lb + j*h/2 for j = 0..2n: endpoints 1, midpoints 4, interior partition points 2.
    w = torch.full((2 * n + 1,), 2.0, dtype=dtype, device=device)
    w[1::2] = 4.0
    w[0] = 1.0
    w[-1] = 1.0
    return w


def simpson_integrate(
    f: Callable[[torch.Tensor], torch.Tensor],
    n: int = 1000,
    lb: float | torch.Tensor = 0.0,
    ub: float | torch.Tensor = 1.0,
) -> torch.Tensor:
    """Composite Simpson rule over ``n`` subintervals of ``[lb, ub]``.

    ``f`` is called once with all nodes. With scalar bounds it receives a
    tensor of shape ``(2n+1,)`` and may return ``(..., 2n+1)``; with tensor
    bounds of shape ``(k,)`` it receives ``(k, 2n+1)`` nodes. The integral is
    taken over the last dimension.
    """
    n = int(n)
    if n < 1:
        raise ValueError("n must be >= 1")
    lb_t = torch.as_tensor(lb, dtype=torch.float64)
    ub_t = torch.as_tensor(ub, dtype=torch.float64, device=lb_t.device)
    h = ub_t - lb_t
    grid = torch.arange(2 * n + 1, dtype=torch.float64, device=lb_t.device) / (2.0 * n)
    nodes = lb_t[..., None] + h[..., None] * grid
    vals = f(nodes)
    s = (vals * _simpson_weights(n, dtype=vals.dtype, device=vals.device)).sum(dim=-1)
    return s * (h / float(n)) / 6.0


def bisection_invert(
    f: Callable[[torch.Tensor], torch.Tensor],
    target: torch.Tensor,
    *,
    lb: float | torch.Tensor,
    ub: float | torch.Tensor,
    tol: float = 1e-10,
    max_iter: int = 50,
    logger=None,
) -> torch.Tensor:
    """Solve ``f(x) = target`` elementwise for monotone increasing ``f`` on ``[lb, ub]``.

    Halves the bracket until every element satisfies ``|f(x) - target| <= tol``
    (or the bracket is narrower than ``tol``), or ``max_iter`` halvings were
    made. On the cap the midpoint is returned as the best estimate.
    """
    target = torch.as_tensor(target, dtype=torch.float64)
    lb_full = torch.broadcast_to(torch.as_tensor(lb, dtype=target.dtype, device=target.device), target.shape)
    ub_full = torch.broadcast_to(torch.as_tensor(ub, dtype=target.dtype, device=target.device), target.shape)
    lo = lb_full.clone()
    hi = ub_full.clone()

    # Targets outside the bracket resolve to the nearer bound.
    f_lo = f(lo) - target
    f_hi = f(hi) - target
    done_lo = f_lo >= -tol
    done_hi = f_hi <= tol
    est = 0.5 * (lo + hi)
    done = done_lo | done_hi
    for _ in range(int(max_iter)):
        if bool(done.all()):
            break
        mid = 0.5 * (lo + hi)
        val = f(mid) - target
        active = ~done
        above = val > 0.0
        hi = torch.where(active & above, mid, hi)
        lo = torch.where(active & ~above, mid, lo)
        # Resolved elements keep the point that met the tolerance.
        hit = active & (val.abs() <= tol)
        est = torch.where(hit, mid, torch.where(active, 0.5 * (lo + hi), est))
        done = done | hit | (active & ((hi - lo) <= tol))
    else:
        if not bool(done.all()):
            (logger or _log).debug(
                "bisection_iteration_cap",
                max_iter=int(max_iter),
                unresolved=int((~done).sum().item()),
            )
    out = torch.where(done_hi, ub_full, est)
    return torch.where(done_lo, lb_full, out)
