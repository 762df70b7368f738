"""Statistical helper functions: ranks, Kendall's tau, normal and Student-t distributions."""

from __future__ import annotations

import math
import torch

from .integrate import bisection_invert, simpson_integrate

# Family math never sees coordinates closer than this to {0, 1}.
UNIT_EPS = 1e-4

# Bracket for Student-t quantiles; enough for nu >= 2 and p >= 1e-6.
_T_BRACKET = 1e3

# Elements per block in the pairwise Kendall's tau comparison.
_TAU_BLOCK_ELEMS = 4_000_000


def _as_tensor(x, *, device=None, dtype=None):
    if torch.is_tensor(x):
        t = x
        if device is not None:
            t = t.to(device=device)
        if dtype is not None:
            t = t.to(dtype=dtype)
        return t
    return torch.as_tensor(x, device=device, dtype=dtype)


def pnorm(x: torch.Tensor) -> torch.Tensor:
    x = _as_tensor(x)
    return 0.5 * (1.0 + torch.erf(x / math.sqrt(2.0)))


def qnorm(u: torch.Tensor) -> torch.Tensor:
    u = _as_tensor(u)
    # torch.special.ndtri is the inverse of the standard normal CDF
    return torch.special.ndtri(u)


def clamp_unit(u: torch.Tensor, eps: float = UNIT_EPS) -> torch.Tensor:
    # Keeps log(0), 1/0 and infinite quantiles out of the family formulas.
    return u.clamp(min=eps, max=1.0 - eps)


def pbvnorm(z1: torch.Tensor, z2: torch.Tensor, rho: float | torch.Tensor, *, n: int = 200) -> torch.Tensor:
    """Bivariate normal CDF Phi_2(z1, z2; rho) by Simpson quadrature.

    Uses the Drezner & Wesolowsky (1990) representation

        Phi_2 = Phi(z1) Phi(z2)
              + 1/(2 pi) int_0^{asin rho} exp(-(z1^2 + z2^2 - 2 z1 z2 sin t) / (2 cos^2 t)) dt

    whose integrand is smooth on the whole range, so a few hundred nodes suffice.
    """
    z1 = _as_tensor(z1, dtype=torch.float64)
    z2 = _as_tensor(z2, dtype=torch.float64, device=z1.device)
    base = pnorm(z1) * pnorm(z2)
    r = float(rho)
    if abs(r) < 1e-12:
        return base
    upper = math.asin(max(-1.0, min(1.0, r)))
    hs = (z1 * z1 + z2 * z2)[..., None]
    hk = (z1 * z2)[..., None]

    def integrand(t: torch.Tensor) -> torch.Tensor:
        sn = torch.sin(t)
        cs2 = (1.0 - sn * sn).clamp_min(1e-300)
        return torch.exp(-(hs - 2.0 * hk * sn) / (2.0 * cs2))

    out = base + simpson_integrate(integrand, n, 0.0, upper) / (2.0 * math.pi)
    return out.clamp(0.0, 1.0)


def _log_beta(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    a = _as_tensor(a)
    b = _as_tensor(b, device=a.device, dtype=a.dtype)
    return torch.lgamma(a) + torch.lgamma(b) - torch.lgamma(a + b)


def _betacf(a: torch.Tensor, b: torch.Tensor, x: torch.Tensor, *, max_iter: int = 80, eps: float = 3e-14) -> torch.Tensor:
    # Continued fraction for incomplete beta (Numerical Recipes / Cephes style).
    a = _as_tensor(a)
    b = _as_tensor(b, device=a.device, dtype=a.dtype)
    x = _as_tensor(x, device=a.device, dtype=a.dtype)

    tiny = torch.finfo(a.dtype).tiny

    qab = a + b
    qap = a + 1.0
    qam = a - 1.0

    c = torch.ones_like(x)
    d = (1.0 - qab * x / qap).clamp_min(tiny).reciprocal()
    h = d.clone()

    for m in range(1, max_iter + 1):
        m2 = 2.0 * m

        aa = m * (b - m) * x / ((qam + m2) * (a + m2))
        d = (1.0 + aa * d).clamp_min(tiny).reciprocal()
        c = (1.0 + aa / c.clamp_min(tiny))
        h = h * d * c

        aa = -(a + m) * (qab + m) * x / ((a + m2) * (qap + m2))
        d = (1.0 + aa * d).clamp_min(tiny).reciprocal()
        c = (1.0 + aa / c.clamp_min(tiny))
        delta = d * c
        h = h * delta

        # Check convergence every 4 iterations to reduce .item() overhead
        if m % 4 == 0 and torch.max(torch.abs(delta - 1.0)).item() < eps:
            break

    return h


def betainc_reg(a: torch.Tensor, b: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    """Regularized incomplete beta I_x(a,b) in pure torch."""
    a = _as_tensor(a)
    b = _as_tensor(b, device=a.device, dtype=a.dtype)
    x = _as_tensor(x, device=a.device, dtype=a.dtype).clamp(0.0, 1.0)

    tiny = torch.finfo(a.dtype).tiny
    one = torch.ones((), device=a.device, dtype=a.dtype)

    out = torch.zeros(torch.broadcast_shapes(a.shape, b.shape, x.shape), device=a.device, dtype=a.dtype)
    x = x.expand(out.shape)
    out = torch.where(x >= 1.0, torch.ones_like(out), out)

    mask = (x > 0.0) & (x < 1.0)
    if not mask.any():
        return out

    xx = x[mask]
    aa = a.expand(out.shape)[mask]
    bb = b.expand(out.shape)[mask]

    bt = torch.exp(aa * torch.log(xx.clamp_min(tiny)) + bb * torch.log((one - xx).clamp_min(tiny)) - _log_beta(aa, bb))

    # Continued fraction converges fast below (a+1)/(a+b+2); use the symmetry above it.
    use_direct = xx < (aa + one) / (aa + bb + 2.0 * one)

    val = torch.empty_like(xx)
    if use_direct.any():
        idx_d = use_direct
        cf1 = _betacf(aa[idx_d], bb[idx_d], xx[idx_d])
        val[idx_d] = (bt[idx_d] * cf1 / aa[idx_d]).clamp(0.0, 1.0)
    if (~use_direct).any():
        idx_r = ~use_direct
        cf2 = _betacf(bb[idx_r], aa[idx_r], one - xx[idx_r])
        val[idx_r] = (one - bt[idx_r] * cf2 / bb[idx_r]).clamp(0.0, 1.0)

    out = out.clone()
    out[mask] = val
    return out


def dt(x: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    """Student-t probability density function."""
    x = _as_tensor(x)
    nu = _as_tensor(nu, device=x.device, dtype=x.dtype)
    half_nu = nu * 0.5
    half_nup1 = (nu + 1.0) * 0.5
    log_pdf = (torch.lgamma(half_nup1) - torch.lgamma(half_nu)
               - 0.5 * torch.log(nu * math.pi)
               - half_nup1 * torch.log1p(x * x / nu))
    return torch.exp(log_pdf)


def pt(x: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    """Student-t cumulative distribution function."""
    x = _as_tensor(x)
    nu = _as_tensor(nu, device=x.device, dtype=x.dtype)
    t = nu / (nu + x * x)
    half = torch.as_tensor(0.5, device=x.device, dtype=x.dtype)
    Ix = betainc_reg(nu * 0.5, half, t)
    return torch.where(x >= 0, 1.0 - 0.5 * Ix, 0.5 * Ix)


def _qt_hill(p: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    """Student-t quantile starting value via the Hill (1970) expansion."""
    z = qnorm(p)
    g1 = (z * z * z + z) / 4.0
    g2 = (5.0 * z ** 5 + 16.0 * z ** 3 + 3.0 * z) / 96.0
    g3 = (3.0 * z ** 7 + 19.0 * z ** 5 + 17.0 * z ** 3 - 15.0 * z) / 384.0
    return z + g1 / nu + g2 / (nu * nu) + g3 / (nu * nu * nu)


def qt(p: torch.Tensor, nu: torch.Tensor, *, max_iter: int = 4, tol: float = 1e-10) -> torch.Tensor:
    """Student-t quantile.

    Halley refinement of the Hill expansion; elements whose residual is still
    above ``tol`` afterwards (far tails, small ``nu``) are solved by bisection.
    """
    p = _as_tensor(p).clamp(1e-12, 1.0 - 1e-12)
    nu = _as_tensor(nu, device=p.device, dtype=p.dtype)
    p, nu = torch.broadcast_tensors(p, nu)
    x = _qt_hill(p, nu)
    tiny = torch.finfo(p.dtype).tiny
    for _ in range(max_iter):
        F = pt(x, nu)
        f = dt(x, nu).clamp_min(tiny)
        r = F - p
        fp = f * (-(nu + 1.0) * x / (nu + x * x))
        x = x - 2.0 * r * f / (2.0 * f * f - r * fp)
    x = torch.where(torch.isfinite(x), x, torch.zeros_like(x))
    bad = (pt(x, nu) - p).abs() > tol
    if bool(bad.any()):
        nu_bad = nu[bad]
        x = x.clone()
        x[bad] = bisection_invert(lambda z: pt(z, nu_bad), p[bad], lb=-_T_BRACKET, ub=_T_BRACKET, tol=tol)
    return x


def rank_normalize(x) -> torch.Tensor:
    """Rank-normalize a sample to (0, 1].

    Ranks are 1-based positions in the stably sorted sample, ties receive the
    mean of the ranks they span, and every rank is divided by the largest
    assigned rank so the maximum maps to exactly 1. A 2-d input is
    normalized column by column.
    """
    x = _as_tensor(x, dtype=torch.float64)
    if x.ndim == 2:
        if x.shape[1] == 0:
            return x.clone()
        return torch.stack([rank_normalize(x[:, j]) for j in range(x.shape[1])], dim=1)
    x = x.reshape(-1)
    if x.numel() == 0:
        return x.clone()
    sorted_vals, order = torch.sort(x, stable=True)
    _vals, inverse, counts = torch.unique_consecutive(sorted_vals, return_inverse=True, return_counts=True)
    ends = torch.cumsum(counts, dim=0).to(torch.float64)
    starts = ends - counts.to(torch.float64) + 1.0
    avg = 0.5 * (starts + ends)
    ranks = torch.empty_like(x)
    ranks[order] = avg[inverse]
    return ranks / avg[-1]


def kendall_tau(x, y) -> float:
    """Empirical Kendall's tau-b with tie correction.

    Over all pairs i < j, counts concordant (P), discordant (Q), tied only in
    ``x`` (T) and tied only in ``y`` (U) pairs; pairs tied in both are ignored.
    Returns ``(P - Q) / sqrt((P + Q + T) * (P + Q + U))``, or NaN when the
    inputs differ in length or the denominator vanishes.

    O(n^2) comparisons, evaluated in row blocks so memory stays bounded.
    """
    x = _as_tensor(x, dtype=torch.float64).reshape(-1)
    y = _as_tensor(y, dtype=torch.float64, device=x.device).reshape(-1)
    n = int(x.numel())
    if n != int(y.numel()):
        return float("nan")
    if n < 2:
        return float("nan")

    block = max(1, _TAU_BLOCK_ELEMS // n)
    cols = torch.arange(n, device=x.device)
    P = Q = T = U = 0
    for start in range(0, n - 1, block):
        stop = min(start + block, n - 1)
        rows = torch.arange(start, stop, device=x.device)
        upper = cols[None, :] > rows[:, None]
        dx = torch.sign(x[None, :] - x[start:stop, None])
        dy = torch.sign(y[None, :] - y[start:stop, None])
        s = dx * dy
        P += int(((s > 0) & upper).sum().item())
        Q += int(((s < 0) & upper).sum().item())
        T += int(((dx == 0) & (dy != 0) & upper).sum().item())
        U += int(((dx != 0) & (dy == 0) & upper).sum().item())

    den = math.sqrt(float(P + Q + T) * float(P + Q + U))
    if den == 0.0:
        return float("nan")
    return (P - Q) / den


def empirical_copula(data: torch.Tensor, points: torch.Tensor) -> torch.Tensor:
    """Empirical copula of ``data`` (n, 2) evaluated at ``points`` (m, 2)."""
    data = _as_tensor(data, dtype=torch.float64)
    points = _as_tensor(points, dtype=torch.float64, device=data.device)
    below = (data[None, :, 0] <= points[:, None, 0]) & (data[None, :, 1] <= points[:, None, 1])
    return below.to(torch.float64).mean(dim=1)
