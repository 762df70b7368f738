"""Bivariate copula implementation: all families, fitting, and evaluation."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Optional

import torch
import torch.nn.functional as F

from . import stats
from .families import (
    BicopFamily,
    UnsupportedOperationError,
    check_rotation,
    families_to_selection,
    family_library,
    normalize_family,
    parameter_bounds,
    start_parameters,
)
from .fit_controls import FitControlsBicop
from .integrate import bisection_invert, simpson_integrate
from .logging import get_logger
from .optimize import coordinate_descent_maximize, golden_section_maximize

_log = get_logger(__name__)

# Default Simpson subintervals for cdfs and taus without a closed form.
_QUADRATURE_NODES = 1000

_EPS = stats.UNIT_EPS

# (reflects first margin, reflects second margin) per rotation.
_REFLECT = {
    0: (False, False),
    90: (True, False),
    180: (True, True),
    270: (False, True),
}

Kernel = Callable[..., torch.Tensor]


@dataclass(frozen=True)
class _FamilyKernels:
    """Unrotated family math on clamped coordinates.

    Every function is elementwise over broadcastable ``u``/``v`` tensors and
    takes the unrotated parameter vector after the coordinates. ``cdf`` and
    ``tau`` also accept ``n``, the Simpson subintervals used where they
    integrate numerically. ``hfunc2(u, v, p)`` is
    P(U1 <= u | U2 = v) and ``hinv2(w, v, p)`` its inverse in ``u``. ``None``
    marks math a family does not provide: a missing ``cdf`` or ``hinv2`` is
    computed numerically, a missing ``pdf`` or ``tau`` is unsupported.
    """

    pdf: Optional[Kernel]
    cdf: Optional[Kernel]
    hfunc2: Optional[Kernel]
    hinv2: Optional[Kernel]
    tau: Optional[Callable[..., float]]


# ---- Independence ----

def _indep_pdf(u, v, p):
    return torch.ones_like(u * v)


def _indep_cdf(u, v, p, n=None):
    return u * v


def _indep_hfunc2(u, v, p):
    return u + 0.0 * v


def _indep_hinv2(w, v, p):
    return w + 0.0 * v


# ---- Gaussian ----

def _gauss_pdf(u, v, p):
    rho = p[0]
    x = stats.qnorm(u)
    y = stats.qnorm(v)
    r2 = 1.0 - rho * rho
    expo = -(rho * rho * (x * x + y * y) - 2.0 * rho * x * y) / (2.0 * r2)
    return torch.exp(expo) / torch.sqrt(r2)


def _gauss_cdf(u, v, p, n=_QUADRATURE_NODES):
    u, v = torch.broadcast_tensors(u, v)
    x = stats.qnorm(u).reshape(-1)
    y = stats.qnorm(v).reshape(-1)
    return stats.pbvnorm(x, y, float(p[0]), n=n).reshape(u.shape)


def _gauss_hfunc2(u, v, p):
    rho = p[0]
    x = stats.qnorm(u)
    y = stats.qnorm(v)
    return stats.pnorm((x - rho * y) / torch.sqrt(1.0 - rho * rho))


def _gauss_hinv2(w, v, p):
    rho = p[0]
    return stats.pnorm(stats.qnorm(w) * torch.sqrt(1.0 - rho * rho) + rho * stats.qnorm(v))


def _elliptical_tau(p, n=None):
    return 2.0 / math.pi * math.asin(float(p[0]))


# ---- Student-t ----

def _student_log_pdf_scores(x, y, rho, nu):
    # log c(u1,u2) = log f2(x1,x2;rho,nu) - log f_nu(x1) - log f_nu(x2), x = qt(u, nu)
    r2 = (1.0 - rho * rho).clamp_min(1e-20)
    log_c = (torch.lgamma((nu + 2.0) * 0.5) + torch.lgamma(nu * 0.5)
             - 2.0 * torch.lgamma((nu + 1.0) * 0.5)
             - 0.5 * torch.log(r2))
    log_c = log_c + (nu + 1.0) * 0.5 * (torch.log1p(x * x / nu) + torch.log1p(y * y / nu))
    Q = (x * x - 2.0 * rho * x * y + y * y) / (nu * r2)
    return log_c - (nu + 2.0) * 0.5 * torch.log1p(Q)


def _student_pdf(u, v, p):
    rho, nu = p[0], p[1]
    return torch.exp(_student_log_pdf_scores(stats.qt(u, nu), stats.qt(v, nu), rho, nu))


def _student_hfunc2(u, v, p):
    rho, nu = p[0], p[1]
    x = stats.qt(u, nu)
    y = stats.qt(v, nu)
    scale = torch.sqrt((nu + y * y) * (1.0 - rho * rho) / (nu + 1.0))
    return stats.pt((x - rho * y) / scale, nu + 1.0)


def _student_hinv2(w, v, p):
    rho, nu = p[0], p[1]
    y = stats.qt(v, nu)
    scale = torch.sqrt((nu + y * y) * (1.0 - rho * rho) / (nu + 1.0))
    x = stats.qt(w, nu + 1.0) * scale + rho * y
    return stats.pt(x, nu)


# ---- Clayton ----

_CLAYTON_INDEP = 1e-10


def _clayton_s(u, v, theta):
    # u^-theta + v^-theta - 1, minus one, without cancellation for small theta
    return torch.expm1(-theta * torch.log(u)) + torch.expm1(-theta * torch.log(v))


def _clayton_pdf(u, v, p):
    theta = p[0]
    if float(theta) < _CLAYTON_INDEP:
        return _indep_pdf(u, v, p)
    s = _clayton_s(u, v, theta)
    log_c = (torch.log1p(theta) - (theta + 1.0) * (torch.log(u) + torch.log(v))
             - (1.0 / theta + 2.0) * torch.log1p(s))
    return torch.exp(log_c)


def _clayton_cdf(u, v, p, n=None):
    theta = p[0]
    if float(theta) < _CLAYTON_INDEP:
        return _indep_cdf(u, v, p)
    return torch.exp(-torch.log1p(_clayton_s(u, v, theta)) / theta)


def _clayton_hfunc2(u, v, p):
    theta = p[0]
    if float(theta) < _CLAYTON_INDEP:
        return _indep_hfunc2(u, v, p)
    s = _clayton_s(u, v, theta)
    return torch.exp(-(theta + 1.0) * torch.log(v) - (1.0 / theta + 1.0) * torch.log1p(s))


def _clayton_hinv2(w, v, p):
    theta = p[0]
    if float(theta) < _CLAYTON_INDEP:
        return _indep_hinv2(w, v, p)
    a = -theta / (theta + 1.0) * torch.log(w) - theta * torch.log(v)
    b = -theta * torch.log(v)
    return torch.exp(-torch.log1p(torch.expm1(a) - torch.expm1(b)) / theta)


def _clayton_tau(p, n=None):
    theta = float(p[0])
    return theta / (theta + 2.0)


# ---- Frank ----

_FRANK_INDEP = 1e-10
# Below this theta the expm1 forms are exact; above it they cancel and the log-space forms take over.
_FRANK_LOG_SPACE = 1.0


def _log1mexp(x):
    # log(1 - exp(-x)) for x >= 0
    return torch.where(
        x > math.log(2.0),
        torch.log1p(-torch.exp(-x)),
        torch.log(-torch.expm1(-x)),
    )


def _frank_log_d(u, v, theta):
    # log D, D = e^{-theta u} (1 - e^{-theta v}) + e^{-theta v} - e^{-theta}; both summands are >= 0
    return torch.logaddexp(
        -theta * u + _log1mexp(theta * v),
        -theta * v + _log1mexp(theta * (1.0 - v)),
    )


def _frank_pdf(u, v, p):
    theta = p[0]
    if abs(float(theta)) < _FRANK_INDEP:
        return _indep_pdf(u, v, p)
    if float(theta) < 0.0:
        # c(u, v; -theta) = c(1 - u, v; theta)
        return _frank_pdf(1.0 - u, v, -p)
    log_c = (torch.log(theta) + _log1mexp(theta) - theta * (u + v)
             - 2.0 * _frank_log_d(u, v, theta))
    return torch.exp(log_c)


def _frank_cdf(u, v, p, n=None):
    theta = p[0]
    if abs(float(theta)) < _FRANK_INDEP:
        return _indep_cdf(u, v, p)
    if float(theta) < 0.0:
        return v - _frank_cdf(1.0 - u, v, -p)
    if float(theta) < _FRANK_LOG_SPACE:
        eu = torch.expm1(-theta * u)
        ev = torch.expm1(-theta * v)
        return -torch.log1p(eu * ev / torch.expm1(-theta)) / theta
    return -(_frank_log_d(u, v, theta) - _log1mexp(theta)) / theta


def _frank_hfunc2(u, v, p):
    theta = p[0]
    if abs(float(theta)) < _FRANK_INDEP:
        return _indep_hfunc2(u, v, p)
    if float(theta) < 0.0:
        return 1.0 - _frank_hfunc2(1.0 - u, v, -p)
    return torch.exp(-theta * v + _log1mexp(theta * u) - _frank_log_d(u, v, theta))


def _frank_hinv2(w, v, p):
    theta = p[0]
    if abs(float(theta)) < _FRANK_INDEP:
        return _indep_hinv2(w, v, p)
    if float(theta) < 0.0:
        return 1.0 - _frank_hinv2(1.0 - w, v, -p)
    if float(theta) < _FRANK_LOG_SPACE:
        den = 1.0 + torch.exp(-theta * v) * (1.0 / w - 1.0)
        return -torch.log1p(torch.expm1(-theta) / den) / theta
    # e^{-theta u} = ((1 - w) e^{-theta v} + w e^{-theta}) / (w (1 - e^{-theta v}) + e^{-theta v})
    log_w = torch.log(w)
    num = torch.logaddexp(torch.log1p(-w) - theta * v, log_w - theta)
    den = torch.logaddexp(log_w + _log1mexp(theta * v), -theta * v)
    return -(num - den) / theta


def _debye1(x: float, n: int) -> float:
    def integrand(t: torch.Tensor) -> torch.Tensor:
        ts = t.clamp_min(1e-12)
        return ts / torch.expm1(ts)

    return float(simpson_integrate(integrand, n, 0.0, x)) / x


def _frank_tau(p, n=_QUADRATURE_NODES):
    theta = float(p[0])
    if abs(theta) < _FRANK_INDEP:
        return 0.0
    a = abs(theta)
    tau = 1.0 - 4.0 / a * (1.0 - _debye1(a, n))
    return math.copysign(tau, theta)


# ---- Gumbel ----

def _gumbel_parts(u, v, theta):
    x = -torch.log(u)
    y = -torch.log(v)
    lx = torch.log(x)
    ly = torch.log(y)
    # log(x^theta + y^theta)
    lt = torch.logaddexp(theta * lx, theta * ly)
    A = torch.exp(lt / theta)
    return x, y, lx, ly, lt, A


def _gumbel_pdf(u, v, p):
    theta = p[0]
    x, y, lx, ly, lt, A = _gumbel_parts(u, v, theta)
    log_c = (-A + x + y + (theta - 1.0) * (lx + ly)
             + (1.0 / theta - 2.0) * lt + torch.log(A + theta - 1.0))
    return torch.exp(log_c)


def _gumbel_cdf(u, v, p, n=None):
    _x, _y, _lx, _ly, _lt, A = _gumbel_parts(u, v, p[0])
    return torch.exp(-A)


def _gumbel_hfunc2(u, v, p):
    theta = p[0]
    _x, y, _lx, ly, lt, A = _gumbel_parts(u, v, theta)
    return torch.exp(-A + (1.0 / theta - 1.0) * lt + (theta - 1.0) * ly + y)


def _gumbel_tau(p, n=None):
    return 1.0 - 1.0 / float(p[0])


# ---- FGM ----

def _fgm_pdf(u, v, p):
    return 1.0 + p[0] * (1.0 - 2.0 * u) * (1.0 - 2.0 * v)


def _fgm_cdf(u, v, p, n=None):
    return u * v * (1.0 + p[0] * (1.0 - u) * (1.0 - v))


def _fgm_hfunc2(u, v, p):
    return u * (1.0 + p[0] * (1.0 - u) * (1.0 - 2.0 * v))


def _fgm_hinv2(w, v, p):
    # Root in [0, 1] of a*u^2 - (1 + a)*u + w = 0, rationalized so a = 0 is safe.
    a = p[0] * (1.0 - 2.0 * v)
    b = 1.0 + a
    disc = (b * b - 4.0 * a * w).clamp_min(0.0)
    return 2.0 * w / (b + torch.sqrt(disc))


def _fgm_tau(p, n=None):
    return 2.0 * float(p[0]) / 9.0


# ---- Galambos ----

def _galambos_parts(u, v, delta):
    x = -torch.log(u)
    y = -torch.log(v)
    d = delta * (torch.log(x) - torch.log(y))
    # p = x^-delta / (x^-delta + y^-delta), q = 1 - p
    log_p = F.logsigmoid(-d)
    log_q = F.logsigmoid(d)
    A = x * torch.exp(log_p / delta)
    return x, y, log_p, log_q, A


def _galambos_pdf(u, v, p):
    delta = p[0]
    x, y, log_p, log_q, A = _galambos_parts(u, v, delta)
    pp = torch.exp(log_p)
    qq = torch.exp(log_q)
    bracket = 1.0 - A * (pp / x + qq / y) + A * pp * qq * (1.0 + delta + A) / (x * y)
    return torch.exp(A) * bracket


def _galambos_cdf(u, v, p, n=None):
    _x, _y, _lp, _lq, A = _galambos_parts(u, v, p[0])
    return u * v * torch.exp(A)


def _galambos_hfunc2(u, v, p):
    delta = p[0]
    _x, _y, _lp, log_q, A = _galambos_parts(u, v, delta)
    return u * torch.exp(A) * (1.0 - torch.exp((1.0 + 1.0 / delta) * log_q))


def _galambos_tau(p, n=_QUADRATURE_NODES):
    delta = float(p[0])

    def integrand(t: torch.Tensor) -> torch.Tensor:
        # t (1 - t) A''(t) / A(t) for the Pickands function A(t) = 1 - (t^-d + (1-t)^-d)^(-1/d)
        t = t.clamp(1e-12, 1.0 - 1e-12)
        logit = torch.log(t) - torch.log1p(-t)
        log_P = F.logsigmoid(-delta * logit)
        Q = torch.sigmoid(delta * logit)
        pick = 1.0 - t * torch.exp(log_P / delta)
        return (1.0 + delta) * torch.exp((1.0 + 1.0 / delta) * log_P) * Q / ((1.0 - t) * pick)

    return float(simpson_integrate(integrand, n, 0.0, 1.0))


_KERNELS: dict[BicopFamily, _FamilyKernels] = {
    BicopFamily.indep: _FamilyKernels(_indep_pdf, _indep_cdf, _indep_hfunc2, _indep_hinv2, lambda p, n=None: 0.0),
    BicopFamily.gaussian: _FamilyKernels(_gauss_pdf, _gauss_cdf, _gauss_hfunc2, _gauss_hinv2, _elliptical_tau),
    BicopFamily.student: _FamilyKernels(_student_pdf, None, _student_hfunc2, _student_hinv2, _elliptical_tau),
    BicopFamily.clayton: _FamilyKernels(_clayton_pdf, _clayton_cdf, _clayton_hfunc2, _clayton_hinv2, _clayton_tau),
    BicopFamily.frank: _FamilyKernels(_frank_pdf, _frank_cdf, _frank_hfunc2, _frank_hinv2, _frank_tau),
    BicopFamily.gumbel: _FamilyKernels(_gumbel_pdf, _gumbel_cdf, _gumbel_hfunc2, None, _gumbel_tau),
    BicopFamily.fgm: _FamilyKernels(_fgm_pdf, _fgm_cdf, _fgm_hfunc2, _fgm_hinv2, _fgm_tau),
    BicopFamily.galambos: _FamilyKernels(_galambos_pdf, _galambos_cdf, _galambos_hfunc2, None, _galambos_tau),
}


def _format_data(u) -> torch.Tensor:
    u = torch.as_tensor(u, dtype=torch.float64)
    if u.ndim != 2 or u.shape[1] < 2:
        raise ValueError("u must have shape (n, 2)")
    return stats.clamp_unit(u[:, :2])


@dataclass
class Bicop:
    family: BicopFamily = BicopFamily.indep
    rotation: int = 0
    parameters: torch.Tensor | None = None
    nobs: int = 0
    _fit_loglik: float | None = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.family = normalize_family(self.family)
        self.rotation = check_rotation(self.family, self.rotation)
        if self.parameters is None:
            self.parameters = start_parameters(self.family, self.rotation)
        else:
            self.parameters = torch.as_tensor(self.parameters, dtype=torch.float64).reshape(-1).clone()
        n_expected = parameter_bounds(self.family, self.rotation)[0].numel()
        if self.parameters.numel() != n_expected:
            raise ValueError(f"{self.family.value} expects {n_expected} parameter(s), got {self.parameters.numel()}")

    @classmethod
    def from_family(
        cls,
        family: str | BicopFamily,
        *,
        rotation: int = 0,
        parameters: torch.Tensor | None = None,
    ) -> "Bicop":
        return cls(family=normalize_family(family), rotation=int(rotation), parameters=parameters)

    @classmethod
    def from_data(cls, data: torch.Tensor, controls: FitControlsBicop | None = None) -> "Bicop":
        c = cls()
        c.select(data, controls=controls)
        return c

    def clone(self) -> "Bicop":
        out = Bicop(family=self.family, rotation=self.rotation, parameters=self.parameters.clone(), nobs=self.nobs)
        out._fit_loglik = self._fit_loglik
        return out

    def str(self) -> str:
        """Human-readable string representation."""
        p = self.parameters.reshape(-1)
        pstr = ", ".join(f"{v:.4f}" for v in p.tolist())
        parts = ["<torchrvine.Bicop>"]
        parts.append(f"  family: {self.family.value}")
        if self.rotation != 0:
            parts.append(f"  rotation: {self.rotation}")
        if pstr:
            parts.append(f"  parameters: [{pstr}]")
        if self.nobs > 0:
            parts.append(f"  nobs: {self.nobs}")
        return "\n".join(parts)

    def __str__(self) -> str:
        label = self.family.value if self.rotation == 0 else f"{self.family.value}{self.rotation}"
        pstr = ", ".join(f"{v:.4g}" for v in self.parameters.tolist())
        return f"{label}({pstr})"

    @property
    def npars(self) -> float:
        return float(self.parameters.numel())

    @property
    def tau(self) -> float:
        # Kendall's tau implied by current parameters.
        return self.parameters_to_tau()

    @property
    def fit_loglik(self) -> float | None:
        return self._fit_loglik

    @property
    def parameters_lower_bounds(self) -> torch.Tensor:
        lb, _ub = parameter_bounds(self.family, self.rotation)
        return lb

    @property
    def parameters_upper_bounds(self) -> torch.Tensor:
        _lb, ub = parameter_bounds(self.family, self.rotation)
        return ub

    @property
    def start_parameters(self) -> torch.Tensor:
        return start_parameters(self.family, self.rotation)

    # ---- family kernels ----

    def _kernel(self, name: str) -> Optional[Kernel]:
        return getattr(_KERNELS[self.family], name)

    def _base_parameters(self, parameters: torch.Tensor | None = None) -> torch.Tensor:
        p = self.parameters if parameters is None else parameters
        p = torch.as_tensor(p, dtype=torch.float64).reshape(-1)
        return -p if self.rotation in (90, 270) else p

    def _reflect(self, u: torch.Tensor, v: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        r1, r2 = _REFLECT[self.rotation]
        return (1.0 - u if r1 else u), (1.0 - v if r2 else v)

    def _pdf0(self, u, v, p):
        fn = self._kernel("pdf")
        if fn is None:
            raise UnsupportedOperationError(f"{self.family.value} copula has no density")
        return fn(u, v, p)

    def _hfunc2_0(self, u, v, p):
        fn = self._kernel("hfunc2")
        if fn is None:
            raise UnsupportedOperationError(f"{self.family.value} copula has no conditional distribution")
        return fn(u, v, p)

    def _hinv2_0(self, w, v, p):
        fn = self._kernel("hinv2")
        if fn is not None:
            return fn(w, v, p)
        w, v = torch.broadcast_tensors(w, v)
        return bisection_invert(lambda x: self._hfunc2_0(x, v, p), w, lb=_EPS, ub=1.0 - _EPS)

    def _cdf0(self, u, v, p, n=_QUADRATURE_NODES):
        fn = self._kernel("cdf")
        if fn is not None:
            return fn(u, v, p, n)
        # C(u, v) = int_0^v P(U1 <= u | U2 = r) dr
        u, v = torch.broadcast_tensors(u, v)
        uf = u.reshape(-1)

        def integrand(r: torch.Tensor) -> torch.Tensor:
            return self._hfunc2_0(uf[:, None], stats.clamp_unit(r), p)

        return simpson_integrate(integrand, n, torch.zeros_like(uf), v.reshape(-1)).reshape(u.shape)

    # Exchangeable families: conditioning on the first argument swaps the roles.
    def _hfunc1_0(self, u, v, p):
        return self._hfunc2_0(v, u, p)

    def _hinv1_0(self, u, w, p):
        return self._hinv2_0(w, u, p)

    # ---- rotation layer ----

    def pdf(self, u: torch.Tensor) -> torch.Tensor:
        u = _format_data(u)
        a, b = self._reflect(u[:, 0], u[:, 1])
        out = self._pdf0(a, b, self._base_parameters())
        return out.clamp_min(torch.finfo(out.dtype).tiny)

    def cdf(self, u: torch.Tensor, *, quadrature_nodes: int = _QUADRATURE_NODES) -> torch.Tensor:
        u = _format_data(u)
        u1, u2 = u[:, 0], u[:, 1]
        a, b = self._reflect(u1, u2)
        p = self._cdf0(a, b, self._base_parameters(), int(quadrature_nodes))
        r1, r2 = _REFLECT[self.rotation]
        if r1 and r2:
            p = u1 + u2 - 1.0 + p
        elif r1:
            p = u2 - p
        elif r2:
            p = u1 - p
        return p.clamp(0.0, 1.0)

    def hfunc1(self, u: torch.Tensor) -> torch.Tensor:
        """P(U2 <= u2 | U1 = u1)."""
        u = _format_data(u)
        a, b = self._reflect(u[:, 0], u[:, 1])
        h = self._hfunc1_0(a, b, self._base_parameters())
        if _REFLECT[self.rotation][1]:
            h = 1.0 - h
        return h.clamp(0.0, 1.0)

    def hfunc2(self, u: torch.Tensor) -> torch.Tensor:
        """P(U1 <= u1 | U2 = u2)."""
        u = _format_data(u)
        a, b = self._reflect(u[:, 0], u[:, 1])
        h = self._hfunc2_0(a, b, self._base_parameters())
        if _REFLECT[self.rotation][0]:
            h = 1.0 - h
        return h.clamp(0.0, 1.0)

    def hinv1(self, u: torch.Tensor) -> torch.Tensor:
        """Inverse of hfunc1 in u2; columns are (u1, w)."""
        u = _format_data(u)
        r1, r2 = _REFLECT[self.rotation]
        u1, w = u[:, 0], u[:, 1]
        x = self._hinv1_0(1.0 - u1 if r1 else u1, 1.0 - w if r2 else w, self._base_parameters())
        out = 1.0 - x if r2 else x
        return out.clamp(0.0, 1.0)

    def hinv2(self, u: torch.Tensor) -> torch.Tensor:
        """Inverse of hfunc2 in u1; columns are (w, u2)."""
        u = _format_data(u)
        r1, r2 = _REFLECT[self.rotation]
        w, u2 = u[:, 0], u[:, 1]
        x = self._hinv2_0(1.0 - w if r1 else w, 1.0 - u2 if r2 else u2, self._base_parameters())
        out = 1.0 - x if r1 else x
        return out.clamp(0.0, 1.0)

    def parameters_to_tau(self, *, quadrature_nodes: int = _QUADRATURE_NODES) -> float:
        fn = _KERNELS[self.family].tau
        if fn is None:
            raise UnsupportedOperationError(f"{self.family.value} copula has no Kendall's tau")
        tau = float(fn(self._base_parameters(), int(quadrature_nodes)))
        return -tau if self.rotation in (90, 270) else tau

    def simulate(self, n: int, *, seeds=None, generator: torch.Generator | None = None) -> torch.Tensor:
        """Draw ``n`` samples by inverse Rosenblatt: u1 uniform, u2 = hinv1(u1, w)."""
        if n <= 0:
            raise ValueError("n must be positive")
        g = generator
        if g is None and seeds:
            g = torch.Generator()
            g.manual_seed(int(seeds[0]))
        u = torch.rand((int(n), 2), generator=g, dtype=torch.float64)
        U2 = self.hinv1(u)
        return torch.stack([u[:, 0], U2], dim=1)

    # ---- Fitting / Selection ----

    def _finite_loglik(self, lp: torch.Tensor, log) -> float:
        # Non-finite terms are dropped from the sum; the count is reported.
        keep = torch.isfinite(lp)
        dropped = int((~keep).sum().item())
        if dropped:
            log.debug(
                "nonfinite_loglik_terms",
                family=self.family.value,
                rotation=self.rotation,
                dropped=dropped,
                nobs=int(lp.numel()),
            )
        return float(lp[keep].sum().item())

    def loglik(self, data: torch.Tensor, *, logger=None) -> float:
        return self._finite_loglik(torch.log(self.pdf(data)), logger or _log)

    def aic(self, data: torch.Tensor) -> float:
        return -2.0 * self.loglik(data) + 2.0 * self.npars

    def bic(self, data: torch.Tensor) -> float:
        data = torch.as_tensor(data)
        n = float(data.shape[0])
        return -2.0 * self.loglik(data) + math.log(n) * self.npars

    def _loglik_objective(self, data: torch.Tensor, log) -> Callable[[torch.Tensor], float]:
        # data is already clamped; reflections are parameter independent and done once.
        a, b = self._reflect(data[:, 0], data[:, 1])
        tiny = torch.finfo(torch.float64).tiny

        if self.family == BicopFamily.student:
            # t scores for the most recent degrees of freedom; coordinate sweeps reuse them.
            cache: dict[float, tuple[torch.Tensor, torch.Tensor]] = {}

            def obj_student(pars: torch.Tensor) -> float:
                p = self._base_parameters(pars)
                key = float(p[1])
                if key not in cache:
                    cache.clear()
                    cache[key] = (stats.qt(a, p[1]), stats.qt(b, p[1]))
                x, y = cache[key]
                return self._finite_loglik(_student_log_pdf_scores(x, y, p[0], p[1]), log)

            return obj_student

        def obj(pars: torch.Tensor) -> float:
            c = self._pdf0(a, b, self._base_parameters(pars)).clamp_min(tiny)
            return self._finite_loglik(torch.log(c), log)

        return obj

    def fit(self, data: torch.Tensor, controls: FitControlsBicop | None = None, *, logger=None) -> "Bicop":
        """Maximum-likelihood estimate of the parameters over their bounds.

        The estimate is written into ``parameters`` and the achieved
        log-likelihood into ``fit_loglik``. Returns ``self``.
        """
        if controls is None:
            controls = FitControlsBicop()
        log = logger or _log
        data = _format_data(data)
        self.nobs = int(data.shape[0])

        if self._kernel("pdf") is None:
            raise UnsupportedOperationError(f"{self.family.value} copula has no density")
        if self.family == BicopFamily.indep:
            self._fit_loglik = 0.0
            return self

        lb, ub = parameter_bounds(self.family, self.rotation)
        x0 = torch.max(torch.min(self.start_parameters, ub), lb)
        obj = self._loglik_objective(data, log)

        if x0.numel() == 1:

            def obj1(v: float) -> float:
                return obj(torch.tensor([v], dtype=torch.float64))

            res = golden_section_maximize(
                obj1,
                a=float(lb[0]),
                b=float(ub[0]),
                x0=float(x0[0]),
                max_iter=controls.max_iter,
                tol=controls.tol,
                logger=log,
            )
            self.parameters = res.x.reshape(1).clone()
        else:
            res = coordinate_descent_maximize(
                obj,
                x0=x0,
                lb=lb,
                ub=ub,
                max_inner=controls.max_iter,
                tol=controls.tol,
                logger=log,
            )
            self.parameters = res.x.reshape(-1).clone()

        self._fit_loglik = float(res.fun)
        if controls.show_trace:
            log.info(
                "bicop_fit",
                family=self.family.value,
                rotation=self.rotation,
                parameters=self.parameters.tolist(),
                loglik=self._fit_loglik,
                n_eval=res.n_eval,
                converged=res.converged,
            )
        return self

    def select(self, data: torch.Tensor, controls: FitControlsBicop | None = None, *, logger=None) -> "Bicop":
        """Fit every family in ``controls.family_set`` and keep the best one in place."""
        from .select import select_by_gof, select_by_loglik

        if controls is None:
            controls = FitControlsBicop()
        candidates = family_library(families_to_selection(controls.family_set), rotations=controls.allow_rotations)
        if controls.selection_method == "gof":
            best = select_by_gof(candidates, data, controls, logger=logger)
        else:
            best = select_by_loglik(candidates, data, controls, logger=logger)

        self.family = best.family
        self.rotation = best.rotation
        self.parameters = best.parameters
        self.nobs = best.nobs
        self._fit_loglik = best._fit_loglik
        return self
