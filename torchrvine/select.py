"""Family selection: maximum likelihood and goodness-of-fit bootstrap."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Sequence, TypeVar

import torch

from . import stats
from .bicop import Bicop, _format_data
from .families import UnsupportedOperationError
from .fit_controls import FitControlsBicop
from .logging import get_logger

_log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def _run_tasks(fn: Callable[[T], R], items: Sequence[T], num_threads: int) -> list[R]:
    # Results come back in submission order regardless of scheduling.
    if int(num_threads) <= 1 or len(items) <= 1:
        return [fn(it) for it in items]
    with ThreadPoolExecutor(max_workers=int(num_threads)) as pool:
        return list(pool.map(fn, items))


def _criterion_score(cop: Bicop, ll: float, n: int, criterion: str) -> float:
    # Larger is better for every criterion.
    if criterion == "loglik":
        return ll
    if criterion == "aic":
        return -(-2.0 * ll + 2.0 * cop.npars)
    return -(-2.0 * ll + math.log(float(n)) * cop.npars)


def select_by_loglik(
    candidates: Sequence[Bicop],
    data: torch.Tensor,
    controls: FitControlsBicop | None = None,
    *,
    logger=None,
) -> Bicop:
    """Fit every candidate and return the best one.

    Candidates are fitted in place. The reduction runs in candidate order and
    only a strictly better score replaces the incumbent, so the first of
    equally good candidates wins.
    """
    if controls is None:
        controls = FitControlsBicop()
    log = logger or _log
    data = _format_data(data)
    n = int(data.shape[0])

    def fit_one(cop: Bicop) -> Bicop | None:
        try:
            return cop.fit(data, controls, logger=log)
        except UnsupportedOperationError as e:
            log.warning("candidate_skipped", family=cop.family.value, rotation=cop.rotation, reason=str(e))
            return None

    fitted = _run_tasks(fit_one, list(candidates), controls.num_threads)

    best = None
    best_score = -math.inf
    for cop in fitted:
        if cop is None:
            continue
        score = _criterion_score(cop, float(cop.fit_loglik), n, controls.selection_criterion)
        if controls.show_trace:
            log.info("candidate_scored", family=cop.family.value, rotation=cop.rotation, score=score)
        if best is None or score > best_score:
            best = cop
            best_score = score

    if best is None:
        raise RuntimeError("no candidate model could be fitted/evaluated")
    return best


def gof_statistic(cop: Bicop, data: torch.Tensor, *, quadrature_nodes: int = 1000) -> float:
    """Cramer-von Mises type distance sum_i (C_n(u_i) - C(u_i))^2.

    ``quadrature_nodes`` is passed to the model cdf of families without a
    closed form.
    """
    data = torch.as_tensor(data, dtype=torch.float64)
    emp = stats.empirical_copula(data[:, :2], data[:, :2])
    model = cop.cdf(data, quadrature_nodes=quadrature_nodes)
    return float(((emp - model) ** 2).sum().item())


def gof_pvalue(
    cop: Bicop,
    data: torch.Tensor,
    controls: FitControlsBicop | None = None,
    *,
    logger=None,
) -> float:
    """Parametric bootstrap p-value of the fitted ``cop`` on ``data``.

    ``cop`` is fitted to ``data`` in place. Each of the
    ``controls.gof_bootstrap_samples`` iterations draws from the fitted model
    with a generator seeded ``seeds[0] + k``, rank-normalizes the draw, refits
    a copy and recomputes the statistic. The p-value is the share of
    iterations whose statistic exceeds the observed one.
    """
    if controls is None:
        controls = FitControlsBicop()
    log = logger or _log
    data = torch.as_tensor(data, dtype=torch.float64)
    cop.fit(data, controls, logger=log)
    s_obs = gof_statistic(cop, data, quadrature_nodes=controls.quadrature_nodes)
    n = int(data.shape[0])
    base_seed = int(controls.seeds[0]) if controls.seeds else 0

    def one_draw(k: int) -> bool:
        g = torch.Generator()
        g.manual_seed(base_seed + k)
        sim = stats.rank_normalize(cop.simulate(n, generator=g))
        boot = cop.clone().fit(sim, controls, logger=log)
        return gof_statistic(boot, sim, quadrature_nodes=controls.quadrature_nodes) > s_obs

    B = int(controls.gof_bootstrap_samples)
    exceed = _run_tasks(one_draw, list(range(B)), controls.num_threads)
    pvalue = sum(exceed) / B
    if controls.show_trace:
        log.info("gof_pvalue", family=cop.family.value, rotation=cop.rotation, statistic=s_obs, pvalue=pvalue)
    return pvalue


def select_by_gof(
    candidates: Sequence[Bicop],
    data: torch.Tensor,
    controls: FitControlsBicop | None = None,
    *,
    logger=None,
) -> Bicop:
    """Return the candidate with the largest bootstrap p-value (first wins ties)."""
    if controls is None:
        controls = FitControlsBicop()
    log = logger or _log

    best = None
    best_p = -math.inf
    for cop in candidates:
        try:
            p = gof_pvalue(cop, data, controls, logger=log)
        except UnsupportedOperationError as e:
            log.warning("candidate_skipped", family=cop.family.value, rotation=cop.rotation, reason=str(e))
            continue
        if best is None or p > best_p:
            best = cop
            best_p = p

    if best is None:
        raise RuntimeError("no candidate model could be fitted/evaluated")
    return best
