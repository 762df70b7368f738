"""BicopFamily enum: pair-copula family identifiers, parameter tables and the family library."""

from __future__ import annotations

from enum import Enum
from typing import Sequence

import torch


class UnsupportedOperationError(NotImplementedError):
    """Raised when a family variant has no implementation of the requested math."""


class BicopFamily(str, Enum):
    indep = "indep"
    gaussian = "gaussian"
    student = "student"
    clayton = "clayton"
    frank = "frank"
    gumbel = "gumbel"
    fgm = "fgm"
    galambos = "galambos"


# Order of the boolean selection vector accepted by family_library().
LIBRARY_ORDER = (
    BicopFamily.indep,
    BicopFamily.gaussian,
    BicopFamily.student,
    BicopFamily.clayton,
    BicopFamily.frank,
    BicopFamily.gumbel,
    BicopFamily.fgm,
    BicopFamily.galambos,
)

_ROTATIONS = (0, 90, 180, 270)

_FAMILY_CAN_ROTATE = {
    BicopFamily.clayton: True,
    BicopFamily.gumbel: True,
}

# (lower bounds, upper bounds, default start) of the unrotated family.
_PARAMETER_TABLE: dict[BicopFamily, tuple[tuple[float, ...], tuple[float, ...], tuple[float, ...]]] = {
    BicopFamily.indep: ((), (), ()),
    BicopFamily.gaussian: ((-0.9999,), (0.9999,), (0.5,)),
    BicopFamily.student: ((-0.9999, 2.0), (0.9999, 30.0), (0.5, 4.0)),
    BicopFamily.clayton: ((1e-10,), (28.0,), (2.0,)),
    BicopFamily.frank: ((-100.0,), (100.0,), (0.5,)),
    BicopFamily.gumbel: ((1.0,), (50.0,), (3.0,)),
    BicopFamily.fgm: ((-1.0,), (1.0,), (0.0,)),
    BicopFamily.galambos: ((1e-4,), (100.0,), (1.0,)),
}


def family_can_rotate(fam: BicopFamily) -> bool:
    return _FAMILY_CAN_ROTATE.get(fam, False)


def normalize_family(fam: str | BicopFamily) -> BicopFamily:
    if isinstance(fam, BicopFamily):
        return fam
    try:
        return BicopFamily(str(fam).lower())
    except ValueError as e:
        raise ValueError(f"Unknown BicopFamily: {fam!r}") from e


def check_rotation(fam: BicopFamily, rotation: int) -> int:
    rotation = int(rotation)
    if rotation not in _ROTATIONS:
        raise ValueError("rotation must be one of 0, 90, 180, 270")
    if rotation != 0 and not family_can_rotate(fam):
        raise ValueError(f"family {fam.value} does not support rotation")
    return rotation


def _negates(rotation: int) -> bool:
    # 90 and 270 reflect a single margin, which flips the sign of the dependence.
    return int(rotation) in (90, 270)


def parameter_bounds(fam: BicopFamily, rotation: int = 0) -> tuple[torch.Tensor, torch.Tensor]:
    """Box constraints of the parameter vector.

    Single-margin rotations store the negated parameter, so their interval is
    the unrotated one negated and mirrored.
    """
    fam = normalize_family(fam)
    lb, ub, _start = _PARAMETER_TABLE[fam]
    lb_t = torch.tensor(lb, dtype=torch.float64)
    ub_t = torch.tensor(ub, dtype=torch.float64)
    if _negates(check_rotation(fam, rotation)):
        return -ub_t, -lb_t
    return lb_t, ub_t


def start_parameters(fam: BicopFamily, rotation: int = 0) -> torch.Tensor:
    fam = normalize_family(fam)
    _lb, _ub, start = _PARAMETER_TABLE[fam]
    s = torch.tensor(start, dtype=torch.float64)
    if _negates(check_rotation(fam, rotation)):
        return -s
    return s


def family_library(selection: Sequence[bool] | None = None, *, rotations: bool = True) -> list:
    """Instantiate the candidate pair copulas.

    ``selection`` is a boolean vector in ``LIBRARY_ORDER``
    (indep, gaussian, student, clayton, frank, gumbel, fgm, galambos); a
    shorter vector leaves the remaining families out, ``None`` selects all.
    Rotating families contribute four candidates (0, 90, 180, 270) unless
    ``rotations`` is False. Every candidate starts at its default parameters.
    """
    from .bicop import Bicop

    if selection is None:
        selection = [True] * len(LIBRARY_ORDER)
    if len(selection) > len(LIBRARY_ORDER):
        raise ValueError(f"selection has {len(selection)} entries, at most {len(LIBRARY_ORDER)} families exist")

    out = []
    for fam, chosen in zip(LIBRARY_ORDER, selection):
        if not chosen:
            continue
        rots = _ROTATIONS if (rotations and family_can_rotate(fam)) else (0,)
        for rot in rots:
            out.append(Bicop(family=fam, rotation=rot))
    return out


def families_to_selection(family_set: Sequence[str | BicopFamily]) -> list[bool]:
    """Boolean selection vector for a set of family names (empty means all)."""
    if not family_set:
        return [True] * len(LIBRARY_ORDER)
    chosen = {normalize_family(f) for f in family_set}
    return [fam in chosen for fam in LIBRARY_ORDER]
