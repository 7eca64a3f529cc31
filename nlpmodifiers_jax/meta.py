"""Problem metadata for nonlinear programs and least-squares problems.

The metadata is the static description of a model: number of variables and
constraints, bounds, starting points, number of structural non-zeros of the
Jacobian and of the (lower triangle of the) Hessian of the Lagrangian, and
which constraints are linear. It is immutable after construction and every
model modifier builds a new one for the problem it exposes.
"""

from collections.abc import Iterable
from typing import Optional

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, ArrayLike, Float

from nlpmodifiers_jax.errors import DimensionError


def _filled(value: Optional[ArrayLike], size: int, fill: float) -> Float[Array, " k"]:
    if value is None:
        return jnp.full((size,), fill)
    return jnp.asarray(value, dtype=float).reshape(-1)


def _split_linear(
    lin: Iterable[int], nln: Optional[Iterable[int]], size: int
) -> tuple[tuple[int, ...], tuple[int, ...]]:
    lin = tuple(int(i) for i in lin)
    if nln is None:
        linear = set(lin)
        nln = tuple(i for i in range(size) if i not in linear)
    else:
        nln = tuple(int(i) for i in nln)
    return lin, nln


def _check_partition(lin: tuple[int, ...], nln: tuple[int, ...], size: int, what: str):
    if set(lin) & set(nln):
        raise DimensionError(f"linear and nonlinear {what} overlap")
    if len(lin) + len(nln) != size or sorted(lin + nln) != list(range(size)):
        raise DimensionError(
            f"linear and nonlinear {what} must partition 0..{size - 1}"
        )


class NLPModelMeta(eqx.Module):
    """Metadata of a nonlinear program.

    min f(x)  s.t.  lcon <= c(x) <= ucon,  lvar <= x <= uvar

    Attributes:
        nvar: Number of variables.
        ncon: Number of general constraints.
        x0: Initial primal point.
        lvar: Lower bounds on the variables (-inf when absent).
        uvar: Upper bounds on the variables (+inf when absent).
        y0: Initial multipliers.
        lcon: Lower bounds on the constraints.
        ucon: Upper bounds on the constraints.
        nnzj: Number of structural non-zeros of the constraint Jacobian.
        nnzh: Number of structural non-zeros of the lower triangle of the
            Hessian of the Lagrangian.
        lin: Indices of the linear constraints.
        nln: Indices of the nonlinear constraints.
        name: Problem name.
    """

    nvar: int = eqx.field(static=True)
    ncon: int = eqx.field(static=True)
    x0: Float[Array, " nvar"]
    lvar: Float[Array, " nvar"]
    uvar: Float[Array, " nvar"]
    y0: Float[Array, " ncon"]
    lcon: Float[Array, " ncon"]
    ucon: Float[Array, " ncon"]
    nnzj: int = eqx.field(static=True)
    nnzh: int = eqx.field(static=True)
    lin: tuple[int, ...] = eqx.field(static=True)
    nln: tuple[int, ...] = eqx.field(static=True)
    name: str = eqx.field(static=True)

    def __init__(
        self,
        nvar: int,
        *,
        x0: Optional[ArrayLike] = None,
        lvar: Optional[ArrayLike] = None,
        uvar: Optional[ArrayLike] = None,
        ncon: int = 0,
        y0: Optional[ArrayLike] = None,
        lcon: Optional[ArrayLike] = None,
        ucon: Optional[ArrayLike] = None,
        nnzj: Optional[int] = None,
        nnzh: Optional[int] = None,
        lin: Iterable[int] = (),
        nln: Optional[Iterable[int]] = None,
        name: str = "Generic",
    ):
        self.nvar = int(nvar)
        self.ncon = int(ncon)
        self.x0 = _filled(x0, self.nvar, 0.0)
        self.lvar = _filled(lvar, self.nvar, -jnp.inf)
        self.uvar = _filled(uvar, self.nvar, jnp.inf)
        self.y0 = _filled(y0, self.ncon, 0.0)
        self.lcon = _filled(lcon, self.ncon, -jnp.inf)
        self.ucon = _filled(ucon, self.ncon, jnp.inf)
        self.nnzj = self.nvar * self.ncon if nnzj is None else int(nnzj)
        self.nnzh = self.nvar * (self.nvar + 1) // 2 if nnzh is None else int(nnzh)
        self.lin, self.nln = _split_linear(lin, nln, self.ncon)
        self.name = name

    def __check_init__(self):
        if self.nvar < 0 or self.ncon < 0:
            raise DimensionError("nvar and ncon must be non-negative")
        for what, value, size in (
            ("x0", self.x0, self.nvar),
            ("lvar", self.lvar, self.nvar),
            ("uvar", self.uvar, self.nvar),
            ("y0", self.y0, self.ncon),
            ("lcon", self.lcon, self.ncon),
            ("ucon", self.ucon, self.ncon),
        ):
            if value.shape[0] != size:
                raise DimensionError(
                    f"{what} has length {value.shape[0]}, expected {size}"
                )
        if self.nnzj < 0 or self.nnzh < 0:
            raise DimensionError("nnzj and nnzh must be non-negative")
        _check_partition(self.lin, self.nln, self.ncon, "constraints")

    # Constraint classification, computed on the host with numpy so that the
    # index sets are static.

    @property
    def jfix(self) -> np.ndarray:
        """Indices of equality constraints (lcon == ucon)."""
        lcon, ucon = np.asarray(self.lcon), np.asarray(self.ucon)
        return np.flatnonzero(lcon == ucon)

    @property
    def jlow(self) -> np.ndarray:
        """Indices of constraints with a finite lower bound only."""
        lcon, ucon = np.asarray(self.lcon), np.asarray(self.ucon)
        return np.flatnonzero(np.isfinite(lcon) & ~np.isfinite(ucon))

    @property
    def jupp(self) -> np.ndarray:
        """Indices of constraints with a finite upper bound only."""
        lcon, ucon = np.asarray(self.lcon), np.asarray(self.ucon)
        return np.flatnonzero(~np.isfinite(lcon) & np.isfinite(ucon))

    @property
    def jrng(self) -> np.ndarray:
        """Indices of range constraints (both bounds finite and different)."""
        lcon, ucon = np.asarray(self.lcon), np.asarray(self.ucon)
        return np.flatnonzero(np.isfinite(lcon) & np.isfinite(ucon) & (lcon != ucon))

    @property
    def jfree(self) -> np.ndarray:
        """Indices of constraints without finite bounds."""
        lcon, ucon = np.asarray(self.lcon), np.asarray(self.ucon)
        return np.flatnonzero(~np.isfinite(lcon) & ~np.isfinite(ucon))

    @property
    def jineq(self) -> np.ndarray:
        """Indices of all inequality constraints, in increasing order."""
        return np.sort(np.concatenate([self.jlow, self.jupp, self.jrng]))

    @property
    def unconstrained(self) -> bool:
        return self.ncon == 0 and not self.bound_constrained

    @property
    def bound_constrained(self) -> bool:
        lvar, uvar = np.asarray(self.lvar), np.asarray(self.uvar)
        return bool(np.any(np.isfinite(lvar)) or np.any(np.isfinite(uvar)))

    @property
    def equality_constrained(self) -> bool:
        return self.ncon > 0 and len(self.jfix) == self.ncon

    @property
    def inequality_constrained(self) -> bool:
        return self.ncon > 0 and len(self.jfix) == 0


class NLSMeta(eqx.Module):
    """Metadata of the residual F(x) of a nonlinear least-squares problem.

    Attributes:
        nequ: Number of residual components.
        nvar: Number of variables.
        x0: Initial point.
        nnzj: Number of structural non-zeros of the residual Jacobian.
        nnzh: Number of structural non-zeros of the lower triangle of the
            weighted residual Hessian sum_i v_i ∇²F_i(x).
        lin: Indices of the linear residual components.
        nln: Indices of the nonlinear residual components.
    """

    nequ: int = eqx.field(static=True)
    nvar: int = eqx.field(static=True)
    x0: Float[Array, " nvar"]
    nnzj: int = eqx.field(static=True)
    nnzh: int = eqx.field(static=True)
    lin: tuple[int, ...] = eqx.field(static=True)
    nln: tuple[int, ...] = eqx.field(static=True)

    def __init__(
        self,
        nequ: int,
        nvar: int,
        *,
        x0: Optional[ArrayLike] = None,
        nnzj: Optional[int] = None,
        nnzh: Optional[int] = None,
        lin: Iterable[int] = (),
        nln: Optional[Iterable[int]] = None,
    ):
        self.nequ = int(nequ)
        self.nvar = int(nvar)
        self.x0 = _filled(x0, self.nvar, 0.0)
        self.nnzj = self.nequ * self.nvar if nnzj is None else int(nnzj)
        self.nnzh = self.nvar * (self.nvar + 1) // 2 if nnzh is None else int(nnzh)
        self.lin, self.nln = _split_linear(lin, nln, self.nequ)

    def __check_init__(self):
        if self.nequ < 0 or self.nvar < 0:
            raise DimensionError("nequ and nvar must be non-negative")
        if self.x0.shape[0] != self.nvar:
            raise DimensionError(
                f"x0 has length {self.x0.shape[0]}, expected {self.nvar}"
            )
        if self.nnzj < 0 or self.nnzh < 0:
            raise DimensionError("nnzj and nnzh must be non-negative")
        _check_partition(self.lin, self.nln, self.nequ, "residuals")
