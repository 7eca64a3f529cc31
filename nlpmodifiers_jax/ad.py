"""Models differentiated with JAX.

``ADNLPModel`` and ``ADNLSModel`` build every derivative query from plain
callables: gradients via ``jax.grad`` (reverse-mode), Jacobians via
``jax.jacrev``, transposed products via ``jax.vjp`` and Hessian-vector
products forward-over-reverse. Their Jacobians are reported with a dense
row-major structure and their Hessians with a dense lower-triangle
structure.
"""

import logging
from collections.abc import Iterable
from typing import Optional

import jax
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike, Float

from nlpmodifiers_jax.meta import NLPModelMeta, NLSMeta
from nlpmodifiers_jax.models import AbstractNLPModel, AbstractNLSModel
from nlpmodifiers_jax.structure import (
    check_length,
    dense_structure,
    empty_structure,
    lower_triangle_structure,
)
from nlpmodifiers_jax.types import (
    ConstraintFn,
    ObjectiveFn,
    ResidualFn,
    Scalar,
    Structure,
    ValueVector,
    Vector,
)

logger = logging.getLogger(__name__)


def _no_constraints(x: Vector) -> Float[Array, " 0"]:
    return jnp.zeros((0,), dtype=x.dtype)


def _hvp(fn, x: Vector, v: Vector) -> Vector:
    """Forward-over-reverse Hessian-vector product of a scalar function."""
    return jax.jvp(jax.grad(fn), (x,), (v,))[1]


def _lower_values(H: Float[Array, "n n"], structure: Structure) -> ValueVector:
    rows, cols = structure
    return H[rows, cols]


class _ConstraintsMixin:
    """Constraint queries shared by the AD models.

    Expects ``meta`` and ``counters`` (from the model base class) and the
    constraint callable ``c``.
    """

    c: ConstraintFn

    def cons(self, x: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self.counters.increment("cons")
        return self.c(x)

    def jac_structure(self) -> Structure:
        if self.meta.ncon == 0:
            return empty_structure()
        return dense_structure(self.meta.ncon, self.meta.nvar)

    def jac_coord(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac")
        return jax.jacrev(self.c)(x).reshape(-1)

    def jprod(self, x: Vector, v: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod")
        return jax.jvp(self.c, (x,), (v,))[1]

    def jtprod(self, x: Vector, w: Float[Array, " ncon"]) -> Vector:
        self._check_x(x)
        check_length(w, self.meta.ncon, "w")
        self.counters.increment("jtprod")
        _, vjp_fn = jax.vjp(self.c, x)
        return vjp_fn(w)[0]

    def ghjvprod(self, x: Vector, g: Vector, v: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self._check_x(g, "g")
        self._check_x(v, "v")
        self.counters.increment("jhprod")
        # rows of d/dt J(x + t v) are ∇²c_i(x) v
        Hv = jax.jvp(jax.jacrev(self.c), (x,), (v,))[1]
        return Hv @ g


class ADNLPModel(_ConstraintsMixin, AbstractNLPModel):
    """Nonlinear program defined by JAX-traceable callables.

    Args:
        f: Objective, x -> scalar.
        x0: Initial point.
        c: Constraints, x -> (ncon,). Omit for an unconstrained problem.
        lvar, uvar: Variable bounds.
        lcon, ucon: Constraint bounds.
        y0: Initial multipliers.
        lin: Indices of linear constraints.
        name: Problem name.

    Example:
        >>> import jax.numpy as jnp
        >>> nlp = ADNLPModel(
        ...     lambda x: jnp.sum(x**2),
        ...     jnp.ones(2),
        ...     c=lambda x: jnp.array([x[0] + x[1]]),
        ...     lcon=[1.0],
        ...     ucon=[1.0],
        ... )
        >>> nlp.meta.nnzj
        2
    """

    def __init__(
        self,
        f: ObjectiveFn,
        x0: ArrayLike,
        *,
        c: Optional[ConstraintFn] = None,
        lvar: Optional[ArrayLike] = None,
        uvar: Optional[ArrayLike] = None,
        lcon: Optional[ArrayLike] = None,
        ucon: Optional[ArrayLike] = None,
        y0: Optional[ArrayLike] = None,
        lin: Iterable[int] = (),
        name: str = "Generic",
    ):
        x0 = jnp.asarray(x0, dtype=float)
        self.f = f
        self.c = _no_constraints if c is None else c
        ncon = jax.eval_shape(self.c, x0).shape[0]
        nvar = x0.shape[0]
        meta = NLPModelMeta(
            nvar,
            x0=x0,
            lvar=lvar,
            uvar=uvar,
            ncon=ncon,
            y0=y0,
            lcon=lcon,
            ucon=ucon,
            nnzj=nvar * ncon,
            lin=lin,
            name=name,
        )
        super().__init__(meta)
        logger.debug("Built %r", self)

    def _lagrangian(self, y: Vector, obj_weight: float):
        def lagrangian(x):
            return obj_weight * self.f(x) + jnp.dot(y, self.c(x))

        return lagrangian

    def obj(self, x: Vector) -> Scalar:
        self._check_x(x)
        self.counters.increment("obj")
        return self.f(x)

    def grad(self, x: Vector) -> Vector:
        self._check_x(x)
        self.counters.increment("grad")
        return jax.grad(self.f)(x)

    def hess_structure(self) -> Structure:
        return lower_triangle_structure(self.meta.nvar)

    def hess_coord(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> ValueVector:
        self._check_x(x)
        y = self._check_y(y)
        self.counters.increment("hess")
        H = jax.hessian(self._lagrangian(y, obj_weight))(x)
        return _lower_values(H, self.hess_structure())

    def hprod(
        self,
        x: Vector,
        v: Vector,
        y: Optional[Vector] = None,
        *,
        obj_weight: float = 1.0,
    ) -> Vector:
        self._check_x(x)
        self._check_x(v, "v")
        y = self._check_y(y)
        self.counters.increment("hprod")
        return _hvp(self._lagrangian(y, obj_weight), x, v)


class ADNLSModel(_ConstraintsMixin, AbstractNLSModel):
    """Nonlinear least-squares problem defined by JAX-traceable callables.

    min ½‖F(x)‖²  s.t.  lcon <= c(x) <= ucon,  lvar <= x <= uvar

    Args:
        F: Residual, x -> (nequ,).
        x0: Initial point.
        c: Constraints, x -> (ncon,). Omit for an unconstrained problem.
        lvar, uvar: Variable bounds.
        lcon, ucon: Constraint bounds.
        y0: Initial multipliers.
        lin: Indices of linear constraints.
        lin_residual: Indices of linear residual components.
        name: Problem name.
    """

    def __init__(
        self,
        F: ResidualFn,
        x0: ArrayLike,
        *,
        c: Optional[ConstraintFn] = None,
        lvar: Optional[ArrayLike] = None,
        uvar: Optional[ArrayLike] = None,
        lcon: Optional[ArrayLike] = None,
        ucon: Optional[ArrayLike] = None,
        y0: Optional[ArrayLike] = None,
        lin: Iterable[int] = (),
        lin_residual: Iterable[int] = (),
        name: str = "Generic",
    ):
        x0 = jnp.asarray(x0, dtype=float)
        self.F = F
        self.c = _no_constraints if c is None else c
        nvar = x0.shape[0]
        nequ = jax.eval_shape(self.F, x0).shape[0]
        ncon = jax.eval_shape(self.c, x0).shape[0]
        meta = NLPModelMeta(
            nvar,
            x0=x0,
            lvar=lvar,
            uvar=uvar,
            ncon=ncon,
            y0=y0,
            lcon=lcon,
            ucon=ucon,
            nnzj=nvar * ncon,
            lin=lin,
            name=name,
        )
        nls_meta = NLSMeta(nequ, nvar, x0=x0, lin=lin_residual)
        super().__init__(meta, nls_meta)
        logger.debug("Built %r with nequ=%d", self, nequ)

    def _weighted_residual(self, v: Vector):
        def weighted(x):
            return jnp.dot(v, self.F(x))

        return weighted

    def _lagrangian(self, y: Vector, obj_weight: float):
        def lagrangian(x):
            Fx = self.F(x)
            return obj_weight * jnp.dot(Fx, Fx) / 2 + jnp.dot(y, self.c(x))

        return lagrangian

    def hess_structure(self) -> Structure:
        return lower_triangle_structure(self.meta.nvar)

    def hess_coord(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> ValueVector:
        self._check_x(x)
        y = self._check_y(y)
        self.counters.increment("hess")
        H = jax.hessian(self._lagrangian(y, obj_weight))(x)
        return _lower_values(H, self.hess_structure())

    def hprod(
        self,
        x: Vector,
        v: Vector,
        y: Optional[Vector] = None,
        *,
        obj_weight: float = 1.0,
    ) -> Vector:
        self._check_x(x)
        self._check_x(v, "v")
        y = self._check_y(y)
        self.counters.increment("hprod")
        return _hvp(self._lagrangian(y, obj_weight), x, v)

    # Residual

    def residual(self, x: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self.counters.increment("residual")
        return self.F(x)

    def jac_structure_residual(self) -> Structure:
        return dense_structure(self.nls_meta.nequ, self.meta.nvar)

    def jac_coord_residual(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac_residual")
        return jax.jacrev(self.F)(x).reshape(-1)

    def jprod_residual(self, x: Vector, v: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod_residual")
        return jax.jvp(self.F, (x,), (v,))[1]

    def jtprod_residual(self, x: Vector, w: Float[Array, " nequ"]) -> Vector:
        self._check_x(x)
        self._check_residual_weights(w, "w")
        self.counters.increment("jtprod_residual")
        _, vjp_fn = jax.vjp(self.F, x)
        return vjp_fn(w)[0]

    def hess_structure_residual(self) -> Structure:
        return lower_triangle_structure(self.meta.nvar)

    def hess_coord_residual(self, x: Vector, v: Vector) -> ValueVector:
        self._check_x(x)
        self._check_residual_weights(v)
        self.counters.increment("hess_residual")
        H = jax.hessian(self._weighted_residual(v))(x)
        return _lower_values(H, self.hess_structure_residual())

    def hprod_residual(self, x: Vector, i: int, v: Vector) -> Vector:
        self._check_x(x)
        self._check_x(v, "v")
        self._check_residual_index(i)
        self.counters.increment("hprod_residual")
        return _hvp(lambda z: self.F(z)[i], x, v)
