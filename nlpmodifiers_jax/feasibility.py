"""Feasibility reformulations of least-squares and constrained problems.

``FeasibilityFormNLS`` moves the residual of a least-squares problem into
the constraints:

    min_x ½‖F(x)‖²              min_{x,r} ½‖r‖²
    s.t.  c_L <= c(x) <= c_U      s.t.      F(x) - r = 0
          l <= x <= u       ->              c_L <= c(x) <= c_U
                                            l <= x <= u

``FeasibilityResidual`` goes the other way for an equality-constrained
problem, minimizing the constraint violation ½‖c(x) - c_L‖².
"""

import logging
from typing import Optional

import jax.numpy as jnp
from jaxtyping import Array, Float

from nlpmodifiers_jax.errors import ModelError
from nlpmodifiers_jax.meta import NLPModelMeta, NLSMeta
from nlpmodifiers_jax.models import AbstractNLPModel, AbstractNLSModel
from nlpmodifiers_jax.slack import SlackModel, SlackNLSModel
from nlpmodifiers_jax.structure import (
    CoordinateLayout,
    check_length,
    coo_sym_prod,
    diagonal_structure,
    empty_structure,
    lower_triangle_structure,
    shift,
    split,
    symmetric_from_lower,
    unit_vector,
)
from nlpmodifiers_jax.types import Scalar, Structure, ValueVector, Vector

logger = logging.getLogger(__name__)


class FeasibilityFormNLS(AbstractNLSModel):
    """Least-squares problem with its residual moved to the constraints.

    For a wrapped model with n variables, m constraints and nequ residuals,
    the variables are ``[x, r]`` (n + nequ) and the constraints are
    ``[F(x) - r, c(x)]`` (nequ + m).

    The Jacobian is stored in three blocks: the residual Jacobian, the
    constraint Jacobian shifted down by nequ rows (only when m > 0), and
    the -I block on the r columns. The Hessian of the Lagrangian is stored
    as the weighted residual Hessian, the constraint Hessian (only when
    m > 0), and obj_weight * I on the r block. Entries of the first two
    Hessian blocks can share positions; they sum.

    The residual of the transformed problem is r itself.

    Args:
        nls: Least-squares model to transform. It is closed when this model
            is closed.
        name: Name of the transformed problem (default: model name + "-ffnls").

    Attributes:
        internal: The wrapped model.
        jac_layout: Block layout of the Jacobian coordinates.
        hess_layout: Block layout of the Hessian coordinates.
    """

    def __init__(self, nls: AbstractNLSModel, *, name: Optional[str] = None):
        meta, nls_meta = nls.meta, nls.nls_meta
        n, m, ne = meta.nvar, meta.ncon, nls_meta.nequ
        self.internal = nls
        self.jac_layout = CoordinateLayout(
            [
                ("residual", nls_meta.nnzj),
                ("constraints", meta.nnzj if m > 0 else 0),
                ("identity", ne),
            ]
        )
        self.hess_layout = CoordinateLayout(
            [
                ("residual", nls_meta.nnzh),
                ("constraints", meta.nnzh if m > 0 else 0),
                ("identity", ne),
            ]
        )
        x0 = jnp.concatenate([meta.x0, jnp.zeros(ne)])
        new_meta = NLPModelMeta(
            n + ne,
            x0=x0,
            lvar=jnp.concatenate([meta.lvar, jnp.full(ne, -jnp.inf)]),
            uvar=jnp.concatenate([meta.uvar, jnp.full(ne, jnp.inf)]),
            ncon=m + ne,
            y0=jnp.concatenate([jnp.zeros(ne), meta.y0]),
            lcon=jnp.concatenate([jnp.zeros(ne), meta.lcon]),
            ucon=jnp.concatenate([jnp.zeros(ne), meta.ucon]),
            nnzj=self.jac_layout.nnz,
            nnzh=self.hess_layout.nnz,
            lin=nls_meta.lin + tuple(i + ne for i in meta.lin),
            nln=nls_meta.nln + tuple(i + ne for i in meta.nln),
            name=name or f"{meta.name}-ffnls",
        )
        new_nls_meta = NLSMeta(
            ne, n + ne, x0=x0, nnzj=ne, nnzh=0, lin=range(ne), nln=()
        )
        super().__init__(new_meta, new_nls_meta)
        logger.debug("Built %r from %r", self, nls)

    def _sizes(self) -> tuple[int, int, int]:
        internal = self.internal
        return internal.meta.nvar, internal.meta.ncon, internal.nls_meta.nequ

    def obj(self, x: Vector) -> Scalar:
        self._check_x(x)
        self.counters.increment("obj")
        _, r = split(x, self._sizes()[0])
        return jnp.dot(r, r) / 2

    def grad(self, x: Vector) -> Vector:
        self._check_x(x)
        self.counters.increment("grad")
        n = self._sizes()[0]
        _, r = split(x, n)
        return jnp.concatenate([jnp.zeros(n, dtype=r.dtype), r])

    def cons(self, x: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self.counters.increment("cons")
        n, m, _ = self._sizes()
        xo, r = split(x, n)
        c = self.internal.residual(xo) - r
        if m > 0:
            c = jnp.concatenate([c, self.internal.cons(xo)])
        return c

    def jac_structure(self) -> Structure:
        n, m, ne = self._sizes()
        if m > 0:
            rows, cols = self.internal.jac_structure()
            constraints = shift(rows, cols, row_offset=ne)
        else:
            constraints = empty_structure()
        return self.jac_layout.assemble_structure(
            self.internal.jac_structure_residual(),
            constraints,
            diagonal_structure(ne, col_offset=n),
        )

    def jac_coord(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac")
        n, m, ne = self._sizes()
        xo, _ = split(x, n)
        constraints = self.internal.jac_coord(xo) if m > 0 else jnp.zeros(0)
        return self.jac_layout.assemble(
            self.internal.jac_coord_residual(xo), constraints, -jnp.ones(ne)
        )

    def jprod(self, x: Vector, v: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod")
        n, m, _ = self._sizes()
        xo, _ = split(x, n)
        vo, vr = split(v, n)
        Jv = self.internal.jprod_residual(xo, vo) - vr
        if m > 0:
            Jv = jnp.concatenate([Jv, self.internal.jprod(xo, vo)])
        return Jv

    def jtprod(self, x: Vector, w: Float[Array, " ncon"]) -> Vector:
        self._check_x(x)
        check_length(w, self.meta.ncon, "w")
        self.counters.increment("jtprod")
        n, m, ne = self._sizes()
        xo, _ = split(x, n)
        wF, wc = split(w, ne)
        Jtw = self.internal.jtprod_residual(xo, wF)
        if m > 0:
            Jtw = Jtw + self.internal.jtprod(xo, wc)
        return jnp.concatenate([Jtw, -wF])

    def hess_structure(self) -> Structure:
        n, m, ne = self._sizes()
        constraints = self.internal.hess_structure() if m > 0 else empty_structure()
        return self.hess_layout.assemble_structure(
            self.internal.hess_structure_residual(),
            constraints,
            diagonal_structure(ne, row_offset=n, col_offset=n),
        )

    def hess_coord(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> ValueVector:
        self._check_x(x)
        y = self._check_y(y)
        self.counters.increment("hess")
        n, m, ne = self._sizes()
        xo, _ = split(x, n)
        yF, yc = split(y, ne)
        if m > 0:
            constraints = self.internal.hess_coord(xo, yc, obj_weight=0.0)
        else:
            constraints = jnp.zeros(0)
        return self.hess_layout.assemble(
            self.internal.hess_coord_residual(xo, yF),
            constraints,
            jnp.full(ne, obj_weight),
        )

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
        n, m, ne = self._sizes()
        xo, _ = split(x, n)
        vo, vr = split(v, n)
        yF, yc = split(y, ne)
        # One weighted residual Hessian instead of nequ separate products
        rows, cols = self.internal.hess_structure_residual()
        vals = self.internal.hess_coord_residual(xo, yF)
        check_length(vals, self.internal.nls_meta.nnzh, "residual Hessian values")
        Hv = coo_sym_prod(rows, cols, vals, vo)
        if m > 0:
            Hv = Hv + self.internal.hprod(xo, vo, yc, obj_weight=0.0)
        return jnp.concatenate([Hv, obj_weight * vr])

    def ghjvprod(self, x: Vector, g: Vector, v: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self._check_x(g, "g")
        self._check_x(v, "v")
        self.counters.increment("jhprod")
        n, m, ne = self._sizes()
        xo, go, vo = x[:n], g[:n], v[:n]
        gHv = jnp.asarray(
            [jnp.dot(go, self.internal.hprod_residual(xo, j, vo)) for j in range(ne)],
            dtype=float,
        )
        if m > 0:
            gHv = jnp.concatenate([gHv, self.internal.ghjvprod(xo, go, vo)])
        return gHv

    # Residual: r, a linear map with no curvature

    def residual(self, x: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self.counters.increment("residual")
        return split(x, self._sizes()[0])[1]

    def jac_structure_residual(self) -> Structure:
        n, _, ne = self._sizes()
        return diagonal_structure(ne, col_offset=n)

    def jac_coord_residual(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac_residual")
        return jnp.ones(self.nls_meta.nnzj, dtype=x.dtype)

    def jprod_residual(self, x: Vector, v: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod_residual")
        return split(v, self._sizes()[0])[1]

    def jtprod_residual(self, x: Vector, w: Float[Array, " nequ"]) -> Vector:
        self._check_x(x)
        self._check_residual_weights(w, "w")
        self.counters.increment("jtprod_residual")
        return jnp.concatenate([jnp.zeros(self._sizes()[0], dtype=w.dtype), w])

    def hess_structure_residual(self) -> Structure:
        return empty_structure()

    def hess_coord_residual(self, x: Vector, v: Vector) -> ValueVector:
        self._check_x(x)
        self._check_residual_weights(v)
        self.counters.increment("hess_residual")
        return jnp.zeros(0, dtype=x.dtype)

    def jth_hess_residual(self, x: Vector, i: int) -> Float[Array, "nvar nvar"]:
        self._check_x(x)
        self._check_residual_index(i)
        self.counters.increment("jhess_residual")
        return jnp.zeros((self.meta.nvar, self.meta.nvar), dtype=x.dtype)

    def hprod_residual(self, x: Vector, i: int, v: Vector) -> Vector:
        self._check_x(x)
        self._check_x(v, "v")
        self._check_residual_index(i)
        self.counters.increment("hprod_residual")
        return jnp.zeros_like(v)

    def close(self) -> None:
        if not self.closed:
            self.internal.close()
        super().close()


class FeasibilityResidual(AbstractNLSModel):
    """Least-squares problem minimizing the violation of equality constraints.

    For c(x) = c_L this is

        min ½‖c(x) - c_L‖²  s.t.  l <= x <= u

    A problem with inequality constraints is first put in slack form, so
    that they become equalities on the extended variables.

    Args:
        nlp: Constrained model. It is closed when this model is closed.
        name: Name of the new problem (default: model name + "-feasres").

    Raises:
        ModelError: If the model has no constraints, or has constraints
            without finite bounds.
    """

    def __init__(self, nlp: AbstractNLPModel, *, name: Optional[str] = None):
        name = name or f"{nlp.meta.name}-feasres"
        if nlp.meta.ncon == 0:
            raise ModelError(f"{nlp.meta.name} has no constraints")
        if not nlp.meta.equality_constrained:
            if isinstance(nlp, AbstractNLSModel):
                nlp = SlackNLSModel(nlp)
            else:
                nlp = SlackModel(nlp)
        meta = nlp.meta
        if len(meta.jfree) > 0:
            raise ModelError(
                f"{meta.name} has free constraints {meta.jfree.tolist()}, "
                "which have no violation to measure"
            )
        n = meta.nvar
        new_meta = NLPModelMeta(
            n,
            x0=meta.x0,
            lvar=meta.lvar,
            uvar=meta.uvar,
            nnzj=0,
            nnzh=n * (n + 1) // 2,
            name=name,
        )
        nls_meta = NLSMeta(
            meta.ncon,
            n,
            x0=meta.x0,
            nnzj=meta.nnzj,
            nnzh=meta.nnzh,
            lin=meta.lin,
            nln=meta.nln,
        )
        super().__init__(new_meta, nls_meta)
        self.nlp = nlp
        logger.debug("Built %r from %r", self, nlp)

    def _violation(self, x: Vector) -> Float[Array, " nequ"]:
        return self.nlp.cons(x) - self.nlp.meta.lcon

    def cons(self, x: Vector) -> Float[Array, " 0"]:
        self._check_x(x)
        self.counters.increment("cons")
        return jnp.zeros(0, dtype=x.dtype)

    def jac_structure(self) -> Structure:
        return empty_structure()

    def jac_coord(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac")
        return jnp.zeros(0, dtype=x.dtype)

    def jprod(self, x: Vector, v: Vector) -> Float[Array, " 0"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod")
        return jnp.zeros(0, dtype=x.dtype)

    def jtprod(self, x: Vector, w: Float[Array, " 0"]) -> Vector:
        self._check_x(x)
        check_length(w, 0, "w")
        self.counters.increment("jtprod")
        return jnp.zeros_like(x)

    def hess_structure(self) -> Structure:
        return lower_triangle_structure(self.meta.nvar)

    def hess_coord(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> ValueVector:
        self._check_x(x)
        self._check_y(y)
        self.counters.increment("hess")
        Fx = self._violation(x)
        J = self.nlp.jac(x)
        curvature = symmetric_from_lower(self.nlp.hess(x, Fx, obj_weight=0.0))
        H = obj_weight * (J.T @ J + curvature)
        rows, cols = self.hess_structure()
        return H[rows, cols]

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
        self._check_y(y)
        self.counters.increment("hprod")
        Fx = self._violation(x)
        JtJv = self.nlp.jtprod(x, self.nlp.jprod(x, v))
        return obj_weight * (JtJv + self.nlp.hprod(x, v, Fx, obj_weight=0.0))

    def ghjvprod(self, x: Vector, g: Vector, v: Vector) -> Float[Array, " 0"]:
        self._check_x(x)
        self._check_x(g, "g")
        self._check_x(v, "v")
        self.counters.increment("jhprod")
        return jnp.zeros(0, dtype=x.dtype)

    # Residual: the constraint violation

    def residual(self, x: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self.counters.increment("residual")
        return self._violation(x)

    def jac_structure_residual(self) -> Structure:
        return self.nlp.jac_structure()

    def jac_coord_residual(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac_residual")
        return self.nlp.jac_coord(x)

    def jprod_residual(self, x: Vector, v: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod_residual")
        return self.nlp.jprod(x, v)

    def jtprod_residual(self, x: Vector, w: Float[Array, " nequ"]) -> Vector:
        self._check_x(x)
        self._check_residual_weights(w, "w")
        self.counters.increment("jtprod_residual")
        return self.nlp.jtprod(x, w)

    def hess_structure_residual(self) -> Structure:
        return self.nlp.hess_structure()

    def hess_coord_residual(self, x: Vector, v: Vector) -> ValueVector:
        self._check_x(x)
        self._check_residual_weights(v)
        self.counters.increment("hess_residual")
        return self.nlp.hess_coord(x, v, obj_weight=0.0)

    def hprod_residual(self, x: Vector, i: int, v: Vector) -> Vector:
        self._check_x(x)
        self._check_x(v, "v")
        self._check_residual_index(i)
        self.counters.increment("hprod_residual")
        ei = unit_vector(self.nls_meta.nequ, i)
        return self.nlp.hprod(x, v, ei, obj_weight=0.0)

    def close(self) -> None:
        if not self.closed:
            self.nlp.close()
        super().close()
