"""Slack formulation of a nonlinear program.

Every inequality constraint lcon_j <= c_j(x) <= ucon_j (lower-only,
upper-only or range) becomes the equality c_j(x) - s_k = 0 with a new
variable lcon_j <= s_k <= ucon_j. Equality constraints are kept as they are.

Layout of the transformed problem:

* variables ``[x, s]``: the n original variables in place, followed by one
  slack per inequality constraint, in increasing constraint order;
* constraints: same rows, same order as the original problem; row
  ``jslack[k]`` carries slack ``k`` in column ``n + k``.

Slacks do not enter the objective and have no curvature, so the objective,
gradient and Hessian are those of the original problem padded with zeros.
"""

import logging
from typing import Optional

import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from nlpmodifiers_jax.meta import NLPModelMeta, NLSMeta
from nlpmodifiers_jax.models import AbstractNLPModel, AbstractNLSModel
from nlpmodifiers_jax.structure import (
    CoordinateLayout,
    check_length,
    diagonal_structure,
    split,
)
from nlpmodifiers_jax.types import Scalar, Structure, ValueVector, Vector

logger = logging.getLogger(__name__)


def _slack_meta(model: AbstractNLPModel, name: str) -> tuple[NLPModelMeta, np.ndarray]:
    meta = model.meta
    jslack = meta.jineq
    ns = len(jslack)
    # Free rows keep their infinite bounds; only slack rows become c(x) - s = 0
    lcon = meta.lcon.at[jslack].set(0.0)
    ucon = meta.ucon.at[jslack].set(0.0)
    return (
        NLPModelMeta(
            meta.nvar + ns,
            x0=jnp.concatenate([meta.x0, jnp.zeros(ns)]),
            lvar=jnp.concatenate([meta.lvar, meta.lcon[jslack]]),
            uvar=jnp.concatenate([meta.uvar, meta.ucon[jslack]]),
            ncon=meta.ncon,
            y0=meta.y0,
            lcon=lcon,
            ucon=ucon,
            nnzj=meta.nnzj + ns,
            nnzh=meta.nnzh,
            lin=meta.lin,
            nln=meta.nln,
            name=name,
        ),
        jslack,
    )


class SlackModel(AbstractNLPModel):
    """Nonlinear program with inequality constraints turned into equalities.

    Args:
        model: Model to transform. It is closed when this model is closed.
        name: Name of the transformed problem (default: model name + "-slack").

    Attributes:
        model: The wrapped model.
        jslack: Constraint row of each slack variable.
        ns: Number of slack variables.
    """

    def __init__(self, model: AbstractNLPModel, *, name: Optional[str] = None):
        meta, jslack = _slack_meta(model, name or f"{model.meta.name}-slack")
        AbstractNLPModel.__init__(self, meta)
        self.model = model
        self.jslack = jnp.asarray(jslack, dtype=int)
        self.ns = len(jslack)
        self.jac_layout = CoordinateLayout(
            [("constraints", model.meta.nnzj), ("slack", self.ns)]
        )
        logger.debug("Built %r with %d slacks", self, self.ns)

    def _split(self, x: Vector) -> tuple[Vector, Vector]:
        return split(x, self.model.meta.nvar)

    def obj(self, x: Vector) -> Scalar:
        self._check_x(x)
        self.counters.increment("obj")
        return self.model.obj(self._split(x)[0])

    def grad(self, x: Vector) -> Vector:
        self._check_x(x)
        self.counters.increment("grad")
        g = self.model.grad(self._split(x)[0])
        return jnp.concatenate([g, jnp.zeros(self.ns, dtype=g.dtype)])

    def cons(self, x: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self.counters.increment("cons")
        xo, s = self._split(x)
        return self.model.cons(xo).at[self.jslack].add(-s)

    def jac_structure(self) -> Structure:
        _, slack_cols = diagonal_structure(self.ns, col_offset=self.model.meta.nvar)
        return self.jac_layout.assemble_structure(
            self.model.jac_structure(), (self.jslack, slack_cols)
        )

    def jac_coord(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac")
        vals = self.model.jac_coord(self._split(x)[0])
        return self.jac_layout.assemble(vals, -jnp.ones(self.ns))

    def jprod(self, x: Vector, v: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod")
        vo, vs = self._split(v)
        return self.model.jprod(self._split(x)[0], vo).at[self.jslack].add(-vs)

    def jtprod(self, x: Vector, w: Float[Array, " ncon"]) -> Vector:
        self._check_x(x)
        check_length(w, self.meta.ncon, "w")
        self.counters.increment("jtprod")
        Jtw = self.model.jtprod(self._split(x)[0], w)
        return jnp.concatenate([Jtw, -w[self.jslack]])

    def hess_structure(self) -> Structure:
        return self.model.hess_structure()

    def hess_coord(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> ValueVector:
        self._check_x(x)
        y = self._check_y(y)
        self.counters.increment("hess")
        vals = self.model.hess_coord(self._split(x)[0], y, obj_weight=obj_weight)
        check_length(vals, self.meta.nnzh, "wrapped Hessian values")
        return vals

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
        Hv = self.model.hprod(
            self._split(x)[0], self._split(v)[0], y, obj_weight=obj_weight
        )
        return jnp.concatenate([Hv, jnp.zeros(self.ns, dtype=Hv.dtype)])

    def ghjvprod(self, x: Vector, g: Vector, v: Vector) -> Float[Array, " ncon"]:
        self._check_x(x)
        self._check_x(g, "g")
        self._check_x(v, "v")
        self.counters.increment("jhprod")
        return self.model.ghjvprod(
            self._split(x)[0], self._split(g)[0], self._split(v)[0]
        )

    def close(self) -> None:
        if not self.closed:
            self.model.close()
        super().close()


class SlackNLSModel(SlackModel, AbstractNLSModel):
    """Least-squares problem with inequality constraints turned into equalities.

    The residual does not depend on the slacks: residual queries are those of
    the wrapped model over the original variables, padded with zeros on the
    slack columns.

    Args:
        model: Least-squares model to transform.
        name: Name of the transformed problem (default: model name + "-slack").
    """

    def __init__(self, model: AbstractNLSModel, *, name: Optional[str] = None):
        SlackModel.__init__(self, model, name=name)
        nls_meta = model.nls_meta
        self.nls_meta = NLSMeta(
            nls_meta.nequ,
            self.meta.nvar,
            x0=self.meta.x0,
            nnzj=nls_meta.nnzj,
            nnzh=nls_meta.nnzh,
            lin=nls_meta.lin,
            nln=nls_meta.nln,
        )

    def residual(self, x: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self.counters.increment("residual")
        return self.model.residual(self._split(x)[0])

    def jac_structure_residual(self) -> Structure:
        return self.model.jac_structure_residual()

    def jac_coord_residual(self, x: Vector) -> ValueVector:
        self._check_x(x)
        self.counters.increment("jac_residual")
        return self.model.jac_coord_residual(self._split(x)[0])

    def jprod_residual(self, x: Vector, v: Vector) -> Float[Array, " nequ"]:
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod_residual")
        return self.model.jprod_residual(self._split(x)[0], self._split(v)[0])

    def jtprod_residual(self, x: Vector, w: Float[Array, " nequ"]) -> Vector:
        self._check_x(x)
        self._check_residual_weights(w, "w")
        self.counters.increment("jtprod_residual")
        Jtw = self.model.jtprod_residual(self._split(x)[0], w)
        return jnp.concatenate([Jtw, jnp.zeros(self.ns, dtype=Jtw.dtype)])

    def hess_structure_residual(self) -> Structure:
        return self.model.hess_structure_residual()

    def hess_coord_residual(self, x: Vector, v: Vector) -> ValueVector:
        self._check_x(x)
        self._check_residual_weights(v)
        self.counters.increment("hess_residual")
        return self.model.hess_coord_residual(self._split(x)[0], v)

    def hprod_residual(self, x: Vector, i: int, v: Vector) -> Vector:
        self._check_x(x)
        self._check_x(v, "v")
        self._check_residual_index(i)
        self.counters.increment("hprod_residual")
        Hv = self.model.hprod_residual(self._split(x)[0], i, self._split(v)[0])
        return jnp.concatenate([Hv, jnp.zeros(self.ns, dtype=Hv.dtype)])
