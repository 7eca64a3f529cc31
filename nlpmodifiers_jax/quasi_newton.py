"""Models whose Hessian is a limited-memory secant approximation.

A quasi-Newton model answers every query of the wrapped model unchanged
except the Hessian products, which come from an L-BFGS or L-SR1 operator
fed by explicit ``push(s, y)`` calls. The approximation only exists as an
operator, so coordinate-format Hessian queries are not available.

The delegation table is explicit:

* ``FORWARDED``: passed to the wrapped model with the same arguments;
* ``OVERRIDDEN``: answered by the secant operator;
* ``UNSUPPORTED``: raise ``UnsupportedOperationError``.
"""

import abc
import logging
from typing import Optional

import jax
import jax.numpy as jnp
import lineax as lx
from jaxtyping import Array, Float

from nlpmodifiers_jax.errors import UnsupportedOperationError
from nlpmodifiers_jax.models import AbstractNLPModel
from nlpmodifiers_jax.secant import (
    SecantHistory,
    lbfgs_append,
    lbfgs_hvp,
    lsr1_append,
    lsr1_hvp,
    secant_init,
)
from nlpmodifiers_jax.types import Scalar, Structure, ValueVector, Vector

logger = logging.getLogger(__name__)


class QuasiNewtonModel(AbstractNLPModel):
    """Wraps a model and replaces its Hessian with a secant approximation.

    The wrapped model's metadata and counters are shared: forwarded queries
    are counted once, by the wrapped model.

    Attributes:
        model: The wrapped model.
        op: Current secant history.
    """

    FORWARDED = (
        "obj",
        "grad",
        "objgrad",
        "cons",
        "objcons",
        "jac_structure",
        "jac_coord",
        "jac",
        "jprod",
        "jtprod",
        "jac_op",
    )
    OVERRIDDEN = ("hprod", "hess_op")
    UNSUPPORTED = ("hess_structure", "hess_coord", "hess", "ghjvprod")

    def __init__(self, model: AbstractNLPModel):
        super().__init__(model.meta, model.counters)
        self.model = model
        self.op = self._init_op()
        logger.debug("Built %s around %r", type(self).__name__, model)

    @abc.abstractmethod
    def _init_op(self) -> SecantHistory:
        """Empty secant history."""

    @abc.abstractmethod
    def _hvp(self, op: SecantHistory, v: Vector) -> Vector:
        """Apply the approximation held by op to v."""

    @abc.abstractmethod
    def _append(self, s: Vector, y: Vector) -> SecantHistory:
        """History updated with the pair (s, y)."""

    # Mutation

    def push(self, s: Vector, y: Vector) -> "QuasiNewtonModel":
        """Record the curvature pair s = x+ - x, y = ∇L(x+) - ∇L(x)."""
        self._check_x(s, "s")
        self._check_x(y, "y")
        s = jnp.asarray(s, dtype=float)
        y = jnp.asarray(y, dtype=float)
        self.op = self._append(s, y)
        logger.debug("%s holds %d pairs", self.name, int(self.op.count))
        return self

    def reset_data(self) -> "QuasiNewtonModel":
        """Drop every stored pair."""
        self.op = self._init_op()
        logger.debug("%s secant memory reset", self.name)
        return self

    # Forwarded to the wrapped model

    def obj(self, x: Vector) -> Scalar:
        return self.model.obj(x)

    def grad(self, x: Vector) -> Vector:
        return self.model.grad(x)

    def objgrad(self, x: Vector) -> tuple[Scalar, Vector]:
        return self.model.objgrad(x)

    def cons(self, x: Vector) -> Float[Array, " ncon"]:
        return self.model.cons(x)

    def objcons(self, x: Vector) -> tuple[Scalar, Float[Array, " ncon"]]:
        return self.model.objcons(x)

    def jac_structure(self) -> Structure:
        return self.model.jac_structure()

    def jac_coord(self, x: Vector) -> ValueVector:
        return self.model.jac_coord(x)

    def jac(self, x: Vector) -> Float[Array, "ncon nvar"]:
        return self.model.jac(x)

    def jprod(self, x: Vector, v: Vector) -> Float[Array, " ncon"]:
        return self.model.jprod(x, v)

    def jtprod(self, x: Vector, w: Float[Array, " ncon"]) -> Vector:
        return self.model.jtprod(x, w)

    def jac_op(self, x: Vector) -> lx.FunctionLinearOperator:
        return self.model.jac_op(x)

    # Answered by the secant operator; the point and multipliers are ignored

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
        self.counters.increment("hprod")
        return self._hvp(self.op, jnp.asarray(v, dtype=float))

    def hess_op(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> lx.FunctionLinearOperator:
        """The current approximation as an operator.

        The operator captures the history at the time of the call; later
        ``push`` calls do not change it.
        """
        self._check_x(x)
        op = self.op
        return lx.FunctionLinearOperator(
            lambda v: self._hvp(op, v),
            jax.ShapeDtypeStruct(x.shape, x.dtype),
            lx.symmetric_tag,
        )

    # Not available for an operator-only Hessian

    def _unsupported(self, query: str):
        return UnsupportedOperationError(
            f"{query} is not available on {type(self).__name__}: the Hessian "
            "approximation only exists as an operator"
        )

    def hess_structure(self) -> Structure:
        raise self._unsupported("hess_structure")

    def hess_coord(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> ValueVector:
        raise self._unsupported("hess_coord")

    def hess(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> Float[Array, "nvar nvar"]:
        raise self._unsupported("hess")

    def ghjvprod(self, x: Vector, g: Vector, v: Vector) -> Float[Array, " ncon"]:
        raise self._unsupported("ghjvprod")

    def close(self) -> None:
        if not self.closed:
            self.model.close()
        super().close()


class LBFGSModel(QuasiNewtonModel):
    """Quasi-Newton model with a damped L-BFGS approximation.

    Args:
        model: Model to wrap.
        memory: Number of (s, y) pairs kept.
        damping_threshold: Powell damping threshold.
        skip_threshold: Minimum norm of s and y for a pair to be kept.
    """

    def __init__(
        self,
        model: AbstractNLPModel,
        *,
        memory: int = 5,
        damping_threshold: float = 0.2,
        skip_threshold: float = 1e-8,
    ):
        self.memory = memory
        self.damping_threshold = damping_threshold
        self.skip_threshold = skip_threshold
        super().__init__(model)

    def _init_op(self) -> SecantHistory:
        return secant_init(self.meta.nvar, self.memory)

    def _hvp(self, op: SecantHistory, v: Vector) -> Vector:
        return lbfgs_hvp(op, v)

    def _append(self, s: Vector, y: Vector) -> SecantHistory:
        return lbfgs_append(
            self.op,
            s,
            y,
            damping_threshold=self.damping_threshold,
            skip_threshold=self.skip_threshold,
        )


class LSR1Model(QuasiNewtonModel):
    """Quasi-Newton model with an L-SR1 approximation.

    Args:
        model: Model to wrap.
        memory: Number of (s, y) pairs kept.
        scaling: Initial approximation scaling (B_0 = scaling * I).
        skip_threshold: Minimum norm of s and y for a pair to be kept.
    """

    def __init__(
        self,
        model: AbstractNLPModel,
        *,
        memory: int = 5,
        scaling: float = 1.0,
        skip_threshold: float = 1e-8,
    ):
        self.memory = memory
        self.scaling = scaling
        self.skip_threshold = skip_threshold
        super().__init__(model)

    def _init_op(self) -> SecantHistory:
        return secant_init(self.meta.nvar, self.memory, gamma=self.scaling)

    def _hvp(self, op: SecantHistory, v: Vector) -> Vector:
        return lsr1_hvp(op, v)

    def _append(self, s: Vector, y: Vector) -> SecantHistory:
        return lsr1_append(self.op, s, y, skip_threshold=self.skip_threshold)
