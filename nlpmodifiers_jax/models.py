"""Query interfaces shared by every model.

``AbstractNLPModel`` is the capability every model offers: objective,
gradient, constraints, Jacobian and Hessian of the Lagrangian, each as
values, coordinate-format structure and values, and matrix-free products.
``AbstractNLSModel`` adds the residual queries of a nonlinear least-squares
problem ``min ½‖F(x)‖²``.

The Lagrangian Hessian convention is

    ∇²L(x, y) = obj_weight * ∇²f(x) + sum_i y_i ∇²c_i(x)

and Hessians are reported as their lower triangle. Passing ``y=None`` means
all multipliers are zero.

Concrete models check the length of every input at the top of every query
and raise ``DimensionError`` before doing any work or touching counters.
"""

import abc
import logging
from typing import Optional

import jax
import jax.numpy as jnp
import lineax as lx
from jaxtyping import Array, Float

from nlpmodifiers_jax.counters import Counters
from nlpmodifiers_jax.errors import DimensionError, UnsupportedOperationError
from nlpmodifiers_jax.meta import NLPModelMeta, NLSMeta
from nlpmodifiers_jax.structure import check_length, coo_to_dense, unit_vector
from nlpmodifiers_jax.types import Scalar, Structure, ValueVector, Vector

logger = logging.getLogger(__name__)


class AbstractNLPModel(abc.ABC):
    """A nonlinear program.

    min f(x)  s.t.  lcon <= c(x) <= ucon,  lvar <= x <= uvar

    Attributes:
        meta: Static description of the problem.
        counters: Number of evaluations of each query kind.
    """

    def __init__(self, meta: NLPModelMeta, counters: Optional[Counters] = None):
        self.meta = meta
        self.counters = Counters() if counters is None else counters
        self.closed = False

    @property
    def nvar(self) -> int:
        return self.meta.nvar

    @property
    def ncon(self) -> int:
        return self.meta.ncon

    @property
    def name(self) -> str:
        return self.meta.name

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, nvar={self.nvar}, "
            f"ncon={self.ncon}, nnzj={self.meta.nnzj}, nnzh={self.meta.nnzh})"
        )

    # Input checks

    def _check_x(self, x: Vector, what: str = "x") -> None:
        check_length(x, self.meta.nvar, what)

    def _check_y(self, y: Optional[Vector], what: str = "y") -> Vector:
        if y is None:
            return jnp.zeros((self.meta.ncon,))
        check_length(y, self.meta.ncon, what)
        return y

    # Objective and constraints

    @abc.abstractmethod
    def obj(self, x: Vector) -> Scalar:
        """Objective f(x)."""

    @abc.abstractmethod
    def grad(self, x: Vector) -> Vector:
        """Gradient ∇f(x)."""

    def objgrad(self, x: Vector) -> tuple[Scalar, Vector]:
        return self.obj(x), self.grad(x)

    @abc.abstractmethod
    def cons(self, x: Vector) -> Float[Array, " ncon"]:
        """Constraint values c(x)."""

    def objcons(self, x: Vector) -> tuple[Scalar, Float[Array, " ncon"]]:
        return self.obj(x), self.cons(x)

    # Constraint Jacobian

    @abc.abstractmethod
    def jac_structure(self) -> Structure:
        """Row and column indices of the Jacobian, both of length ``meta.nnzj``."""

    @abc.abstractmethod
    def jac_coord(self, x: Vector) -> ValueVector:
        """Jacobian values, aligned with ``jac_structure()``."""

    def jac(self, x: Vector) -> Float[Array, "ncon nvar"]:
        """Dense Jacobian."""
        vals = self.jac_coord(x)
        rows, cols = self.jac_structure()
        return coo_to_dense(rows, cols, vals, (self.meta.ncon, self.meta.nvar))

    @abc.abstractmethod
    def jprod(self, x: Vector, v: Vector) -> Float[Array, " ncon"]:
        """J(x) @ v."""

    @abc.abstractmethod
    def jtprod(self, x: Vector, w: Float[Array, " ncon"]) -> Vector:
        """J(x).T @ w."""

    def jac_op(self, x: Vector) -> lx.FunctionLinearOperator:
        """J(x) as a linear operator.

        lineax traces the product once when the operator is built, so the
        counters record one product per operator rather than one per use.
        """
        self._check_x(x)
        return lx.FunctionLinearOperator(
            lambda v: self.jprod(x, v), jax.ShapeDtypeStruct(x.shape, x.dtype)
        )

    # Hessian of the Lagrangian

    @abc.abstractmethod
    def hess_structure(self) -> Structure:
        """Lower-triangle row and column indices, both of length ``meta.nnzh``."""

    @abc.abstractmethod
    def hess_coord(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> ValueVector:
        """Lower-triangle Hessian values, aligned with ``hess_structure()``."""

    def hess(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> Float[Array, "nvar nvar"]:
        """Dense lower triangle of the Hessian of the Lagrangian."""
        vals = self.hess_coord(x, y, obj_weight=obj_weight)
        rows, cols = self.hess_structure()
        return coo_to_dense(rows, cols, vals, (self.meta.nvar, self.meta.nvar))

    @abc.abstractmethod
    def hprod(
        self,
        x: Vector,
        v: Vector,
        y: Optional[Vector] = None,
        *,
        obj_weight: float = 1.0,
    ) -> Vector:
        """∇²L(x, y) @ v."""

    def hess_op(
        self, x: Vector, y: Optional[Vector] = None, *, obj_weight: float = 1.0
    ) -> lx.FunctionLinearOperator:
        """∇²L(x, y) as a symmetric linear operator."""
        self._check_x(x)
        return lx.FunctionLinearOperator(
            lambda v: self.hprod(x, v, y, obj_weight=obj_weight),
            jax.ShapeDtypeStruct(x.shape, x.dtype),
            lx.symmetric_tag,
        )

    def ghjvprod(self, x: Vector, g: Vector, v: Vector) -> Float[Array, " ncon"]:
        """[g^T ∇²c_i(x) v for each constraint i]."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not implement ghjvprod"
        )

    # Lifecycle

    def reset_data(self) -> "AbstractNLPModel":
        """Clear any data cached between queries."""
        return self

    def close(self) -> None:
        """Release the resources held by this model."""
        if not self.closed:
            logger.debug("Closing %r", self)
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class AbstractNLSModel(AbstractNLPModel):
    """A nonlinear least-squares problem.

    min ½‖F(x)‖²  s.t.  lcon <= c(x) <= ucon,  lvar <= x <= uvar

    The objective and gradient are derived from the residual. Residual
    Hessians are weighted sums sum_i v_i ∇²F_i(x), reported as their lower
    triangle.

    Attributes:
        nls_meta: Static description of the residual.
    """

    def __init__(
        self,
        meta: NLPModelMeta,
        nls_meta: NLSMeta,
        counters: Optional[Counters] = None,
    ):
        super().__init__(meta, counters)
        self.nls_meta = nls_meta

    @property
    def nequ(self) -> int:
        return self.nls_meta.nequ

    def _check_residual_weights(self, v: Vector, what: str = "v") -> None:
        check_length(v, self.nls_meta.nequ, what)

    def _check_residual_index(self, i: int) -> None:
        nequ = self.nls_meta.nequ
        if not 0 <= i < nequ:
            raise DimensionError(
                f"residual index {i} is out of range for nequ = {nequ}"
            )

    def obj(self, x: Vector) -> Scalar:
        self._check_x(x)
        self.counters.increment("obj")
        Fx = self.residual(x)
        return jnp.dot(Fx, Fx) / 2

    def grad(self, x: Vector) -> Vector:
        self._check_x(x)
        self.counters.increment("grad")
        return self.jtprod_residual(x, self.residual(x))

    # Residual

    @abc.abstractmethod
    def residual(self, x: Vector) -> Float[Array, " nequ"]:
        """F(x)."""

    @abc.abstractmethod
    def jac_structure_residual(self) -> Structure:
        """Residual Jacobian indices, both of length ``nls_meta.nnzj``."""

    @abc.abstractmethod
    def jac_coord_residual(self, x: Vector) -> ValueVector:
        """Residual Jacobian values, aligned with ``jac_structure_residual()``."""

    def jac_residual(self, x: Vector) -> Float[Array, "nequ nvar"]:
        vals = self.jac_coord_residual(x)
        rows, cols = self.jac_structure_residual()
        return coo_to_dense(rows, cols, vals, (self.nls_meta.nequ, self.meta.nvar))

    @abc.abstractmethod
    def jprod_residual(self, x: Vector, v: Vector) -> Float[Array, " nequ"]:
        """J_F(x) @ v."""

    @abc.abstractmethod
    def jtprod_residual(self, x: Vector, w: Float[Array, " nequ"]) -> Vector:
        """J_F(x).T @ w."""

    def jac_op_residual(self, x: Vector) -> lx.FunctionLinearOperator:
        self._check_x(x)
        return lx.FunctionLinearOperator(
            lambda v: self.jprod_residual(x, v), jax.ShapeDtypeStruct(x.shape, x.dtype)
        )

    @abc.abstractmethod
    def hess_structure_residual(self) -> Structure:
        """Residual Hessian indices, both of length ``nls_meta.nnzh``."""

    @abc.abstractmethod
    def hess_coord_residual(self, x: Vector, v: Vector) -> ValueVector:
        """Lower triangle of sum_i v_i ∇²F_i(x), aligned with the structure."""

    def hess_residual(self, x: Vector, v: Vector) -> Float[Array, "nvar nvar"]:
        vals = self.hess_coord_residual(x, v)
        rows, cols = self.hess_structure_residual()
        return coo_to_dense(rows, cols, vals, (self.meta.nvar, self.meta.nvar))

    def jth_hess_residual(self, x: Vector, i: int) -> Float[Array, "nvar nvar"]:
        """Lower triangle of ∇²F_i(x)."""
        self._check_x(x)
        self._check_residual_index(i)
        ei = unit_vector(self.nls_meta.nequ, i)
        vals = self.hess_coord_residual(x, ei)
        rows, cols = self.hess_structure_residual()
        return coo_to_dense(rows, cols, vals, (self.meta.nvar, self.meta.nvar))

    @abc.abstractmethod
    def hprod_residual(self, x: Vector, i: int, v: Vector) -> Vector:
        """∇²F_i(x) @ v."""

    def hess_op_residual(self, x: Vector, i: int) -> lx.FunctionLinearOperator:
        self._check_x(x)
        self._check_residual_index(i)
        return lx.FunctionLinearOperator(
            lambda v: self.hprod_residual(x, i, v),
            jax.ShapeDtypeStruct(x.shape, x.dtype),
            lx.symmetric_tag,
        )
