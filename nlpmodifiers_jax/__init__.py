"""nlpmodifiers-jax: composable reformulations of nonlinear programs in JAX.

Model modifiers wrap an existing model and expose a transformed problem
through the same query interface: objective, gradient, constraints and
sparse (coordinate-format) Jacobians and Hessians, plus matrix-free
products. The wrapped model is never copied; every query is answered by
delegating to it and re-indexing its results.

* ``FeasibilityFormNLS`` moves a least-squares residual into the constraints.
* ``FeasibilityResidual`` turns equality constraints into a residual.
* ``SlackModel`` / ``SlackNLSModel`` turn inequalities into equalities.
* ``LBFGSModel`` / ``LSR1Model`` replace the Hessian with a secant operator.
"""

from nlpmodifiers_jax.ad import ADNLPModel, ADNLSModel
from nlpmodifiers_jax.counters import Counters
from nlpmodifiers_jax.errors import (
    DimensionError,
    ModelError,
    UnsupportedOperationError,
)
from nlpmodifiers_jax.feasibility import FeasibilityFormNLS, FeasibilityResidual
from nlpmodifiers_jax.meta import NLPModelMeta, NLSMeta
from nlpmodifiers_jax.models import AbstractNLPModel, AbstractNLSModel
from nlpmodifiers_jax.quasi_newton import LBFGSModel, LSR1Model, QuasiNewtonModel
from nlpmodifiers_jax.secant import (
    SecantHistory,
    lbfgs_append,
    lbfgs_hvp,
    lsr1_append,
    lsr1_hvp,
    secant_init,
)
from nlpmodifiers_jax.slack import SlackModel, SlackNLSModel
from nlpmodifiers_jax.structure import CoordinateLayout

__all__ = [
    # Interfaces
    "AbstractNLPModel",
    "AbstractNLSModel",
    "NLPModelMeta",
    "NLSMeta",
    "Counters",
    # Errors
    "ModelError",
    "DimensionError",
    "UnsupportedOperationError",
    # Base models
    "ADNLPModel",
    "ADNLSModel",
    # Modifiers
    "FeasibilityFormNLS",
    "FeasibilityResidual",
    "SlackModel",
    "SlackNLSModel",
    "QuasiNewtonModel",
    "LBFGSModel",
    "LSR1Model",
    # Structure
    "CoordinateLayout",
    # Secant operators
    "SecantHistory",
    "secant_init",
    "lbfgs_hvp",
    "lbfgs_append",
    "lsr1_hvp",
    "lsr1_append",
]
