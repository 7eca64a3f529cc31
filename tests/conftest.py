"""Shared test problems.

``SimpleNLSModel`` is a hand-coded model with sparse structures, so that the
modifiers are exercised on coordinate blocks that are not dense:

    F(x) = [1 - x0, 10 (x1 - x0²)]
    c(x) = [x0 + x1², x0² + x1, x0² + x1² - 1]
    c0 >= 0, c1 >= 0, c2 = 0, -2 <= x <= 2
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from nlpmodifiers_jax import AbstractNLSModel, ADNLPModel, NLPModelMeta, NLSMeta
from nlpmodifiers_jax.structure import check_length

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


class SimpleNLSModel(AbstractNLSModel):
    def __init__(self, name="Simple NLS Model"):
        x0 = jnp.array([-1.2, 1.0])
        meta = NLPModelMeta(
            2,
            x0=x0,
            lvar=[-2.0, -2.0],
            uvar=[2.0, 2.0],
            ncon=3,
            lcon=[0.0, 0.0, 0.0],
            ucon=[jnp.inf, jnp.inf, 0.0],
            nnzj=6,
            nnzh=3,
            name=name,
        )
        nls_meta = NLSMeta(2, 2, x0=x0, nnzj=3, nnzh=1, lin=(0,))
        super().__init__(meta, nls_meta)

    def residual(self, x):
        self._check_x(x)
        self.counters.increment("residual")
        return jnp.stack([1 - x[0], 10 * (x[1] - x[0] ** 2)])

    def jac_structure_residual(self):
        return jnp.array([0, 1, 1]), jnp.array([0, 0, 1])

    def jac_coord_residual(self, x):
        self._check_x(x)
        self.counters.increment("jac_residual")
        return jnp.stack([-jnp.ones_like(x[0]), -20 * x[0], 10 * jnp.ones_like(x[0])])

    def jprod_residual(self, x, v):
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod_residual")
        return jnp.stack([-v[0], -20 * x[0] * v[0] + 10 * v[1]])

    def jtprod_residual(self, x, w):
        self._check_x(x)
        self._check_residual_weights(w, "w")
        self.counters.increment("jtprod_residual")
        return jnp.stack([-w[0] - 20 * x[0] * w[1], 10 * w[1]])

    def hess_structure_residual(self):
        return jnp.array([0]), jnp.array([0])

    def hess_coord_residual(self, x, v):
        self._check_x(x)
        self._check_residual_weights(v)
        self.counters.increment("hess_residual")
        return jnp.stack([-20 * v[1]])

    def hprod_residual(self, x, i, v):
        self._check_x(x)
        self._check_x(v, "v")
        self._check_residual_index(i)
        self.counters.increment("hprod_residual")
        if i == 1:
            return jnp.stack([-20 * v[0], jnp.zeros_like(v[1])])
        return jnp.zeros_like(v)

    def cons(self, x):
        self._check_x(x)
        self.counters.increment("cons")
        return jnp.stack(
            [x[0] + x[1] ** 2, x[0] ** 2 + x[1], x[0] ** 2 + x[1] ** 2 - 1]
        )

    def jac_structure(self):
        return jnp.array([0, 0, 1, 1, 2, 2]), jnp.array([0, 1, 0, 1, 0, 1])

    def jac_coord(self, x):
        self._check_x(x)
        self.counters.increment("jac")
        one = jnp.ones_like(x[0])
        return jnp.stack([one, 2 * x[1], 2 * x[0], one, 2 * x[0], 2 * x[1]])

    def jprod(self, x, v):
        self._check_x(x)
        self._check_x(v, "v")
        self.counters.increment("jprod")
        return jnp.stack(
            [
                v[0] + 2 * x[1] * v[1],
                2 * x[0] * v[0] + v[1],
                2 * x[0] * v[0] + 2 * x[1] * v[1],
            ]
        )

    def jtprod(self, x, w):
        self._check_x(x)
        check_length(w, self.meta.ncon, "w")
        self.counters.increment("jtprod")
        return jnp.stack(
            [
                w[0] + 2 * x[0] * w[1] + 2 * x[0] * w[2],
                2 * x[1] * w[0] + w[1] + 2 * x[1] * w[2],
            ]
        )

    def hess_structure(self):
        return jnp.array([0, 1, 1]), jnp.array([0, 0, 1])

    def _dense_hess(self, x, y, obj_weight):
        F1 = 10 * (x[1] - x[0] ** 2)
        h00 = obj_weight * (1 + 400 * x[0] ** 2 - 20 * F1) + 2 * y[1] + 2 * y[2]
        h10 = obj_weight * (-200 * x[0])
        h11 = obj_weight * 100 + 2 * y[0] + 2 * y[2]
        return h00, h10, h11

    def hess_coord(self, x, y=None, *, obj_weight=1.0):
        self._check_x(x)
        y = self._check_y(y)
        self.counters.increment("hess")
        return jnp.stack(self._dense_hess(x, y, obj_weight))

    def hprod(self, x, v, y=None, *, obj_weight=1.0):
        self._check_x(x)
        self._check_x(v, "v")
        y = self._check_y(y)
        self.counters.increment("hprod")
        h00, h10, h11 = self._dense_hess(x, y, obj_weight)
        return jnp.stack([h00 * v[0] + h10 * v[1], h10 * v[0] + h11 * v[1]])

    def ghjvprod(self, x, g, v):
        self._check_x(x)
        self.counters.increment("jhprod")
        return jnp.stack(
            [
                2 * g[1] * v[1],
                2 * g[0] * v[0],
                2 * g[0] * v[0] + 2 * g[1] * v[1],
            ]
        )


def simple_residual(x):
    return jnp.stack([1 - x[0], 10 * (x[1] - x[0] ** 2)])


def simple_constraints(x):
    return jnp.stack([x[0] + x[1] ** 2, x[0] ** 2 + x[1], x[0] ** 2 + x[1] ** 2 - 1])


@pytest.fixture
def simple_nls():
    return SimpleNLSModel()


@pytest.fixture
def equality_nlp():
    """min (x0 - 1)² + (x1 - 2)²  s.t.  x0 + x1 = 1, x0² - x1 = 0"""
    return ADNLPModel(
        lambda x: (x[0] - 1) ** 2 + (x[1] - 2) ** 2,
        jnp.array([0.5, 0.5]),
        c=lambda x: jnp.stack([x[0] + x[1], x[0] ** 2 - x[1]]),
        lcon=[1.0, 0.0],
        ucon=[1.0, 0.0],
        lin=(0,),
        name="equality",
    )


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
