"""Tests for the feasibility reformulations.

FeasibilityFormNLS(SimpleNLSModel) has variables [x0, x1, r0, r1] and

    min ½‖r‖²
    s.t. 1 - x0 - r0 = 0
         10 (x1 - x0²) - r1 = 0
         x0 + x1² >= 0, x0² + x1 >= 0, x0² + x1² - 1 = 0
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from conftest import SimpleNLSModel, simple_residual
from scipy.sparse import coo_matrix

from nlpmodifiers_jax import (
    ADNLPModel,
    ADNLSModel,
    DimensionError,
    FeasibilityFormNLS,
    FeasibilityResidual,
    ModelError,
    SlackModel,
    SlackNLSModel,
)
from nlpmodifiers_jax.structure import symmetric_from_lower

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def F(x):
    return np.array([x[2], x[3]])


def JF(x):
    return np.array([[0.0, 0, 1, 0], [0, 0, 0, 1]])


def c(x):
    return np.array(
        [
            1 - x[0] - x[2],
            10 * (x[1] - x[0] ** 2) - x[3],
            x[0] + x[1] ** 2,
            x[0] ** 2 + x[1],
            x[0] ** 2 + x[1] ** 2 - 1,
        ]
    )


def J(x):
    return np.array(
        [
            [-1, 0, -1, 0],
            [-20 * x[0], 10, 0, -1],
            [1, 2 * x[1], 0, 0],
            [2 * x[0], 1, 0, 0],
            [2 * x[0], 2 * x[1], 0, 0],
        ]
    )


def H(x, y=np.zeros(5), obj_weight=1.0):
    return np.diag(
        [
            -20 * y[1] + 2 * y[3] + 2 * y[4],
            2 * y[2] + 2 * y[4],
            obj_weight,
            obj_weight,
        ]
    )


def _coo(structure, vals, shape):
    rows, cols = structure
    return coo_matrix(
        (np.asarray(vals), (np.asarray(rows), np.asarray(cols))), shape=shape
    ).toarray()


@pytest.fixture
def ff(simple_nls):
    return FeasibilityFormNLS(simple_nls)


@pytest.fixture
def point(rng):
    x = rng.standard_normal(4)
    y = rng.standard_normal(5)
    v = rng.standard_normal(4)
    w = rng.standard_normal(5)
    return x, y, v, w


class TestFeasibilityFormMeta:
    def test_dimensions(self, ff, simple_nls):
        assert ff.nvar == 4
        assert ff.ncon == 5
        assert ff.nequ == 2
        assert ff.meta.nnzj == 3 + 6 + 2
        assert ff.meta.nnzh == 1 + 3 + 2
        assert ff.nls_meta.nnzj == 2
        assert ff.nls_meta.nnzh == 0
        assert ff.nls_meta.lin == (0, 1)
        assert ff.name == "Simple NLS Model-ffnls"

    def test_bounds_and_starting_point(self, ff):
        meta = ff.meta
        np.testing.assert_array_equal(meta.x0, [-1.2, 1.0, 0.0, 0.0])
        np.testing.assert_array_equal(meta.lvar, [-2.0, -2.0, -np.inf, -np.inf])
        np.testing.assert_array_equal(meta.uvar, [2.0, 2.0, np.inf, np.inf])
        np.testing.assert_array_equal(meta.lcon, np.zeros(5))
        np.testing.assert_array_equal(meta.ucon, [0.0, 0.0, np.inf, np.inf, 0.0])
        np.testing.assert_array_equal(meta.jfix, [0, 1, 4])
        np.testing.assert_array_equal(meta.jlow, [2, 3])

    def test_linear_constraints_shifted(self, ff):
        # The residual rows take the residual's linearity, the original
        # constraint rows follow with their indices shifted by nequ
        assert ff.meta.lin == (0,)
        assert ff.meta.nln == (1, 2, 3, 4)

    def test_name_override(self, simple_nls):
        assert FeasibilityFormNLS(simple_nls, name="moved").name == "moved"

    def test_structure_lengths(self, ff):
        for structure, nnz in [
            (ff.jac_structure(), ff.meta.nnzj),
            (ff.hess_structure(), ff.meta.nnzh),
            (ff.jac_structure_residual(), ff.nls_meta.nnzj),
            (ff.hess_structure_residual(), ff.nls_meta.nnzh),
        ]:
            rows, cols = structure
            assert len(rows) == len(cols) == nnz


class TestFeasibilityFormNLSAPI:
    def test_residual_queries(self, ff, point):
        x, _, v, _ = point
        w = v[:2]
        xj, vj, wj = map(jnp.asarray, (x, v, w))
        np.testing.assert_allclose(ff.residual(xj), F(x))
        np.testing.assert_allclose(ff.jac_residual(xj), JF(x))
        np.testing.assert_allclose(ff.jprod_residual(xj, vj), JF(x) @ v)
        np.testing.assert_allclose(ff.jtprod_residual(xj, wj), JF(x).T @ w)
        np.testing.assert_allclose(ff.jac_op_residual(xj).mv(vj), JF(x) @ v)
        np.testing.assert_allclose(ff.hess_residual(xj, wj), np.zeros((4, 4)))
        assert ff.hess_coord_residual(xj, wj).shape == (0,)
        for j in range(2):
            np.testing.assert_array_equal(ff.jth_hess_residual(xj, j), np.zeros((4, 4)))
            np.testing.assert_array_equal(ff.hprod_residual(xj, j, vj), np.zeros(4))
            np.testing.assert_array_equal(
                ff.hess_op_residual(xj, j).mv(vj), np.zeros(4)
            )

    def test_residual_structure(self, ff, point):
        x = jnp.asarray(point[0])
        rows, cols = ff.jac_structure_residual()
        np.testing.assert_array_equal(rows, [0, 1])
        np.testing.assert_array_equal(cols, [2, 3])
        np.testing.assert_allclose(
            _coo((rows, cols), ff.jac_coord_residual(x), (2, 4)), JF(point[0])
        )

    def test_jth_hess_residual_counted(self, ff, point):
        ff.jth_hess_residual(jnp.asarray(point[0]), 0)
        assert ff.counters.jhess_residual == 1

    def test_residual_index_checked(self, ff):
        x = jnp.zeros(4)
        with pytest.raises(DimensionError, match="residual index"):
            ff.hprod_residual(x, 2, x)
        with pytest.raises(DimensionError, match="residual index"):
            ff.jth_hess_residual(x, -1)
        assert ff.counters.total() == 0


class TestFeasibilityFormNLPAPI:
    def test_objective_depends_only_on_r(self, ff, point):
        x = point[0]
        fx, gx = ff.objgrad(jnp.asarray(x))
        np.testing.assert_allclose(fx, 0.5 * np.dot(x[2:], x[2:]))
        np.testing.assert_allclose(gx, [0.0, 0.0, x[2], x[3]])
        moved = x.copy()
        moved[:2] += 10.0
        assert float(ff.obj(jnp.asarray(moved))) == float(fx)

    def test_constraints_and_jacobian(self, ff, point):
        x, _, v, w = point
        xj, vj, wj = map(jnp.asarray, (x, v, w))
        cx = ff.cons(xj)
        np.testing.assert_allclose(cx, c(x))
        np.testing.assert_allclose(
            cx[:2], simple_residual(xj[:2]) - xj[2:], rtol=0, atol=0
        )
        fx, cx = ff.objcons(xj)
        np.testing.assert_allclose(cx, c(x))
        np.testing.assert_allclose(ff.jac(xj), J(x))
        np.testing.assert_allclose(ff.jprod(xj, vj), J(x) @ v)
        np.testing.assert_allclose(ff.jtprod(xj, wj), J(x).T @ w)
        np.testing.assert_allclose(ff.jac_op(xj).mv(vj), J(x) @ v)

    def test_jacobian_coordinates_match_dense(self, ff, point):
        x = point[0]
        vals = ff.jac_coord(jnp.asarray(x))
        np.testing.assert_allclose(_coo(ff.jac_structure(), vals, (5, 4)), J(x))
        # identity block is last and constant
        np.testing.assert_array_equal(vals[ff.jac_layout.slice("identity")], [-1.0, -1.0])

    def test_hessian(self, ff, point):
        x, y, v, _ = point
        xj, yj, vj = map(jnp.asarray, (x, y, v))
        np.testing.assert_allclose(ff.hess(xj), np.tril(H(x)))
        np.testing.assert_allclose(ff.hess(xj, yj), np.tril(H(x, y)))
        np.testing.assert_allclose(
            ff.hess(xj, yj, obj_weight=2.5), np.tril(H(x, y, 2.5))
        )
        np.testing.assert_allclose(ff.hprod(xj, vj), H(x) @ v)
        np.testing.assert_allclose(ff.hprod(xj, vj, yj), H(x, y) @ v)
        np.testing.assert_allclose(ff.hess_op(xj, yj).mv(vj), H(x, y) @ v)
        np.testing.assert_array_equal(
            ff.hess_coord(xj), ff.hess_coord(xj, jnp.zeros(5))
        )

    def test_hessian_coordinates_sum_duplicates(self, ff, point):
        x, y, v, _ = point
        vals = ff.hess_coord(jnp.asarray(x), jnp.asarray(y))
        lower = _coo(ff.hess_structure(), vals, (4, 4))
        np.testing.assert_allclose(lower, np.tril(H(x, y)))
        # (0, 0) appears in both the residual and the constraint block
        rows, cols = ff.hess_structure()
        assert int(jnp.sum((rows == 0) & (cols == 0))) == 2
        np.testing.assert_allclose(
            symmetric_from_lower(jnp.asarray(lower)) @ v, H(x, y) @ v
        )

    def test_ghjvprod(self, ff, point):
        x, _, v, _ = point
        xj, vj = map(jnp.asarray, (x, v))
        gx = ff.grad(xj)
        expected = [
            np.dot(gx, (H(x, np.eye(5)[j]) - H(x)) @ v) for j in range(5)
        ]
        np.testing.assert_allclose(ff.ghjvprod(xj, gx, vj), expected, atol=1e-12)

    def test_repeated_calls_are_consistent(self, ff, point):
        xj = jnp.asarray(point[0])
        first = ff.jac_coord(xj)
        second = ff.jac_coord(xj)
        np.testing.assert_array_equal(first, second)
        np.testing.assert_array_equal(ff.hess_structure()[0], ff.hess_structure()[0])

    def test_dimension_errors(self, ff):
        with pytest.raises(DimensionError):
            ff.obj(jnp.zeros(3))
        with pytest.raises(DimensionError):
            ff.jprod(jnp.zeros(4), jnp.zeros(5))
        with pytest.raises(DimensionError):
            ff.jtprod(jnp.zeros(4), jnp.zeros(4))
        with pytest.raises(DimensionError):
            ff.hprod(jnp.zeros(4), jnp.zeros(4), jnp.zeros(3))
        with pytest.raises(DimensionError):
            ff.jtprod_residual(jnp.zeros(4), jnp.zeros(5))
        assert ff.counters.total() == 0

    def test_counters(self, ff, simple_nls):
        x = ff.meta.x0
        ff.cons(x)
        assert ff.counters.cons == 1
        assert simple_nls.counters.residual == 1
        assert simple_nls.counters.cons == 1
        ff.obj(x)
        assert ff.counters.obj == 1
        assert simple_nls.counters.obj == 0

    def test_hprod_applies_weighted_residual_hessian_once(self, ff, simple_nls, point):
        x, y, v, _ = point
        ff.hprod(jnp.asarray(x), jnp.asarray(v), jnp.asarray(y))
        assert simple_nls.counters.hess_residual == 1
        assert simple_nls.counters.hprod_residual == 0
        assert simple_nls.counters.hprod == 1

    def test_close(self, ff, simple_nls):
        ff.close()
        assert ff.closed and simple_nls.closed


class TestFeasibilityFormUnconstrained:
    def test_without_constraints(self, rng):
        nls = ADNLSModel(simple_residual, jnp.array([-1.2, 1.0]))
        ff = FeasibilityFormNLS(nls)
        assert ff.nvar == 4
        assert ff.ncon == 2
        assert ff.meta.nnzj == nls.nls_meta.nnzj + 2
        assert ff.meta.nnzh == nls.nls_meta.nnzh + 2
        assert ff.jac_layout.sizes[1] == 0

        x = rng.standard_normal(4)
        v = rng.standard_normal(4)
        y = rng.standard_normal(2)
        xj, vj, yj = map(jnp.asarray, (x, v, y))
        np.testing.assert_allclose(ff.jac(xj), J(x)[:2])
        np.testing.assert_allclose(ff.jac(xj) @ v, ff.jprod(xj, vj))
        np.testing.assert_allclose(ff.hprod(xj, vj, yj), H(np.r_[x], np.r_[y, 0, 0, 0]) @ v)
        np.testing.assert_allclose(ff.hess(xj, yj), np.tril(H(x, np.r_[y, 0, 0, 0])))


class TestNestedFeasibilityForms:
    def test_feasibility_form_of_feasibility_form(self, ff, rng):
        nested = FeasibilityFormNLS(ff)
        assert nested.nvar == 6
        assert nested.ncon == 7
        assert nested.meta.nnzj == 15
        assert nested.meta.nnzh == 8
        assert nested.name == "Simple NLS Model-ffnls-ffnls"

        x = jnp.asarray(rng.standard_normal(6))
        v = jnp.asarray(rng.standard_normal(6))
        y = jnp.asarray(rng.standard_normal(7))
        rows, cols = nested.jac_structure()
        assert len(rows) == nested.meta.nnzj
        np.testing.assert_allclose(
            _coo((rows, cols), nested.jac_coord(x), (7, 6)) @ np.asarray(v),
            nested.jprod(x, v),
        )
        H_dense = symmetric_from_lower(nested.hess(x, y))
        np.testing.assert_allclose(H_dense @ v, nested.hprod(x, v, y))

    def test_feasibility_form_of_feasibility_residual(self, simple_nls):
        snlp = SlackModel(SimpleNLSModel())
        nls = FeasibilityResidual(simple_nls)
        fnlp = FeasibilityFormNLS(nls)
        assert fnlp.meta.nnzj == snlp.meta.nnzj + snlp.meta.ncon
        assert fnlp.meta.nnzh == snlp.meta.nnzh + snlp.meta.ncon
        assert fnlp.nvar == snlp.nvar + snlp.ncon

    def test_feasibility_form_of_feasibility_residual_ad(self, rng):
        nlp = ADNLPModel(
            lambda x: jnp.sum(x),
            jnp.zeros(3),
            c=lambda x: jnp.stack([x[0] * x[1], x[1] + x[2] ** 2]),
            lcon=[0.0, 1.0],
            ucon=[jnp.inf, 1.0],
        )
        snlp = SlackModel(nlp)
        fnlp = FeasibilityFormNLS(FeasibilityResidual(nlp))
        assert fnlp.meta.nnzj == snlp.meta.nnzj + snlp.meta.ncon
        assert fnlp.meta.nnzh == snlp.meta.nnzh + snlp.meta.ncon
        x = jnp.asarray(rng.standard_normal(fnlp.nvar))
        v = jnp.asarray(rng.standard_normal(fnlp.nvar))
        np.testing.assert_allclose(
            fnlp.jac(x) @ np.asarray(v), fnlp.jprod(x, v), rtol=1e-10, atol=1e-12
        )


class TestFeasibilityResidual:
    def test_equality_constrained(self, equality_nlp, rng):
        nls = FeasibilityResidual(equality_nlp)
        assert nls.nlp is equality_nlp
        assert nls.nvar == 2
        assert nls.ncon == 0
        assert nls.nequ == 2
        assert nls.name == "equality-feasres"
        assert nls.nls_meta.lin == (0,)

        x = jnp.asarray(rng.standard_normal(2))
        v = jnp.asarray(rng.standard_normal(2))
        Fx = equality_nlp.cons(x) - jnp.array([1.0, 0.0])
        Jx = equality_nlp.jac(x)
        np.testing.assert_allclose(nls.residual(x), Fx)
        np.testing.assert_allclose(nls.obj(x), 0.5 * jnp.dot(Fx, Fx))
        np.testing.assert_allclose(nls.grad(x), Jx.T @ Fx)
        np.testing.assert_allclose(nls.jac_residual(x), Jx)

        # ∇²(½‖F‖²) = JᵀJ + F1 * diag(2, 0)
        H_expected = np.asarray(Jx.T @ Jx) + float(Fx[1]) * np.diag([2.0, 0.0])
        np.testing.assert_allclose(nls.hess(x), np.tril(H_expected))
        np.testing.assert_allclose(nls.hprod(x, v), H_expected @ np.asarray(v))
        np.testing.assert_allclose(
            nls.hprod(x, v, obj_weight=0.5), 0.5 * H_expected @ np.asarray(v)
        )

    def test_no_constraint_queries(self, equality_nlp):
        nls = FeasibilityResidual(equality_nlp)
        x = jnp.zeros(2)
        assert nls.cons(x).shape == (0,)
        assert nls.jac_coord(x).shape == (0,)
        assert nls.jac(x).shape == (0, 2)
        np.testing.assert_array_equal(nls.jtprod(x, jnp.zeros(0)), np.zeros(2))

    def test_residual_hessian_forwards_constraint_hessian(self, equality_nlp, rng):
        nls = FeasibilityResidual(equality_nlp)
        x = jnp.asarray(rng.standard_normal(2))
        v = jnp.asarray(rng.standard_normal(2))
        w = jnp.array([0.5, -2.0])
        np.testing.assert_allclose(
            nls.hess_residual(x, w), equality_nlp.hess(x, w, obj_weight=0.0)
        )
        np.testing.assert_allclose(nls.hprod_residual(x, 1, v), [2 * v[0], 0.0])
        np.testing.assert_allclose(nls.hprod_residual(x, 0, v), [0.0, 0.0])
        with pytest.raises(DimensionError, match="residual index"):
            nls.hprod_residual(x, 2, v)

    def test_inequalities_get_slacks(self, simple_nls, rng):
        nls = FeasibilityResidual(simple_nls)
        assert isinstance(nls.nlp, SlackNLSModel)
        assert nls.nvar == 4
        assert nls.nequ == 3
        x = jnp.asarray(rng.standard_normal(4))
        v = jnp.asarray(rng.standard_normal(4))
        np.testing.assert_allclose(nls.residual(x), nls.nlp.cons(x))
        np.testing.assert_allclose(
            symmetric_from_lower(nls.hess(x)) @ v, nls.hprod(x, v), atol=1e-12
        )

    def test_plain_model_gets_slack_model(self):
        nlp = ADNLPModel(
            lambda x: x[0], jnp.zeros(2), c=lambda x: x, lcon=[0.0, 0.0]
        )
        nls = FeasibilityResidual(nlp)
        assert type(nls.nlp) is SlackModel
        assert nls.nvar == 4

    def test_unconstrained_rejected(self):
        nlp = ADNLPModel(lambda x: jnp.sum(x**2), jnp.zeros(2))
        with pytest.raises(ModelError, match="no constraints"):
            FeasibilityResidual(nlp)

    def test_free_constraint_rejected(self):
        nlp = ADNLPModel(
            lambda x: x[0],
            jnp.zeros(2),
            c=lambda x: x,
            lcon=[0.0, -jnp.inf],
            ucon=[jnp.inf, jnp.inf],
        )
        with pytest.raises(ModelError, match=r"free constraints \[1\]"):
            FeasibilityResidual(nlp)

    def test_close(self, equality_nlp):
        with FeasibilityResidual(equality_nlp):
            pass
        assert equality_nlp.closed
