"""Limited-memory secant Hessian approximations.

Both operators keep the last k curvature pairs (s, y) in a circular buffer
and apply the approximation B to a vector through its compact representation
(Byrd, Nocedal, Schnabel 1994), never forming an n x n matrix:

L-BFGS:
    B = gamma * I - [gamma*S, Y] @ N^{-1} @ [gamma*S^T; Y^T]
    N = [[gamma * S^T S, L], [L^T, -D]]

L-SR1:
    B = gamma * I + U^T @ M^{-1} @ U
    U = Y - gamma * S,   M = D + L + L^T - gamma * S S^T

where L_{ij} = s_i^T y_j for i > j and D = diag(s_i^T y_i). With no stored
pairs both reduce to B = gamma * I.

The histories are immutable: appending returns a new history, and an
operator is reset by building a fresh one with ``secant_init``.
"""

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, Int, jaxtyped


class SecantHistory(eqx.Module):
    """Circular buffer of curvature pairs.

    Attributes:
        s_history: Stored steps s_i = x_{i+1} - x_i.
        y_history: Stored gradient differences y_i (damped for L-BFGS).
        gamma: Initial Hessian scaling (B_0 = gamma * I).
        count: Number of valid pairs stored (0 to memory size).
        next_idx: Next write position in the circular buffer.
    """

    s_history: Float[Array, "memory n"]
    y_history: Float[Array, "memory n"]
    gamma: Float[Array, ""]
    count: Int[Array, ""]
    next_idx: Int[Array, ""]

    @property
    def memory(self) -> int:
        return self.s_history.shape[0]

    @property
    def n(self) -> int:
        return self.s_history.shape[1]


def secant_init(n: int, memory: int, gamma: float = 1.0) -> SecantHistory:
    """Empty history, acting as gamma * I.

    Args:
        n: Dimension of the variable space.
        memory: Maximum number of (s, y) pairs to store.
        gamma: Initial Hessian scaling.
    """
    return SecantHistory(
        s_history=jnp.zeros((memory, n)),
        y_history=jnp.zeros((memory, n)),
        gamma=jnp.array(gamma, dtype=float),
        count=jnp.array(0),
        next_idx=jnp.array(0),
    )


def _ordered_pairs(history: SecantHistory):
    """Stored pairs in chronological order, invalid rows zeroed.

    Returns (S, Y, invalid_diag) where invalid_diag is 1.0 on the rows that
    hold no pair, used to keep the inner k x k systems non-singular.
    """
    k = history.memory
    count = history.count
    start = (history.next_idx - count + k) % k
    indices = (start + jnp.arange(k)) % k
    valid = jnp.arange(k) < count
    S = history.s_history[indices] * valid[:, None]
    Y = history.y_history[indices] * valid[:, None]
    return S, Y, jnp.where(valid, 0.0, 1.0)


def _write_pair(
    history: SecantHistory,
    s: Float[Array, " n"],
    y: Float[Array, " n"],
    gamma: Float[Array, ""],
) -> SecantHistory:
    idx = history.next_idx
    return SecantHistory(
        s_history=history.s_history.at[idx].set(s),
        y_history=history.y_history.at[idx].set(y),
        gamma=gamma,
        count=jnp.minimum(history.count + 1, jnp.array(history.memory)),
        next_idx=(idx + 1) % history.memory,
    )


def _degenerate_pair(s, y, skip_threshold):
    s_norm = jnp.linalg.norm(s)
    y_norm = jnp.linalg.norm(y)
    non_finite = ~(jnp.isfinite(s_norm) & jnp.isfinite(y_norm))
    return (s_norm < skip_threshold) | (y_norm < skip_threshold) | non_finite


@jaxtyped(typechecker=beartype)
def lbfgs_hvp(
    history: SecantHistory,
    v: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute B @ v using the L-BFGS compact representation.

    Complexity: O(kn) where k is the number of stored pairs.

    Args:
        history: Secant history filled by ``lbfgs_append``.
        v: Vector to multiply by the Hessian approximation.

    Returns:
        B @ v.
    """
    k = history.memory
    gamma = history.gamma
    S, Y, invalid_diag = _ordered_pairs(history)

    SY = S @ Y.T
    L = jnp.tril(SY, k=-1)
    D_diag = jnp.diag(SY)

    top = jnp.concatenate([gamma * (S @ S.T) + jnp.diag(invalid_diag), L], axis=1)
    bottom = jnp.concatenate([L.T, -jnp.diag(D_diag) + jnp.diag(invalid_diag)], axis=1)
    N = jnp.concatenate([top, bottom], axis=0) + 1e-10 * jnp.eye(2 * k)

    p = jnp.concatenate([gamma * (S @ v), Y @ v])
    q = jnp.linalg.solve(N, p)
    result = gamma * v - gamma * (S.T @ q[:k]) - Y.T @ q[k:]

    # A singular middle matrix leaves only the initial approximation
    return jnp.where(jnp.all(jnp.isfinite(result)), result, gamma * v)


@jaxtyped(typechecker=beartype)
def lbfgs_append(
    history: SecantHistory,
    s: Float[Array, " n"],
    y: Float[Array, " n"],
    damping_threshold: float = 0.2,
    skip_threshold: float = 1e-8,
) -> SecantHistory:
    """Append a new (s, y) pair to the L-BFGS history with Powell damping.

    The damped gradient difference is

        y_damped = theta * y + (1 - theta) * B s

    with theta in [0, 1] chosen so that s^T y_damped >= threshold * s^T B s.
    The scaling gamma becomes y_damped^T s / y_damped^T y_damped, clipped to
    [1e-3, 100]. Degenerate pairs (tiny, non-finite, extreme curvature ratio
    or nearly orthogonal s and y) are skipped.

    Args:
        history: Current history.
        s: Step vector s = x_{k+1} - x_k.
        y: Gradient difference y = ∇L_{k+1} - ∇L_k.
        damping_threshold: Powell damping threshold.
        skip_threshold: Minimum norm of s and y for the pair to be kept.

    Returns:
        Updated history.
    """
    s_norm = jnp.linalg.norm(s)
    y_norm = jnp.linalg.norm(y)
    sTy_raw = jnp.dot(s, y)
    ratio = y_norm / jnp.maximum(s_norm, 1e-30)
    relative_curvature = jnp.abs(sTy_raw) / jnp.maximum(s_norm * y_norm, 1e-30)
    should_skip = (
        _degenerate_pair(s, y, skip_threshold)
        | (ratio > 1e6)
        | (ratio < 1e-6)
        | (relative_curvature < 1e-6)
        | ~jnp.isfinite(sTy_raw)
    )

    def do_append():
        Bs = lbfgs_hvp(history, s)
        sTBs = jnp.maximum(jnp.dot(s, Bs), 1e-12)
        sTy = jnp.dot(s, y)
        theta = jax.lax.cond(
            sTy < damping_threshold * sTBs,
            lambda: (1.0 - damping_threshold) * sTBs / (sTBs - sTy + 1e-12),
            lambda: jnp.array(1.0, dtype=sTBs.dtype),
        )
        theta = jnp.clip(theta, 0.0, 1.0)
        y_damped = theta * y + (1.0 - theta) * Bs

        yTy = jnp.dot(y_damped, y_damped)
        gamma_candidate = jnp.dot(y_damped, s) / jnp.maximum(yTy, 1e-12)
        gamma = jax.lax.cond(
            (yTy > 1e-12) & jnp.isfinite(gamma_candidate),
            lambda: jnp.clip(gamma_candidate, 1e-3, 100.0).astype(history.gamma.dtype),
            lambda: history.gamma,
        )
        return _write_pair(history, s, y_damped, gamma)

    return jax.lax.cond(~should_skip, do_append, lambda: history)


@jaxtyped(typechecker=beartype)
def lsr1_hvp(
    history: SecantHistory,
    v: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute B @ v using the L-SR1 compact representation.

    The approximation is symmetric but not necessarily positive definite.

    Args:
        history: Secant history filled by ``lsr1_append``.
        v: Vector to multiply by the Hessian approximation.

    Returns:
        B @ v.
    """
    gamma = history.gamma
    S, Y, invalid_diag = _ordered_pairs(history)

    U = Y - gamma * S
    SY = S @ Y.T
    L = jnp.tril(SY, k=-1)
    M = jnp.diag(jnp.diag(SY)) + L + L.T - gamma * (S @ S.T)
    M = M + jnp.diag(invalid_diag)

    result = gamma * v + U.T @ jnp.linalg.solve(M, U @ v)
    return jnp.where(jnp.all(jnp.isfinite(result)), result, gamma * v)


@jaxtyped(typechecker=beartype)
def lsr1_append(
    history: SecantHistory,
    s: Float[Array, " n"],
    y: Float[Array, " n"],
    skip_threshold: float = 1e-8,
) -> SecantHistory:
    """Append a new (s, y) pair to the L-SR1 history.

    The pair is skipped when |s^T (y - B s)| <= 1e-8 * ‖s‖ ‖y - B s‖, the
    standard safeguard keeping the SR1 denominator away from zero. The
    scaling gamma is left unchanged.

    Args:
        history: Current history.
        s: Step vector.
        y: Gradient difference.
        skip_threshold: Minimum norm of s and y for the pair to be kept.

    Returns:
        Updated history.
    """
    r = y - lsr1_hvp(history, s)
    denominator = jnp.abs(jnp.dot(s, r))
    should_skip = _degenerate_pair(s, y, skip_threshold) | (
        denominator <= 1e-8 * jnp.linalg.norm(s) * jnp.linalg.norm(r)
    )
    return jax.lax.cond(
        ~should_skip,
        lambda: _write_pair(history, s, y, history.gamma),
        lambda: history,
    )
