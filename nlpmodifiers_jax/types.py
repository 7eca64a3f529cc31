"""Type definitions for nlpmodifiers-jax.

Type aliases shared by the models and the index engine. All array types use
jaxtyping annotations.
"""

from collections.abc import Callable

from jaxtyping import Array, Float, Int

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Coordinate (triplet) format: parallel row / column / value sequences
IndexVector = Int[Array, " nnz"]
ValueVector = Float[Array, " nnz"]
Structure = tuple[IndexVector, IndexVector]

# Objective function type: f(x) -> scalar
ObjectiveFn = Callable[[Vector], Scalar]

# Constraint function type: c(x) -> c_L <= c(x) <= c_U
ConstraintFn = Callable[[Vector], Float[Array, " m"]]

# Residual function type for least-squares problems: F(x), minimize ½‖F(x)‖²
ResidualFn = Callable[[Vector], Float[Array, " nequ"]]
