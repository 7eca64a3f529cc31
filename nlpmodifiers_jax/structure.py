"""Sparse structure composition in coordinate format.

Model modifiers expose Jacobians and Hessians built from blocks reported by
the model(s) they wrap. This module holds the index arithmetic they share:

* ``CoordinateLayout`` fixes, once per model, the order, size and offset of
  every block of a coordinate (triplet) array, so that the value array
  returned by a coordinate query is always positionally aligned with the
  structure returned by the matching structure query.
* Helpers to shift a block to its row/column offset, to build identity and
  dense blocks, and to evaluate products directly from triplets.

Coordinates are 0-based. Duplicate (row, col) pairs are allowed and sum, so
blocks are concatenated without deduplication. Symmetric matrices are stored
as their lower triangle.
"""

from collections.abc import Sequence

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, ArrayLike, Float

from nlpmodifiers_jax.errors import DimensionError
from nlpmodifiers_jax.types import IndexVector, Structure, ValueVector, Vector


def check_length(array: ArrayLike, expected: int, what: str) -> None:
    """Raise ``DimensionError`` unless ``array`` is a vector of length ``expected``."""
    shape = jnp.shape(array)
    if len(shape) != 1 or shape[0] != expected:
        raise DimensionError(f"{what} has shape {shape}, expected ({expected},)")


def split(x: Vector, n: int) -> tuple[Vector, Vector]:
    """Split ``x`` into its first ``n`` entries and the rest."""
    return x[:n], x[n:]


class CoordinateLayout(eqx.Module):
    """Ordered named blocks of a coordinate-format array.

    The offsets are computed once from the declared block sizes. Assembling
    checks every block against its declared size before concatenating, so a
    wrapped model that reports a structure inconsistent with its own
    metadata is caught where the offsets are applied.

    Attributes:
        names: Block names, in storage order.
        sizes: Number of entries of each block.

    Example:
        >>> layout = CoordinateLayout([("residual", 3), ("identity", 2)])
        >>> layout.nnz
        5
        >>> layout.slice("identity")
        slice(3, 5, None)
    """

    names: tuple[str, ...] = eqx.field(static=True)
    sizes: tuple[int, ...] = eqx.field(static=True)

    def __init__(self, blocks: Sequence[tuple[str, int]]):
        self.names = tuple(name for name, _ in blocks)
        self.sizes = tuple(int(size) for _, size in blocks)

    def __check_init__(self):
        if len(set(self.names)) != len(self.names):
            raise ValueError(f"duplicate block names in {self.names}")
        if any(size < 0 for size in self.sizes):
            raise DimensionError(f"negative block size in {self.sizes}")

    @property
    def nnz(self) -> int:
        return sum(self.sizes)

    @property
    def offsets(self) -> tuple[int, ...]:
        return tuple(int(o) for o in np.cumsum((0,) + self.sizes[:-1]))

    def slice(self, name: str) -> slice:
        i = self.names.index(name)
        start = self.offsets[i]
        return slice(start, start + self.sizes[i])

    def _check_blocks(self, blocks: Sequence[ArrayLike], what: str) -> None:
        if len(blocks) != len(self.sizes):
            raise DimensionError(
                f"expected {len(self.sizes)} {what} blocks, got {len(blocks)}"
            )
        for name, size, block in zip(self.names, self.sizes, blocks):
            check_length(block, size, f"{name} {what} block")

    def assemble(self, *blocks: ArrayLike) -> ValueVector:
        """Concatenate value blocks in layout order."""
        self._check_blocks(blocks, "value")
        if not blocks:
            return jnp.zeros((0,))
        return jnp.concatenate([jnp.asarray(b, dtype=float) for b in blocks])

    def assemble_structure(self, *blocks: Structure) -> Structure:
        """Concatenate (rows, cols) blocks in layout order."""
        rows = [block[0] for block in blocks]
        cols = [block[1] for block in blocks]
        self._check_blocks(rows, "row index")
        self._check_blocks(cols, "column index")
        if not blocks:
            return empty_structure()
        return (
            jnp.concatenate([jnp.asarray(r, dtype=int) for r in rows]),
            jnp.concatenate([jnp.asarray(c, dtype=int) for c in cols]),
        )


def empty_structure() -> Structure:
    return jnp.zeros((0,), dtype=int), jnp.zeros((0,), dtype=int)


def shift(
    rows: IndexVector, cols: IndexVector, row_offset: int = 0, col_offset: int = 0
) -> Structure:
    """Move a structure block by the given row and column offsets."""
    return (
        jnp.asarray(rows, dtype=int) + row_offset,
        jnp.asarray(cols, dtype=int) + col_offset,
    )


def diagonal_structure(size: int, row_offset: int = 0, col_offset: int = 0) -> Structure:
    """Positions (row_offset + i, col_offset + i) for i in range(size)."""
    i = jnp.arange(size, dtype=int)
    return i + row_offset, i + col_offset


def dense_structure(nrows: int, ncols: int) -> Structure:
    """All positions of an nrows x ncols matrix, row-major."""
    rows = jnp.repeat(jnp.arange(nrows, dtype=int), ncols)
    cols = jnp.tile(jnp.arange(ncols, dtype=int), nrows)
    return rows, cols


def lower_triangle_structure(n: int) -> Structure:
    """All positions of the lower triangle of an n x n matrix, row-major."""
    rows, cols = np.tril_indices(n)
    return jnp.asarray(rows, dtype=int), jnp.asarray(cols, dtype=int)


def coo_to_dense(
    rows: IndexVector, cols: IndexVector, vals: ValueVector, shape: tuple[int, int]
) -> Float[Array, "m n"]:
    """Densify a coordinate-format matrix, summing duplicate entries."""
    dtype = jnp.result_type(vals, float)
    return jnp.zeros(shape, dtype=dtype).at[rows, cols].add(vals)


def symmetric_from_lower(lower: Float[Array, "n n"]) -> Float[Array, "n n"]:
    """Full symmetric matrix from its lower triangle."""
    return lower + jnp.tril(lower, k=-1).T


def coo_sym_prod(
    rows: IndexVector, cols: IndexVector, vals: ValueVector, v: Vector
) -> Float[Array, " n"]:
    """H @ v for a symmetric H given by the coordinates of its lower triangle."""
    hv = jnp.zeros(v.shape, dtype=jnp.result_type(vals, v)).at[rows].add(vals * v[cols])
    off_diagonal = jnp.where(rows != cols, vals, 0.0)
    return hv.at[cols].add(off_diagonal * v[rows])


def unit_vector(size: int, i: int) -> Float[Array, " k"]:
    return jnp.zeros((size,)).at[i].set(1.0)
