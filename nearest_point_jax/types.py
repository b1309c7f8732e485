"""Type definitions for nearest-point-jax.

This module contains type aliases and custom types used throughout the package.
All types use jaxtyping for runtime type checking with beartype.
"""

from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]
Matrix = Float[Array, "n n"]

# Level function type: takes the point u and args, returns the scalar G(u)
LevelFn = Callable[[Vector, Any], Scalar]

# Gradient of the level function
# grad_fn(u, args) -> ∇G(u)
GradFn = Callable[[Vector, Any], Vector]

# Hessian of the level function as a dense symmetric matrix
# hessian_fn(u, args) -> ∇²G(u)
HessianFn = Callable[[Vector, Any], Matrix]


# Result codes for solver termination
class SolverResult:
    """Constants for solver termination status.

    ``RUNNING`` is only ever seen in a state that has not terminated yet.
    """

    RUNNING = -1
    SUCCESS = 0
    MAX_ITERATIONS = 1
    DEGENERATE_GRADIENT = 2
    NUMERICAL_FAILURE = 3
