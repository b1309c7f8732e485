"""Error metrics and convergence test for the nearest-point solvers.

Four metrics are computed after every line search:

    absolute error   |α| ‖d‖
    relative error   |α| ‖d‖ / ‖u‖   (-1 when u = 0)
    residual error   ‖u + λ ∇G‖      (stationarity of the Lagrangian)
    constraint error |G(u) - G0|

Convergence is accepted on either a small step or a small KKT residual:

    (absolute < max_absolute AND 0 <= relative < max_relative)
    OR (residual < max_residual AND constraint < max_constraint)
"""

from typing import NamedTuple

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, jaxtyped

from nearest_point_jax.types import Scalar, Vector

# Relative error of an iterate at the origin, where it is undefined
UNDEFINED_RELATIVE_ERROR = -1.0


class ConvergenceCriteria(NamedTuple):
    """Thresholds of the convergence test."""

    max_absolute_error: float = 1e-5
    max_relative_error: float = 1e-5
    max_residual_error: float = 1e-5
    max_constraint_error: float = 1e-5


class ErrorMetrics(NamedTuple):
    """Error metrics of one iteration."""

    absolute_error: Scalar
    relative_error: Scalar
    residual_error: Scalar
    constraint_error: Scalar


@jaxtyped(typechecker=beartype)
def compute_errors(
    alpha: Scalar,
    direction: Vector,
    point: Vector,
    level: Scalar,
    lam: Scalar,
    gradient: Vector,
    level_value: Scalar,
) -> ErrorMetrics:
    """Compute the four error metrics of an iteration.

    Args:
        alpha: Step length used by the line search.
        direction: Search direction d.
        point: New iterate u.
        level: Level function value at the new iterate.
        lam: Lagrange multiplier λ.
        gradient: Level function gradient used for the direction.
        level_value: Target level G0.

    Returns:
        ErrorMetrics for the iteration.
    """
    absolute_error = jnp.abs(alpha) * jnp.linalg.norm(direction)
    constraint_error = jnp.abs(level - level_value)
    point_norm = jnp.linalg.norm(point)
    relative_error = jnp.where(
        point_norm > 0.0,
        absolute_error / jnp.where(point_norm > 0.0, point_norm, 1.0),
        UNDEFINED_RELATIVE_ERROR,
    )
    residual_error = jnp.linalg.norm(point + lam * gradient)
    return ErrorMetrics(
        absolute_error=absolute_error,
        relative_error=relative_error,
        residual_error=residual_error,
        constraint_error=constraint_error,
    )


def has_converged(
    errors: ErrorMetrics, criteria: ConvergenceCriteria
) -> Bool[Array, ""]:
    """Apply the step-based and residual-based convergence tests."""
    small_step = (
        (errors.absolute_error < criteria.max_absolute_error)
        & (errors.relative_error >= 0.0)
        & (errors.relative_error < criteria.max_relative_error)
    )
    small_residual = (errors.residual_error < criteria.max_residual_error) & (
        errors.constraint_error < criteria.max_constraint_error
    )
    return small_step | small_residual
