"""Penalized Merit Function and Line Search for the nearest-point solvers.

This module implements the merit function and the backtracking line search
shared by the Abdo-Rackwitz and SQP solvers.

The merit function is:
    θ(u; σ) = ½‖u‖² + σ * |G(u) - G0|

where σ is the penalty parameter. σ grows by at least one at every
iteration, so the constraint violation term eventually dominates.

After backtracking, an anti-cycling correction detects iterates that swing
back towards the previous point and replaces the trial point by a secant
interpolation along the bisector of the last two iterates.
"""

import logging
from typing import Any, NamedTuple

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Int, jaxtyped

from nearest_point_jax.problem import LevelFunction
from nearest_point_jax.types import Scalar, Vector

logger = logging.getLogger(__name__)

# Backtracking stops once the step falls below tau**MIN_STEP_EXPONENT
MIN_STEP_EXPONENT = 9


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        alpha: The step length actually used for the accepted trial point.
        point: The new iterate (after the anti-cycling correction, if any).
        level: Level function value at the new iterate.
        sigma: The updated penalty parameter.
        merit: Merit value of the accepted backtracking trial point.
        initial_merit: Merit value at the current point.
        increment: Sufficient-decrease slope Δ.
        corrected: Whether the anti-cycling correction replaced the trial point.
        failed: Whether the anti-cycling correction was undefined.
        n_evals: Number of level function evaluations.
    """

    alpha: Scalar
    point: Vector
    level: Scalar
    sigma: Scalar
    merit: Scalar
    initial_merit: Scalar
    increment: Scalar
    corrected: Bool[Array, ""]
    failed: Bool[Array, ""]
    n_evals: Int[Array, ""]


class CorrectionResult(NamedTuple):
    """Result from the anti-cycling correction."""

    point: Vector
    level: Scalar
    corrected: Bool[Array, ""]
    failed: Bool[Array, ""]


@jaxtyped(typechecker=beartype)
def compute_merit(
    point: Vector,
    level: Scalar,
    level_value: Scalar,
    sigma: Scalar,
) -> Scalar:
    """Compute the penalized merit function value.

    The merit function is:
        θ(u; σ) = ½‖u‖² + σ * |G(u) - G0|

    Args:
        point: Point u.
        level: Level function value G(u).
        level_value: Target level G0.
        sigma: Penalty parameter σ.

    Returns:
        Merit function value θ(u; σ).
    """
    return 0.5 * jnp.dot(point, point) + sigma * jnp.abs(level - level_value)


@jaxtyped(typechecker=beartype)
def update_penalty_parameter(
    current_sigma: Scalar,
    point: Vector,
    gradient: Vector,
    smooth: float,
) -> Scalar:
    """Update the penalty parameter.

    ``σ <- max(σ + 1, smooth * ‖u‖ / ‖∇G‖)``

    The caller guarantees ``‖∇G‖ > 0``.

    Args:
        current_sigma: Current penalty parameter.
        point: Current point u.
        gradient: Level function gradient ∇G(u).
        smooth: Penalty growth coefficient.

    Returns:
        Updated penalty parameter, never smaller than ``current_sigma + 1``.
    """
    return jnp.maximum(
        current_sigma + 1.0,
        smooth * jnp.linalg.norm(point) / jnp.linalg.norm(gradient),
    )


def _safe_norm(norm: Scalar) -> Scalar:
    return jnp.where(norm > 0.0, norm, 1.0)


def anti_cycling_correction(
    level_fn: LevelFunction,
    args: Any,
    level_value: Scalar,
    old_point: Vector,
    old_level: Scalar,
    point: Vector,
    level: Scalar,
    trial_point: Vector,
    trial_level: Scalar,
) -> CorrectionResult:
    """Replace a trial point that swings back towards the previous iterate.

    The step is considered circuitous when the trial point is more aligned
    with the previous iterate than with the current one:

        cos(u_old, u_trial) > cos(u, u_trial)

    The trial point is then replaced by

        β * (u_old + u) / ‖u_old + u‖

    where β interpolates the norms of the last two iterates linearly in their
    level values towards G0:

        β = (‖u‖ (G_old - G0) - ‖u_old‖ (G - G0)) / (G_old - G)

    The correction is skipped while ``u_old`` is zero (first iteration). When
    ``G_old == G`` or ``u_old + u == 0`` the interpolation is undefined; the
    trial point is kept and ``failed`` is set instead of producing NaN.

    Args:
        level_fn: Level function.
        args: Arguments passed to the level function.
        level_value: Target level G0.
        old_point: Previous iterate.
        old_level: Level value at the previous iterate.
        point: Current iterate.
        level: Level value at the current iterate.
        trial_point: Point accepted by backtracking.
        trial_level: Level value at the trial point.

    Returns:
        CorrectionResult with the (possibly replaced) point and its level value.
    """
    old_norm = jnp.linalg.norm(old_point)
    current_norm = jnp.linalg.norm(point)
    trial_norm = jnp.linalg.norm(trial_point)

    # An undefined cosine never flags cycling
    defined = (old_norm > 0.0) & (current_norm > 0.0) & (trial_norm > 0.0)
    cos_old = jnp.dot(old_point, trial_point) / (
        _safe_norm(old_norm) * _safe_norm(trial_norm)
    )
    cos_current = jnp.dot(point, trial_point) / (
        _safe_norm(current_norm) * _safe_norm(trial_norm)
    )
    cycling = defined & (cos_old > cos_current)

    denominator = old_level - level
    bisector = old_point + point
    bisector_norm = jnp.linalg.norm(bisector)
    failed = cycling & ((denominator == 0.0) | (bisector_norm == 0.0))
    corrected = cycling & ~failed

    def correct():
        beta = (
            current_norm * (old_level - level_value)
            - old_norm * (level - level_value)
        ) / jnp.where(denominator == 0.0, 1.0, denominator)
        new_point = beta * bisector / _safe_norm(bisector_norm)
        return new_point, level_fn.value(new_point, args)

    def keep():
        return trial_point, trial_level

    new_point, new_level = jax.lax.cond(corrected, correct, keep)

    return CorrectionResult(
        point=new_point,
        level=new_level,
        corrected=corrected,
        failed=failed,
    )


def _log_trial(step, point, level, merit):
    logger.info(
        "line search step=%s trial point=%s level=%s merit=%s",
        step,
        point,
        level,
        merit,
    )


def backtracking_line_search(
    level_fn: LevelFunction,
    args: Any,
    point: Vector,
    level: Scalar,
    gradient: Vector,
    direction: Vector,
    sigma: Scalar,
    old_point: Vector,
    old_level: Scalar,
    level_value: Scalar,
    tau: float = 0.5,
    omega: float = 1e-4,
    smooth: float = 1.2,
    verbose: bool = False,
) -> LineSearchResult:
    """Perform backtracking line search with the penalized merit function.

    Starting from step 1, the trial point ``u + step * d`` is evaluated and the
    step is shrunk by ``tau`` until

        θ(u + step * d) <= θ(u) + step * Δ

    with ``Δ = omega * <u + σ sign(G - G0) ∇G, d>``, or until the step falls
    below ``tau**9``. The loop body always runs at least once, so a trial
    point is always produced. The test compares against the already shrunk
    step, hence the step used for the accepted trial is ``step / tau``.

    Args:
        level_fn: Level function.
        args: Arguments passed to the level function.
        point: Current point u.
        level: Level function value at u.
        gradient: Level function gradient at u (non-zero).
        direction: Search direction d.
        sigma: Penalty parameter before this iteration's update.
        old_point: Previous iterate (zero before the first step).
        old_level: Level value at the previous iterate.
        level_value: Target level G0.
        tau: Step reduction factor in (0, 1).
        omega: Sufficient decrease coefficient in (0, 1).
        smooth: Penalty growth coefficient.
        verbose: Log every trial step at INFO level.

    Returns:
        LineSearchResult with the new iterate and the step length used.
    """
    sigma = update_penalty_parameter(sigma, point, gradient, smooth)
    merit_0 = compute_merit(point, level, level_value, sigma)
    min_step = tau**MIN_STEP_EXPONENT

    sign = jnp.where(level > level_value, 1.0, -1.0)
    increment = omega * jnp.dot(point + sigma * sign * gradient, direction)

    class LSState(NamedTuple):
        step: Scalar
        point: Vector
        level: Scalar
        merit: Scalar
        n_evals: Int[Array, ""]

    def evaluate_at_step(step):
        """Evaluate level function and merit at u + step * d."""
        trial = point + step * direction
        trial_level = level_fn.value(trial, args)
        trial_merit = compute_merit(trial, trial_level, level_value, sigma)
        if verbose:
            jax.debug.callback(_log_trial, step, trial, trial_level, trial_merit)
        return trial, trial_level, trial_merit

    # First pass of the do/while loop
    first_point, first_level, first_merit = evaluate_at_step(
        jnp.asarray(1.0, dtype=point.dtype)
    )

    init_state = LSState(
        step=jnp.asarray(tau, dtype=point.dtype),
        point=first_point,
        level=first_level,
        merit=first_merit,
        n_evals=jnp.array(1),
    )

    def cond_fn(state: LSState) -> Bool[Array, ""]:
        """Continue while the step is large enough and decrease is insufficient."""
        return (state.step >= min_step) & (
            state.merit > merit_0 + state.step * increment
        )

    def body_fn(state: LSState) -> LSState:
        """One iteration of backtracking."""
        trial, trial_level, trial_merit = evaluate_at_step(state.step)
        return LSState(
            step=state.step * tau,
            point=trial,
            level=trial_level,
            merit=trial_merit,
            n_evals=state.n_evals + 1,
        )

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)

    correction = anti_cycling_correction(
        level_fn,
        args,
        level_value,
        old_point,
        old_level,
        point,
        level,
        final_state.point,
        final_state.level,
    )

    return LineSearchResult(
        alpha=final_state.step / tau,
        point=correction.point,
        level=correction.level,
        sigma=sigma,
        merit=final_state.merit,
        initial_merit=merit_0,
        increment=increment,
        corrected=correction.corrected,
        failed=correction.failed,
        n_evals=final_state.n_evals + correction.corrected.astype(jnp.int32),
    )
