"""Nearest-point solvers implemented using Optimistix.

This module contains the Abdo-Rackwitz and SQP solvers for the nearest-point
problem

    minimize ‖u‖  subject to  G(u) = G0

Both extend optimistix.AbstractMinimiser and share everything except the
search direction:

1. Abdo-Rackwitz: closed-form projection of u onto the linearized
   constraint, using only ∇G.
2. SQP: Newton-type step from the bordered KKT system built from ∇²G, ∇G
   and the multiplier of the previous iteration.

Each iteration then runs the penalized merit line search of
:mod:`nearest_point_jax.merit` and the convergence test of
:mod:`nearest_point_jax.convergence`.

The step is a pure JAX computation, so fatal conditions (vanishing gradient,
undefined anti-cycling correction, singular KKT system) are reported through
the ``status`` code of the state. :meth:`AbstractNearestPointSolver.run`
drives the iteration on the host, records the history and turns those codes
into exceptions.
"""

import abc
import logging
from collections.abc import Callable
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
from jaxtyping import Array, Bool, Float, Int

from nearest_point_jax.convergence import (
    ConvergenceCriteria,
    compute_errors,
    has_converged,
)
from nearest_point_jax.exceptions import (
    DegenerateGradientError,
    NumericalFailureError,
)
from nearest_point_jax.kkt import (
    abdo_rackwitz_direction,
    build_kkt_system,
    solve_kkt_system,
)
from nearest_point_jax.merit import backtracking_line_search
from nearest_point_jax.problem import (
    LevelFunction,
    NearestPointProblem,
    as_level_function,
    check_problem,
)
from nearest_point_jax.result import OptimizationResult
from nearest_point_jax.types import SolverResult

logger = logging.getLogger(__name__)


class NearestPointState(eqx.Module):
    """State for the nearest-point solvers.

    This is a JAX PyTree (via eqx.Module) that holds all mutable state
    needed across iterations. A new state is returned by every step.

    Attributes:
        step_count: Current iteration number.
        point: Current iterate u.
        level: Level function value G(u).
        gradient: Gradient ∇G at the point the last direction was built from.
        direction: Last search direction.
        lam: Lagrange multiplier λ.
        sigma: Merit penalty parameter σ (non-decreasing).
        corrected: Whether the anti-cycling correction replaced the trial
            point of the last line search.
        old_point: Previous iterate, zero before the first step.
        old_level: Level value at the previous iterate.
        level_value: Target level G0.
        hessian: Last Hessian ∇²G (SQP only, empty otherwise).
        system_matrix: Last KKT matrix (SQP only, empty otherwise).
        second_member: Last KKT right-hand side (SQP only, empty otherwise).
        absolute_error: Absolute error of the last iteration (-1 initially).
        relative_error: Relative error of the last iteration (-1 initially).
        residual_error: Residual error of the last iteration (-1 initially).
        constraint_error: Constraint error of the last iteration (-1 initially).
        converged: Whether the convergence test was met.
        status: A :class:`SolverResult` code.
    """

    # Iteration tracking
    step_count: Int[Array, ""]

    # Current iterate
    point: Float[Array, " n"]
    level: Float[Array, ""]
    gradient: Float[Array, " n"]
    direction: Float[Array, " n"]
    lam: Float[Array, ""]
    sigma: Float[Array, ""]
    corrected: Bool[Array, ""]

    # Previous iterate, used by the anti-cycling correction
    old_point: Float[Array, " n"]
    old_level: Float[Array, ""]

    level_value: Float[Array, ""]

    # SQP subproblem
    hessian: Float[Array, "h h"]
    system_matrix: Float[Array, "k k"]
    second_member: Float[Array, " k"]

    # Error metrics of the last iteration
    absolute_error: Float[Array, ""]
    relative_error: Float[Array, ""]
    residual_error: Float[Array, ""]
    constraint_error: Float[Array, ""]

    converged: Bool[Array, ""]
    status: Int[Array, ""]


class DirectionResult(NamedTuple):
    """Search direction and the subproblem data it was computed from."""

    direction: Float[Array, " n"]
    lam: Float[Array, ""]
    hessian: Float[Array, "h h"]
    system_matrix: Float[Array, "k k"]
    second_member: Float[Array, " k"]
    singular: Bool[Array, ""]


def _status(code: int) -> Int[Array, ""]:
    return jnp.asarray(code, dtype=jnp.int32)


def _failed_state(
    state: NearestPointState,
    gradient: Float[Array, " n"],
    code: int,
) -> NearestPointState:
    """Count the iteration but keep the iterate, flagging the failure."""
    return eqx.tree_at(
        lambda s: (s.step_count, s.gradient, s.status),
        state,
        (state.step_count + 1, gradient, _status(code)),
    )


@eqx.filter_jit
def _jit_step(solver, fn, y, args, options, state, tags):
    # Compiled once per solver configuration and level function
    return solver.step(fn, y, args, options, state, tags)


class AbstractNearestPointSolver(optx.AbstractMinimiser):
    """Common machinery of the nearest-point solvers.

    Subclasses only provide the search direction. The level function ``G`` is
    the function handed to the solver (``fn``); the target level ``G0`` is
    read from ``options["level_value"]`` (default 0).

    Attributes:
        rtol: Maximum relative error ``|α| ‖d‖ / ‖u‖``.
        atol: Maximum absolute error ``|α| ‖d‖``.
        max_residual_error: Maximum residual error ``‖u + λ ∇G‖``.
        max_constraint_error: Maximum constraint error ``|G(u) - G0|``.
        max_steps: Maximum number of iterations.
        tau: Line search step reduction factor in (0, 1).
        omega: Sufficient decrease coefficient in (0, 1).
        smooth: Penalty growth coefficient (> 0).
        verbose: Log iterates and line search trials at INFO level.
    """

    # Convergence tolerances
    rtol: float = 1e-5
    atol: float = 1e-5
    max_residual_error: float = 1e-5
    max_constraint_error: float = 1e-5

    # Norm function for convergence checking (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=optx.max_norm)

    # Maximum iterations
    max_steps: int = eqx.field(static=True, default=100)

    # Line search parameters
    tau: float = eqx.field(static=True, default=0.5)
    omega: float = eqx.field(static=True, default=1e-4)
    smooth: float = eqx.field(static=True, default=1.2)

    verbose: bool = eqx.field(static=True, default=False)

    def __check_init__(self):
        if not 0.0 < self.tau < 1.0:
            raise ValueError(f"tau must lie in (0, 1), got {self.tau}")
        if not 0.0 < self.omega < 1.0:
            raise ValueError(f"omega must lie in (0, 1), got {self.omega}")
        if not self.smooth > 0.0:
            raise ValueError(f"smooth must be positive, got {self.smooth}")
        if self.max_steps < 0:
            raise ValueError(f"max_steps must be non-negative, got {self.max_steps}")
        for name, value in self.criteria._asdict().items():
            if value < 0.0:
                raise ValueError(f"{name} must be non-negative, got {value}")

    @property
    def criteria(self) -> ConvergenceCriteria:
        return ConvergenceCriteria(
            max_absolute_error=self.atol,
            max_relative_error=self.rtol,
            max_residual_error=self.max_residual_error,
            max_constraint_error=self.max_constraint_error,
        )

    @abc.abstractmethod
    def _init_subproblem(
        self,
        level_fn: LevelFunction,
        y: Float[Array, " n"],
        args: Any,
    ) -> tuple[Float[Array, "h h"], Float[Array, "k k"], Float[Array, " k"]]:
        """Initial (hessian, system_matrix, second_member) of the state."""

    @abc.abstractmethod
    def _compute_direction(
        self,
        level_fn: LevelFunction,
        args: Any,
        state: NearestPointState,
        gradient: Float[Array, " n"],
    ) -> DirectionResult:
        """Compute the search direction and the new multiplier."""

    def init(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> NearestPointState:
        """Initialize the solver state.

        Evaluates the level function at the starting point. The penalty
        parameter and the multiplier start at zero, the previous iterate at
        the origin so that the anti-cycling correction is inactive on the
        first iteration.

        Args:
            fn: Level function with signature fn(y, args) -> (G(y), aux), or a
                LevelFunction.
            y: Starting point.
            args: Additional arguments passed to fn.
            options: Runtime options; ``level_value`` is the target level G0.
            f_struct: Structure of function output (for type inference).
            aux_struct: Structure of auxiliary output.
            tags: Lineax tags for the problem.

        Returns:
            Initial NearestPointState.
        """
        level_fn = as_level_function(fn)
        dtype = y.dtype
        options = {} if options is None else options

        level = level_fn.value(y, args)
        level_value = jnp.asarray(options.get("level_value", 0.0), dtype=dtype)
        hessian, system_matrix, second_member = self._init_subproblem(
            level_fn, y, args
        )
        undefined = jnp.asarray(-1.0, dtype=dtype)

        return NearestPointState(
            step_count=jnp.asarray(0, dtype=jnp.int32),
            point=y,
            level=level,
            gradient=jnp.zeros_like(y),
            direction=jnp.zeros_like(y),
            lam=jnp.zeros((), dtype=dtype),
            sigma=jnp.zeros((), dtype=dtype),
            corrected=jnp.array(False),
            old_point=jnp.zeros_like(y),
            old_level=level,
            level_value=level_value,
            hessian=hessian,
            system_matrix=system_matrix,
            second_member=second_member,
            absolute_error=undefined,
            relative_error=undefined,
            residual_error=undefined,
            constraint_error=undefined,
            converged=jnp.array(False),
            status=_status(SolverResult.RUNNING),
        )

    def step(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: NearestPointState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], NearestPointState, Any]:
        """Perform one iteration.

        This method:
        1. Evaluates ∇G at the current point; a zero gradient ends the run
           with status DEGENERATE_GRADIENT.
        2. Computes the direction and multiplier (solver specific).
        3. Performs the merit line search with anti-cycling correction.
        4. Computes the error metrics and the convergence test.

        Args:
            fn: Level function.
            y: Current point.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (new_y, new_state, aux).
        """
        level_fn = as_level_function(fn)
        gradient = level_fn.gradient(state.point, args)
        degenerate = jnp.dot(gradient, gradient) == 0.0

        new_state = jax.lax.cond(
            degenerate,
            lambda: _failed_state(state, gradient, SolverResult.DEGENERATE_GRADIENT),
            lambda: self._iterate(level_fn, args, state, gradient),
        )

        _, aux = fn(new_state.point, args)
        return new_state.point, new_state, aux

    def _iterate(
        self,
        level_fn: LevelFunction,
        args: Any,
        state: NearestPointState,
        gradient: Float[Array, " n"],
    ) -> NearestPointState:
        """Direction, line search and convergence test for a non-zero gradient."""
        subproblem = self._compute_direction(level_fn, args, state, gradient)

        ls_result = backtracking_line_search(
            level_fn,
            args,
            point=state.point,
            level=state.level,
            gradient=gradient,
            direction=subproblem.direction,
            sigma=state.sigma,
            old_point=state.old_point,
            old_level=state.old_level,
            level_value=state.level_value,
            tau=float(self.tau),
            omega=float(self.omega),
            smooth=float(self.smooth),
            verbose=self.verbose,
        )

        errors = compute_errors(
            ls_result.alpha,
            subproblem.direction,
            ls_result.point,
            ls_result.level,
            subproblem.lam,
            gradient,
            state.level_value,
        )
        converged = has_converged(errors, self.criteria)

        advanced = NearestPointState(
            step_count=state.step_count + 1,
            point=ls_result.point,
            level=ls_result.level,
            gradient=gradient,
            direction=subproblem.direction,
            lam=subproblem.lam,
            sigma=ls_result.sigma,
            corrected=ls_result.corrected,
            old_point=state.point,
            old_level=state.level,
            level_value=state.level_value,
            hessian=subproblem.hessian,
            system_matrix=subproblem.system_matrix,
            second_member=subproblem.second_member,
            absolute_error=errors.absolute_error,
            relative_error=errors.relative_error,
            residual_error=errors.residual_error,
            constraint_error=errors.constraint_error,
            converged=converged,
            status=jnp.where(
                converged, SolverResult.SUCCESS, SolverResult.RUNNING
            ).astype(jnp.int32),
        )

        # An undefined update leaves the iterate where it was
        failed = subproblem.singular | ls_result.failed
        rejected = _failed_state(state, gradient, SolverResult.NUMERICAL_FAILURE)
        return jax.tree.map(
            lambda bad, good: jnp.where(failed, bad, good), rejected, advanced
        )

    def terminate(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: NearestPointState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Check if the solver should terminate.

        The solver stops when the convergence test was met, when the last step
        failed, or when ``max_steps`` iterations have been performed.

        Args:
            fn: Level function.
            y: Current point.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (done, result) where done is a bool indicating
            termination and result is the termination status code.
        """
        failed = (state.status == SolverResult.DEGENERATE_GRADIENT) | (
            state.status == SolverResult.NUMERICAL_FAILURE
        )
        max_iters_reached = state.step_count >= self.max_steps
        done = state.converged | failed | max_iters_reached

        result = jax.lax.cond(
            state.converged,
            lambda: optx.RESULTS.successful,
            lambda: jax.lax.cond(
                failed,
                lambda: optx.RESULTS.nonlinear_divergence,
                lambda: jax.lax.cond(
                    max_iters_reached,
                    lambda: optx.RESULTS.max_steps_reached,
                    lambda: optx.RESULTS.successful,  # Still running
                ),
            ),
        )

        return done, result

    def postprocess(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: NearestPointState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """Post-process the optimization result.

        Returns:
            Tuple of (y, aux, stats) where stats is a dictionary
            containing solver statistics.
        """
        stats = {
            "num_steps": state.step_count,
            "final_level": state.level,
            "final_lambda": state.lam,
            "merit_penalty": state.sigma,
            "absolute_error": state.absolute_error,
            "relative_error": state.relative_error,
            "residual_error": state.residual_error,
            "constraint_error": state.constraint_error,
        }

        return y, aux, stats

    def run(
        self,
        problem: NearestPointProblem,
        starting_point: Any = None,
        args: Any = None,
        state: Optional[NearestPointState] = None,
    ) -> OptimizationResult:
        """Solve a nearest-point problem and record the full history.

        Args:
            problem: The problem to solve.
            starting_point: One-dimensional starting point.
            args: Additional arguments passed to the level function.
            state: State to resume from instead of starting afresh, for
                instance one returned by :func:`~nearest_point_jax.load_state`.
                Its point and level value take precedence over
                ``starting_point`` and ``problem.level_value``.

        Returns:
            OptimizationResult. When the iteration budget is exhausted the
            result is returned with ``converged=False`` and a warning is
            logged.

        Raises:
            RejectedProblemError: If the problem has bounds, several
                objectives or no level function.
            DegenerateGradientError: If ∇G vanishes at an iterate.
            NumericalFailureError: If the anti-cycling correction or the KKT
                solve is undefined.
        """
        name = type(self).__name__
        check_problem(problem, name)

        level_fn = problem.level_function
        if not isinstance(level_fn, LevelFunction):
            level_fn = LevelFunction(level_fn)
        options = {"level_value": problem.get_level_value()}
        tags = frozenset()

        if state is None:
            if starting_point is None:
                raise ValueError("Either a starting point or a state is required")
            y0 = jnp.asarray(starting_point)
            if y0.ndim != 1:
                raise ValueError(
                    "The starting point must be one-dimensional, "
                    f"got shape {y0.shape}"
                )
            if not jnp.issubdtype(y0.dtype, jnp.floating):
                y0 = y0.astype(jnp.result_type(float))
            state = self.init(level_fn, y0, args, options, None, None, tags)

        result = OptimizationResult(state.point, state.level)
        result.update(state.point, int(state.step_count))

        y = state.point
        while True:
            done, _ = self.terminate(level_fn, y, args, options, state, tags)
            if done:
                break
            y, state, _ = _jit_step(self, level_fn, y, args, options, state, tags)

            iteration = int(state.step_count)
            status = int(state.status)
            if self.verbose:
                logger.info(
                    "iteration=%d point=%s level=%s gradient=%s lambda=%s corrected=%s",
                    iteration,
                    np.asarray(state.point),
                    float(state.level),
                    np.asarray(state.gradient),
                    float(state.lam),
                    bool(state.corrected),
                )

            if status == SolverResult.DEGENERATE_GRADIENT:
                result.update(state.point, iteration)
                result.status = status
                raise DegenerateGradientError(
                    f"Error in {name} algorithm: the gradient of the level "
                    f"function is zero at point u={np.asarray(state.point)}",
                    result=result,
                )
            if status == SolverResult.NUMERICAL_FAILURE:
                result.update(state.point, iteration)
                result.status = status
                raise NumericalFailureError(
                    f"Error in {name} algorithm: the update is undefined at "
                    f"point u={np.asarray(state.point)}",
                    result=result,
                )

            result.update(state.point, iteration)
            result.store(
                state.point,
                state.level,
                state.absolute_error,
                state.relative_error,
                state.residual_error,
                state.constraint_error,
            )
            logger.debug("%r", result)

        result.converged = bool(state.converged)
        if result.converged:
            result.status = SolverResult.SUCCESS
        else:
            result.status = SolverResult.MAX_ITERATIONS
            logger.warning(
                "The %s algorithm failed to converge after %d iterations",
                name,
                self.max_steps,
            )
        return result


class AbdoRackwitz(AbstractNearestPointSolver):
    """Abdo-Rackwitz solver for the nearest-point problem.

    At each iteration the multiplier and direction are obtained in closed
    form from the gradient of the level function:

        λ = (G(u) - G0 - <∇G, u>) / ‖∇G‖²
        d = -λ ∇G - u

    followed by the penalized merit line search.

    Example:
        >>> import jax.numpy as jnp
        >>> from nearest_point_jax import AbdoRackwitz, LevelFunction, NearestPointProblem
        >>>
        >>> def level(u, args):
        ...     return u[0] + 2.0 * u[1]
        >>>
        >>> problem = NearestPointProblem(LevelFunction(level), level_value=1.0)
        >>> result = AbdoRackwitz().run(problem, jnp.zeros(2))
    """

    def _init_subproblem(self, level_fn, y, args):
        dtype = y.dtype
        return (
            jnp.zeros((0, 0), dtype=dtype),
            jnp.zeros((0, 0), dtype=dtype),
            jnp.zeros((0,), dtype=dtype),
        )

    def _compute_direction(self, level_fn, args, state, gradient):
        direction, lam = abdo_rackwitz_direction(
            state.point, state.level, state.level_value, gradient
        )
        return DirectionResult(
            direction=direction,
            lam=lam,
            hessian=state.hessian,
            system_matrix=state.system_matrix,
            second_member=state.second_member,
            singular=jnp.array(False),
        )


class SQP(AbstractNearestPointSolver):
    """Sequential Quadratic Programming solver for the nearest-point problem.

    At each iteration the Hessian of the level function is evaluated and the
    direction and the new multiplier are read off the solution of

        [ 2I + λ ∇²G   ∇G ] [ d     ]   [ -u         ]
        [ ∇G^T         0  ] [ λ_new ] = [ -(G - G0)  ]

    where λ is the multiplier of the previous iteration. The line search is
    the same as for :class:`AbdoRackwitz`. A singular system ends the run
    with status NUMERICAL_FAILURE.
    """

    def _init_subproblem(self, level_fn, y, args):
        n = y.shape[0]
        dtype = y.dtype
        return (
            level_fn.hessian(y, args),
            jnp.zeros((n + 1, n + 1), dtype=dtype),
            jnp.zeros((n + 1,), dtype=dtype),
        )

    def _compute_direction(self, level_fn, args, state, gradient):
        hessian = level_fn.hessian(state.point, args)
        system = build_kkt_system(
            hessian,
            gradient,
            state.point,
            state.level,
            state.level_value,
            state.lam,
        )
        solution = solve_kkt_system(system.matrix, system.second_member)
        return DirectionResult(
            direction=solution.direction,
            lam=solution.lam,
            hessian=hessian,
            system_matrix=system.matrix,
            second_member=system.second_member,
            singular=solution.singular,
        )
