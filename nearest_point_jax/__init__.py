"""nearest-point-jax: nearest-point solvers in pure JAX.

This package provides the Abdo-Rackwitz and SQP algorithms for finding the
point of minimal norm on a level set G(u) = G0, the most-probable-point
search of structural reliability analysis. Both solvers are Optimistix
minimisers sharing a penalized merit line search with an anti-cycling
correction.
"""

from nearest_point_jax.convergence import (
    ConvergenceCriteria,
    ErrorMetrics,
    compute_errors,
    has_converged,
)
from nearest_point_jax.exceptions import (
    DegenerateGradientError,
    NearestPointError,
    NumericalFailureError,
    RejectedProblemError,
)
from nearest_point_jax.kkt import (
    abdo_rackwitz_direction,
    build_kkt_system,
    solve_kkt_system,
)
from nearest_point_jax.merit import (
    anti_cycling_correction,
    backtracking_line_search,
    compute_merit,
    update_penalty_parameter,
)
from nearest_point_jax.problem import LevelFunction, NearestPointProblem, check_problem
from nearest_point_jax.result import OptimizationResult
from nearest_point_jax.serialisation import load_state, save_state
from nearest_point_jax.solver import (
    SQP,
    AbdoRackwitz,
    AbstractNearestPointSolver,
    NearestPointState,
)
from nearest_point_jax.types import GradFn, HessianFn, LevelFn, SolverResult

__all__ = [
    # Solvers
    "AbdoRackwitz",
    "SQP",
    "AbstractNearestPointSolver",
    "NearestPointState",
    # Problem
    "LevelFunction",
    "NearestPointProblem",
    "check_problem",
    # Types
    "LevelFn",
    "GradFn",
    "HessianFn",
    "SolverResult",
    # Result and errors
    "OptimizationResult",
    "NearestPointError",
    "RejectedProblemError",
    "DegenerateGradientError",
    "NumericalFailureError",
    # Merit function and line search
    "compute_merit",
    "update_penalty_parameter",
    "anti_cycling_correction",
    "backtracking_line_search",
    # Directions
    "abdo_rackwitz_direction",
    "build_kkt_system",
    "solve_kkt_system",
    # Convergence
    "ConvergenceCriteria",
    "ErrorMetrics",
    "compute_errors",
    "has_converged",
    # Persistence
    "save_state",
    "load_state",
]
