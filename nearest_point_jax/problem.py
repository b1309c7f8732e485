"""Level function adapter and nearest-point problem descriptor.

The solvers only ever see the level function ``G`` through
:class:`LevelFunction`, which evaluates ``G(u)``, ``∇G(u)`` and ``∇²G(u)``.
Derivatives come from user-supplied functions when given, otherwise from
``jax.grad`` and ``jax.hessian``.
"""

from collections.abc import Callable
from typing import Any, Optional, Union

import equinox as eqx
import jax
from jaxtyping import Array, Float

from nearest_point_jax.exceptions import RejectedProblemError
from nearest_point_jax.types import GradFn, HessianFn, LevelFn, Matrix, Scalar, Vector
from nearest_point_jax.utils import args_closure, as_scalar


class LevelFunction(eqx.Module):
    """Scalar level function ``G`` with optional analytic derivatives.

    Attributes:
        fn: The level function ``fn(u, args) -> G(u)``. May return shape
            ``()`` or ``(1,)``.
        grad_fn: Optional gradient ``grad_fn(u, args) -> ∇G(u)``.
        hessian_fn: Optional dense Hessian ``hessian_fn(u, args) -> ∇²G(u)``.

    Example:
        >>> import jax.numpy as jnp
        >>> from nearest_point_jax import LevelFunction
        >>>
        >>> level = LevelFunction(lambda u, args: u[0] + 2.0 * u[1])
        >>> grad = level.gradient(jnp.zeros(2), None)  # [1., 2.]
    """

    fn: LevelFn = eqx.field(static=True)
    grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    hessian_fn: Optional[HessianFn] = eqx.field(static=True, default=None)

    def __call__(self, y: Vector, args: Any) -> tuple[Scalar, None]:
        # Same (value, aux) convention as the functions optimistix hands to solvers
        return self.value(y, args), None

    def value(self, y: Vector, args: Any) -> Scalar:
        return as_scalar(self.fn(y, args))

    def gradient(self, y: Vector, args: Any) -> Vector:
        if self.grad_fn is not None:
            return self.grad_fn(y, args)
        return jax.grad(args_closure(self.value, args))(y)

    def hessian(self, y: Vector, args: Any) -> Matrix:
        if self.hessian_fn is not None:
            return self.hessian_fn(y, args)
        return jax.hessian(args_closure(self.value, args))(y)


def as_level_function(fn: Callable) -> LevelFunction:
    """Wrap ``fn(u, args) -> (G(u), aux)`` unless it already is a LevelFunction."""
    if isinstance(fn, LevelFunction):
        return fn

    def value_only(y, args):
        return fn(y, args)[0]

    return LevelFunction(value_only)


class NearestPointProblem(eqx.Module):
    """Find the point of minimal norm on the level set ``G(u) = level_value``.

    Attributes:
        level_function: The level function, either a LevelFunction or a plain
            ``fn(u, args) -> G(u)``. None for a problem that does not define
            one (such problems are rejected).
        level_value: The target level ``G0``.
        bounds: Optional box bounds of shape ``(n, 2)``. Not supported by the
            nearest-point solvers; present so they can be rejected.
        n_objectives: Number of objectives. Must be 1.
    """

    level_function: Optional[Union[LevelFunction, LevelFn]]
    level_value: float = 0.0
    bounds: Optional[Float[Array, "n 2"]] = None
    n_objectives: int = eqx.field(static=True, default=1)

    def has_level_function(self) -> bool:
        return self.level_function is not None

    def has_bounds(self) -> bool:
        return self.bounds is not None

    def has_multiple_objective(self) -> bool:
        return self.n_objectives > 1

    def get_level_value(self) -> float:
        return self.level_value


def check_problem(problem: NearestPointProblem, solver_name: str = "solver") -> None:
    """Reject problems the nearest-point solvers cannot handle.

    Raises:
        RejectedProblemError: If the problem has no level function, has several
            objectives, or has bounds.
    """
    if not problem.has_level_function():
        raise RejectedProblemError(
            f"{solver_name} can only solve nearest-point optimization problems"
        )
    if problem.has_multiple_objective():
        raise RejectedProblemError(
            f"{solver_name} does not support multi-objective optimization"
        )
    if problem.has_bounds():
        raise RejectedProblemError(
            f"{solver_name} cannot solve bound-constrained optimization problems"
        )
