"""Search directions for the nearest-point solvers.

Abdo-Rackwitz uses a closed-form projection onto the linearized constraint:

    λ = (G(u) - G0 - <∇G, u>) / ‖∇G‖²
    d = -λ ∇G - u

SQP solves the bordered KKT system of the quadratic subproblem

    [ 2I + λ ∇²G   ∇G ] [ d     ]   [ -u         ]
    [ ∇G^T         0  ] [ λ_new ] = [ -(G - G0)  ]

where λ is the multiplier from the previous iteration. The top-left block is
built from the lower triangle of the Hessian and mirrored, so the system is
symmetric even when the supplied Hessian is not exactly so.
"""

from typing import NamedTuple

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, jaxtyped

from nearest_point_jax.types import Matrix, Scalar, Vector


class KKTSystem(NamedTuple):
    """Bordered KKT system of the SQP subproblem, with m = n + 1."""

    matrix: Float[Array, "m m"]
    second_member: Float[Array, " m"]


class KKTSolution(NamedTuple):
    """Solution of the KKT system.

    Attributes:
        direction: Search direction d (first n components).
        lam: Updated Lagrange multiplier (last component).
        singular: Whether the solve produced non-finite values.
    """

    direction: Vector
    lam: Scalar
    singular: Bool[Array, ""]


@jaxtyped(typechecker=beartype)
def abdo_rackwitz_direction(
    point: Vector,
    level: Scalar,
    level_value: Scalar,
    gradient: Vector,
) -> tuple[Vector, Scalar]:
    """Compute the Abdo-Rackwitz multiplier and direction.

    The caller guarantees ``‖∇G‖ > 0``.

    Args:
        point: Current point u.
        level: Level function value G(u).
        level_value: Target level G0.
        gradient: Level function gradient ∇G(u).

    Returns:
        Tuple of (direction, lam).
    """
    lam = (level - level_value - jnp.dot(gradient, point)) / jnp.dot(
        gradient, gradient
    )
    direction = -lam * gradient - point
    return direction, lam


@jaxtyped(typechecker=beartype)
def build_kkt_system(
    hessian: Matrix,
    gradient: Vector,
    point: Vector,
    level: Scalar,
    level_value: Scalar,
    lam: Scalar,
) -> KKTSystem:
    """Assemble the (n+1) x (n+1) KKT matrix and right-hand side.

    Args:
        hessian: Level function Hessian ∇²G(u).
        gradient: Level function gradient ∇G(u).
        point: Current point u.
        level: Level function value G(u).
        level_value: Target level G0.
        lam: Lagrange multiplier from the previous iteration.

    Returns:
        KKTSystem with the symmetric matrix and the second member.
    """
    n = point.shape[0]

    # Lower triangle of lam * H mirrored to the upper triangle
    lower = jnp.tril(lam * hessian)
    block = lower + jnp.tril(lower, k=-1).T + 2.0 * jnp.eye(n, dtype=hessian.dtype)

    top = jnp.concatenate([block, gradient[:, None]], axis=1)
    bottom = jnp.concatenate([gradient, jnp.zeros((1,), dtype=gradient.dtype)])
    matrix = jnp.concatenate([top, bottom[None, :]], axis=0)

    second_member = jnp.concatenate(
        [-point, jnp.reshape(-(level - level_value), (1,))]
    )

    return KKTSystem(matrix=matrix, second_member=second_member)


@jaxtyped(typechecker=beartype)
def solve_kkt_system(
    matrix: Float[Array, "m m"],
    second_member: Float[Array, " m"],
) -> KKTSolution:
    """Solve the KKT system for the SQP direction and multiplier.

    Args:
        matrix: Symmetric KKT matrix.
        second_member: Right-hand side.

    Returns:
        KKTSolution. ``singular`` is set when the matrix could not be
        factorized (the solution then contains inf or NaN).
    """
    solution = jnp.linalg.solve(matrix, second_member)
    singular = ~jnp.all(jnp.isfinite(solution))
    return KKTSolution(
        direction=solution[:-1],
        lam=solution[-1],
        singular=singular,
    )
