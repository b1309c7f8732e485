"""Exceptions raised by the nearest-point solvers."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from nearest_point_jax.result import OptimizationResult


class NearestPointError(Exception):
    """Base error for the nearest-point solvers.

    Carries the partial :class:`OptimizationResult` reached before the failure
    (``None`` when the solver never started iterating).
    """

    def __init__(
        self,
        *args: object,
        result: Optional["OptimizationResult"] = None,
    ) -> None:
        super().__init__(*args)
        self.result = result


class RejectedProblemError(NearestPointError, ValueError):
    """The problem has bounds, several objectives, or no level function."""


class DegenerateGradientError(NearestPointError):
    """The gradient of the level function vanished at an iterate."""


class NumericalFailureError(NearestPointError):
    """An update was undefined (zero interpolation denominator, singular system)."""
