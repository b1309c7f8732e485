"""Host-side record of a nearest-point run.

The jitted solver step only ever carries the latest iterate. The history
of visited points, level values and error metrics is accumulated here, in
NumPy, by :meth:`nearest_point_jax.solver.AbstractNearestPointSolver.run`.
"""

from typing import Optional

import numpy as np

from nearest_point_jax.types import SolverResult

_ERROR_NAMES = (
    "absolute_error",
    "relative_error",
    "residual_error",
    "constraint_error",
)


class OptimizationResult:
    """History and outcome of a nearest-point run.

    Attributes:
        optimal_point: Last accepted iterate.
        optimal_value: Level function value at ``optimal_point``.
        iteration_number: Number of iterations started.
        converged: Whether the convergence test was met.
        status: Termination code from :class:`SolverResult`.
    """

    def __init__(self, starting_point, starting_value):
        self.optimal_point = np.asarray(starting_point)
        self.optimal_value = float(starting_value)
        self.iteration_number = 0
        self.converged = False
        self.status = SolverResult.RUNNING
        self._points = []
        self._values = []
        self._errors = {name: [] for name in _ERROR_NAMES}
        self.store(starting_point, starting_value, -1.0, -1.0, -1.0, -1.0)

    def update(self, point, iteration_number: int) -> None:
        """Record the latest iterate without adding a history entry."""
        self.optimal_point = np.asarray(point)
        self.iteration_number = int(iteration_number)

    def store(
        self,
        point,
        value,
        absolute_error,
        relative_error,
        residual_error,
        constraint_error,
    ) -> None:
        """Append one iteration to the history."""
        self._points.append(np.asarray(point))
        self._values.append(float(value))
        errors = (absolute_error, relative_error, residual_error, constraint_error)
        for name, error in zip(_ERROR_NAMES, errors):
            self._errors[name].append(float(error))
        self.optimal_value = float(value)

    @property
    def point_history(self) -> np.ndarray:
        return np.stack(self._points)

    @property
    def value_history(self) -> np.ndarray:
        return np.asarray(self._values)

    @property
    def absolute_error_history(self) -> np.ndarray:
        return np.asarray(self._errors["absolute_error"])

    @property
    def relative_error_history(self) -> np.ndarray:
        return np.asarray(self._errors["relative_error"])

    @property
    def residual_error_history(self) -> np.ndarray:
        return np.asarray(self._errors["residual_error"])

    @property
    def constraint_error_history(self) -> np.ndarray:
        return np.asarray(self._errors["constraint_error"])

    def last_errors(self) -> Optional[dict[str, float]]:
        """Error metrics of the last recorded iteration, or None before any."""
        if len(self._values) < 2:
            return None
        return {name: values[-1] for name, values in self._errors.items()}

    def __len__(self) -> int:
        return len(self._points)

    def __repr__(self) -> str:
        errors = self.last_errors() or {name: -1.0 for name in _ERROR_NAMES}
        return (
            f"OptimizationResult(optimal_point={self.optimal_point}, "
            f"optimal_value={self.optimal_value}, "
            f"iteration_number={self.iteration_number}, "
            f"converged={self.converged}, "
            + ", ".join(f"{name}={value:.6g}" for name, value in errors.items())
            + ")"
        )
