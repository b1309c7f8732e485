"""Save and restore a solver together with its state.

The archive is a NumPy ``.npz`` file keyed by attribute name: the solver
class under ``solver``, one entry per solver setting, and one entry per
:class:`NearestPointState` field.
"""

import dataclasses
from typing import Any

import jax.numpy as jnp
import numpy as np

from nearest_point_jax.solver import (
    SQP,
    AbdoRackwitz,
    AbstractNearestPointSolver,
    NearestPointState,
)

_SOLVERS = {cls.__name__: cls for cls in (AbdoRackwitz, SQP)}

_SETTINGS = (
    "tau",
    "omega",
    "smooth",
    "max_steps",
    "atol",
    "rtol",
    "max_residual_error",
    "max_constraint_error",
    "verbose",
)

_STATE_FIELDS = tuple(field.name for field in dataclasses.fields(NearestPointState))


def state_attributes(
    solver: AbstractNearestPointSolver, state: NearestPointState
) -> dict[str, np.ndarray]:
    """Flatten a solver and its state into named NumPy arrays."""
    name = type(solver).__name__
    if name not in _SOLVERS:
        raise TypeError(f"Cannot serialise solvers of type {name}")
    attributes = {"solver": np.asarray(name)}
    for setting in _SETTINGS:
        attributes[setting] = np.asarray(getattr(solver, setting))
    for field in _STATE_FIELDS:
        attributes[field] = np.asarray(getattr(state, field))
    return attributes


def save_state(
    file: Any, solver: AbstractNearestPointSolver, state: NearestPointState
) -> None:
    """Write a solver and its state to ``file`` (path or file object)."""
    np.savez(file, **state_attributes(solver, state))


def load_state(file: Any) -> tuple[AbstractNearestPointSolver, NearestPointState]:
    """Read back a solver and its state written by :func:`save_state`.

    Raises:
        KeyError: If an attribute is missing from the archive.
        TypeError: If the archive names an unknown solver.
    """
    with np.load(file, allow_pickle=False) as data:
        name = str(data["solver"])
        if name not in _SOLVERS:
            raise TypeError(f"Unknown solver {name!r} in archive")
        settings = {setting: data[setting].item() for setting in _SETTINGS}
        fields = {field: jnp.asarray(data[field]) for field in _STATE_FIELDS}

    solver = _SOLVERS[name](**settings)
    return solver, NearestPointState(**fields)
